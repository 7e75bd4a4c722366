#
# Licensed to the Apache Software Foundation (ASF) under one
# or more contributor license agreements.  See the NOTICE file
# distributed with this work for additional information
# regarding copyright ownership.  The ASF licenses this file
# to you under the Apache License, Version 2.0 (the
# "License"); you may not use this file except in compliance
# with the License.  You may obtain a copy of the License at
#
#   http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing,
# software distributed under the License is distributed on an
# "AS IS" BASIS, WITHOUT WARRANTIES OR CONDITIONS OF ANY
# KIND, either express or implied.  See the License for the
# specific language governing permissions and limitations
# under the License.
#
# Run with:
# PYTHONPATH=.. python3 test_definition.py
#
"""
This test tests loading and validating state machine definitions
"""

import sys
assert sys.version_info >= (3, 0) # Bomb out if not running Python3

import unittest
import json

from offline_step_functions.asl_exceptions import *
from offline_step_functions.definition import (
    ChoiceState,
    CombinatorRule,
    ComparisonRule,
    PassState,
    StateMachineDefinition,
    TaskState,
)

ASL = """{
    "Comment": "Test loading state machines",
    "StartAt": "Hello",
    "States": {
        "Hello": {
            "Type": "Task",
            "handler": "handlers.hello",
            "TimeoutSeconds": 2,
            "Next": "Check"
        },
        "Check": {
            "Type": "Choice",
            "Choices": [
                {
                    "Variable": "$.n",
                    "NumericGreaterThanEquals": 5,
                    "Next": "Done"
                },
                {
                    "And": [
                        {"Variable": "$.s", "IsPresent": true},
                        {"Not": {"Variable": "$.s", "StringEqualsPath": "$.t"}}
                    ],
                    "Next": "Done"
                }
            ],
            "Default": "Pass"
        },
        "Pass": {
            "Type": "Pass",
            "Result": null,
            "ResultPath": "$.result",
            "End": true
        },
        "Done": {
            "Type": "Succeed"
        }
    }
}"""


def machine(states, start_at="Start"):
    return {"test": {"StartAt": start_at, "States": states}}


class TestDefinition(unittest.TestCase):

    def test_load(self):
        definition = StateMachineDefinition.load({"hello": json.loads(ASL)})
        self.assertEqual(definition.machine_names(), ["hello"])

        task = definition.get("hello", "Hello")
        self.assertIsInstance(task, TaskState)
        self.assertEqual(task.handler, "handlers.hello")
        self.assertEqual(task.timeout_seconds, 2)
        self.assertEqual(task.next, "Check")
        self.assertFalse(task.is_terminal)
        self.assertEqual(task.input_path, "$")
        self.assertEqual(task.result_path, "$")

        choice = definition.get("hello", "Check")
        self.assertIsInstance(choice, ChoiceState)
        self.assertEqual(choice.default, "Pass")
        first, second = choice.choices
        self.assertIsInstance(first, ComparisonRule)
        self.assertEqual(first.family, "Numeric")
        self.assertEqual(first.operation, "GreaterThanEquals")
        self.assertFalse(first.operand_is_path)
        self.assertIsInstance(second, CombinatorRule)
        self.assertEqual(second.operator, "And")
        negated = second.rules[1]
        self.assertEqual(negated.operator, "Not")
        self.assertTrue(negated.rules[0].operand_is_path)
        self.assertEqual(negated.rules[0].operation, "Equals")

        passed = definition.get("hello", "Pass")
        self.assertIsInstance(passed, PassState)
        self.assertTrue(passed.has_result)
        self.assertIsNone(passed.result)
        self.assertTrue(passed.is_terminal)
        self.assertTrue(definition.get("hello", "Done").is_terminal)

    def test_load_json_string_and_wrapped_layouts(self):
        asl = json.loads(ASL)
        for raw in (
            json.dumps({"hello": asl}),
            {"hello": {"definition": asl}},
            {"stateMachines": {"hello": {"name": "hello", "definition": asl}}},
        ):
            definition = StateMachineDefinition.load(raw)
            self.assertEqual(definition.get_machine("hello").start_at, "Hello")

    def test_not_found(self):
        definition = StateMachineDefinition.load({"hello": json.loads(ASL)})
        with self.assertRaises(NotFoundError):
            definition.get_machine("goodbye")
        with self.assertRaises(NotFoundError):
            definition.get("hello", "Nowhere")
        with self.assertRaises(NotFoundError):
            definition.get("goodbye", "Hello")

    def test_read_only(self):
        definition = StateMachineDefinition.load({"hello": json.loads(ASL)})
        state = definition.get("hello", "Check")
        with self.assertRaises(AttributeError):
            state.default = "Done"
        with self.assertRaises(AttributeError):
            state.choices[0].next = "Pass"
        with self.assertRaises(TypeError):
            definition.get_machine("hello").states["Extra"] = state
        with self.assertRaises(TypeError):
            definition.machines["other"] = None

    def test_invalid_json(self):
        with self.assertRaises(DefinitionError):
            StateMachineDefinition.load("{not json")

    def test_missing_start_state(self):
        with self.assertRaises(DefinitionError):
            StateMachineDefinition.load(
                machine({"Start": {"Type": "Succeed"}}, start_at="Missing")
            )

    def test_missing_states(self):
        with self.assertRaises(DefinitionError):
            StateMachineDefinition.load({"test": {"StartAt": "Start"}})

    def test_dangling_next(self):
        with self.assertRaises(DefinitionError) as cm:
            StateMachineDefinition.load(
                machine({"Start": {"Type": "Pass", "Next": "Nowhere"}})
            )
        self.assertIn("Nowhere", cm.exception.cause)

    def test_dangling_choice_references(self):
        with self.assertRaises(DefinitionError):
            StateMachineDefinition.load(machine({
                "Start": {
                    "Type": "Choice",
                    "Choices": [{"Variable": "$.a", "IsNull": True, "Next": "Nowhere"}]
                }
            }))

        with self.assertRaises(DefinitionError):
            StateMachineDefinition.load(machine({
                "Start": {
                    "Type": "Choice",
                    "Choices": [{"Variable": "$.a", "IsNull": True, "Next": "End"}],
                    "Default": "Nowhere"
                },
                "End": {"Type": "Succeed"}
            }))

    def test_unknown_state_type(self):
        with self.assertRaises(DefinitionError):
            StateMachineDefinition.load(machine({"Start": {"Type": "Sleep", "End": True}}))

    def test_missing_next(self):
        with self.assertRaises(DefinitionError):
            StateMachineDefinition.load(machine({"Start": {"Type": "Pass"}}))

    def test_next_and_end(self):
        with self.assertRaises(DefinitionError):
            StateMachineDefinition.load(machine({
                "Start": {"Type": "Pass", "Next": "End", "End": True},
                "End": {"Type": "Succeed"}
            }))

    def test_missing_handler(self):
        with self.assertRaises(DefinitionError):
            StateMachineDefinition.load(machine({"Start": {"Type": "Task", "End": True}}))

        with self.assertRaises(DefinitionError):
            StateMachineDefinition.load(
                machine({"Start": {"Type": "Task", "handler": "nodot", "End": True}})
            )

    def test_invalid_timeout(self):
        for timeout in (0, -1, "5", True):
            with self.assertRaises(DefinitionError):
                StateMachineDefinition.load(machine({
                    "Start": {
                        "Type": "Task",
                        "handler": "handlers.hello",
                        "TimeoutSeconds": timeout,
                        "End": True
                    }
                }))

    def test_wait_with_two_durations(self):
        with self.assertRaises(DefinitionError):
            StateMachineDefinition.load(machine({
                "Start": {"Type": "Wait", "Seconds": 1, "SecondsPath": "$.s", "End": True}
            }))

    def choice_machine(self, *choices):
        return machine({
            "Start": {"Type": "Choice", "Choices": list(choices), "Default": "End"},
            "End": {"Type": "Succeed"}
        })

    def test_choice_rule_comparator_count(self):
        # No comparator
        with self.assertRaises(DefinitionError):
            StateMachineDefinition.load(
                self.choice_machine({"Variable": "$.a", "Next": "End"})
            )

        # Two comparators
        with self.assertRaises(DefinitionError):
            StateMachineDefinition.load(self.choice_machine(
                {"Variable": "$.a", "StringEquals": "x", "NumericEquals": 1, "Next": "End"}
            ))

    def test_choice_rule_unknown_comparator(self):
        with self.assertRaises(DefinitionError) as cm:
            StateMachineDefinition.load(self.choice_machine(
                {"Variable": "$.a", "StringSortOf": "x", "Next": "End"}
            ))
        self.assertIn("StringSortOf", cm.exception.cause)

    def test_choice_rule_needs_next(self):
        with self.assertRaises(DefinitionError):
            StateMachineDefinition.load(
                self.choice_machine({"Variable": "$.a", "StringEquals": "x"})
            )

    def test_choice_rule_bad_operands(self):
        with self.assertRaises(DefinitionError):
            StateMachineDefinition.load(self.choice_machine(
                {"Variable": "a", "StringEquals": "x", "Next": "End"}
            ))

        with self.assertRaises(DefinitionError):
            StateMachineDefinition.load(self.choice_machine(
                {"Variable": "$.a", "NumericEqualsPath": "b", "Next": "End"}
            ))

        with self.assertRaises(DefinitionError):
            StateMachineDefinition.load(self.choice_machine(
                {"Variable": "$.a", "IsNull": "yes", "Next": "End"}
            ))

    def test_malformed_combinators(self):
        # Empty And
        with self.assertRaises(DefinitionError):
            StateMachineDefinition.load(self.choice_machine({"And": [], "Next": "End"}))

        # Not must hold exactly one rule
        with self.assertRaises(DefinitionError):
            StateMachineDefinition.load(self.choice_machine({
                "Not": [
                    {"Variable": "$.a", "IsNull": True},
                    {"Variable": "$.b", "IsNull": True}
                ],
                "Next": "End"
            }))

        # A combinator can't also be a comparison
        with self.assertRaises(DefinitionError):
            StateMachineDefinition.load(self.choice_machine({
                "Or": [{"Variable": "$.a", "IsNull": True}],
                "Variable": "$.b",
                "StringEquals": "x",
                "Next": "End"
            }))

        # Nested rules are validated too
        with self.assertRaises(DefinitionError):
            StateMachineDefinition.load(self.choice_machine({
                "Or": [{"Variable": "$.a"}],
                "Next": "End"
            }))

    def test_empty_choices(self):
        with self.assertRaises(DefinitionError):
            StateMachineDefinition.load(machine({"Start": {"Type": "Choice", "Choices": []}}))

    def test_parallel_loads(self):
        definition = StateMachineDefinition.load(machine({
            "Start": {"Type": "Parallel", "Branches": [], "End": True}
        }))
        self.assertEqual(definition.get("test", "Start").type, "Parallel")

if __name__ == "__main__":
    unittest.main()
