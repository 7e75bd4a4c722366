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
"""
The Definition Model. This turns the JSON representation of one or more ASL
state machines into validated, read-only objects, with one class per ASL state
type, so the interpreter never has to deal with malformed ASL at run time.

https://states-language.net/spec.html#toplevelfields

A State Machine MUST have an object field named "States", whose fields
represent the states. A State Machine MUST have a string field named "StartAt",
whose value MUST exactly match one of names of the "States" fields. The
interpreter starts running the machine at the named state.

The semantic checks here are those that matter for running a machine: every
"StartAt", "Next" and "Default" must name a state that exists, every state
that isn't terminal must say where to go next and every Choice Rule must be
well formed.
"""

import sys
assert sys.version_info >= (3, 0)  # Bomb out if not running Python3

from types import MappingProxyType

import ujson as json

from offline_step_functions.asl_exceptions import DefinitionError, NotFoundError

COMBINATORS = ("And", "Or", "Not")

COMPARISON_FAMILIES = {
    "String": ("Equals", "GreaterThan", "GreaterThanEquals", "LessThan",
               "LessThanEquals"),
    "Numeric": ("Equals", "GreaterThan", "GreaterThanEquals", "LessThan",
                "LessThanEquals"),
    "Timestamp": ("Equals", "GreaterThan", "GreaterThanEquals", "LessThan",
                  "LessThanEquals"),
    "Boolean": ("Equals",),
}

TYPE_TESTS = frozenset(
    ["IsNull", "IsPresent", "IsNumeric", "IsString", "IsBoolean", "IsTimestamp"]
)

# Comparators whose operand is a literal value, plus their ...Path variants
# whose operand is a path resolved against the Choice state's input.
VALUE_COMPARATORS = frozenset(
    [family + op for family, ops in COMPARISON_FAMILIES.items() for op in ops]
    + ["StringMatches", "CaseInsensitiveStringEquals"]
)
PATH_COMPARATORS = frozenset(
    [family + op + "Path" for family, ops in COMPARISON_FAMILIES.items() for op in ops]
)
COMPARATORS = VALUE_COMPARATORS | PATH_COMPARATORS | TYPE_TESTS

# Keys allowed in a Choice Rule that are not comparators.
RULE_FIELDS = frozenset(["Variable", "Next", "Comment"])


class Frozen(object):
    """
    Mixin that makes instances read-only once freeze() has been called, as
    definitions are shared by every in-flight execution of a machine.
    """
    _frozen = False

    def freeze(self):
        object.__setattr__(self, "_frozen", True)
        return self

    def __setattr__(self, name, value):
        if self._frozen:
            raise AttributeError(
                "{} is read-only after load".format(type(self).__name__)
            )
        object.__setattr__(self, name, value)

#-------------------------------------------------------------------------------

class ChoiceRule(Frozen):
    next = None


class ComparisonRule(ChoiceRule):
    """
    A Boolean expression comparing the value selected by Variable with an
    operand, e.g. {"Variable": "$.n", "NumericGreaterThan": 5, "Next": "Big"}
    """
    def __init__(self, variable, comparator, operand, next=None):
        self.variable = variable
        self.comparator = comparator
        self.operand = operand
        self.next = next

    @property
    def operand_is_path(self):
        return self.comparator in PATH_COMPARATORS

    @property
    def family(self):
        for family in COMPARISON_FAMILIES:
            if self.comparator.startswith(family):
                return family
        return None

    @property
    def operation(self):
        """
        The comparison operation with its family prefix and any Path suffix
        removed, e.g. NumericGreaterThanEqualsPath gives GreaterThanEquals.
        """
        name = self.comparator
        if self.operand_is_path:
            name = name[:-4]
        family = self.family
        return name[len(family):] if family else name

    def __repr__(self):
        return "ComparisonRule({} {} {!r} -> {})".format(
            self.variable, self.comparator, self.operand, self.next
        )


class CombinatorRule(ChoiceRule):
    """
    An And, Or or Not of nested Choice Rules. Not always holds a single rule.
    """
    def __init__(self, operator, rules, next=None):
        self.operator = operator
        self.rules = tuple(rules)
        self.next = next

    def __repr__(self):
        return "CombinatorRule({} {!r} -> {})".format(
            self.operator, list(self.rules), self.next
        )


def parse_choice_rule(raw, location, top_level=True):
    """
    Build a ChoiceRule from its JSON, raising DefinitionError naming location
    if the rule is malformed. A rule is either a comparison with exactly one
    comparator or a combinator containing only nested rules.
    """
    if not isinstance(raw, dict):
        raise DefinitionError("Choice Rule at {} must be an object".format(location))

    next = raw.get("Next")
    if top_level and not isinstance(next, str):
        raise DefinitionError(
            "Choice Rule at {} has no \"Next\" field".format(location)
        )

    combinators = [op for op in COMBINATORS if op in raw]
    comparators = [
        key for key in raw if key not in RULE_FIELDS and key not in COMBINATORS
    ]

    if combinators:
        if len(combinators) > 1 or comparators or "Variable" in raw:
            raise DefinitionError(
                "Choice Rule at {} combines {} with other operators, a "
                "combinator may only contain nested Choice Rules".format(
                    location, combinators[0]
                )
            )
        operator = combinators[0]
        value = raw[operator]
        nested = value if isinstance(value, list) else [value]
        if len(nested) == 0:
            raise DefinitionError(
                "Choice Rule at {}.{} must not be empty".format(location, operator)
            )
        if operator == "Not" and len(nested) != 1:
            raise DefinitionError(
                "Choice Rule at {}.Not must hold a single Choice Rule".format(location)
            )
        rules = [
            parse_choice_rule(rule, "{}.{}[{}]".format(location, operator, i), False)
            for i, rule in enumerate(nested)
        ]
        return CombinatorRule(operator, rules, next).freeze()

    if len(comparators) != 1:
        raise DefinitionError(
            "Choice Rule at {} must have exactly one comparison operator, "
            "found {}".format(location, comparators)
        )

    comparator = comparators[0]
    if comparator not in COMPARATORS:
        raise DefinitionError(
            "Choice Rule at {} has an unknown comparison operator \"{}\"".format(
                location, comparator
            )
        )

    variable = raw.get("Variable")
    if not isinstance(variable, str) or not variable.startswith("$"):
        raise DefinitionError(
            "Field \"Variable\" of Choice Rule at {} is not a JSONPath".format(location)
        )

    operand = raw[comparator]
    if comparator in PATH_COMPARATORS:
        if not isinstance(operand, str) or not operand.startswith("$"):
            raise DefinitionError(
                "Field \"{}\" of Choice Rule at {} is not a JSONPath".format(
                    comparator, location
                )
            )
    elif comparator in TYPE_TESTS and not isinstance(operand, bool):
        raise DefinitionError(
            "Field \"{}\" of Choice Rule at {} must be a boolean".format(
                comparator, location
            )
        )

    return ComparisonRule(variable, comparator, operand, next).freeze()

#-------------------------------------------------------------------------------

class State(Frozen):
    """
    Fields common to every state type.
    https://states-language.net/spec.html#statetypes
    """
    type = None

    def __init__(self, name, raw):
        self.name = name
        self.comment = raw.get("Comment")
        self.next = raw.get("Next")
        self.end = raw.get("End", False) is True
        self.input_path = raw.get("InputPath", "$")
        self.output_path = raw.get("OutputPath", "$")
        self.result_path = raw.get("ResultPath", "$")

        # Succeed, Fail and Choice states don't transition via Next/End.
        if self.type not in ("Succeed", "Fail", "Choice"):
            if self.end and self.next:
                raise DefinitionError(
                    "State \"{}\" has both \"Next\" and \"End\" fields".format(name)
                )
            if not self.end and not isinstance(self.next, str):
                raise DefinitionError(
                    "State \"{}\" is not terminal and has no \"Next\" field".format(name)
                )

    @property
    def is_terminal(self):
        return self.end

    def transitions(self):
        """
        Yield (field location, target state name) for every transition this
        state can make, used to check for dangling references.
        """
        if self.next:
            yield "Next", self.next

    def __repr__(self):
        return "{}({!r})".format(type(self).__name__, self.name)


class TaskState(State):
    """
    https://states-language.net/spec.html#task-state
    The handler field is a reference to the function that does the work, in
    the form module.function where the module may be given as a path, e.g.
    src/handlers/orders.create
    """
    type = "Task"

    def __init__(self, name, raw):
        super().__init__(name, raw)
        self.handler = raw.get("handler")
        if not isinstance(self.handler, str) or "." not in self.handler:
            raise DefinitionError(
                "Task state \"{}\" must have a \"handler\" field of the form "
                "module.function".format(name)
            )
        self.timeout_seconds = raw.get("TimeoutSeconds")
        if self.timeout_seconds is not None and (
            isinstance(self.timeout_seconds, bool)
            or not isinstance(self.timeout_seconds, (int, float))
            or self.timeout_seconds <= 0
        ):
            raise DefinitionError(
                "Field \"TimeoutSeconds\" of Task state \"{}\" must be a "
                "positive number".format(name)
            )


class PassState(State):
    """
    https://states-language.net/spec.html#pass-state
    A Pass State MAY have a field named Result. If present, its value is
    treated as the output of a virtual task. A "Result" of null is a result.
    """
    type = "Pass"

    def __init__(self, name, raw):
        super().__init__(name, raw)
        self.has_result = "Result" in raw
        self.result = raw.get("Result")


class WaitState(State):
    """
    https://states-language.net/spec.html#wait-state
    A Wait state contains one of Seconds, SecondsPath, Timestamp, or
    TimestampPath. Whether the one supplied resolves to a usable duration
    can only be known at run time.
    """
    type = "Wait"

    def __init__(self, name, raw):
        super().__init__(name, raw)
        self.seconds = raw.get("Seconds")
        self.seconds_path = raw.get("SecondsPath")
        self.timestamp = raw.get("Timestamp")
        self.timestamp_path = raw.get("TimestampPath")

        supplied = [
            field for field in ("Seconds", "SecondsPath", "Timestamp", "TimestampPath")
            if field in raw
        ]
        if len(supplied) > 1:
            raise DefinitionError(
                "Wait state \"{}\" must contain only one of Seconds, "
                "SecondsPath, Timestamp or TimestampPath, found {}".format(
                    name, supplied
                )
            )


class ChoiceState(State):
    """
    https://states-language.net/spec.html#choice-state
    A Choice state MUST have a Choices field whose value is a non-empty array
    of Choice Rules and MAY have a Default field.
    """
    type = "Choice"

    def __init__(self, name, raw):
        super().__init__(name, raw)
        choices = raw.get("Choices")
        if not isinstance(choices, list) or len(choices) == 0:
            raise DefinitionError(
                "Choice state \"{}\" must have a non-empty \"Choices\" array".format(name)
            )
        self.choices = tuple(
            parse_choice_rule(choice, "{}.Choices[{}]".format(name, i))
            for i, choice in enumerate(choices)
        )
        self.default = raw.get("Default")

    def transitions(self):
        for i, choice in enumerate(self.choices):
            yield "Choices[{}].Next".format(i), choice.next
        if self.default:
            yield "Default", self.default


class SucceedState(State):
    type = "Succeed"

    @property
    def is_terminal(self):
        return True

    def transitions(self):
        return iter(())


class FailState(State):
    """
    https://states-language.net/spec.html#fail-state
    Fail states don't allow InputPath, OutputPath or ResultPath.
    """
    type = "Fail"

    def __init__(self, name, raw):
        super().__init__(name, raw)
        self.error = raw.get("Error")
        self.cause = raw.get("Cause")

    @property
    def is_terminal(self):
        return True

    def transitions(self):
        return iter(())


class ParallelState(State):
    # Recognised so a machine using it loads, but running it is unsupported.
    type = "Parallel"


class MapState(State):
    type = "Map"


STATE_TYPES = {
    cls.type: cls for cls in (
        TaskState, PassState, WaitState, ChoiceState, SucceedState, FailState,
        ParallelState, MapState
    )
}

def create_state(name, raw):
    if not isinstance(raw, dict):
        raise DefinitionError("State \"{}\" must be an object".format(name))
    state_type = raw.get("Type")
    cls = STATE_TYPES.get(state_type)
    if cls is None:
        raise DefinitionError(
            "State \"{}\" has an illegal Type \"{}\": Illegal State Machine.".format(
                name, state_type
            )
        )
    return cls(name, raw).freeze()

#-------------------------------------------------------------------------------

class StateMachine(Frozen):
    def __init__(self, name, raw):
        self.name = name
        if not isinstance(raw, dict):
            raise DefinitionError(
                "State Machine \"{}\" must be an object".format(name)
            )
        states = raw.get("States")
        if not isinstance(states, dict) or len(states) == 0:
            raise DefinitionError(
                "State Machine \"{}\" must have a non-empty \"States\" object".format(name)
            )
        self.comment = raw.get("Comment")
        self.start_at = raw.get("StartAt")
        self.states = MappingProxyType(
            {state_name: create_state(state_name, state) for state_name, state in states.items()}
        )

        if self.start_at not in self.states:
            raise DefinitionError(
                "StartAt value \"{}\" not found in States field of State "
                "Machine \"{}\"".format(self.start_at, name)
            )

        for state in self.states.values():
            for field, target in state.transitions():
                if target not in self.states:
                    raise DefinitionError(
                        "No state found named \"{}\", referenced at {}.States.{}.{}".format(
                            target, name, state.name, field
                        )
                    )

    def get(self, state_name):
        state = self.states.get(state_name)
        if state is None:
            raise NotFoundError(
                "State \"{}\" does not exist in State Machine \"{}\"".format(
                    state_name, self.name
                )
            )
        return state


class StateMachineDefinition(Frozen):
    """
    A read-only collection of named StateMachines. Instances are created by
    load() and may be shared freely between concurrently running executions.
    """
    def __init__(self, machines):
        self.machines = MappingProxyType(dict(machines))

    @classmethod
    def load(cls, raw):
        """
        Validate and build a StateMachineDefinition from raw, which may be a
        JSON string or the equivalent dict keyed by state machine name. Each
        machine may be given as ASL directly or, as in the serverless
        stepFunctions.stateMachines configuration, under a "definition" key
        and the whole mapping may itself be wrapped in a "stateMachines" key.
        """
        if isinstance(raw, (str, bytes)):
            try:
                raw = json.loads(raw)
            except ValueError as e:
                raise DefinitionError(
                    "State Machine definition is not valid JSON: {}".format(e)
                ) from e

        if not isinstance(raw, dict):
            raise DefinitionError("State Machine definition must be an object")

        if isinstance(raw.get("stateMachines"), dict):
            raw = raw["stateMachines"]

        machines = {}
        for name, machine in raw.items():
            if isinstance(machine, dict) and "definition" in machine:
                machine = machine["definition"]
            machines[name] = StateMachine(name, machine).freeze()

        return cls(machines).freeze()

    def machine_names(self):
        return list(self.machines.keys())

    def get_machine(self, machine_name):
        machine = self.machines.get(machine_name)
        if machine is None:
            raise NotFoundError(
                "State Machine \"{}\" does not exist".format(machine_name)
            )
        return machine

    def get(self, machine_name, state_name):
        return self.get_machine(machine_name).get(state_name)
