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
# PYTHONPATH=.. python3 test_workflow_engine.py
#
"""
This test tests the WorkflowEngine configuration and entry point
"""

import sys
assert sys.version_info >= (3, 0) # Bomb out if not running Python3

import unittest
import json
import os, tempfile
from unittest import mock

from offline_step_functions.asl_exceptions import *
from offline_step_functions.metrics import PrometheusMetrics
from offline_step_functions.workflow_engine import WorkflowEngine

HANDLER_ROOT = os.path.dirname(os.path.abspath(__file__))

STEP_FUNCTIONS = {
    "stateMachines": {
        "greet": {
            "name": "greet",
            "definition": {
                "StartAt": "Hello",
                "States": {
                    "Hello": {
                        "Type": "Task",
                        "handler": "handlers.hello",
                        "End": True
                    }
                }
            }
        }
    }
}


class TestWorkflowEngine(unittest.TestCase):

    def setUp(self):
        self.directory = tempfile.TemporaryDirectory()
        self.definition_file = self.write("step-functions.json", STEP_FUNCTIONS)

    def tearDown(self):
        self.directory.cleanup()

    def write(self, name, content):
        path = os.path.join(self.directory.name, name)
        with open(path, "w") as fp:
            fp.write(content if isinstance(content, str) else json.dumps(content))
        return path

    def config_file(self, **task_invoker):
        task_invoker.setdefault("handler_root", HANDLER_ROOT)
        return self.write("config.json", {
            "state_engine": {"definition_file": self.definition_file},
            "task_invoker": task_invoker,
            "metrics": {"implementation": "Prometheus", "namespace": "offline"}
        })

    def test_config(self):
        engine = WorkflowEngine(self.config_file(timeout_millis=2500))
        self.assertEqual(engine.config["task_invoker"]["timeout_millis"], 2500)
        self.assertEqual(engine.config["task_invoker"]["python"], sys.executable)
        self.assertEqual(engine.definition.machine_names(), ["greet"])
        self.assertEqual(engine.state_engine.task_invoker.timeout_millis, 2500)
        self.assertEqual(engine.state_engine.task_invoker.handler_root, HANDLER_ROOT)
        self.assertIsInstance(engine.state_engine.metrics, PrometheusMetrics)

    def test_environment_overrides(self):
        environment = {
            "TASK_INVOKER_TIMEOUT_MILLIS": "1234",
            "METRICS_IMPLEMENTATION": "None",
        }
        with mock.patch.dict(os.environ, environment):
            engine = WorkflowEngine(self.config_file(timeout_millis=2500))
        self.assertEqual(engine.config["task_invoker"]["timeout_millis"], 1234)
        self.assertEqual(engine.state_engine.task_invoker.timeout_millis, 1234)
        self.assertNotIsInstance(engine.state_engine.metrics, PrometheusMetrics)

    def test_defaults_without_config_file(self):
        environment = {
            "STATE_ENGINE_DEFINITION_FILE": self.definition_file,
            "TASK_INVOKER_HANDLER_ROOT": HANDLER_ROOT,
        }
        with mock.patch.dict(os.environ, environment):
            engine = WorkflowEngine()
        self.assertEqual(engine.config["task_invoker"]["timeout_millis"], 6000)
        self.assertEqual(engine.config["metrics"]["implementation"], "None")

    def test_run(self):
        engine = WorkflowEngine(self.config_file())
        description = engine.run("greet", {"name": "config"})
        self.assertEqual(description["status"], "SUCCEEDED")
        self.assertEqual(json.loads(description["output"]), {"message": "hello config"})

    def test_missing_config_file(self):
        with self.assertRaises(IOError):
            WorkflowEngine(os.path.join(self.directory.name, "missing.json"))

    def test_invalid_config_file(self):
        with self.assertRaises(ValueError):
            WorkflowEngine(self.write("config.json", "{not json"))

    def test_invalid_definition_file(self):
        self.definition_file = self.write("step-functions.json", {
            "broken": {"StartAt": "Missing", "States": {"Done": {"Type": "Succeed"}}}
        })
        with self.assertRaises(DefinitionError):
            WorkflowEngine(self.config_file())

if __name__ == "__main__":
    unittest.main()
