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
# python3 -m offline_step_functions.workflow_engine <state machine> ['<input JSON>']
# LOG_LEVEL=DEBUG python3 -m offline_step_functions.workflow_engine <state machine>
#
"""
This is the main application entry point. The WorkflowEngine reads the JSON
configuration file config.json and stores the config object for the rest of
the application to use, loads the state machine definitions named by the
config and creates a StateEngine to execute them.
"""

import sys
assert sys.version_info >= (3, 0)  # Bomb out if not running Python3

import os
import ujson as json  # https://pypi.org/project/ujson/

from offline_step_functions.definition import StateMachineDefinition
from offline_step_functions.logger import init_logging
from offline_step_functions.metrics import init_metrics
from offline_step_functions.state_engine import StateEngine
from offline_step_functions.task_invoker import DEFAULT_TIMEOUT_MILLIS


class WorkflowEngine(object):
    def __init__(self, configuration_file=None):
        """
        :param configuration_file: Path to configuration file, if None only
         the defaults and environment variables are used
        :type configuration_file: str
        :raises IOError: If configuration or definition file is not readable
        :raises ValueError: If configuration file does not contain valid JSON
        :raises DefinitionError: If the state machine definitions are invalid
        """
        # Initialise logger
        self.logger = init_logging(log_name="offline_step_functions")

        # Load the configuration file.
        config = {}
        if configuration_file:
            try:
                with open(configuration_file, "r") as fp:
                    config = json.load(fp)
                self.logger.info("Creating WorkflowEngine")
            except IOError:
                self.logger.error(
                    "Unable to read configuration file: {}".format(configuration_file)
                )
                raise
            except ValueError:
                self.logger.error("Configuration file does not contain valid JSON")
                raise

        # Provide defaults for any unset config key
        config["state_engine"] = config.get("state_engine", {})
        config["task_invoker"] = config.get("task_invoker", {})
        config["metrics"] = config.get("metrics", {})

        """
        Override config values if a field is set as an environment variable.
        There is also a USE_STRUCTURED_LOGGING environment variable used by
        the logger to select between automation friendly structured logging
        or more human readable "traditional" logs.
        """
        se = config["state_engine"]
        se["definition_file"] = os.environ.get(
            "STATE_ENGINE_DEFINITION_FILE",
            se.get("definition_file", "step-functions.json")
        )

        ti = config["task_invoker"]
        ti["timeout_millis"] = int(os.environ.get(
            "TASK_INVOKER_TIMEOUT_MILLIS",
            ti.get("timeout_millis", DEFAULT_TIMEOUT_MILLIS)
        ))
        ti["handler_root"] = os.environ.get(
            "TASK_INVOKER_HANDLER_ROOT", ti.get("handler_root", ".")
        )
        ti["python"] = os.environ.get(
            "TASK_INVOKER_PYTHON", ti.get("python") or sys.executable
        )

        mc = config["metrics"]
        mc["implementation"] = os.environ.get(
            "METRICS_IMPLEMENTATION", mc.get("implementation", "None")
        )
        mc["namespace"] = os.environ.get(
            "METRICS_NAMESPACE", mc.get("namespace", "")
        )

        self.definition = self.load_definition(se["definition_file"])
        self.logger.info(
            "Loaded state machines {}".format(self.definition.machine_names())
        )

        metrics = init_metrics("offline_step_functions", config["metrics"])
        self.state_engine = StateEngine(self.definition, config, metrics=metrics)

        self.config = config

    def load_definition(self, definition_file):
        try:
            with open(definition_file, "r") as fp:
                return StateMachineDefinition.load(fp.read())
        except IOError:
            self.logger.error(
                "Unable to read definition file: {}".format(definition_file)
            )
            raise

    def run(self, machine_name, input=None):
        """
        Execute the named state machine with input, returning the
        DescribeExecution style dict of the finished execution.
        """
        engine = self.state_engine
        execution = engine.start(machine_name, input)
        engine.await_result(execution)
        return execution.describe()


def main(argv):
    if len(argv) < 2:
        print(
            "Usage: python3 -m offline_step_functions.workflow_engine "
            "<state machine> ['<input JSON>']",
            file=sys.stderr
        )
        return 2

    input = json.loads(argv[2]) if len(argv) > 2 else {}
    configuration_file = "config.json" if os.path.isfile("config.json") else None
    description = WorkflowEngine(configuration_file).run(argv[1], input)
    print(json.dumps(description, indent=4, escape_forward_slashes=False))
    return 0 if description["status"] == "SUCCEEDED" else 1


if __name__ == "__main__":
    sys.exit(main(sys.argv))
