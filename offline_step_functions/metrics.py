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
This provides implementation agnostic metrics hooks. The StateEngine and the
TaskInvoker call the hooks of whatever init_metrics() returns, which is a
no-op Metrics unless the metrics config selects the Prometheus implementation.

Prometheus metrics are intended to emulate Stepfunction CloudWatch metrics.
https://docs.aws.amazon.com/step-functions/latest/dg/procedure-cw-metrics.html
"""

import sys
assert sys.version_info >= (3, 0)  # Bomb out if not running Python3

from aioprometheus import Counter, Histogram, Registry

from offline_step_functions.logger import init_logging


class Metrics(object):
    def execution_started(self, state_machine):
        pass

    def execution_finished(self, state_machine, status, error, duration):
        pass

    def task_scheduled(self, handler):
        pass

    def task_finished(self, handler, error, duration):
        pass


class PrometheusMetrics(Metrics):
    """
    Each instance holds its collectors in its own Registry, so more than one
    engine may run in the same process without duplicate metric names.
    """
    def __init__(self, namespace=""):
        ns = namespace + "_" if namespace else ""
        self.registry = Registry()

        self.execution_metrics = {
            "ExecutionTime": Histogram(
                ns + "ExecutionTime",
                "The interval, in milliseconds, between the time the " +
                "execution starts and the time it closes.",
                registry=self.registry
            ),
            "ExecutionsFailed": Counter(
                ns + "ExecutionsFailed",
                "The number of failed executions.",
                registry=self.registry
            ),
            "ExecutionsStarted": Counter(
                ns + "ExecutionsStarted",
                "The number of started executions.",
                registry=self.registry
            ),
            "ExecutionsSucceeded": Counter(
                ns + "ExecutionsSucceeded",
                "The number of successfully completed executions.",
                registry=self.registry
            ),
            "ExecutionsTimedOut": Counter(
                ns + "ExecutionsTimedOut",
                "The number of executions that time out for any reason.",
                registry=self.registry
            )
        }

        self.task_metrics = {
            "LambdaFunctionTime": Histogram(
                ns + "LambdaFunctionTime",
                "The interval, in milliseconds, between the time the " +
                "Lambda function is scheduled and the time it closes.",
                registry=self.registry
            ),
            "LambdaFunctionsFailed": Counter(
                ns + "LambdaFunctionsFailed",
                "The number of failed Lambda functions.",
                registry=self.registry
            ),
            "LambdaFunctionsScheduled": Counter(
                ns + "LambdaFunctionsScheduled",
                "The number of scheduled Lambda functions.",
                registry=self.registry
            ),
            "LambdaFunctionsSucceeded": Counter(
                ns + "LambdaFunctionsSucceeded",
                "The number of successfully completed Lambda functions.",
                registry=self.registry
            ),
            "LambdaFunctionsTimedOut": Counter(
                ns + "LambdaFunctionsTimedOut",
                "The number of Lambda functions that time out on close.",
                registry=self.registry
            )
        }

    def execution_started(self, state_machine):
        self.execution_metrics["ExecutionsStarted"].inc(
            {"StateMachine": state_machine}
        )

    def execution_finished(self, state_machine, status, error, duration):
        labels = {"StateMachine": state_machine}
        if status == "SUCCEEDED":
            self.execution_metrics["ExecutionsSucceeded"].inc(labels)
        else:
            if error == "States.Timeout":
                self.execution_metrics["ExecutionsTimedOut"].inc(labels)
            self.execution_metrics["ExecutionsFailed"].inc(labels)
        self.execution_metrics["ExecutionTime"].observe(labels, duration)

    def task_scheduled(self, handler):
        self.task_metrics["LambdaFunctionsScheduled"].inc({"Handler": handler})

    def task_finished(self, handler, error, duration):
        labels = {"Handler": handler}
        if error is None:
            self.task_metrics["LambdaFunctionsSucceeded"].inc(labels)
        elif error == "States.Timeout":
            self.task_metrics["LambdaFunctionsTimedOut"].inc(labels)
        else:
            self.task_metrics["LambdaFunctionsFailed"].inc(labels)
        self.task_metrics["LambdaFunctionTime"].observe(labels, duration)


def init_metrics(service_name, config):
    """
    Initialise metrics implementation from the "metrics" config section, e.g.
    {"implementation": "Prometheus", "namespace": "offline_sfn"}
    """
    logger = init_logging(service_name)
    if config and config.get("implementation") == "Prometheus":
        ns = config.get("namespace", "")
        if ns:
            logger.info("Enabling Prometheus Metrics in namespace: " + ns)
        else:
            logger.info("Enabling Prometheus Metrics")
        return PrometheusMetrics(ns)
    return Metrics()
