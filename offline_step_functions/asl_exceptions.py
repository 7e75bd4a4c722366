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
Defines the exceptions raised by offline_step_functions. Where the ASL spec
https://states-language.net/spec.html#appendix-a defines an Error Name for a
failure the exception carries it in its error attribute, so an execution that
fails because of it reports the same Error Name that AWS Step Functions would.
"""

import sys
assert sys.version_info >= (3, 0)  # Bomb out if not running Python3


class StateMachineError(Exception):
    error = "States.Runtime"

    def __init__(self, cause="", error=None):
        super().__init__(cause)
        self.cause = cause
        if error:
            self.error = error


# Raised by StateMachineDefinition.load(), the machine is never run.
class DefinitionError(StateMachineError):
    error = "States.DefinitionError"


class NotFoundError(StateMachineError):
    error = "States.NotFound"


class PathError(StateMachineError):
    pass


class ResultPathMatchFailure(PathError):
    error = "States.ResultPathMatchFailure"


class NoMatchingChoiceError(StateMachineError):
    error = "States.NoChoiceMatched"


class WaitError(StateMachineError):
    pass


class UnsupportedStateError(StateMachineError):
    pass


class ExecutionAborted(StateMachineError):
    error = "States.Aborted"


# Raised on reaching a Fail state, error and cause come from the state.
class FailStateError(StateMachineError):
    error = "States.Fail"


class TaskError(StateMachineError):
    """
    Base class of the Task invocation failures. The detail attribute holds
    any diagnostic text the worker wrote to its error channel.
    """
    error = "States.TaskFailed"

    def __init__(self, cause="", error=None, detail=""):
        super().__init__(cause, error)
        self.detail = detail


class TaskTimeout(TaskError):
    error = "States.Timeout"


class TaskCrashed(TaskError):
    pass
