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
The StateEngine drives executions of the state machines in a
StateMachineDefinition. Each execution runs on its own thread, one state at a
time, from its start state until it reaches a terminal state or fails.

Every execution has a context object, as described in the AWS documentation
https://docs.aws.amazon.com/step-functions/latest/dg/input-output-contextobject.html
which is addressable in paths beginning with $$ and is handed to Task handlers
as their context argument.

{
    "Execution": {
        "Id": <String>,
        "Input": <Object>,
        "Name": <String>,
        "StartTime": <String Format: ISO 8601>
    },
    "State": {
        "EnteredTime": <String Format: ISO 8601>,
        "Name": <String>,
        "RetryCount": <Number>
    },
    "StateMachine": {
        "Id": <String>,
        "Name": <String>
    }
}
"""

import sys
assert sys.version_info >= (3, 0)  # Bomb out if not running Python3

import atexit, copy, threading, time
from datetime import datetime, timezone

import ujson as json  # https://pypi.org/project/ujson/

from offline_step_functions.asl_exceptions import (
    ExecutionAborted,
    FailStateError,
    PathError,
    StateMachineError,
    UnsupportedStateError,
    WaitError,
)
from offline_step_functions.choice import isnumber, select_next
from offline_step_functions.definition import (
    ChoiceState,
    FailState,
    MapState,
    ParallelState,
    PassState,
    SucceedState,
    TaskState,
    WaitState,
)
from offline_step_functions.logger import (
    bind_execution_context,
    clear_execution_context,
    init_logging,
)
from offline_step_functions.metrics import init_metrics
from offline_step_functions.state_engine_paths import (
    apply_input_path,
    apply_output_path,
    apply_result_path,
    first_match,
)
from offline_step_functions.task_invoker import TaskInvoker
from offline_step_functions.timestamps import now_millis, now_rfc3339, to_epoch_millis

RUNNING = "RUNNING"
SUCCEEDED = "SUCCEEDED"
FAILED = "FAILED"

# Seconds to wait at interpreter exit for cancelled executions to finish.
SHUTDOWN_TIMEOUT = 5

# Executions whose threads are still running.
live_executions = set()
live_executions_lock = threading.Lock()


def cancel_executions(timeout=SHUTDOWN_TIMEOUT):
    """
    Cancel every execution still running and wait up to timeout seconds for
    them to finish. Execution threads are daemons, so this is registered to
    run at interpreter exit, giving running Tasks the chance to kill their
    workers rather than leave them behind.
    """
    with live_executions_lock:
        executions = list(live_executions)
    for execution in executions:
        execution.cancel()

    deadline = time.monotonic() + timeout
    for execution in executions:
        execution.done.wait(max(0, deadline - time.monotonic()))

atexit.register(cancel_executions)


def millis_to_rfc3339(millis):
    return datetime.fromtimestamp(millis / 1000.0, timezone.utc).isoformat()


class ExecutionContext(object):
    """
    The per-execution metadata from which the context object is rendered.
    """
    def __init__(self, execution_id, state_machine_name, start_time, input):
        self.execution_id = execution_id
        self.state_machine_name = state_machine_name
        self.start_time = start_time
        self.input = input
        self.current_state_name = None
        self.entered_time = None
        self.data = input

    def enter(self, state_name, data):
        self.current_state_name = state_name
        self.entered_time = now_rfc3339()
        self.data = data

    def context_object(self):
        return {
            "Execution": {
                "Id": self.execution_id,
                "Input": self.input,
                "Name": self.execution_id,
                "StartTime": self.start_time,
            },
            "State": {
                "EnteredTime": self.entered_time,
                "Name": self.current_state_name,
                "RetryCount": 0,
            },
            "StateMachine": {
                "Id": self.state_machine_name,
                "Name": self.state_machine_name,
            },
        }


class ExecutionResult(object):
    def __init__(self, execution_id, status, output=None, error=None, cause=None,
                 exception=None, start_time=None, stop_time=None):
        self.execution_id = execution_id
        self.status = status
        self.output = output
        self.error = error
        self.cause = cause
        self.exception = exception
        self.start_time = start_time
        self.stop_time = stop_time

    @property
    def succeeded(self):
        return self.status == SUCCEEDED

    def __repr__(self):
        return "ExecutionResult({} {} error={})".format(
            self.execution_id, self.status, self.error
        )


class Execution(object):
    """
    A handle on one running (or finished) execution, as returned by
    StateEngine.start(). The execution_id and start_time are available
    immediately, the ExecutionResult once the execution thread has finished.
    """
    def __init__(self, state_machine_name, start_state, input):
        self.start_millis = now_millis()
        self.start_time = millis_to_rfc3339(self.start_millis)
        self.execution_id = "{}-{}-{}".format(
            state_machine_name, start_state, self.start_millis
        )
        self.state_machine_name = state_machine_name
        self.start_state = start_state
        self.input = input
        self.context = ExecutionContext(
            self.execution_id, state_machine_name, self.start_time, input
        )
        self.cancel_event = threading.Event()
        self.done = threading.Event()
        self.result = None
        self.thread = None

    @property
    def status(self):
        return self.result.status if self.result else RUNNING

    def cancel(self):
        """
        Request that the execution stop. A Wait state in progress is woken and
        a Task's worker is killed, the execution then fails with
        States.Aborted. Cancelling a finished execution does nothing.
        """
        self.cancel_event.set()

    def finish(self, status, **kwargs):
        self.result = ExecutionResult(
            self.execution_id,
            status,
            start_time=self.start_time,
            stop_time=now_rfc3339(),
            **kwargs
        )
        return self.result

    def describe(self):
        """
        Return a dict in the shape of the Step Functions DescribeExecution
        response, where input and output are JSON strings.
        """
        detail = {
            "executionId": self.execution_id,
            "stateMachineName": self.state_machine_name,
            "status": self.status,
            "startDate": self.start_time,
            "input": json.dumps(self.input),
        }
        if self.result:
            detail["stopDate"] = self.result.stop_time
            if self.result.succeeded:
                detail["output"] = json.dumps(self.result.output)
            else:
                detail["error"] = self.result.error
                detail["cause"] = self.result.cause
        return detail


class StateEngine(object):
    def __init__(self, definition, config=None, task_invoker=None, metrics=None):
        """
        :param definition: The state machines this engine can execute
        :type definition: StateMachineDefinition
        :param config: The engine configuration, only the "task_invoker" and
         "metrics" sections are used here
        :type config: dict
        :param task_invoker: Used to run Task state handlers, a TaskInvoker
         created from config by default
        :type task_invoker: TaskInvoker
        """
        self.logger = init_logging(log_name="offline_step_functions")
        config = config or {}
        self.definition = definition
        self.metrics = metrics or init_metrics(
            "offline_step_functions", config.get("metrics")
        )
        self.task_invoker = task_invoker or TaskInvoker(
            config.get("task_invoker"), self.metrics
        )

        """
        Dispatch table of handlers for each supported ASL state type. As the
        Definition Model only creates these classes an unknown state type
        can't reach the engine.
        """
        self.state_handlers = {
            TaskState: self.asl_state_Task,
            PassState: self.asl_state_Pass,
            WaitState: self.asl_state_Wait,
            ChoiceState: self.asl_state_Choice,
            SucceedState: self.asl_state_Succeed,
            FailState: self.asl_state_Fail,
            ParallelState: self.asl_state_unsupported,
            MapState: self.asl_state_unsupported,
        }

    def start(self, machine_name, input=None, start_state=None):
        """
        Start an execution of the named state machine on a new thread and
        return its Execution handle. Raises NotFoundError straight away if the
        machine, or the requested start state, doesn't exist.
        """
        machine = self.definition.get_machine(machine_name)
        start_state = start_state or machine.start_at
        machine.get(start_state)

        execution = Execution(machine_name, start_state, {} if input is None else input)
        self.metrics.execution_started(machine_name)
        self.logger.info(
            "Execution {} started at state \"{}\"".format(
                execution.execution_id, start_state
            )
        )

        with live_executions_lock:
            live_executions.add(execution)
        execution.thread = threading.Thread(
            target=self.run,
            args=(machine, execution),
            name=execution.execution_id,
            daemon=True
        )
        execution.thread.start()
        return execution

    def await_result(self, execution, timeout=None):
        """
        Block until execution has finished and return its ExecutionResult.
        Raises TimeoutError if timeout seconds elapse first.
        """
        if not execution.done.wait(timeout):
            raise TimeoutError(
                "Execution {} did not finish within {}s".format(
                    execution.execution_id, timeout
                )
            )
        return execution.result

    def execute(self, machine_name, input=None, start_state=None):
        execution = self.start(machine_name, input, start_state)
        return self.await_result(execution)

    # --------------------------------------------------------------------------

    def run(self, machine, execution):
        """
        The execution thread. Nothing raised by a state escapes from here, any
        failure finishes the execution as FAILED.
        """
        bind_execution_context(execution_id=execution.execution_id)
        try:
            output = self.drive(machine, execution)
            result = execution.finish(SUCCEEDED, output=output)
            self.logger.info("Execution {} succeeded".format(execution.execution_id))
        except StateMachineError as e:
            result = execution.finish(
                FAILED, error=e.error, cause=e.cause, exception=e
            )
            self.logger.error(
                "Execution {} failed in state \"{}\": {}: {}".format(
                    execution.execution_id,
                    execution.context.current_state_name,
                    e.error,
                    e.cause
                )
            )
        except Exception as e:
            self.logger.exception(
                "Execution {} failed in state \"{}\" with an unexpected error".format(
                    execution.execution_id, execution.context.current_state_name
                )
            )
            result = execution.finish(
                FAILED, error="States.Runtime", cause=str(e), exception=e
            )
        finally:
            clear_execution_context()

        try:
            duration = now_millis() - execution.start_millis
            self.metrics.execution_finished(
                execution.state_machine_name, result.status, result.error, duration
            )
        finally:
            with live_executions_lock:
                live_executions.discard(execution)
            execution.done.set()

    def drive(self, machine, execution):
        state_name = execution.start_state
        data = execution.input
        while True:
            if execution.cancel_event.is_set():
                raise ExecutionAborted(
                    "Execution {} was cancelled".format(execution.execution_id)
                )

            state = machine.get(state_name)
            execution.context.enter(state_name, data)
            self.logger.debug(
                "Entering {} state \"{}\" with input {}".format(
                    state.type, state_name, data
                )
            )

            next_state, data = self.state_handlers[type(state)](state, data, execution)
            if next_state is None:
                return data
            state_name = next_state

    def transition(self, state, data):
        return (None if state.is_terminal else state.next), data

    def merge_result(self, state, data, result, context):
        """
        Place the state's result into its raw input as directed by ResultPath
        then select the state output with OutputPath.
        """
        output = apply_result_path(data, state.result_path, result)
        return apply_output_path(output, state.output_path, context)

    # --------------------------------------------------------------------------
    # Handlers for each supported ASL state type. Each takes the state, its raw
    # input and the execution and returns the name of the next state (None if
    # the execution ends here) and the state's output.

    def asl_state_Task(self, state, data, execution):
        """
        https://states-language.net/spec.html#task-state
        https://docs.aws.amazon.com/step-functions/latest/dg/amazon-states-language-task-state.html
        """
        context = execution.context.context_object()
        input = apply_input_path(data, state.input_path, context)
        timeout_millis = None
        if state.timeout_seconds:
            timeout_millis = int(state.timeout_seconds * 1000)

        result = self.task_invoker.invoke(
            state.handler,
            input,
            timeout_millis=timeout_millis,
            context=context,
            cancel_event=execution.cancel_event
        )
        return self.transition(state, self.merge_result(state, data, result, context))

    def asl_state_Pass(self, state, data, execution):
        """
        https://states-language.net/spec.html#pass-state

        The Pass State simply passes its input to its output, performing no
        work. If Result is provided it is treated as the output of a virtual
        task and placed as prescribed by the ResultPath field, if Result is
        not provided the output is the effective input.
        """
        context = execution.context.context_object()
        input = apply_input_path(data, state.input_path, context)
        result = copy.deepcopy(state.result) if state.has_result else input
        return self.transition(state, self.merge_result(state, data, result, context))

    def asl_state_Wait(self, state, data, execution):
        """
        https://states-language.net/spec.html#wait-state

        A Wait state causes the interpreter to delay the machine from
        continuing for a specified time. The wait is abandoned if the
        execution is cancelled. Wait states don't have a ResultPath.
        """
        context = execution.context.context_object()
        input = apply_input_path(data, state.input_path, context)
        delay = self.wait_seconds(state, input, context)

        self.logger.debug("Wait state \"{}\" waiting {}s".format(state.name, delay))
        if execution.cancel_event.wait(delay):
            raise ExecutionAborted(
                "Execution {} was cancelled in Wait state \"{}\"".format(
                    execution.execution_id, state.name
                )
            )
        return self.transition(state, apply_output_path(input, state.output_path, context))

    def wait_seconds(self, state, input, context):
        """
        The time can be specified as a wait duration, specified in seconds,
        or an absolute expiry time, specified as an ISO-8601 extended offset
        date-time format string. Either may be given directly or as a
        Reference Path to the effective input such as
        "TimestampPath": "$.expirydate"
        Timestamps in the past give a zero delay.
        """
        def resolve(path):
            try:
                return first_match(input, context, path)
            except PathError as e:
                raise WaitError(
                    "Wait state \"{}\" could not resolve {}: {}".format(
                        state.name, path, e.cause
                    )
                ) from e

        if state.seconds is not None or state.seconds_path is not None:
            if state.seconds is not None:
                seconds = state.seconds
            else:
                seconds = resolve(state.seconds_path)
            if not isnumber(seconds) or seconds < 0:
                raise WaitError(
                    "Wait state \"{}\" requires a non-negative number of "
                    "seconds, got {!r}".format(state.name, seconds)
                )
            return seconds

        if state.timestamp is not None or state.timestamp_path is not None:
            if state.timestamp is not None:
                timestamp = state.timestamp
            else:
                timestamp = resolve(state.timestamp_path)
            try:
                target = to_epoch_millis(timestamp)
            except ValueError as e:
                raise WaitError(
                    "Wait state \"{}\" has an invalid timestamp {!r}".format(
                        state.name, timestamp
                    )
                ) from e
            return max(0, target - now_millis()) / 1000.0

        raise WaitError(
            "Wait state \"{}\" has none of Seconds, SecondsPath, Timestamp or "
            "TimestampPath".format(state.name)
        )

    def asl_state_Choice(self, state, data, execution):
        """
        https://states-language.net/spec.html#choice-state

        The Choice state passes its effective input on unchanged to the state
        chosen by its Choice Rules.
        """
        context = execution.context.context_object()
        input = apply_input_path(data, state.input_path, context)
        next_state = select_next(state, input, context)
        self.logger.debug(
            "Choice state \"{}\" chose \"{}\"".format(state.name, next_state)
        )
        return next_state, input

    def asl_state_Succeed(self, state, data, execution):
        """
        https://states-language.net/spec.html#succeed-state

        The Succeed State terminates a state machine successfully.
        InputPath & OutputPath are allowed (but unusual) in Succeed states.
        """
        context = execution.context.context_object()
        input = apply_input_path(data, state.input_path, context)
        return None, apply_output_path(input, state.output_path, context)

    def asl_state_Fail(self, state, data, execution):
        """
        https://states-language.net/spec.html#fail-state

        The Fail State terminates the machine and marks it as a failure.
        Fail states don't allow InputPath, OutputPath or ResultPath
        """
        raise FailStateError(state.cause or "", error=state.error or "States.Fail")

    def asl_state_unsupported(self, state, data, execution):
        raise UnsupportedStateError(
            "{} state \"{}\" is not supported".format(state.type, state.name)
        )
