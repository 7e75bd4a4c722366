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
The TaskInvoker runs the handler of a Task state in a separate worker process
(see task_worker.py) so that handlers which crash, hang, call os._exit() or
print all over stdout cannot take the engine down with them.

The worker is started in its own session, so it and anything it spawns share
a process group that is killed when the invocation finishes, whichever way it
finishes. The handler's result is the first line on the worker's stdout that
is a JSON object carrying the invocation's unique tag, and the invocation is
over as soon as that line arrives, whether or not the worker has exited.

Every other line, and everything on stderr, is logged as handler output as it
is read. Only a bounded tail of each stream is kept, so a handler that floods
its output can't exhaust the engine's memory.
"""

import sys
assert sys.version_info >= (3, 0)  # Bomb out if not running Python3

import collections, os, signal, subprocess, threading, time, uuid
from contextlib import contextmanager

import ujson as json  # https://pypi.org/project/ujson/

from offline_step_functions.asl_exceptions import (
    ExecutionAborted,
    TaskCrashed,
    TaskError,
    TaskTimeout,
)
from offline_step_functions.logger import init_logging
from offline_step_functions.metrics import Metrics

WORKER_MODULE = "offline_step_functions.task_worker"

# The directory containing the offline_step_functions package, added to the
# worker's PYTHONPATH so the worker module resolves even when not installed.
PACKAGE_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

DEFAULT_TIMEOUT_MILLIS = 6000

# How often, in seconds, to check the deadline and cancellation while waiting.
POLL_INTERVAL = 0.05

# How long to wait for the output pipes to drain after killing the worker.
DRAIN_TIMEOUT = 5

# Worker output is read in pieces of at most this many characters. Only the
# first piece of a longer line is logged and kept, except for the tagged line.
MAX_LINE_LENGTH = 8192

# How much of the tail of each of the worker's output streams is kept.
OUTPUT_LIMIT = 64 * 1024

RESULT = "result"
EXITED = "exited"
TIMED_OUT = "timed out"
CANCELLED = "cancelled"


class OutputTail(object):
    """
    The last OUTPUT_LIMIT characters of one of the worker's output streams.
    """
    def __init__(self, limit=OUTPUT_LIMIT):
        self.limit = limit
        self.chunks = collections.deque()
        self.size = 0
        self.lock = threading.Lock()

    def append(self, text):
        with self.lock:
            self.chunks.append(text)
            self.size += len(text)
            while self.size > self.limit and len(self.chunks) > 1:
                self.size -= len(self.chunks.popleft())

    def __str__(self):
        with self.lock:
            return "".join(self.chunks)[-self.limit:]


class TaskInvocation(object):
    """
    One call of a handler by a Task state, discarded once the call completes.
    The pid and returncode of the worker and the tails of its stdout and
    stderr are recorded so that callers can see how it ended.
    """
    def __init__(self, handler, input, timeout_millis, context=None):
        self.handler = handler
        self.input = input
        self.timeout_millis = timeout_millis
        self.context = context or {}
        self.tag = "sf-" + uuid.uuid4().hex
        self.pid = None
        self.returncode = None
        self.message = None
        self.message_received = threading.Event()
        self.stdout_tail = OutputTail()
        self.stderr_tail = OutputTail()

    @property
    def stdout(self):
        return str(self.stdout_tail)

    @property
    def stderr(self):
        return str(self.stderr_tail)

    def envelope(self):
        return json.dumps({
            "tag": self.tag,
            "handler": self.handler,
            "input": self.input,
            "context": self.context,
        })

    def receive(self, line):
        """
        Take line as the invocation's message if it is the first tagged one.
        Returns True if it was.
        """
        if self.message is not None or self.tag not in line:
            return False
        try:
            message = json.loads(line)
        except ValueError:
            return False
        if not isinstance(message, dict) or message.get("tag") != self.tag:
            return False
        self.message = message
        self.message_received.set()
        return True

    def __repr__(self):
        return "TaskInvocation({} {})".format(self.handler, self.tag)


class TaskInvoker(object):
    def __init__(self, config=None, metrics=None):
        """
        :param config: The "task_invoker" section of the configuration
        :type config: dict
        :param metrics: The metrics hooks to call, a no-op Metrics by default
        :type metrics: Metrics
        """
        self.logger = init_logging(log_name="offline_step_functions")
        config = config or {}
        self.timeout_millis = int(config.get("timeout_millis", DEFAULT_TIMEOUT_MILLIS))
        self.handler_root = os.path.abspath(config.get("handler_root", "."))
        self.python = config.get("python") or sys.executable
        self.metrics = metrics or Metrics()

    def invoke(self, handler, input, timeout_millis=None, context=None,
               cancel_event=None):
        """
        Call handler(input, context) in a worker process and return its result.

        Raises TaskTimeout if the worker doesn't produce a result within
        timeout_millis (the configured timeout if None), TaskCrashed if it
        exits without a result or reports that the handler failed, and
        ExecutionAborted if cancel_event is set while waiting.
        """
        invocation = TaskInvocation(
            handler, input, timeout_millis or self.timeout_millis, context
        )
        return self.run(invocation, cancel_event)

    def run(self, invocation, cancel_event=None):
        self.logger.info(
            "Invoking handler {} with timeout {}ms".format(
                invocation.handler, invocation.timeout_millis
            )
        )
        self.metrics.task_scheduled(invocation.handler)
        start_time = time.time() * 1000.0
        error = None
        try:
            with self.spawn(invocation) as process:
                outcome = self.wait_for(process, invocation, cancel_event)
            return self.collect(invocation, outcome)
        except (TaskError, ExecutionAborted) as e:
            error = e.error
            raise
        finally:
            duration = (time.time() * 1000.0) - start_time
            self.metrics.task_finished(invocation.handler, error, duration)

    @contextmanager
    def spawn(self, invocation):
        """
        Start the worker for invocation in its own session, with threads
        feeding it the envelope and reading its output. However the with
        block exits, the worker's process group is killed and the worker is
        reaped.
        """
        envelope = invocation.envelope()

        env = os.environ.copy()
        python_path = [PACKAGE_ROOT]
        existing_python_path = env.get("PYTHONPATH", "")
        if existing_python_path:
            python_path.append(existing_python_path)
        env["PYTHONPATH"] = os.pathsep.join(python_path)

        try:
            process = subprocess.Popen(
                [self.python, "-m", WORKER_MODULE],
                cwd=self.handler_root,
                env=env,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                encoding="utf-8",
                errors="replace",
                start_new_session=True  # New process group we can terminate
            )
        except OSError as e:
            raise TaskCrashed(
                "Unable to start worker for handler {}: {}".format(
                    invocation.handler, e
                )
            ) from e

        invocation.pid = process.pid
        self.logger.debug(
            "Started worker {} for handler {}".format(process.pid, invocation.handler)
        )
        pumps = [
            self.start_pump(self.write_stdin, process.stdin, invocation, envelope),
            self.start_pump(self.read_stdout, process.stdout, invocation),
            self.start_pump(self.read_stderr, process.stderr, invocation),
        ]
        try:
            yield process
        finally:
            self.terminate(process, invocation, pumps)

    def start_pump(self, target, *args):
        pump = threading.Thread(
            target=target,
            args=args,
            name="{}-{}".format(args[1].tag, target.__name__),
            daemon=True
        )
        pump.start()
        return pump

    def write_stdin(self, stream, invocation, envelope):
        try:
            with stream:
                stream.write(envelope)
        except OSError as e:
            # The worker went before reading it, collect() reports that.
            self.logger.debug(
                "Unable to send envelope to handler {}: {}".format(invocation.handler, e)
            )

    def read_lines(self, stream):
        """
        Yield (line, complete) pieces of at most MAX_LINE_LENGTH characters,
        where complete is False if the line continues in the next piece.
        """
        with stream:
            for piece in iter(lambda: stream.readline(MAX_LINE_LENGTH), ""):
                yield piece, piece.endswith("\n")

    def read_stdout(self, stream, invocation):
        """
        Look for the tagged message on the worker's stdout. Any other line is
        the handler's own output, logged and dropped as it arrives.
        """
        lines = self.read_lines(stream)
        continued = False
        for piece, complete in lines:
            if continued:  # The rest of a long line that has been logged
                continued = not complete
                continue
            if invocation.message is None and invocation.tag in piece:
                # The tagged line is read in full however long it is.
                pieces = [piece]
                while not complete:
                    piece, complete = next(lines, ("", True))
                    pieces.append(piece)
                if invocation.receive("".join(pieces)):
                    continue
                piece = pieces[0]
            else:
                continued = not complete
            self.handler_output(invocation, "stdout", invocation.stdout_tail, piece)

    def read_stderr(self, stream, invocation):
        continued = False
        for piece, complete in self.read_lines(stream):
            if not continued:
                self.handler_output(invocation, "stderr", invocation.stderr_tail, piece)
            continued = not complete

    def handler_output(self, invocation, name, tail, piece):
        line = piece.rstrip("\n")
        tail.append(line + "\n")
        if line.strip():
            self.logger.info("{} {}: {}".format(invocation.handler, name, line))

    def exited(self, process):
        """
        True once the worker has exited. The worker is left unreaped so that
        its pid, which is also its process group id, can't be reused before
        terminate() has killed the group.
        """
        try:
            status = os.waitid(
                os.P_PID, process.pid, os.WEXITED | os.WNOHANG | os.WNOWAIT
            )
        except ChildProcessError:
            return True
        return status is not None

    def terminate(self, process, invocation, pumps):
        # With start_new_session the worker's pid is also its process group
        # id, and as the worker hasn't been reaped yet it still names our group.
        try:
            os.killpg(process.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass  # The worker and any children have already gone

        invocation.returncode = process.wait()
        deadline = time.monotonic() + DRAIN_TIMEOUT
        for pump in pumps:
            pump.join(max(0, deadline - time.monotonic()))
            if pump.is_alive():
                # A grandchild that started its own session may still hold a pipe.
                self.logger.warning(
                    "Output of handler {} still open after its worker exited".format(
                        invocation.handler
                    )
                )
                break

        self.logger.debug(
            "Worker {} for handler {} exited with code {}".format(
                process.pid, invocation.handler, invocation.returncode
            )
        )

    def wait_for(self, process, invocation, cancel_event):
        """
        Wait for the worker's tagged message, checking the deadline and
        cancel_event every POLL_INTERVAL. The worker doesn't need to exit, the
        invocation is over as soon as the message arrives.
        """
        deadline = time.monotonic() + invocation.timeout_millis / 1000.0
        while True:
            if cancel_event is not None and cancel_event.is_set():
                return CANCELLED
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return TIMED_OUT
            if invocation.message_received.wait(min(POLL_INTERVAL, remaining)):
                return RESULT
            if self.exited(process):
                return EXITED

    def collect(self, invocation, outcome):
        message = invocation.message
        detail = invocation.stderr.strip()

        if outcome == CANCELLED:
            raise ExecutionAborted(
                "Handler {} was cancelled".format(invocation.handler)
            )

        if outcome == TIMED_OUT and message is None:
            self.logger.error(
                "Handler {} timed out after {}ms".format(
                    invocation.handler, invocation.timeout_millis
                )
            )
            raise TaskTimeout(
                "Handler {} timed out after {}ms".format(
                    invocation.handler, invocation.timeout_millis
                ),
                detail=detail
            )

        if message is None:
            self.logger.error(
                "Handler {} exited with code {} without producing a result".format(
                    invocation.handler, invocation.returncode
                )
            )
            raise TaskCrashed(
                "Handler {} exited with code {} without producing a result".format(
                    invocation.handler, invocation.returncode
                ),
                detail=detail
            )

        error = message.get("error")
        if error is not None:
            if not isinstance(error, dict):
                error = {"errorMessage": str(error)}
            stack_trace = "".join(error.get("stackTrace") or [])
            self.logger.error(
                "Handler {} failed: {}: {}".format(
                    invocation.handler,
                    error.get("errorType"),
                    error.get("errorMessage")
                )
            )
            raise TaskCrashed(
                error.get("errorMessage", ""),
                error=error.get("errorType"),
                detail="\n".join(part for part in (stack_trace, detail) if part)
            )

        self.logger.info("Handler {} succeeded".format(invocation.handler))
        return message.get("result")
