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
The child side of a Task invocation, run by the TaskInvoker as

    python -m offline_step_functions.task_worker

in the handler root directory. It reads a single JSON envelope

    {"tag": <tag>, "handler": "module.function", "input": ..., "context": ...}

from stdin, calls handler(input, context) and writes exactly one line tagged
with the envelope's tag to stdout, either

    {"tag": <tag>, "result": <result>}

or, if the handler could not be loaded, raised or returned something that
can't be serialised

    {"tag": <tag>, "error": {"errorType", "errorMessage", "stackTrace"}}

Anything else the handler prints to stdout or stderr is just diagnostic output
as far as the TaskInvoker is concerned.

Once the tagged line is written the worker ends with os._exit(), so threads
the handler leaves running, such as database or redis connections, cannot
keep it alive.
"""

import sys
assert sys.version_info >= (3, 0)  # Bomb out if not running Python3

import asyncio, importlib, inspect, os, traceback
import ujson as json  # https://pypi.org/project/ujson/


def resolve_handler(handler_ref):
    """
    Resolve a handler reference of the form module.function to the function.
    The module part may be written as a path relative to the handler root,
    e.g. src/handlers/orders.create refers to create in src.handlers.orders
    """
    module_path, _, function_name = handler_ref.rpartition(".")
    if not module_path or not function_name:
        raise ValueError(
            "Handler \"{}\" is not of the form module.function".format(handler_ref)
        )
    module_name = module_path.strip("./").replace("/", ".")
    module = importlib.import_module(module_name)
    handler = getattr(module, function_name)
    if not callable(handler):
        raise TypeError("Handler \"{}\" is not callable".format(handler_ref))
    return handler


def error_envelope(tag, e):
    return {
        "tag": tag,
        "error": {
            "errorType": type(e).__name__,
            "errorMessage": str(e),
            "stackTrace": traceback.format_exception(type(e), e, e.__traceback__),
        },
    }


def emit(message):
    sys.stderr.flush()
    sys.stdout.write(json.dumps(message) + "\n")
    sys.stdout.flush()


def run(envelope):
    """
    Run the handler described by envelope, returning the tagged message to
    emit on stdout.
    """
    tag = envelope.get("tag")
    try:
        handler = resolve_handler(envelope.get("handler", ""))
        result = handler(envelope.get("input"), envelope.get("context", {}))
        if inspect.iscoroutine(result):
            result = asyncio.run(result)
        # Serialise here so an unserialisable result is reported as an error.
        json.dumps(result)
        return {"tag": tag, "result": result}
    except Exception as e:
        return error_envelope(tag, e)


def main():
    # Handlers are imported relative to the handler root, our cwd.
    handler_root = os.getcwd()
    if handler_root not in sys.path:
        sys.path.insert(0, handler_root)

    try:
        envelope = json.loads(sys.stdin.read())
    except ValueError as e:
        print("Unable to parse task envelope: {}".format(e), file=sys.stderr)
        return 2

    if not isinstance(envelope, dict) or "tag" not in envelope:
        print("Task envelope has no tag", file=sys.stderr)
        return 2

    message = run(envelope)
    emit(message)
    return 1 if "error" in message else 0


if __name__ == "__main__":
    status = main()
    sys.stdout.flush()
    sys.stderr.flush()
    os._exit(status)
