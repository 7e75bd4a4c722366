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
Task handlers used by the tests. They are imported by the task worker, which
the tests start with this directory as the handler root.
"""

import sys
assert sys.version_info >= (3, 0) # Bomb out if not running Python3

import asyncio, os, subprocess, threading, time


def hello(event, context):
    return {"message": "hello " + event.get("name", "world")}

def echo(event, context):
    return event

def add(event, context):
    return event["a"] + event["b"]

def double(event, context):
    return event * 2

def state_name(event, context):
    return {"state": context["State"]["Name"], "execution": context["Execution"]["Id"]}

def noisy(event, context):
    print("some chatter on stdout")
    print('{"tag": "not-the-real-tag", "result": "fake"}')
    print("some chatter on stderr", file=sys.stderr)
    return {"noisy": True}

def fail(event, context):
    raise ValueError("handler went wrong")

def crash(event, context):
    print("about to crash", file=sys.stderr)
    sys.stderr.flush()
    os._exit(3)

def unserialisable(event, context):
    return {"when": object()}

def sleep(event, context):
    time.sleep(event.get("seconds", 30))
    return {"slept": True}

async def async_hello(event, context):
    await asyncio.sleep(0.01)
    return {"message": "async hello"}

def lingering_thread(event, context):
    threading.Thread(target=time.sleep, args=(30,)).start()
    return {"done": True}

def lingering_child(event, context):
    child = subprocess.Popen(["sleep", "30"])
    return {"done": True, "child": child.pid}

def flood(event, context):
    line = "x" * (1024 * 1024)
    for i in range(event.get("lines", 20)):
        print(line)
        print(line, file=sys.stderr)
    return {"flooded": True}

not_callable = 42
