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

from setuptools import setup, find_packages

setup(
    name="offline_step_functions",
    version="0.1.0",
    description="An offline emulator for Amazon States Language (ASL) state machines.",
    long_description="An offline emulator for Amazon States Language (ASL) state machines. It runs Pass, Task, Wait, Choice, Succeed and Fail states locally, invoking Task handlers in isolated worker processes, so Step Functions workflows can be exercised without any cloud dependency.",
    packages=find_packages(exclude=["test", "test.*"]),
    python_requires=">=3.8",
    install_requires=["structlog",
                      "ujson",
                      "jsonpath",
                      "aioprometheus"],
    extras_require={"test": ["pytest"]},
)
