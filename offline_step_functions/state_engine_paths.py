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
https://states-language.net/spec.html#filters

A state may want to process only a subset of its input data, and may want that
data structured differently from the way it appears in the input. Similarly, it
may want to control the format and content of the data that it passes on as
output.

Fields named "InputPath", "OutputPath", and "ResultPath" exist to support this.
Any state except for a Fail State MAY have "InputPath" and "OutputPath". States
which potentially generate results MAY have "ResultPath": Pass State, Task
State, and Parallel State.

All of the functions here are pure, they never modify the data passed to them.
"""

import sys
assert sys.version_info >= (3, 0)  # Bomb out if not running Python3

import copy, re

"""
ASL paths use JSONPath.
https://goessner.net/articles/JsonPath/
http://www.ultimate.com/phil/python/#jsonpath
"""
from jsonpath import jsonpath  # pip3 install jsonpath

from offline_step_functions.asl_exceptions import PathError, ResultPathMatchFailure


def query_jsonpath(input, path):
    """
    Run a raw JSONPath query returning the list of matches, or raise PathError
    if nothing matched. Python jsonpath returns False rather than an empty list
    when there is no match and may raise for syntactically broken paths.
    """
    if not isinstance(path, str) or not path.startswith("$"):
        raise PathError("{} must be a JSONPath".format(path))
    try:
        result = jsonpath(input, path)
    except Exception as e:
        raise PathError(
            "Invalid path '{}' applied to input '{}': {}".format(path, input, e)
        ) from e

    if result is False:
        raise PathError(
            "Invalid path '{}' applied to input '{}'".format(path, input)
        )
    return result

def apply_jsonpath(input, path="$"):
    """
    Performs the InputPath and OutputPath projection described in the ASL spec.
    https://states-language.net/spec.html#filters
    This is mostly just calling jsonpath() and applying the specified defaults.

    A failed match raises PathError, as AWS Step Functions fails executions
    in that case.
    """
    if path is None:
        return {}
    if path == "$":
        return input

    result = query_jsonpath(input, path)

    """
    The following is a little subtle. Unfortunately the JSONPath specification
    is vague on a few points and some implementations, such as Python jsonpath,
    return a list of matches, but for most scenarios if a single item matches
    it is more intuitive to have that item returned rather than a list that
    contains that item. Other implementations such as the Java Jayway (which
    I think is the one used in AWS Step Functions) behave in that way. An
    exception is where the path contains an array slice operator because then
    we intuitively expect to return an array/list even if only a single item
    is matched.
    """
    if len(result) == 1:
        path_has_slice = re.search(r"\[.*:.*\]", path)
        if not path_has_slice:
            return result[0]

    return result

def apply_path(input, context=None, path="$"):
    """
    https://states-language.net/spec.html#path

    A Path is a string, beginning with "$", used to identify components with a
    JSON text. The syntax is that of JSONPath.

    When a Path begins with "$$", two dollar signs, this signals that it is
    intended to identify content within the Context Object. The first dollar
    sign is stripped, and the remaining text, which begins with a dollar sign,
    is interpreted as the JSONPath applying to the Context Object.
    """
    if path is None:
        return {}
    if not isinstance(path, str) or not path.startswith("$"):
        raise PathError("{} must be a JSONPath".format(path))
    if path.startswith("$$"):  # Use Context object, not input
        return apply_jsonpath(context or {}, path[1:])
    return apply_jsonpath(input, path)

def first_match(input, context=None, path="$"):
    """
    Return only the first value selected by path. This is what the Choice
    state Variable field and the Wait state SecondsPath/TimestampPath fields
    need, as they compare or use a single value.
    """
    if isinstance(path, str) and path.startswith("$$"):
        input, path = context or {}, path[1:]
    if path == "$":
        return input
    return query_jsonpath(input, path)[0]

def apply_input_path(data, path="$", context=None):
    """
    The InputPath field selects a portion of the state's raw input. If it is
    null the input is discarded and the state's effective input is {}.
    """
    return apply_path(data, context, path)

def apply_output_path(data, path="$", context=None):
    """
    The OutputPath field selects a portion of the state's output to pass on
    to the next state. If it is null the next state receives {}.
    """
    return apply_path(data, context, path)

def apply_result_path(input, path, result):
    """
    Performs the ResultPath logic described in the ASL spec.
    https://states-language.net/spec.html#filters

    The value of "ResultPath" MUST be a Reference Path, which specifies the raw
    input's combination with or replacement by the state's result.

    The ResultPath field's value is a Reference Path that specifies where to
    place the result, relative to the raw input. If the input has a field which
    matches the ResultPath value, then in the output, that field is discarded
    and overwritten by the state output. Otherwise, a new field is created in
    the state output.

    If the value of of ResultPath is null, that means that the state's own raw
    output is discarded and its raw input becomes its result.

    The raw input is deep copied before the result is spliced in, so the
    caller's data is never modified.
    """
    def update_path(target, keys, value):
        if len(keys) == 0:
            return value
        key = keys.pop(0)
        if isinstance(target, list):
            try:
                i = int(key)
                target[i] = update_path(target[i], keys, value)
            except (ValueError, IndexError) as e:
                raise ResultPathMatchFailure(
                    "Unable to apply ResultPath {}: {}".format(path, e)
                ) from e
        elif isinstance(target, dict):
            target[key] = update_path(target.get(key, {}), keys, value)
        else:
            raise ResultPathMatchFailure(
                "Cannot use key {} of ResultPath {} to index a primitive type".format(
                    key, path
                )
            )
        return target

    if input is None:
        input = {}
    if path is None:
        return input
    if path == "$":
        return result
    if not isinstance(path, str) or not path.startswith("$"):
        raise ResultPathMatchFailure("{} must be a Reference Path".format(path))
    if path.startswith("$$"):
        """
        The value of "ResultPath" MUST NOT begin with "$$"; i.e. it may not be
        used to insert content into the Context Object.
        """
        raise ResultPathMatchFailure(
            "The value of \"ResultPath\" MUST NOT begin with \"$$\""
        )

    # Split the Reference Path on ".", "[" and "]", stripping any quotes used
    # in bracket notation such as $['a']['b']
    keys = re.findall(r"[^$.[\]'\"]+", path)
    return update_path(copy.deepcopy(input), keys, result)
