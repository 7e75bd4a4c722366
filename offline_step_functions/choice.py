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
https://states-language.net/spec.html#choice-state
https://docs.aws.amazon.com/step-functions/latest/dg/amazon-states-language-choice-state.html

A Choice state (identified by "Type":"Choice") adds branching logic to a state
machine. The functions here implement the actual choice logic, they never
modify the ChoiceState passed to them, the decision is returned by value.
"""

import sys
assert sys.version_info >= (3, 0)  # Bomb out if not running Python3

import fnmatch, operator

from offline_step_functions.asl_exceptions import NoMatchingChoiceError, PathError
from offline_step_functions.definition import CombinatorRule
from offline_step_functions.state_engine_paths import first_match
from offline_step_functions.timestamps import parse_rfc3339_datetime, to_epoch_millis

OPERATIONS = {
    "Equals": operator.eq,
    "GreaterThan": operator.gt,
    "GreaterThanEquals": operator.ge,
    "LessThan": operator.lt,
    "LessThanEquals": operator.le,
}


def isnumber(x):
    # bool is a subclass of int but true/false are not numbers in JSON.
    return isinstance(x, (int, float)) and not isinstance(x, bool)


def istimestamp(x):
    try:
        parse_rfc3339_datetime(x)
        return True
    except ValueError:
        return False


def to_string(value):
    if not isinstance(value, str):
        raise TypeError("{!r} is not a string".format(value))
    return value


def to_number(value):
    """
    Numbers are used as is and numeric strings such as "10" or "2.5" are
    converted. Anything else, booleans included, raises TypeError/ValueError.
    """
    if isnumber(value):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            return float(value)
    raise TypeError("{!r} is not numeric".format(value))


def to_boolean(value):
    if not isinstance(value, bool):
        raise TypeError("{!r} is not a boolean".format(value))
    return value


"""
The ASL spec. is a little vague on timestamps. The approach we take here is to
parse the rfc3339 string into integer epoch milliseconds and perform the
comparisons on those, as different rfc3339 representations can resolve to the
same actual time e.g. a representation in Zulu or local time plus offset can
both refer to the same time.
"""
COERCIONS = {
    "String": to_string,
    "Numeric": to_number,
    "Timestamp": to_epoch_millis,
    "Boolean": to_boolean,
}

TYPE_TESTS = {
    "IsNull": lambda variable: variable is None,
    "IsNumeric": isnumber,
    "IsString": lambda variable: isinstance(variable, str),
    "IsBoolean": lambda variable: isinstance(variable, bool),
    "IsTimestamp": istimestamp,
}


def string_matches(variable, pattern):
    """
    StringMatches supports the * wildcard, with \\* matching a literal star.
    https://docs.python.org/3/library/fnmatch.html
    Change the \\ escape to fnmatch [seq] escape and also escape [ and ? which
    are not wildcards in ASL, to allow things like a literal [hello]
    """
    if not isinstance(variable, str) or not isinstance(pattern, str):
        return False
    pattern = pattern.replace("[", "[[]").replace("?", "[?]").replace("\\*", "[*]")
    return fnmatch.fnmatchcase(variable, pattern)


def evaluate_comparison(rule, data, context):
    comparator = rule.comparator

    """
    IsPresent is the only test that is meaningful for a Variable that doesn't
    resolve, for every other comparator a missing Variable is a PathError.
    """
    if comparator == "IsPresent":
        try:
            first_match(data, context, rule.variable)
            present = True
        except PathError:
            present = False
        return present == rule.operand

    variable = first_match(data, context, rule.variable)

    if comparator in TYPE_TESTS:
        return TYPE_TESTS[comparator](variable) == rule.operand

    # Handle variable to variable comparison.
    if rule.operand_is_path:
        operand = first_match(data, context, rule.operand)
    else:
        operand = rule.operand

    if comparator == "StringMatches":
        return string_matches(variable, operand)

    if comparator == "CaseInsensitiveStringEquals":
        return (
            isinstance(variable, str)
            and isinstance(operand, str)
            and variable.lower() == operand.lower()
        )

    coerce = COERCIONS[rule.family]
    try:
        left = coerce(variable)
        right = coerce(operand)
    except (TypeError, ValueError):
        # Values that can't be coerced to the comparator's type never match.
        return False

    return OPERATIONS[rule.operation](left, right)


def evaluate(rule, data, context=None):
    """
    Evaluate a Choice Rule against data, the Choice state's effective input,
    returning True or False. Variable and ...Path operands starting with $$
    are resolved against the context object. Raises PathError if the
    Variable (or a ...Path operand) doesn't resolve, except for IsPresent.
    And and Or short-circuit, evaluating nested rules in declared order.
    """
    if isinstance(rule, CombinatorRule):
        if rule.operator == "And":
            return all(evaluate(nested, data, context) for nested in rule.rules)
        if rule.operator == "Or":
            return any(evaluate(nested, data, context) for nested in rule.rules)
        return not evaluate(rule.rules[0], data, context)

    return evaluate_comparison(rule, data, context)


def select_next(state, data, context=None):
    """
    The interpreter attempts pattern-matches against the Choice Rules in array
    order and transitions to the state specified in the Next field on the
    first Choice Rule where there is an exact match.

    Choice states MAY have a Default field, which will execute if none of the
    Choice Rules match. A rule whose Variable doesn't resolve is treated as
    not matching when there is a Default to fall back on.

    The interpreter will raise a run-time States.NoChoiceMatched error if a
    Choice state fails to match a Choice Rule and no Default transition was
    specified.
    """
    for choice in state.choices:
        try:
            matched = evaluate(choice, data, context)
        except PathError:
            if state.default is None:
                raise
            matched = False

        if matched:
            return choice.next

    if state.default:
        return state.default

    raise NoMatchingChoiceError(
        "The Choice state \"{}\" failed to find a match for the condition "
        "field extracted from its input".format(state.name)
    )
