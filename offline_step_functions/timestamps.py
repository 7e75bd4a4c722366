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
Timestamp helpers used by the Choice state Timestamp comparators and by the
Wait state Timestamp and TimestampPath fields.
"""

import sys
assert sys.version_info >= (3, 0)  # Bomb out if not running Python3

import re, time
from datetime import datetime, timezone, timedelta

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

RFC3339_REGEX = re.compile(
    r"^(\d{4}-\d{2}-\d{2})[Tt](\d{2}:\d{2}:\d{2})(\.\d+)?([Zz]|[+-]\d{2}:\d{2})$"
)

def parse_rfc3339_datetime(rfc3339):
    """
    Parse an RFC3339 (https://www.ietf.org/rfc/rfc3339.txt) format string into
    a timezone aware datetime object which is essentially the inverse operation
    to datetime.now(timezone.utc).astimezone().isoformat()

    RFC3339 requires an explicit offset, so strings without a "Z" or a +HH:MM
    suffix are rejected with ValueError, as are non-string values.
    """
    if not isinstance(rfc3339, str):
        raise ValueError("{} is not an RFC3339 timestamp string".format(rfc3339))

    match = RFC3339_REGEX.match(rfc3339.strip())
    if not match:
        raise ValueError("{} is not a valid RFC3339 timestamp".format(rfc3339))

    date, clock, fraction, offset = match.groups()
    # strptime %f accepts at most six digits, anything finer is truncated.
    fraction = (fraction or ".0")[:7]
    raw_datetime = datetime.strptime(
        date + "T" + clock + fraction, "%Y-%m-%dT%H:%M:%S.%f"
    )

    if offset in ("Z", "z"):
        return raw_datetime.replace(tzinfo=timezone.utc)

    delta = timedelta(hours=int(offset[1:3]), minutes=int(offset[4:6]))
    if offset[0] == "-":
        delta = -delta
    return raw_datetime.replace(tzinfo=timezone(delta))

def to_epoch_millis(rfc3339):
    """
    Convert an RFC3339 string to integer milliseconds since the epoch. The
    conversion uses exact timedelta arithmetic so the same instant expressed
    in Zulu or with an offset always yields the same integer.
    """
    return (parse_rfc3339_datetime(rfc3339) - EPOCH) // timedelta(milliseconds=1)

def now_millis():
    return int(time.time() * 1000)

def now_rfc3339():
    # https://stackoverflow.com/questions/8556398/generate-rfc-3339-timestamp-in-python
    return datetime.now(timezone.utc).astimezone().isoformat()
