# Copyright (c) "Neo4j"
# Neo4j Sweden AB [https://neo4j.com]
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     https://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.


"""
Low level connection and pool classes.

This module provides the following classes:

* :class:`.Bolt` and its protocol version handlers, the connection to a
  single server
* :class:`.BoltPool`, the pool of the direct driver
* :class:`.RoutingPool`, the pool of the routing driver that owns the
  routing tables
"""


__all__ = [
    "Bolt",
    "BoltPool",
    "BoltSocket",
    "ConnectionErrorHandler",
    "IOPool",
    "NetworkUtil",
    "RoutingPool",
]


from ._bolt import Bolt
from ._common import ConnectionErrorHandler
from ._pool import (
    BoltPool,
    IOPool,
    RoutingPool,
)
from ._socket import (
    BoltSocket,
    NetworkUtil,
)
