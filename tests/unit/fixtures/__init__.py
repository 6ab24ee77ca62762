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


from .fake_connection import (
    fake_connection,
    fake_connection_generator,
    scripted_connection,
    scripted_connection_generator,
)
from .fake_pool import fake_pool


__all__ = [
    "fake_connection",
    "fake_connection_generator",
    "fake_pool",
    "scripted_connection",
    "scripted_connection_generator",
]
