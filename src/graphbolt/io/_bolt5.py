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


from logging import getLogger

from ..api import Version
from ..exceptions import (
    DriverError,
    ErrorKind,
)
from ._bolt4 import Bolt4x4


log = getLogger("graphbolt.io")


class Bolt5x0(Bolt4x4):
    """Protocol handler for Bolt 5.0."""

    PROTOCOL_VERSION = Version(5, 0)

    def _on_hello_success(self, metadata):
        super()._on_hello_success(metadata)
        agent = metadata.get("server")
        if agent is not None and not isinstance(agent, str):
            raise DriverError(
                ErrorKind.PROTOCOL,
                f"Server sent an invalid agent string {agent!r}",
                address=self.unresolved_address,
            )
        log.debug("[#%04X]  _: <CONNECTION> server agent %s",
                  self.local_port, agent)
