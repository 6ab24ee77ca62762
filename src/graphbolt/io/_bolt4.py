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

from ..api import (
    SYSTEM_DATABASE,
    Version,
)
from ._bolt import Bolt
from ._common import Response


log = getLogger("graphbolt.io")


class Bolt4x0(Bolt):
    """Protocol handler for Bolt 4.0.

    Routing tables are fetched by calling the routing procedure against the
    system database.
    """

    PROTOCOL_VERSION = Version(4, 0)

    def route(self, database=None, bookmarks=None):
        metadata = {}
        records = []

        if database is None:
            self.run(
                "CALL dbms.routing.getRoutingTable($context)",
                {"context": self.routing_context or {}},
                mode="r", bookmarks=bookmarks, db=SYSTEM_DATABASE,
                on_success=metadata.update,
            )
        else:
            self.run(
                "CALL dbms.routing.getRoutingTable($context, $database)",
                {"context": self.routing_context or {}, "database": database},
                mode="r", bookmarks=bookmarks, db=SYSTEM_DATABASE,
                on_success=metadata.update,
            )
        self.pull(on_success=metadata.update, on_records=records.extend)
        self.send_all()
        self.fetch_all()
        return [
            dict(zip(metadata.get("fields", ()), values)) for values in records
        ]


class Bolt4x4(Bolt4x0):
    """Protocol handler for Bolt 4.4.

    Routing tables are fetched with the ROUTE message and the server may
    send configuration hints with its HELLO response.
    """

    PROTOCOL_VERSION = Version(4, 4)

    def _on_hello_success(self, metadata):
        self.configuration_hints.update(metadata.pop("hints", {}))
        super()._on_hello_success(metadata)
        if "connection.recv_timeout_seconds" in self.configuration_hints:
            recv_timeout = self.configuration_hints[
                "connection.recv_timeout_seconds"
            ]
            if isinstance(recv_timeout, int) and recv_timeout > 0:
                self.socket.settimeout(recv_timeout)
            else:
                log.info("[#%04X]  _: <CONNECTION> Server supplied an "
                         "invalid value for "
                         "connection.recv_timeout_seconds (%r). Make sure "
                         "the server and network is set up correctly.",
                         self.local_port, recv_timeout)

    def route(self, database=None, bookmarks=None):
        routing_context = self.routing_context or {}
        db_context = {}
        if database is not None:
            db_context.update(db=database)
        log.debug("[#%04X]  C: ROUTE %r %r %r", self.local_port,
                  routing_context, bookmarks, db_context)
        metadata = {}
        bookmarks = [] if bookmarks is None else list(bookmarks)
        self._append(b"\x66", (routing_context, bookmarks, db_context),
                     response=Response(self, "route",
                                       on_success=metadata.update))
        self.send_all()
        self.fetch_all()
        return [metadata.get("rt")]
