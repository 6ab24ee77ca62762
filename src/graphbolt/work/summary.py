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


from __future__ import annotations

import typing as t

from .._data import Record
from ..exceptions import (
    DriverError,
    ErrorKind,
)


if t.TYPE_CHECKING:
    from ..addressing import Address
    from ..api import ServerInfo


_QUERY_TYPES = {"r", "w", "rw", "s"}


class ResultSummary:
    """What the server reported about a query once its result was read."""

    #: :class:`graphbolt.ServerInfo` of the server that ran the query
    server: ServerInfo

    #: database the query ran against
    database: t.Optional[str]

    query: t.Optional[str]
    parameters: t.Optional[t.Dict[str, t.Any]]

    #: ``"r"`` (read), ``"w"`` (write), ``"rw"`` (read and write) or
    #: ``"s"`` (schema)
    query_type: t.Optional[str]

    counters: SummaryCounters

    #: bookmark of an auto-commit query, if the server sent one
    bookmark: t.Optional[str]

    #: milliseconds until the first record was available
    result_available_after: t.Optional[int]

    #: milliseconds until the last record was consumed
    result_consumed_after: t.Optional[int]

    #: notifications (hints and warnings) as sent by the server
    notifications: t.Optional[t.List[dict]]

    def __init__(
        self,
        address: Address,
        had_key: bool,
        had_record: bool,
        metadata: t.Dict[str, t.Any],
    ) -> None:
        self._had_key = had_key
        self._had_record = had_record
        self.metadata = metadata
        self.server = metadata["server"]
        self.database = metadata.get("db", metadata.get("database"))
        self.query = metadata.get("query")
        self.parameters = metadata.get("parameters")
        self.query_type = metadata.get("type")
        if self.query_type is not None and self.query_type not in _QUERY_TYPES:
            raise DriverError(
                ErrorKind.PROTOCOL,
                f"Unexpected query type {self.query_type!r} received from "
                "server. Consider updating the driver.",
                address=address,
            )
        self.bookmark = metadata.get("bookmark")
        self.counters = SummaryCounters(metadata.get("stats", {}))
        self.result_available_after = metadata.get("t_first")
        self.result_consumed_after = metadata.get("t_last")
        self.notifications = metadata.get("notifications")

    def __repr__(self) -> str:
        return (f"<{self.__class__.__name__} database={self.database!r} "
                f"query_type={self.query_type!r} "
                f"counters={self.counters!r}>")


_GRAPH_COUNTERS = (
    "nodes_created",
    "nodes_deleted",
    "relationships_created",
    "relationships_deleted",
    "properties_set",
    "labels_added",
    "labels_removed",
    "indexes_added",
    "indexes_removed",
    "constraints_added",
    "constraints_removed",
)
_SYSTEM_COUNTERS = ("system_updates",)


class SummaryCounters:
    """Counts of the changes a query made.

    The server reports counters under hyphenated names (``nodes-created``);
    they are exposed as attributes with underscores (``nodes_created``).
    Counters the server left out are 0.
    """

    nodes_created: int = 0
    nodes_deleted: int = 0
    relationships_created: int = 0
    relationships_deleted: int = 0
    properties_set: int = 0
    labels_added: int = 0
    labels_removed: int = 0
    indexes_added: int = 0
    indexes_removed: int = 0
    constraints_added: int = 0
    constraints_removed: int = 0
    system_updates: int = 0

    # flags sent by newer servers, preferred over deriving from the counts
    _contains_updates: t.Optional[bool] = None
    _contains_system_updates: t.Optional[bool] = None

    def __init__(self, statistics) -> None:
        for key, value in dict(statistics).items():
            name = key.replace("-", "_")
            if name in _GRAPH_COUNTERS or name in _SYSTEM_COUNTERS:
                setattr(self, name, value)
            elif name in ("contains_updates", "contains_system_updates"):
                setattr(self, "_" + name, value)

    def __repr__(self) -> str:
        return repr(vars(self))

    @property
    def contains_updates(self) -> bool:
        """Whether the query changed the graph.

        System updates do not count, see :attr:`contains_system_updates`.
        """
        if self._contains_updates is not None:
            return self._contains_updates
        return any(getattr(self, name) for name in _GRAPH_COUNTERS)

    @property
    def contains_system_updates(self) -> bool:
        """Whether the query changed the system database."""
        if self._contains_system_updates is not None:
            return self._contains_system_updates
        return any(getattr(self, name) for name in _SYSTEM_COUNTERS)


class EagerResult(t.NamedTuple):
    """A fully read result: ``(records, summary, keys)``.

    :meth:`.Driver.execute_query` returns one by default, and
    :meth:`.Result.to_eager_result` turns a :class:`.Result` into one.
    """

    records: t.List[Record]
    summary: ResultSummary
    keys: t.List[str]
