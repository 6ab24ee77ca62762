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
from itertools import count
from logging import getLogger
from threading import Lock
from time import monotonic

from .addressing import (
    Address,
    DEFAULT_PORT,
)


log = getLogger("graphbolt.pool")


ROLE_ROUTE = "ROUTE"
ROLE_READ = "READ"
ROLE_WRITE = "WRITE"


def _unique(addresses):
    # keeps first occurrence order
    return tuple(dict.fromkeys(addresses))


class RoutingTable:
    """Routing information of one database.

    Instances are never changed after construction. Refreshing or dropping
    an address produces a new table that replaces the old one.
    """

    @classmethod
    def parse_routing_info(cls, *, database, servers, ttl):
        """Build a table from the routing info sent by the server.

        ``servers`` is a list of ``{"role": ..., "addresses": [...]}``
        mappings as returned by the ROUTE message or the routing procedure.
        """
        routers = []
        readers = []
        writers = []
        try:
            for server in servers:
                role = server["role"]
                addresses = [
                    Address.parse(address, default_port=DEFAULT_PORT)
                    for address in server["addresses"]
                ]
                if role == ROLE_ROUTE:
                    routers.extend(addresses)
                elif role == ROLE_READ:
                    readers.extend(addresses)
                elif role == ROLE_WRITE:
                    writers.extend(addresses)
        except (KeyError, TypeError) as exc:
            raise ValueError("Cannot parse routing info") from exc
        try:
            ttl = float(ttl)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"Invalid routing table ttl {ttl!r}") from exc
        return cls(
            database=database,
            routers=routers,
            readers=readers,
            writers=writers,
            ttl=ttl,
        )

    def __init__(self, *, database, routers=(), readers=(), writers=(),
                 ttl=0, last_updated_time=None):
        self.database = database
        self.routers = _unique(routers)
        self.readers = _unique(readers)
        self.writers = _unique(writers)
        self.ttl = ttl
        if last_updated_time is None:
            last_updated_time = monotonic()
        self.last_updated_time = last_updated_time
        self.initialized_without_writers = not self.writers

    def __repr__(self):
        return (
            f"RoutingTable(database={self.database!r}, "
            f"routers={self.routers!r}, readers={self.readers!r}, "
            f"writers={self.writers!r}, "
            f"last_updated_time={self.last_updated_time!r}, ttl={self.ttl!r})"
        )

    def __contains__(self, address):
        return (
            address in self.routers
            or address in self.readers
            or address in self.writers
        )

    @property
    def expires_at(self):
        return self.last_updated_time + self.ttl

    def expired(self):
        # a ttl of 0 or less forces a refresh on next use
        return self.ttl <= 0 or self.expires_at <= monotonic()

    def is_fresh(self, readonly=False):
        """Whether the table can serve the given access mode right now."""
        expired = self.expired()
        has_server_for_mode = bool(self.readers if readonly else self.writers)
        res = not expired and bool(self.routers) and has_server_for_mode
        log.debug(
            "[#0000]  _: <ROUTING> checking table freshness "
            "(readonly=%r): table expired=%r, "
            "has_server_for_mode=%r, table routers=%r => %r",
            readonly, expired, has_server_for_mode, self.routers, res,
        )
        return res

    def should_be_purged_from_memory(self, purge_delay):
        """Whether the table expired more than ``purge_delay`` seconds ago."""
        valid_until = self.expires_at + purge_delay
        should_be_purged = valid_until <= monotonic()
        log.debug(
            "[#0000]  _: <ROUTING> purge check: "
            "last_updated_time=%r, ttl=%r => %r",
            self.last_updated_time, self.ttl, should_be_purged,
        )
        return should_be_purged

    def role_addresses(self, readonly):
        return self.readers if readonly else self.writers

    def without(self, address):
        """Return a copy of this table that no longer knows ``address``."""
        return self._replace(
            routers=[a for a in self.routers if a != address],
            readers=[a for a in self.readers if a != address],
            writers=[a for a in self.writers if a != address],
        )

    def without_writer(self, address):
        """Return a copy in which ``address`` no longer serves writes."""
        return self._replace(
            writers=[a for a in self.writers if a != address],
        )

    def _replace(self, **changes):
        values = {
            "database": self.database,
            "routers": self.routers,
            "readers": self.readers,
            "writers": self.writers,
            "ttl": self.ttl,
            "last_updated_time": self.last_updated_time,
        }
        values.update(changes)
        table = self.__class__(**values)
        table.initialized_without_writers = self.initialized_without_writers
        return table

    def servers(self):
        return set(self.routers) | set(self.writers) | set(self.readers)


class RoundRobin:
    """Spreads selections evenly over the addresses of a role.

    One counter is kept per key (typically database and role). Concurrent
    callers each get the next position.
    """

    def __init__(self):
        self._counters: t.Dict[t.Hashable, t.Iterator[int]] = {}
        self._lock = Lock()

    def _counter(self, key):
        counter = self._counters.get(key)
        if counter is None:
            with self._lock:
                counter = self._counters.setdefault(key, count())
        return counter

    def select(self, key, addresses):
        """Return the next address of ``addresses`` or None if empty."""
        if not addresses:
            return None
        return addresses[next(self._counter(key)) % len(addresses)]

    def rotated(self, key, addresses):
        """Return ``addresses`` starting at the next position."""
        if not addresses:
            return []
        start = next(self._counter(key)) % len(addresses)
        return [*addresses[start:], *addresses[:start]]

    def forget(self, key):
        with self._lock:
            self._counters.pop(key, None)
