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

import abc
import logging
from collections import (
    defaultdict,
    deque,
)
from contextlib import suppress
from logging import getLogger
from threading import (
    Condition,
    Lock,
    RLock,
)
from time import monotonic

from .._conf import (
    PoolConfig,
    RoutingConfig,
    WorkspaceConfig,
)
from .._deadline import (
    connection_deadline,
    Deadline,
)
from .._routing import (
    ROLE_ROUTE,
    RoundRobin,
    RoutingTable,
)
from ..api import (
    check_access_mode,
    READ_ACCESS,
    WRITE_ACCESS,
)
from ..exceptions import (
    DriverError,
    ErrorKind,
)
from ._bolt import Bolt
from ._socket import NetworkUtil


log = getLogger("graphbolt.pool")


_CONNECTIVITY_KINDS = (ErrorKind.SERVICE_UNAVAILABLE,
                       ErrorKind.SESSION_EXPIRED)


class IOPool(abc.ABC):
    """A collection of connections to one or more server addresses.

    Connections are kept per address. Idle and in-use connections to one
    address never exceed ``max_connection_pool_size``; connections being
    opened count towards that limit through a reservation.
    """

    def __init__(self, opener, pool_config, workspace_config):
        assert callable(opener)
        assert isinstance(pool_config, PoolConfig)
        assert isinstance(workspace_config, WorkspaceConfig)

        self.opener = opener
        self.pool_config = pool_config
        self.workspace_config = workspace_config
        self.connections = defaultdict(deque)
        self.connections_reservations = defaultdict(lambda: 0)
        self.lock = RLock()
        self.cond = Condition(self.lock)
        self._closed = False

    @property
    @abc.abstractmethod
    def is_direct_pool(self) -> bool:
        ...

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()

    @property
    def closed(self):
        return self._closed

    def _check_open(self):
        if self._closed:
            raise DriverError(ErrorKind.ILLEGAL_STATE,
                              "Connection pool is closed")

    def _acquire_from_pool(self, address):
        with self.lock:
            for connection in self.connections[address]:
                if connection.in_use:
                    continue
                connection.pool = self
                connection.in_use = True
                return connection
        return None

    def _remove_connection(self, connection):
        address = connection.unresolved_address
        with self.lock:
            log.debug(
                "[#%04X]  _: <POOL> remove connection from pool %r %s",
                connection.local_port, address, connection.connection_id,
            )
            # the address may have been deactivated in the meantime
            with suppress(ValueError):
                self.connections.get(address, []).remove(connection)
            self.cond.notify_all()

    def _acquire_from_pool_checked(self, address, health_check, deadline):
        # idle connections are scanned even if the deadline already passed
        while True:
            connection = self._acquire_from_pool(address)
            if not connection:
                return None
            if not health_check(connection, deadline):
                if log.isEnabledFor(logging.DEBUG):
                    log.debug(
                        "[#%04X]  _: <POOL> found unhealthy connection %s "
                        "(closed=%s, defunct=%s, stale=%s, in_use=%s)",
                        connection.local_port, connection.connection_id,
                        connection.closed(), connection.defunct(),
                        connection.stale(), connection.in_use,
                    )
                # no-op on closed connections
                connection.close()
                self._remove_connection(connection)
                continue
            return connection

    def _acquire_new_later(self, address, deadline):
        def connection_creator():
            released_reservation = False
            try:
                try:
                    connection = self.opener(address, deadline)
                except DriverError as error:
                    if error.kind is ErrorKind.SERVICE_UNAVAILABLE:
                        self.deactivate(address)
                    raise
                connection.pool = self
                connection.in_use = True
                with self.lock:
                    self.connections_reservations[address] -= 1
                    released_reservation = True
                    if self._closed:
                        connection.close()
                        self._check_open()
                    self.connections[address].append(connection)
                return connection
            finally:
                if not released_reservation:
                    with self.lock:
                        self.connections_reservations[address] -= 1
                        self.cond.notify_all()

        max_pool_size = self.pool_config.max_connection_pool_size
        infinite_pool_size = max_pool_size < 0
        with self.lock:
            connections = self.connections[address]
            pool_size = (len(connections)
                         + self.connections_reservations[address])
            if infinite_pool_size or pool_size < max_pool_size:
                # room for a new connection
                self.connections_reservations[address] += 1
                return connection_creator
        return None

    def _acquire(self, address, deadline, liveness_check_timeout):
        """
        Acquire a connection to a given address from the pool.

        Hands out an idle healthy connection, opens a new one if the address
        has room, or blocks until a connection is released or the deadline
        expires.

        This method is thread safe.

        :raises DriverError: CONNECTION_ACQUISITION_TIMEOUT when the deadline
            expires, SERVICE_UNAVAILABLE if a new connection can not be
            opened, ILLEGAL_STATE if the pool is closed
        """
        self._check_open()
        if liveness_check_timeout is None:
            liveness_check_timeout = self.pool_config.liveness_check_timeout

        def health_check(connection_, deadline_):
            if (
                connection_.closed()
                or connection_.defunct()
                or connection_.stale()
            ):
                return False
            if (
                liveness_check_timeout is not None
                and connection_.is_idle_for(liveness_check_timeout)
            ):
                with connection_deadline(connection_, deadline_):
                    try:
                        log.debug("[#%04X]  _: <POOL> liveness check",
                                  connection_.local_port)
                        connection_.reset()
                    except (OSError, DriverError):
                        return False
            return True

        while True:
            connection = self._acquire_from_pool_checked(
                address, health_check, deadline
            )
            if connection:
                log.debug("[#%04X]  _: <POOL> handing out existing "
                          "connection %s", connection.local_port,
                          connection.connection_id)
                return connection
            with self.lock:
                self._check_open()
                connection_creator = self._acquire_new_later(address,
                                                             deadline)
                if connection_creator:
                    break

                # the address is at capacity and all connections are in use
                timeout = deadline.to_timeout()
                if (
                    timeout == 0
                    or not self.cond.wait(timeout)
                ):
                    log.debug("[#0000]  _: <POOL> acquisition timed out")
                    raise DriverError(
                        ErrorKind.CONNECTION_ACQUISITION_TIMEOUT,
                        "failed to obtain a connection from the pool within "
                        f"{deadline.original_timeout!r}s (timeout)",
                        address=address,
                    )
                self._check_open()
        log.debug("[#0000]  _: <POOL> trying to hand out new connection")
        return connection_creator()

    @abc.abstractmethod
    def acquire(self, access_mode, timeout, database, bookmarks,
                liveness_check_timeout=None):
        """
        Acquire a connection to a server that can satisfy a set of parameters.

        :param access_mode: READ_ACCESS or WRITE_ACCESS
        :param timeout: timeout for the core acquisition (excluding
            preparation like fetching routing tables)
        :param database: database name or None for the default database
        :param bookmarks: bookmarks used when fetching a routing table
        :param liveness_check_timeout: overrides the pool config if given
        """

    def release(self, *connections):
        """
        Release connections back into the pool.

        Unclean connections are RESET first. Broken or expired connections
        are closed and removed instead of being kept for reuse.

        This method is thread safe.
        """
        for connection in connections:
            if not (
                connection.defunct()
                or connection.closed()
                or connection.is_reset
            ):
                try:
                    log.debug(
                        "[#%04X]  _: <POOL> release unclean connection %s",
                        connection.local_port, connection.connection_id,
                    )
                    connection.reset()
                except (DriverError, OSError) as exc:
                    log.debug(
                        "[#%04X]  _: <POOL> failed to reset connection "
                        "on release: %r", connection.local_port, exc,
                    )
        discarded = []
        with self.lock:
            for connection in connections:
                connection.in_use = False
                connection.idle_since = monotonic()
                if (
                    self._closed
                    or connection.closed()
                    or connection.defunct()
                    or connection.stale()
                ):
                    discarded.append(connection)
                    with suppress(ValueError):
                        self.connections.get(
                            connection.unresolved_address, []
                        ).remove(connection)
                log.debug("[#%04X]  _: <POOL> released %s",
                          connection.local_port, connection.connection_id)
            self.cond.notify_all()
        for connection in discarded:
            log.debug("[#%04X]  _: <POOL> closing connection on release",
                      connection.local_port)
            connection.close()

    def in_use_connection_count(self, address):
        """Count the connections currently in use to a given address."""
        with self.lock:
            connections = self.connections.get(address, ())
            return sum(connection.in_use for connection in connections)

    def connection_count(self, address):
        """Count all connections (idle, in use and opening) to an address."""
        with self.lock:
            return (len(self.connections.get(address, ()))
                    + self.connections_reservations.get(address, 0))

    @classmethod
    def _close_connections(cls, connections):
        for connection in connections:
            connection.close()

    def deactivate(self, address):
        """
        Deactivate an address from the connection pool.

        Idle connections to the address are closed, in-use connections are
        marked stale so they are closed on release.
        """
        with self.lock:
            try:
                connections = self.connections[address]
            except KeyError:
                return
            closable_connections = [
                conn for conn in connections if not conn.in_use
            ]
            for conn in connections:
                if conn.in_use:
                    conn.set_stale()
            # remove first, closing may fail and end up here again
            for conn in closable_connections:
                connections.remove(conn)
            if not self.connections[address]:
                del self.connections[address]
            self.cond.notify_all()

        self._close_connections(closable_connections)

    def on_write_failure(self, address, database):
        raise DriverError(ErrorKind.SERVICE_UNAVAILABLE,
                          f"No write service available for pool {self}",
                          address=address)

    def close(self):
        """
        Close all connections and empty the pool.

        Connections still in use are closed as well. Acquiring from a closed
        pool fails with ILLEGAL_STATE.

        This method is thread safe.
        """
        log.debug("[#0000]  _: <POOL> close")
        with self.lock:
            self._closed = True
            connections = [
                connection
                for address in list(self.connections)
                for connection in self.connections.pop(address, ())
            ]
            self.cond.notify_all()
        self._close_connections(connections)


class BoltPool(IOPool):
    """Pool of the direct driver: every connection goes to one address."""

    is_direct_pool = True

    @classmethod
    def open(cls, address, *, pool_config, workspace_config):
        """
        Create a new BoltPool.

        :param address:
        :param pool_config:
        :param workspace_config:
        :returns: BoltPool
        """

        def opener(addr, deadline):
            return Bolt.open(addr, deadline=deadline, routing_context=None,
                             pool_config=pool_config)

        pool = cls(opener, pool_config, workspace_config, address)
        log.debug("[#0000]  _: <POOL> created, direct address %r", address)
        return pool

    def __init__(self, opener, pool_config, workspace_config, address):
        super().__init__(opener, pool_config, workspace_config)
        self.address = address

    def __repr__(self):
        return f"<{self.__class__.__name__} address={self.address!r}>"

    def acquire(self, access_mode, timeout, database, bookmarks,
                liveness_check_timeout=None):
        # access mode and database do not matter for a single server
        log.debug("[#0000]  _: <POOL> acquire direct connection, "
                  "access_mode=%r, database=%r", access_mode, database)
        deadline = Deadline.from_timeout_or_deadline(timeout)
        return self._acquire(self.address, deadline, liveness_check_timeout)


class RoutingPool(IOPool):
    """Connection pool with routing tables.

    One routing table is kept per database. Tables are replaced as a whole
    when refreshed or when an address is dropped. Refreshes of different
    databases do not block each other.
    """

    is_direct_pool = False

    @classmethod
    def open(cls, *addresses, pool_config, workspace_config,
             routing_config=None, routing_context=None):
        """
        Create a new RoutingPool.

        :param addresses: one or more seed router addresses, tried in order
            whenever no known router provides a routing table
        :param pool_config:
        :param workspace_config:
        :param routing_config:
        :param routing_context:
        :returns: RoutingPool
        """
        address = addresses[0]
        if routing_context is None:
            routing_context = {}
        elif "address" in routing_context:
            raise DriverError(
                ErrorKind.CONFIGURATION,
                "The key 'address' is reserved for routing context."
            )
        routing_context["address"] = str(address)

        def opener(addr, deadline):
            return Bolt.open(addr, deadline=deadline,
                             routing_context=routing_context,
                             pool_config=pool_config)

        pool = cls(opener, pool_config, workspace_config, *addresses,
                   routing_config=routing_config)
        log.debug("[#0000]  _: <POOL> created, routing addresses %r",
                  pool.initial_addresses)
        return pool

    def __init__(self, opener, pool_config, workspace_config, *addresses,
                 routing_config=None):
        super().__init__(opener, pool_config, workspace_config)
        if not addresses:
            raise ValueError("at least one seed address is required")
        self.initial_addresses = tuple(dict.fromkeys(addresses))
        self.address = self.initial_addresses[0]
        self.routing_config = routing_config or RoutingConfig()
        self.routing_tables = {}
        # guards the routing_tables mapping, held only briefly
        self.refresh_lock = RLock()
        self._database_locks = {}
        self._database_locks_lock = Lock()
        self.round_robin = RoundRobin()

    def __repr__(self):
        return f"<{self.__class__.__name__} address={self.address!r}>"

    def _database_lock(self, database):
        with self._database_locks_lock:
            lock = self._database_locks.get(database)
            if lock is None:
                lock = self._database_locks[database] = RLock()
            return lock

    def get_or_create_routing_table(self, database):
        with self.refresh_lock:
            if database not in self.routing_tables:
                self.routing_tables[database] = RoutingTable(
                    database=database, routers=self.initial_addresses
                )
            return self.routing_tables[database]

    def _install_routing_table(self, database, routing_table):
        with self.refresh_lock:
            self.routing_tables[database] = routing_table

    def fetch_routing_info(self, address, database, bookmarks,
                           acquisition_timeout):
        """
        Fetch raw routing info from a given router address.

        :param address: router address
        :param database: the database name to get routing table for
        :param bookmarks: iterable of bookmark values after which the routing
                          info should be fetched
        :param acquisition_timeout: connection acquisition timeout

        :returns: list of routing records
        :raise DriverError: if the router could not be reached or reported
            an error
        """
        deadline = Deadline.from_timeout_or_deadline(acquisition_timeout)
        log.debug("[#0000]  _: <POOL> _acquire router connection, "
                  "database=%r, address=%r", database, address)
        cx = self._acquire(address, deadline, None)
        try:
            with connection_deadline(cx, deadline):
                routing_info = cx.route(
                    database=database or self.workspace_config.database,
                    bookmarks=bookmarks,
                )
        finally:
            self.release(cx)
        return routing_info

    def fetch_routing_table(self, *, address, acquisition_timeout, database,
                            bookmarks):
        """
        Fetch a routing table from a given router address.

        :returns: a new RoutingTable instance or None if the given router is
                 currently unable to provide usable routing information
        :raise DriverError: if the router reports an error that makes
            asking other routers pointless
        """
        try:
            new_routing_info = self.fetch_routing_info(
                address, database, bookmarks, acquisition_timeout
            )
        except DriverError as e:
            # errors caused by the request itself fail the discovery fast
            if (
                e._is_fatal_during_discovery()
                or e.kind is ErrorKind.ILLEGAL_STATE
            ):
                raise
            log.debug("[#0000]  _: <POOL> failed to fetch routing info "
                      "from %r: %r", address, e)
            return None
        if not new_routing_info or not new_routing_info[0]:
            log.debug("[#0000]  _: <POOL> no routing info from %r", address)
            return None
        record = new_routing_info[0]
        try:
            new_routing_table = RoutingTable.parse_routing_info(
                database=record.get("db", database),
                servers=record["servers"],
                ttl=record["ttl"],
            )
        except (KeyError, ValueError, AttributeError) as e:
            log.debug("[#0000]  _: <POOL> unusable routing info from %r: %r",
                      address, e)
            return None

        # Missing readers or writers is a valid, temporary state (e.g. leader
        # switch). Selection for that role fails with SESSION_EXPIRED.
        if not new_routing_table.routers:
            log.debug("[#0000]  _: <POOL> no routing servers returned from "
                      "server %s", address)
            return None
        return new_routing_table

    def _update_routing_table_from(self, *routers, database, bookmarks,
                                   acquisition_timeout):
        """
        Try to update the routing table with the given routers, in order.

        :returns: True if the routing table was updated, otherwise False
        """
        if routers:
            log.debug("[#0000]  _: <POOL> attempting to update routing table "
                      "from %s", ", ".join(map(repr, routers)))
        for router in routers:
            try:
                addresses = list(NetworkUtil.resolve_address(
                    router, resolver=self.pool_config.resolver
                ))
            except ValueError as e:
                log.debug("[#0000]  _: <POOL> failed to resolve %r: %s",
                          router, e)
                addresses = []
            for address in addresses:
                new_routing_table = self.fetch_routing_table(
                    address=address,
                    acquisition_timeout=acquisition_timeout,
                    database=database,
                    bookmarks=bookmarks,
                )
                if new_routing_table is not None:
                    self._install_routing_table(database, new_routing_table)
                    log.debug("[#0000]  _: <POOL> update routing table from "
                              "address=%r (%r)", address, new_routing_table)
                    return True
            self.deactivate(router)
        return False

    def update_routing_table(self, *, database, bookmarks,
                             acquisition_timeout=None):
        """
        Update the routing table from the first functioning router.

        Known routers are tried starting at a rotating position, the seed
        addresses last and in the order they were given. A table installed
        without writers prefers the seeds first on its next refresh.

        :raise DriverError: SERVICE_UNAVAILABLE if no router could provide
            a usable routing table, or the fatal error a router reported
        """
        with self._database_lock(database):
            routing_table = self.get_or_create_routing_table(database)
            existing_routers = self.round_robin.rotated(
                (database, ROLE_ROUTE), routing_table.routers
            )
            prefer_initial_routing_addresses = \
                routing_table.initialized_without_writers
            update_kwargs = {
                "database": database,
                "bookmarks": bookmarks,
                "acquisition_timeout": acquisition_timeout,
            }

            if (
                prefer_initial_routing_addresses
                and self._update_routing_table_from(
                    *self.initial_addresses, **update_kwargs
                )
            ):
                return
            if self._update_routing_table_from(
                *(router for router in existing_routers
                  if router not in self.initial_addresses),
                **update_kwargs
            ):
                return
            if (
                not prefer_initial_routing_addresses
                and self._update_routing_table_from(
                    *self.initial_addresses, **update_kwargs
                )
            ):
                return

            log.error("Unable to retrieve routing information")
            raise DriverError(ErrorKind.SERVICE_UNAVAILABLE,
                              "Unable to retrieve routing information")

    def update_connection_pool(self, *, database):
        """Deactivate addresses no routing table knows any more."""
        with self.refresh_lock:
            routing_tables = [self.get_or_create_routing_table(database)]
            for db, table in self.routing_tables.items():
                if db != database:
                    routing_tables.append(table)
        servers = set.union(*(rt.servers() for rt in routing_tables))
        with self.lock:
            addresses = list(self.connections)
        for address in addresses:
            if address._unresolved not in servers:
                super().deactivate(address)

    def purge_routing_tables(self, *, keep=None):
        """Drop tables of other databases that expired long enough ago."""
        purge_delay = self.routing_config.routing_table_purge_delay
        with self.refresh_lock:
            for database in list(self.routing_tables):
                if database == keep:
                    continue
                routing_table = self.routing_tables[database]
                if routing_table.should_be_purged_from_memory(purge_delay):
                    log.debug("[#0000]  _: <POOL> dropping routing table for "
                              "database=%s", database)
                    del self.routing_tables[database]
                    self.round_robin.forget((database, READ_ACCESS))
                    self.round_robin.forget((database, WRITE_ACCESS))
                    self.round_robin.forget((database, ROLE_ROUTE))

    def ensure_routing_table_is_fresh(self, *, access_mode, database,
                                      bookmarks, acquisition_timeout=None):
        """
        Update the routing table if stale.

        Freshness is checked again once the database's refresh lock is held,
        so concurrent callers trigger only one refresh.

        This method is thread-safe.

        :returns: `True` if an update was required, `False` otherwise.
        """
        readonly = access_mode == READ_ACCESS
        with self.refresh_lock:
            routing_table = self.routing_tables.get(database)
        if routing_table is not None and routing_table.is_fresh(readonly):
            return False

        with self._database_lock(database):
            self.purge_routing_tables(keep=database)
            routing_table = self.get_or_create_routing_table(database)
            if routing_table.is_fresh(readonly=readonly):
                log.debug("[#0000]  _: <POOL> using existing routing table "
                          "%r", routing_table)
                return False

            self.update_routing_table(
                database=database, bookmarks=bookmarks,
                acquisition_timeout=acquisition_timeout,
            )
            self.update_connection_pool(database=database)
            return True

    def address_for(self, access_mode, database):
        """Select the next address serving ``access_mode`` for a database.

        Selection rotates over the addresses of the current table.

        :raises DriverError: SESSION_EXPIRED if the table has no address for
            the access mode
        """
        with self.refresh_lock:
            routing_table = self.routing_tables.get(database)
        if routing_table is None:
            addresses = ()
        else:
            addresses = routing_table.role_addresses(
                readonly=(access_mode == READ_ACCESS)
            )
        address = self.round_robin.select((database, access_mode), addresses)
        if address is None:
            raise DriverError(
                ErrorKind.SESSION_EXPIRED,
                f"Failed to obtain connection towards '{access_mode}' "
                "server: no server currently available",
            )
        return address

    def acquire(self, access_mode, timeout, database, bookmarks,
                liveness_check_timeout=None):
        access_mode = check_access_mode(access_mode)
        self._check_open()

        log.debug("[#0000]  _: <POOL> acquire routing connection, "
                  "access_mode=%r, database=%r", access_mode, database)
        self.ensure_routing_table_is_fresh(
            access_mode=access_mode, database=database, bookmarks=bookmarks,
            acquisition_timeout=timeout,
        )

        while True:
            address = self.address_for(access_mode, database)
            log.debug("[#0000]  _: <POOL> acquire address, database=%r "
                      "address=%r", database, address)
            try:
                deadline = Deadline.from_timeout_or_deadline(timeout)
                return self._acquire(address, deadline,
                                     liveness_check_timeout)
            except DriverError as error:
                if error.kind not in _CONNECTIVITY_KINDS:
                    raise
                self.deactivate(address)

    def deactivate(self, address):
        """
        Deactivate an address from the connection pool.

        The address is dropped from all routing tables and its idle
        connections are closed.
        """
        log.debug("[#0000]  _: <POOL> deactivating address %r", address)
        with self.refresh_lock:
            for database, table in list(self.routing_tables.items()):
                if address in table:
                    self.routing_tables[database] = table.without(address)
        log.debug("[#0000]  _: <POOL> table=%r", self.routing_tables)
        super().deactivate(address)

    def on_write_failure(self, address, database):
        """Remove a writer address from the routing table, if present."""
        log.debug("[#0000]  _: <POOL> removing writer %r for database %r",
                  address, database)
        with self.refresh_lock:
            table = self.routing_tables.get(database)
            if table is not None:
                self.routing_tables[database] = table.without_writer(address)
        log.debug("[#0000]  _: <POOL> table=%r", self.routing_tables)

    def close(self):
        super().close()
        with self.refresh_lock:
            self.routing_tables.clear()
