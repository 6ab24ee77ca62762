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
from enum import Enum

from ._conf import (
    Config,
    PoolConfig,
    RoutingConfig,
    SessionConfig,
    TrustAll,
    WorkspaceConfig,
)
from .addressing import Address
from .api import (
    DRIVER_BOLT,
    DRIVER_ROUTING,
    parse_routing_context,
    parse_uri,
    RoutingControl,
    SECURITY_TYPE_SECURE,
    SECURITY_TYPE_SELF_SIGNED_CERTIFICATE,
    URI_SCHEME_BOLT,
    URI_SCHEME_BOLT_SECURE,
    URI_SCHEME_BOLT_SELF_SIGNED_CERTIFICATE,
    URI_SCHEME_NEO4J,
    URI_SCHEME_NEO4J_SECURE,
    URI_SCHEME_NEO4J_SELF_SIGNED_CERTIFICATE,
)
from .bookmark_manager import DatabaseBookmarkManager
from .exceptions import (
    DriverError,
    ErrorKind,
)
from .work import (
    ManagedTransaction,
    Query,
    Result,
    Session,
    TransactionExecutor,
    unit_of_work,
)


if t.TYPE_CHECKING:
    from .api import (
        _TAuth,
        BookmarkManager,
        ServerInfo,
    )
    from .bookmark_manager import (
        TBmConsumer,
        TBmSupplier,
        TInitialBookmarks,
    )

    _T = t.TypeVar("_T")


class _DefaultEnum(Enum):
    default = "default"


_default = _DefaultEnum.default


class GraphDatabase:
    """Accessor for :class:`.Driver` construction."""

    @classmethod
    def driver(cls, uri: str, *, auth: _TAuth = None, **config) -> Driver:
        """Create a driver.

        :param uri: the connection URI for the driver, e.g.
            ``bolt://localhost:7687`` for a single server or
            ``neo4j://localhost:7687`` for a cluster.
        :param auth: the authentication details, e.g. a ``(user, password)``
            tuple or an :class:`.Auth` instance.
        :param config: driver configuration key-word arguments, see
            :class:`.PoolConfig`, :class:`.WorkspaceConfig` and
            :class:`.RoutingConfig`.

        :raises DriverError: CONFIGURATION on an unsupported URI or invalid
            configuration.
        """
        driver_type, security_type, parsed = parse_uri(uri)

        config["auth"] = auth

        if (security_type in (SECURITY_TYPE_SELF_SIGNED_CERTIFICATE,
                              SECURITY_TYPE_SECURE)
                and ("encrypted" in config.keys()
                     or "trusted_certificates" in config.keys())):
            raise DriverError(
                ErrorKind.CONFIGURATION,
                'The config settings "encrypted" and "trusted_certificates" '
                "can only be used with the URI schemes {!r}. Use the other "
                "URI schemes {!r} for setting encryption settings.".format(
                    [URI_SCHEME_BOLT, URI_SCHEME_NEO4J],
                    [
                        URI_SCHEME_BOLT_SELF_SIGNED_CERTIFICATE,
                        URI_SCHEME_BOLT_SECURE,
                        URI_SCHEME_NEO4J_SELF_SIGNED_CERTIFICATE,
                        URI_SCHEME_NEO4J_SECURE,
                    ]
                )
            )

        if security_type == SECURITY_TYPE_SECURE:
            config["encrypted"] = True
        elif security_type == SECURITY_TYPE_SELF_SIGNED_CERTIFICATE:
            config["encrypted"] = True
            config["trusted_certificates"] = TrustAll()

        assert driver_type in (DRIVER_BOLT, DRIVER_ROUTING)
        if driver_type == DRIVER_BOLT:
            if parse_routing_context(parsed.query):
                raise DriverError(
                    ErrorKind.CONFIGURATION,
                    "Routing parameters are not supported with scheme "
                    f'"bolt". Given URI "{uri}".'
                )
            return cls.bolt_driver(parsed.netloc, **config)
        # else driver_type == DRIVER_ROUTING
        routing_context = parse_routing_context(parsed.query)
        return cls.routing_driver(parsed.netloc,
                                  routing_context=routing_context, **config)

    @classmethod
    def bookmark_manager(
        cls,
        initial_bookmarks: TInitialBookmarks = None,
        bookmarks_supplier: t.Optional[TBmSupplier] = None,
        bookmarks_consumer: t.Optional[TBmConsumer] = None
    ) -> BookmarkManager:
        """Create a :class:`.BookmarkManager` with default implementation.

        Configure sessions with the same manager so that all their work is
        causally chained (i.e., all reads can observe all previous writes
        even in a clustered setup)::

            bookmark_manager = graphbolt.GraphDatabase.bookmark_manager()

            with driver.session(
                bookmark_manager=bookmark_manager
            ) as session1:
                with driver.session(
                    bookmark_manager=bookmark_manager,
                    default_access_mode=graphbolt.READ_ACCESS
                ) as session2:
                    result1 = session1.run("<WRITE_QUERY>")
                    result1.consume()
                    # READ_QUERY is guaranteed to see what WRITE_QUERY wrote.
                    result2 = session2.run("<READ_QUERY>")
                    result2.consume()

        :param initial_bookmarks: bookmarks to start with, either per
            database as a mapping or for the default database.
        :param bookmarks_supplier: called with the database name every time
            bookmarks are requested; what it returns is added to the
            manager's own bookmarks without updating them.
        :param bookmarks_consumer: called with the database name and the new
            :class:`.Bookmarks` whenever the bookmarks of a database change.

        :returns: A default implementation of :class:`.BookmarkManager`.
        """
        return DatabaseBookmarkManager(
            initial_bookmarks=initial_bookmarks,
            bookmarks_supplier=bookmarks_supplier,
            bookmarks_consumer=bookmarks_consumer,
        )

    @classmethod
    def bolt_driver(cls, target, **config):
        """Create a driver for direct Bolt server access."""
        return BoltDriver.open(target, **config)

    @classmethod
    def routing_driver(cls, *targets, routing_context=None, **config):
        """Create a driver for routing-capable cluster access."""
        return RoutingDriver.open(*targets, routing_context=routing_context,
                                  **config)


class _Direct:

    default_host = "localhost"
    default_port = 7687

    default_target = ":"

    def __init__(self, address):
        self._address = address

    @property
    def address(self):
        return self._address

    @classmethod
    def parse_target(cls, target):
        """Parse a target string to produce an address."""
        if not target:
            target = cls.default_target
        address = Address.parse(target, default_host=cls.default_host,
                                default_port=cls.default_port)
        return address


class _Routing:

    default_host = "localhost"
    default_port = 7687

    default_targets = ":"

    def __init__(self, initial_addresses):
        self._initial_addresses = initial_addresses

    @property
    def initial_addresses(self):
        return self._initial_addresses

    @classmethod
    def parse_targets(cls, *targets):
        """Parse a sequence of target strings to produce an address list."""
        targets = " ".join(targets)
        if not targets:
            targets = cls.default_targets
        addresses = Address.parse_list(targets, default_host=cls.default_host,
                                       default_port=cls.default_port)
        return addresses


class Driver:
    """Base class for all types of :class:`.Driver`.

    A driver owns the connection pool; sessions borrow connections from it.
    It is safe to share one driver between threads.
    """

    #: Connection pool
    _pool: t.Any = None

    #: Flag if the driver has been closed
    _closed = False

    def __init__(self, pool, default_workspace_config):
        assert pool is not None
        assert default_workspace_config is not None
        self._pool = pool
        self._default_workspace_config = default_workspace_config
        self._query_bookmark_manager = GraphDatabase.bookmark_manager()
        self._transaction_executor = TransactionExecutor(
            pool, default_workspace_config,
            bookmark_manager=(default_workspace_config.bookmark_manager
                              or self._query_bookmark_manager),
        )

    def __enter__(self) -> Driver:
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()

    def _check_state(self):
        if self._closed:
            raise DriverError(ErrorKind.ILLEGAL_STATE, "Driver closed")

    @property
    def encrypted(self) -> bool:
        """Indicate whether the driver was configured to use encryption."""
        return bool(self._pool.pool_config.encrypted)

    def session(self, **config) -> Session:
        """Create a session.

        :param config: session configuration key-word arguments, see
            :class:`.SessionConfig`.

        :returns: new :class:`.Session` object
        """
        self._check_state()
        session_config = self._read_session_config(config)
        return self._session(session_config)

    def _session(self, session_config) -> Session:
        return Session(self._pool, session_config)

    def _read_session_config(self, config_kwargs):
        return SessionConfig(self._default_workspace_config, config_kwargs)

    def close(self) -> None:
        """Shut down, closing any open connections in the pool.

        Closing a closed driver does nothing.
        """
        if self._closed:
            return
        try:
            self._pool.close()
        finally:
            self._closed = True

    def closed(self) -> bool:
        return self._closed

    def transaction_executor(self) -> TransactionExecutor:
        """The executor running units of work with retries.

        It shares the pool of the driver and records bookmarks in
        :attr:`execute_query_bookmark_manager` unless a ``bookmark_manager``
        was configured for the driver.
        """
        self._check_state()
        return self._transaction_executor

    def execute_query(
        self,
        query_: t.Union[str, Query],
        parameters_: t.Optional[t.Dict[str, t.Any]] = None,
        routing_: t.Union[RoutingControl, str] = RoutingControl.WRITE,
        database_: t.Optional[str] = None,
        bookmark_manager_: t.Union[
            BookmarkManager, None, t.Literal[_DefaultEnum.default]
        ] = _default,
        result_transformer_: t.Callable[[Result], t.Any] = (
            Result.to_eager_result
        ),
        **kwargs: t.Any
    ) -> t.Any:
        """Execute a query in a transaction function and return all results.

        A handy wrapper for sessions and transaction functions, retried like
        any other unit of work. Roughly equivalent to::

            def work(tx):
                result = tx.run(query_, parameters_, **kwargs)
                return result_transformer_(result)

            with driver.session(
                database=database_,
                bookmark_manager=bookmark_manager_
            ) as session:
                if routing_ == RoutingControl.WRITE:
                    return session.execute_write(work)
                else:
                    return session.execute_read(work)

        Key-word arguments ending in a single underscore configure the call;
        all others are query parameters.

        :param query_: query to execute; a :class:`.Query` carries metadata
            and a timeout.
        :param parameters_: parameters to use in the query.
        :param routing_: whether to route the query to a reader
            (``RoutingControl.READ``) or writer (``RoutingControl.WRITE``).
        :param database_: database to execute the query against, None for
            the default database.
        :param bookmark_manager_: manager for causal chaining, defaults to
            :attr:`execute_query_bookmark_manager`.
        :param result_transformer_: function turning the :class:`.Result`
            into the return value, :meth:`.Result.to_eager_result` by default.
        :param kwargs: additional query parameters.

        :returns: the result of the ``result_transformer_``
        """
        self._check_state()
        invalid_kwargs = [k for k in kwargs if
                          k[-2:-1] != "_" and k[-1:] == "_"]
        if invalid_kwargs:
            raise ValueError(
                "keyword parameters must not end with a single '_'. Found: %r"
                "\nYou either misspelled an existing configuration parameter "
                "or tried to send a query parameter that is reserved. In the "
                "latter case, use the `parameters_` dictionary instead."
                % invalid_kwargs
            )
        parameters = dict(parameters_ or {}, **kwargs)

        if bookmark_manager_ is _default:
            bookmark_manager_ = self._query_bookmark_manager
        assert bookmark_manager_ is not _default

        try:
            access_mode = RoutingControl(routing_).access_mode
        except ValueError:
            raise ValueError("Invalid routing control value: %r"
                             % routing_) from None

        work = _work
        if isinstance(query_, Query):
            work = unit_of_work(query_.metadata, query_.timeout)(_work)
            query_ = query_.text

        executor = TransactionExecutor(
            self._pool, self._default_workspace_config,
            bookmark_manager=bookmark_manager_,
        )
        return executor.execute(
            access_mode, database_, work,
            query_, parameters, result_transformer_,
        )

    @property
    def execute_query_bookmark_manager(self) -> BookmarkManager:
        """The driver's default query bookmark manager.

        This is the default :class:`.BookmarkManager` used by
        :meth:`.execute_query`. It can be used to causally chain
        :meth:`.execute_query` calls and sessions::

            driver.execute_query("<QUERY 1>")
            with driver.session(
                bookmark_manager=driver.execute_query_bookmark_manager
            ) as session:
                # can read what was written by <QUERY 1>
                session.run("<QUERY 2>")
        """
        return self._query_bookmark_manager

    def verify_connectivity(self, **config) -> None:
        """Verify that the driver can establish a connection to the server.

        This acquires a reading connection to a remote server or a cluster
        and releases it again. Some data will be exchanged.

        :param config: accepts the same configuration key-word arguments as
            :meth:`session`.

        :raises DriverError: if the driver cannot connect to the remote.
        """
        self._check_state()
        session_config = self._read_session_config(config)
        self._get_server_info(session_config)

    def get_server_info(self, **config) -> ServerInfo:
        """Get information about the connected server.

        :param config: accepts the same configuration key-word arguments as
            :meth:`session`.

        :raises DriverError: if the driver cannot connect to the remote.
        """
        self._check_state()
        session_config = self._read_session_config(config)
        return self._get_server_info(session_config)

    def _get_server_info(self, session_config) -> ServerInfo:
        with self._session(session_config) as session:
            return session._get_server_info()


def _work(
    tx: ManagedTransaction,
    query: str,
    parameters: t.Dict[str, t.Any],
    transformer: t.Callable[[Result], _T]
) -> _T:
    res = tx.run(query, parameters)
    return transformer(res)


class BoltDriver(_Direct, Driver):
    """:class:`.BoltDriver` is instantiated for ``bolt`` URIs and
    addresses a single database machine. This may be a standalone server or
    could be a specific member of a cluster.

    Connections established by a :class:`.BoltDriver` are always made to
    the exact host and port detailed in the URI.

    This class is not supposed to be instantiated externally. Use
    :meth:`GraphDatabase.driver` instead.
    """

    @classmethod
    def open(cls, target, **config):
        """
        :param target:
        :param config: the values that can be specified are found in
            :class:`.PoolConfig` and :class:`.WorkspaceConfig`

        :returns:
        :rtype: :class:`.BoltDriver`
        """
        from .io import BoltPool
        address = cls.parse_target(target)
        pool_config, default_workspace_config, _ = Config.consume_chain(
            config, PoolConfig, WorkspaceConfig, RoutingConfig
        )
        pool = BoltPool.open(address, pool_config=pool_config,
                             workspace_config=default_workspace_config)
        return cls(pool, default_workspace_config)

    def __init__(self, pool, default_workspace_config):
        _Direct.__init__(self, pool.address)
        Driver.__init__(self, pool, default_workspace_config)


class RoutingDriver(_Routing, Driver):
    """:class:`.RoutingDriver` is instantiated for ``neo4j`` URIs. It
    discovers the members of a cluster and directs reads and writes to
    the appropriate ones.

    This class is not supposed to be instantiated externally. Use
    :meth:`GraphDatabase.driver` instead.
    """

    @classmethod
    def open(cls, *targets, routing_context=None, **config):
        from .io import RoutingPool
        addresses = cls.parse_targets(*targets)
        pool_config, default_workspace_config, routing_config = (
            Config.consume_chain(config, PoolConfig, WorkspaceConfig,
                                 RoutingConfig)
        )
        pool = RoutingPool.open(
            *addresses, routing_context=routing_context,
            pool_config=pool_config,
            workspace_config=default_workspace_config,
            routing_config=routing_config,
        )
        return cls(pool, default_workspace_config)

    def __init__(self, pool, default_workspace_config):
        _Routing.__init__(self, list(pool.initial_addresses))
        Driver.__init__(self, pool, default_workspace_config)
