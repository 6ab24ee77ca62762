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
from functools import partial
from logging import getLogger

from .._conf import SessionConfig
from ..api import (
    Bookmarks,
    READ_ACCESS,
    WRITE_ACCESS,
)
from ..exceptions import (
    DriverError,
    ErrorKind,
)
from .query import Query
from .result import Result
from .retry import RetryContext
from .transaction import (
    ManagedTransaction,
    Transaction,
)
from .workspace import Workspace


if t.TYPE_CHECKING:
    from ..io import Bolt

    _R = t.TypeVar("_R")


log = getLogger("graphbolt.work")


class SessionState(Enum):
    """Where a :class:`.Session` is in its life cycle."""

    #: No connection was acquired yet.
    UNINITIALIZED = "uninitialized"
    #: Between units of work.
    READY = "ready"
    #: An explicit or managed transaction is open.
    IN_TRANSACTION = "in_transaction"
    #: The last transaction committed.
    COMMITTED = "committed"
    #: The last transaction rolled back or failed.
    ROLLED_BACK = "rolled_back"
    #: The session was closed; terminal.
    CLOSED = "closed"


class Session(Workspace):
    """Context for executing work.

    A :class:`.Session` is a logical context for transactional units of
    work. Connections are drawn from the :class:`.Driver` connection pool as
    required.

    Session creation is a lightweight operation and sessions are not safe to
    be used in concurrent contexts (multiple threads). Therefore, a session
    should generally be short-lived, and must not span multiple threads.

    In general, sessions will be created and destroyed within a ``with``
    context. For example::

        with driver.session(database="neo4j") as session:
            result = session.run("MATCH (n:Person) RETURN n.name AS name")
            ...  # do something with the result
    """

    # The current connection.
    _connection: t.Optional[Bolt] = None

    # The current transaction instance, if any.
    _transaction: t.Union[Transaction, ManagedTransaction, None] = None

    # The current auto-commit transaction result, if any.
    _auto_result = None

    # The session is being left due to an error.
    _state_failed = False

    _config: SessionConfig

    def __init__(self, pool, session_config):
        assert isinstance(session_config, SessionConfig)
        super().__init__(pool, session_config)
        self._config = session_config
        self._initialize_bookmarks(session_config.bookmarks)
        self._bookmark_manager = session_config.bookmark_manager
        self._state = SessionState.UNINITIALIZED

    def __enter__(self) -> Session:
        return self

    def __exit__(self, exception_type, exception_value, traceback):
        if exception_type:
            self._state_failed = True
        self.close()

    @property
    def state(self) -> SessionState:
        return self._state

    def _set_state(self, state):
        if state is not self._state:
            log.debug("[#0000]  _: <SESSION> %s -> %s",
                      self._state.name, state.name)
            self._state = state

    def _connect(self, access_mode, **acquire_kwargs):
        if access_mode is None:
            access_mode = self._config.default_access_mode
        super()._connect(access_mode, **acquire_kwargs)
        if self._state is SessionState.UNINITIALIZED:
            self._set_state(SessionState.READY)

    def _result_closed(self):
        if self._auto_result:
            self._update_bookmark(self._auto_result._bookmark)
            self._auto_result = None
            self._disconnect()

    def _result_error(self, error):
        if self._auto_result:
            self._auto_result = None
            self._disconnect()

    def _get_server_info(self):
        assert not self._connection
        self._connect(READ_ACCESS, liveness_check_timeout=0)
        server_info = self._connection.server_info
        self._disconnect()
        return server_info

    def close(self) -> None:
        """Close the session.

        This will release any borrowed resources, such as connections, and
        will roll back any outstanding transactions. Closing a closed session
        does nothing.
        """
        if self._closed:
            return
        try:
            if self._connection:
                if self._auto_result:
                    if self._state_failed is False:
                        # consuming hands the bookmark over and releases
                        # the connection through _result_closed
                        try:
                            self._auto_result.consume()
                        except DriverError as error:
                            log.debug("[#0000]  _: <SESSION> failed to "
                                      "consume result on close: %r", error)
                            self._auto_result = None
                            self._state_failed = True
                if self._transaction:
                    if self._transaction._closed() is False:
                        # roll back the transaction if it is not closed
                        try:
                            self._transaction._rollback()
                        except DriverError as error:
                            log.debug("[#0000]  _: <SESSION> failed to "
                                      "roll back on close: %r", error)
                    self._transaction = None
                try:
                    if self._connection:
                        self._connection.send_all()
                        self._connection.fetch_all()
                except DriverError as error:
                    log.debug("[#0000]  _: <SESSION> failed to sync "
                              "connection on close: %r", error)
                finally:
                    self._disconnect()
                self._state_failed = False
        finally:
            self._closed = True
            self._set_state(SessionState.CLOSED)

    def run(
        self,
        query: t.Union[str, Query],
        parameters: t.Optional[t.Dict[str, t.Any]] = None,
        **kwargs: t.Any
    ) -> Result:
        """Run a query within an auto-commit transaction.

        The query is sent and the result header received immediately but the
        :class:`.Result` content is fetched lazily as consumed by the client
        application.

        If a query is executed before a previous :class:`.Result` in the same
        :class:`.Session` has been fully consumed, the first result will be
        fully fetched and buffered.

        :param query: the query text or a :class:`.Query`
        :param parameters: dictionary of parameters
        :param kwargs: additional keyword parameters.
            These take precedence over parameters passed as ``parameters``.

        :returns: a new :class:`.Result` object

        :raises DriverError: SESSION if the session has been closed,
            TRANSACTION if an explicit transaction is open.
        """
        self._check_state()
        if not query:
            raise ValueError("Cannot run an empty query")
        if not isinstance(query, (str, Query)):
            raise TypeError("query must be a string or a Query instance")

        if self._transaction:
            raise DriverError(
                ErrorKind.TRANSACTION,
                "Explicit transaction must be handled explicitly",
            )

        if self._auto_result:
            # buffer all records of the previous auto-commit result
            self._auto_result._buffer_all()

        if not self._connection:
            self._connect(self._config.default_access_mode)
            assert self._connection is not None
        self._set_state(SessionState.READY)
        cx = self._connection

        self._auto_result = Result(
            cx, self._config.fetch_size, self._result_closed,
            self._result_error
        )
        bookmarks = self._get_bookmarks()
        parameters = dict(parameters or {}, **kwargs)
        self._auto_result._run(
            str(query), parameters, self._config.database,
            self._config.default_access_mode, bookmarks,
            metadata=getattr(query, "metadata", None),
            timeout=getattr(query, "timeout", None),
        )

        return self._auto_result

    def last_bookmarks(self) -> Bookmarks:
        """Return most recent bookmarks of the session.

        Bookmarks can be used to causally chain sessions. For example, if a
        session (``session1``) wrote something, that another session
        (``session2``) needs to read, use
        ``session2 = driver.session(bookmarks=session1.last_bookmarks())``.

        "Most recent bookmarks" are either the bookmarks passed to the
        session on creation, or the last bookmark the session received after
        committing a transaction to the server.

        Note: For auto-commit transactions (:meth:`Session.run`), this will
        trigger :meth:`Result.consume` for the current result.
        """
        if self._auto_result:
            self._auto_result.consume()

        if self._transaction and self._transaction._closed():
            self._update_bookmark(self._transaction._bookmark)
            self._transaction = None

        return Bookmarks.from_raw_values(self._bookmarks)

    def _transaction_closed_handler(self):
        if self._transaction:
            if self._transaction._committed:
                self._set_state(SessionState.COMMITTED)
            else:
                self._set_state(SessionState.ROLLED_BACK)
            self._update_bookmark(self._transaction._bookmark)
            self._transaction = None
            self._disconnect()

    def _transaction_error_handler(self, error):
        if self._transaction:
            self._set_state(SessionState.ROLLED_BACK)
            self._transaction = None
            self._disconnect()

    def _open_transaction(self, *, tx_cls, access_mode, metadata=None,
                          timeout=None):
        self._connect(access_mode=access_mode)
        assert self._connection is not None
        self._transaction = tx_cls(
            self._connection, self._config.fetch_size,
            self._transaction_closed_handler,
            self._transaction_error_handler,
        )
        self._set_state(SessionState.IN_TRANSACTION)
        bookmarks = self._get_bookmarks()
        self._transaction._begin(
            self._config.database, bookmarks, access_mode, metadata, timeout
        )

    def begin_transaction(
        self,
        metadata: t.Optional[t.Dict[str, t.Any]] = None,
        timeout: t.Optional[float] = None
    ) -> Transaction:
        """Begin a new unmanaged transaction.

        At most one transaction may exist in a session at any point in time.
        To maintain multiple concurrent transactions, use multiple concurrent
        sessions.

        Note: For auto-commit transactions (:meth:`.Session.run`), this will
        trigger a :meth:`.Result.consume` for the current result.

        :param metadata: a dictionary with metadata attached to the
            transaction.
        :param timeout: the transaction timeout in seconds. :data:`None`
            uses the server's default.

        :returns: A new transaction instance.

        :raises DriverError: TRANSACTION if a transaction is already open,
            SESSION if the session has been closed.
        """
        self._check_state()

        if self._auto_result:
            self._auto_result.consume()

        if self._transaction:
            raise DriverError(ErrorKind.TRANSACTION,
                              "Explicit transaction already open")

        self._open_transaction(
            tx_cls=Transaction, access_mode=self._config.default_access_mode,
            metadata=metadata, timeout=timeout,
        )

        return t.cast(Transaction, self._transaction)

    def _run_transaction_attempt(self, access_mode, transaction_function,
                                 args, kwargs):
        self._check_state()
        metadata = getattr(transaction_function, "metadata", None)
        timeout = getattr(transaction_function, "timeout", None)
        try:
            self._open_transaction(
                tx_cls=ManagedTransaction, access_mode=access_mode,
                metadata=metadata, timeout=timeout,
            )
            tx = self._transaction
            assert isinstance(tx, ManagedTransaction)
            try:
                result = transaction_function(tx, *args, **kwargs)
            except Exception:
                try:
                    tx._close()
                except (DriverError, OSError) as close_error:
                    # the error of the unit of work wins
                    log.debug("[#0000]  _: <SESSION> failed to roll back "
                              "after error in unit of work: %r", close_error)
                raise
            else:
                tx._commit()
        except DriverError:
            # the next attempt acquires a fresh connection
            self._disconnect()
            raise
        return result

    def _run_transaction(self, access_mode, transaction_function, args,
                         kwargs):
        self._check_state()
        if not callable(transaction_function):
            raise TypeError("Unit of work is not callable")

        if self._auto_result:
            self._auto_result.consume()

        if self._transaction:
            raise DriverError(ErrorKind.TRANSACTION,
                              "Explicit transaction already open")

        retry = RetryContext.from_config(
            partial(self._run_transaction_attempt, access_mode,
                    transaction_function, args, kwargs),
            self._config,
        )
        return retry.run()

    def execute_read(
        self,
        transaction_function: t.Callable[..., _R],
        *args: t.Any, **kwargs: t.Any
    ) -> _R:
        """Execute a unit of work in a managed read transaction.

        The transaction is committed when the function returns, unless an
        exception is raised by the query execution or the user code. The
        function might get invoked more than once, so it needs to be
        idempotent.

        Example::

            def do_query_tx(tx, query):
                result = tx.run(query)
                return [record.values() for record in result]

            with driver.session() as session:
                values = session.execute_read(do_query_tx, "RETURN 1 AS x")

        :param transaction_function: a function that takes a transaction as
            a :class:`.ManagedTransaction`.
        :param args: additional arguments for the `transaction_function`
        :param kwargs: key word arguments for the `transaction_function`

        :returns: a result as returned by the given unit of work

        :raises DriverError: SESSION if the session has been closed.
        """
        return self._run_transaction(
            READ_ACCESS, transaction_function, args, kwargs
        )

    def execute_write(
        self,
        transaction_function: t.Callable[..., _R],
        *args: t.Any, **kwargs: t.Any
    ) -> _R:
        """Execute a unit of work in a managed write transaction.

        Same as :meth:`execute_read`, but against a server accepting writes.
        """
        return self._run_transaction(
            WRITE_ACCESS, transaction_function, args, kwargs
        )
