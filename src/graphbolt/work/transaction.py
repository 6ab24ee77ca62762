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

from ..exceptions import (
    DriverError,
    ErrorKind,
)
from ..io import ConnectionErrorHandler
from .query import Query
from .result import Result


__all__ = (
    "ManagedTransaction",
    "Transaction",
    "TransactionBase",
)


class TransactionBase:
    def __init__(self, connection, fetch_size, on_closed, on_error):
        self._connection = connection
        self._error_handling_connection = ConnectionErrorHandler(
            connection, self._error_handler
        )
        self._bookmark = None
        self._database = None
        self._committed = False
        self._results = []
        self._closed_flag = False
        self._last_error = None
        self._fetch_size = fetch_size
        self._on_closed = on_closed
        self._on_error = on_error

    def _enter(self):
        return self

    def _exit(self, exception_type, exception_value, traceback):
        if self._closed_flag:
            return
        success = not bool(exception_type)
        if success:
            self._commit()
        else:
            self._close()

    def _begin(self, database, bookmarks, access_mode, metadata, timeout):
        self._database = database
        self._connection.begin(
            bookmarks=bookmarks, metadata=metadata, timeout=timeout,
            mode=access_mode, db=database,
        )
        self._error_handling_connection.send_all()
        self._error_handling_connection.fetch_all()

    def _result_on_closed_handler(self):
        pass

    def _error_handler(self, exc):
        self._last_error = exc
        for result in self._results:
            result._tx_failure(exc)
        if self._on_error is not None:
            self._on_error(exc)

    def _consume_results(self):
        for result in self._results:
            result._tx_end()
        self._results = []

    def _check_open(self):
        if self._closed_flag:
            raise DriverError(ErrorKind.TRANSACTION, "Transaction closed")
        if self._last_error:
            raise DriverError(
                ErrorKind.TRANSACTION, "Transaction failed"
            ) from self._last_error

    def run(
        self,
        query: str,
        parameters: t.Optional[t.Dict[str, t.Any]] = None,
        **kwparameters: t.Any
    ) -> Result:
        """Run a query within the context of this transaction.

        Parameters may be passed as a dictionary, as keyword arguments, or
        as a mixture of both::

            query = "CREATE (a:Person { name: $name, age: $age })"
            result = tx.run(query, {"name": "Alice", "age": 33})
            result = tx.run(query, {"name": "Alice"}, age=33)
            result = tx.run(query, name="Alice", age=33)

        :param query: the query text
        :param parameters: dictionary of parameters
        :param kwparameters: additional keyword parameters.
            These take precedence over parameters passed as ``parameters``.

        :raise DriverError: TRANSACTION if the transaction is already closed

        :returns: a new :class:`.Result` object
        """
        if isinstance(query, Query):
            raise ValueError("Query object is only supported for session.run")

        self._check_open()

        result = Result(
            self._connection, self._fetch_size,
            self._result_on_closed_handler, self._error_handler,
        )
        self._results.append(result)

        parameters = dict(parameters or {}, **kwparameters)
        result._tx_ready_run(query, parameters)

        return result

    def _commit(self):
        self._check_open()

        metadata = {}
        try:
            # DISCARD pending records then do a commit.
            self._consume_results()
            self._connection.commit(on_success=metadata.update)
            self._connection.send_all()
            self._connection.fetch_all()
            self._bookmark = metadata.get("bookmark")
            self._committed = True
            self._database = metadata.get("db", self._database)
        finally:
            self._closed_flag = True
            if self._on_closed is not None:
                self._on_closed()

        return self._bookmark

    def _rollback(self):
        if self._closed_flag:
            raise DriverError(ErrorKind.TRANSACTION, "Transaction closed")

        metadata = {}
        try:
            if not (self._connection.defunct()
                    or self._connection.closed()
                    or self._connection.is_reset):
                # DISCARD pending records then do a rollback.
                self._consume_results()
                self._connection.rollback(on_success=metadata.update)
                self._connection.send_all()
                self._connection.fetch_all()
        finally:
            self._closed_flag = True
            if self._on_closed is not None:
                self._on_closed()

    def _close(self):
        if self._closed_flag:
            return
        self._rollback()

    def _closed(self) -> bool:
        return self._closed_flag


class Transaction(TransactionBase):
    """Fully user-managed transaction.

    Container for multiple queries to be executed within a single context.
    :class:`Transaction` objects can be used as a context manager (``with``
    block) where the transaction is committed or rolled back based on
    whether an exception is raised::

        with session.begin_transaction() as tx:
            ...

    """

    def __enter__(self) -> Transaction:
        return self._enter()

    def __exit__(self, exception_type, exception_value, traceback) -> None:
        self._exit(exception_type, exception_value, traceback)

    def commit(self) -> t.Optional[str]:
        """Commit the transaction and close it.

        :returns: the bookmark the server returned for the commit, if any
        :raise DriverError: TRANSACTION if the transaction is already closed
        """
        return self._commit()

    def rollback(self) -> None:
        """Roll the transaction back and close it.

        :raise DriverError: TRANSACTION if the transaction is already closed
        """
        return self._rollback()

    def close(self) -> None:
        """Close this transaction, triggering a ROLLBACK if not closed."""
        return self._close()

    def closed(self) -> bool:
        """Indicate whether the transaction has been closed."""
        return self._closed()


class ManagedTransaction(TransactionBase):
    """Transaction object provided to transaction functions.

    Inside a transaction function, the driver is responsible for managing
    (committing / rolling back) the transaction. Therefore,
    ManagedTransactions don't offer such methods. Otherwise, they behave
    like :class:`.Transaction`.

    * To commit the transaction, return anything from the transaction
      function.
    * To roll back the transaction, raise any exception.

    Transaction functions have to be idempotent: the driver will call them
    again if the error is classified as retryable.
    """
