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
from collections import deque
from warnings import warn

from .._data import Record
from ..exceptions import (
    DriverError,
    ErrorKind,
)
from ..io import ConnectionErrorHandler
from .summary import (
    EagerResult,
    ResultSummary,
)


if t.TYPE_CHECKING:
    from ..addressing import Address


_TResultKey = t.Union[int, str]


_FAILED = (
    "Reading the result failed, as did every other result of its "
    "transaction."
)
_OUT_OF_SCOPE = (
    "The result is out of scope: its transaction was closed. Read what you "
    "need from a result before the transaction ends."
)
_CONSUMED = (
    "The result was consumed. Read what you need from a result before "
    "calling Result.consume()."
)


class Result:
    """Lazily pulled stream of :class:`.Record` objects.

    Results are what :meth:`.Session.run` and :meth:`.Transaction.run`
    return. Records are requested from the server ``fetch_size`` at a time
    while the result is read.
    """

    def __init__(self, connection, fetch_size, on_closed, on_error) -> None:
        self._connection = ConnectionErrorHandler(
            connection, self._connection_error_handler
        )
        self._on_error = on_error
        self._on_closed = on_closed
        self._metadata: dict = {}
        self._address: Address = connection.unresolved_address
        self._keys: t.Tuple[str, ...] = ()
        self._had_record = False
        self._record_buffer: t.Deque[Record] = deque()
        self._summary: t.Optional[ResultSummary] = None
        self._database = None
        self._bookmark = None
        self._raw_qid = -1
        self._fetch_size = fetch_size

        self._discarding = False  # records arriving now are dropped
        self._attached = False  # RUN succeeded, stream not yet finished
        self._streaming = False  # a PULL or DISCARD awaits its reply
        self._has_more = False  # the server holds further records
        self._exhausted = False  # nothing left to read
        self._consumed = False  # consume() was called
        self._out_of_scope = False  # the transaction ended
        # failure shared by all results of one transaction
        self._exception = None

    def _connection_error_handler(self, exc):
        self._exception = exc
        self._attached = False
        if self._on_error is not None:
            self._on_error(exc)

    @property
    def _qid(self):
        if self._raw_qid == self._connection.most_recent_qid:
            return -1
        else:
            return self._raw_qid

    def _tx_ready_run(self, query, parameters):
        # inside an explicit transaction BEGIN already carried the extras
        self._run(query, parameters, None, None, None)

    def _run(self, query, parameters, db, access_mode, bookmarks,
             metadata=None, timeout=None):
        self._metadata = {
            "query": query,
            "parameters": parameters,
            "server": self._connection.server_info,
            "database": db,
        }
        self._database = db

        def on_attached(metadata):
            self._metadata.update(metadata)
            # auto-commit results have no qid
            self._raw_qid = metadata.get("qid", -1)
            if self._raw_qid != -1:
                self._connection.most_recent_qid = self._raw_qid
            self._keys = tuple(metadata.get("fields", ()))
            self._attached = True

        def on_failed_attach(metadata):
            self._metadata.update(metadata)
            self._attached = False
            if self._on_closed is not None:
                self._on_closed()

        self._connection.run(
            query,
            parameters=parameters,
            mode=access_mode,
            bookmarks=bookmarks,
            metadata=metadata,
            timeout=timeout,
            db=db,
            on_success=on_attached,
            on_failure=on_failed_attach,
        )
        self._pull()
        self._connection.send_all()
        self._attach()

    def _on_summary(self):
        self._attached = False
        if self._on_closed is not None:
            self._on_closed()

    def _on_stream_success(self, summary_metadata):
        self._streaming = False
        has_more = summary_metadata.get("has_more")
        self._has_more = bool(has_more)
        if has_more:
            return
        self._discarding = False
        self._metadata.update(summary_metadata)
        self._bookmark = summary_metadata.get("bookmark")
        self._database = summary_metadata.get("db", self._database)
        self._on_summary()

    def _on_stream_failure(self, metadata):
        self._metadata.update(metadata)
        self._on_summary()

    def _pull(self):
        def on_records(records):
            if records:
                self._had_record = True
            if not self._discarding:
                self._record_buffer.extend(
                    Record(zip(self._keys, record)) for record in records
                )

        self._connection.pull(
            n=self._fetch_size,
            qid=self._qid,
            on_records=on_records,
            on_success=self._on_stream_success,
            on_failure=self._on_stream_failure,
        )
        self._streaming = True

    def _discard(self):
        # drop whatever the server still holds for this query
        self._connection.discard(
            n=-1,
            qid=self._qid,
            on_success=self._on_stream_success,
            on_failure=self._on_stream_failure,
        )
        self._streaming = True

    def _check_readable(self):
        if self._out_of_scope:
            raise DriverError(ErrorKind.RESULT_CONSUMED, _OUT_OF_SCOPE)
        if self._consumed:
            raise DriverError(ErrorKind.RESULT_CONSUMED, _CONSUMED)

    def __iter__(self) -> t.Iterator[Record]:
        """Yield the remaining records.

        All iterators over a result share one stream, so each record is
        yielded once no matter how many iterators exist.

        :raises DriverError: RESULT_CONSUMED once the stream ends, if the
            result failed, was consumed or outlived its transaction
        """
        while self._record_buffer or self._attached:
            if self._record_buffer:
                yield self._record_buffer.popleft()
            elif self._streaming:
                self._connection.fetch_message()
            elif self._discarding:
                self._discard()
                self._connection.send_all()
            elif self._has_more:
                self._pull()
                self._connection.send_all()

        self._exhausted = True
        if self._exception is not None:
            raise DriverError(
                ErrorKind.RESULT_CONSUMED, _FAILED
            ) from self._exception
        self._check_readable()

    def __next__(self) -> Record:
        return self.__iter__().__next__()

    def _attach(self):
        # block until the server answered RUN
        if self._exhausted is False:
            while self._attached is False:
                self._connection.fetch_message()

    def _buffer(self, n=None):
        # Make at least n records (all for None) available in the buffer,
        # fewer only if the stream ends first. A batch may overshoot n.
        self._check_readable()
        if n is not None and len(self._record_buffer) >= n:
            return
        pulled = deque()
        for record in self:
            pulled.append(record)
            if n is not None and len(pulled) >= n:
                break
        if n is None:
            self._record_buffer = pulled
        else:
            self._record_buffer.extend(pulled)
        self._exhausted = not self._record_buffer

    def _buffer_all(self):
        self._buffer()

    def _obtain_summary(self) -> ResultSummary:
        if self._summary is None:
            self._summary = ResultSummary(
                self._address,
                had_key=bool(self._keys),
                had_record=self._had_record,
                metadata=self._metadata,
            )
        return self._summary

    def keys(self) -> t.Tuple[str, ...]:
        """Field names shared by all records of this result."""
        return self._keys

    def _exhaust(self):
        if not self._exhausted:
            self._discarding = True
            self._record_buffer.clear()
            for _ in self:
                pass

    def _tx_end(self):
        self._exhaust()
        self._out_of_scope = True

    def _tx_failure(self, exc):
        self._attached = False
        self._exception = exc

    def consume(self) -> ResultSummary:
        """Discard the remaining records and return the summary.

        Records not yet received are discarded on the server side, so this
        is cheap even for large results. Calling it again returns the same
        summary.

        ::

            def count_people(tx):
                result = tx.run("MATCH (p:Person) RETURN count(p) AS n")
                n = result.single(strict=True)["n"]
                return n, result.consume().result_available_after

        :raises DriverError: RESULT_CONSUMED if the transaction of this
            result was closed
        """
        if self._out_of_scope:
            raise DriverError(ErrorKind.RESULT_CONSUMED, _OUT_OF_SCOPE)
        if not self._consumed:
            self._exhaust()
            self._consumed = True
        return self._obtain_summary()

    def single(self, strict: bool = False) -> t.Optional[Record]:
        """Return the one remaining record, then discard the rest.

        With ``strict=False`` an empty result gives :data:`None` and a result
        of several records gives the first one along with a warning. With
        ``strict=True`` both cases raise.

        :raises DriverError: RESULT_NOT_SINGLE in strict mode unless exactly
            one record remains; RESULT_CONSUMED if the result was consumed
            or outlived its transaction
        """
        self._buffer(2)
        candidates, self._record_buffer = self._record_buffer, deque()
        self._exhaust()
        if len(candidates) == 1:
            return candidates[0]
        if not candidates:
            if strict:
                raise DriverError(
                    ErrorKind.RESULT_NOT_SINGLE,
                    "No records found, expected exactly one.",
                )
            return None
        if strict:
            raise DriverError(
                ErrorKind.RESULT_NOT_SINGLE,
                "More than one record found, expected exactly one.",
            )
        warn("Expected a single record, but found multiple.", stacklevel=2)
        return candidates[0]

    def fetch(self, n: int) -> t.List[Record]:
        """Return up to ``n`` of the remaining records."""
        self._buffer(n)
        count = min(n, len(self._record_buffer))
        return [self._record_buffer.popleft() for _ in range(count)]

    def peek(self) -> t.Optional[Record]:
        """Return the next record but leave it in the stream.

        :returns: the next :class:`.Record`, :data:`None` at the end
        """
        self._buffer(1)
        return self._record_buffer[0] if self._record_buffer else None

    def value(
        self, key: _TResultKey = 0, default: object = None
    ) -> t.List[t.Any]:
        """One field of every remaining record, see :meth:`.Record.value`."""
        return [record.value(key, default) for record in self]

    def values(self, *keys: _TResultKey) -> t.List[t.List[t.Any]]:
        """Several fields of every remaining record, see
        :meth:`.Record.values`.
        """
        return [record.values(*keys) for record in self]

    def data(self, *keys: _TResultKey) -> t.List[t.Dict[str, t.Any]]:
        return [record.data(*keys) for record in self]

    def to_eager_result(self) -> EagerResult:
        """Read the whole result into an :class:`.EagerResult`.

        The result is consumed afterwards.
        """
        self._buffer_all()
        return EagerResult(
            keys=list(self.keys()),
            records=list(self),
            summary=self.consume(),
        )

    def closed(self) -> bool:
        """Whether the result can no longer be read."""
        return self._out_of_scope or self._consumed
