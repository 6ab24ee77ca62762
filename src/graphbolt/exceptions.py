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


"""
Errors raised by the driver.

All errors are instances of :class:`.DriverError`. What went wrong is told
by :attr:`.DriverError.kind`, a member of :class:`.ErrorKind`. Code that
handles errors should dispatch on the kind::

    try:
        session.run("RETURN 1").consume()
    except DriverError as error:
        if error.kind is ErrorKind.SERVICE_UNAVAILABLE:
            ...

Errors reported by the server additionally carry the server status
``code`` of the shape ``Neo.<Classification>.<Category>.<Title>``, from
which the kind is derived.
"""


from __future__ import annotations

import typing as t
from enum import Enum


__all__ = [
    "CLASSIFICATION_CLIENT",
    "CLASSIFICATION_DATABASE",
    "CLASSIFICATION_TRANSIENT",
    "DriverError",
    "ErrorKind",
]


CLASSIFICATION_CLIENT = "ClientError"
CLASSIFICATION_TRANSIENT = "TransientError"
CLASSIFICATION_DATABASE = "DatabaseError"

_UNKNOWN_CODE = "Neo.DatabaseError.General.UnknownError"
_UNKNOWN_MESSAGE = "An unknown error occurred"


class ErrorKind(Enum):
    """What went wrong."""

    #: No server could be reached for the operation.
    SERVICE_UNAVAILABLE = "ServiceUnavailable"
    #: The routing information became unusable while an operation was
    #: running. A new attempt will refresh it.
    SESSION_EXPIRED = "SessionExpired"
    #: The pool had no free connection within the acquisition timeout.
    CONNECTION_ACQUISITION_TIMEOUT = "ConnectionAcquisitionTimeout"
    #: The server reported a condition that is expected to go away.
    TRANSIENT_SERVER = "TransientServer"
    #: The request was wrong (syntax, parameters, constraints).
    CLIENT = "Client"
    #: Routing can not succeed, e.g. because the database does not exist.
    FATAL_DISCOVERY = "FatalDiscovery"
    #: Authentication or authorization failed.
    SECURITY = "Security"
    #: The server failed internally.
    DATABASE = "Database"
    #: The connection broke before the outcome of a COMMIT was known.
    INCOMPLETE_COMMIT = "IncompleteCommit"
    #: An object was used after it was closed.
    ILLEGAL_STATE = "IllegalState"
    #: Invalid driver configuration.
    CONFIGURATION = "Configuration"
    #: The server broke the Bolt protocol or is not supported.
    PROTOCOL = "Protocol"
    #: Misuse of a session.
    SESSION = "Session"
    #: Misuse of a transaction.
    TRANSACTION = "Transaction"
    #: Records were requested from a result that was already consumed.
    RESULT_CONSUMED = "ResultConsumed"
    #: A result did not hold exactly one record where one was required.
    RESULT_NOT_SINGLE = "ResultNotSingle"
    #: Retrying a unit of work ran out of time.
    RETRIES_EXHAUSTED = "RetriesExhausted"

    @property
    def retryable(self) -> bool:
        return self in _RETRYABLE_KINDS


_RETRYABLE_KINDS = frozenset((
    ErrorKind.SERVICE_UNAVAILABLE,
    ErrorKind.SESSION_EXPIRED,
    ErrorKind.CONNECTION_ACQUISITION_TIMEOUT,
    ErrorKind.TRANSIENT_SERVER,
))

# Server codes whose kind can not be derived from the classification alone.
_CODE_KINDS: t.Dict[str, ErrorKind] = {
    # the transaction was terminated on purpose, retrying would undo that
    "Neo.TransientError.Transaction.Terminated": ErrorKind.CLIENT,
    "Neo.TransientError.Transaction.LockClientStopped": ErrorKind.CLIENT,
    # the driver re-authenticates with the same credentials
    "Neo.ClientError.Security.AuthorizationExpired":
        ErrorKind.TRANSIENT_SERVER,
    # leader switch
    "Neo.ClientError.Cluster.NotALeader": ErrorKind.TRANSIENT_SERVER,
    "Neo.ClientError.General.ForbiddenOnReadOnlyDatabase":
        ErrorKind.TRANSIENT_SERVER,
    "Neo.ClientError.Database.DatabaseNotFound": ErrorKind.FATAL_DISCOVERY,
    "Neo.TransientError.General.DatabaseUnavailable":
        ErrorKind.TRANSIENT_SERVER,
}

_WRITE_FAILURE_CODES = frozenset((
    "Neo.ClientError.Cluster.NotALeader",
    "Neo.ClientError.General.ForbiddenOnReadOnlyDatabase",
))

_FATAL_DURING_DISCOVERY_CODES = frozenset((
    "Neo.ClientError.Database.DatabaseNotFound",
    "Neo.ClientError.Transaction.InvalidBookmark",
    "Neo.ClientError.Transaction.InvalidBookmarkMixture",
    "Neo.ClientError.Statement.TypeError",
    "Neo.ClientError.Statement.ArgumentError",
    "Neo.ClientError.Request.Invalid",
))


def _kind_for_code(code: str) -> ErrorKind:
    try:
        return _CODE_KINDS[code]
    except KeyError:
        pass
    try:
        _, classification, category, _ = code.split(".")
    except ValueError:
        return ErrorKind.DATABASE
    if classification == CLASSIFICATION_TRANSIENT:
        return ErrorKind.TRANSIENT_SERVER
    if classification == CLASSIFICATION_CLIENT:
        if category == "Security":
            return ErrorKind.SECURITY
        return ErrorKind.CLIENT
    return ErrorKind.DATABASE


class DriverError(Exception):
    """The one error type raised by the driver.

    :param kind: what went wrong.
    :param message: human readable description.
    :param code: status code if the error was reported by the server.
    :param address: the server address the error relates to, if any.
    """

    #: For :attr:`.ErrorKind.RETRIES_EXHAUSTED`, the error of the last
    #: attempt.
    last_error: t.Optional[BaseException] = None

    def __init__(
        self,
        kind: ErrorKind,
        message: t.Optional[str] = None,
        *,
        code: t.Optional[str] = None,
        address: t.Any = None,
        metadata: t.Optional[t.Dict[str, t.Any]] = None,
    ) -> None:
        if not isinstance(kind, ErrorKind):
            raise TypeError(f"Expected an ErrorKind, got {kind!r}")
        if message is None:
            super().__init__()
        else:
            super().__init__(message)
        self.kind = kind
        self.message = message
        self.code = code
        self.address = address
        self.metadata = metadata or {}

    @classmethod
    def hydrate(
        cls,
        code: t.Optional[str] = None,
        message: t.Optional[str] = None,
        **metadata: t.Any,
    ) -> DriverError:
        """Build an error from the metadata of a FAILURE message."""
        if not isinstance(code, str) or not code:
            code = _UNKNOWN_CODE
        if not isinstance(message, str):
            message = _UNKNOWN_MESSAGE
        return cls(_kind_for_code(code), message, code=code,
                   metadata=metadata)

    @classmethod
    def retries_exhausted(
        cls, last_error: BaseException, attempts: int
    ) -> DriverError:
        error = cls(
            ErrorKind.RETRIES_EXHAUSTED,
            f"Transaction failed after {attempts} attempt(s) "
            f"within the maximum retry time: {last_error}",
        )
        error.last_error = last_error
        return error

    @property
    def classification(self) -> t.Optional[str]:
        return self._code_part(1)

    @property
    def category(self) -> t.Optional[str]:
        return self._code_part(2)

    @property
    def title(self) -> t.Optional[str]:
        return self._code_part(3)

    def _code_part(self, index):
        if self.code is None:
            return None
        parts = self.code.split(".")
        if len(parts) != 4:
            return None
        return parts[index]

    @property
    def retryable(self) -> bool:
        """Whether a new attempt of the same work may succeed."""
        return self.kind.retryable

    def is_retryable(self) -> bool:
        return self.retryable

    @property
    def is_server_error(self) -> bool:
        return self.code is not None

    def _is_write_failure(self) -> bool:
        return self.code in _WRITE_FAILURE_CODES

    def _is_database_unavailable(self) -> bool:
        return self.code == "Neo.TransientError.General.DatabaseUnavailable"

    def _is_fatal_during_discovery(self) -> bool:
        if self.kind is ErrorKind.FATAL_DISCOVERY:
            return True
        if self.code in _FATAL_DURING_DISCOVERY_CODES:
            return True
        return self.kind is ErrorKind.SECURITY

    def __str__(self):
        if self.code is not None:
            return f"{{code: {self.code}}} {{message: {self.message}}}"
        return super().__str__()

    def __repr__(self):
        return (f"<{self.__class__.__name__} kind={self.kind.name} "
                f"message={self.message!r}>")
