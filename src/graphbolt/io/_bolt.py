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
import typing as t
from collections import deque
from enum import Enum
from logging import getLogger
from ssl import SSLSocket
from time import monotonic

from .._codec import (
    PackStreamCodec,
    Request,
    ResponseKind,
)
from .._conf import PoolConfig
from .._deadline import (
    connection_deadline,
    Deadline,
)
from .._meta import USER_AGENT
from ..addressing import ResolvedAddress
from ..api import (
    Auth,
    READ_ACCESS,
    ServerInfo,
    Version,
)
from ..exceptions import (
    DriverError,
    ErrorKind,
)
from ._common import (
    CommitResponse,
    InitResponse,
    Inbox,
    Outbox,
    ResetResponse,
    Response,
)
from ._socket import BoltSocket


log = getLogger("graphbolt.io")


class BoltStates(Enum):
    CONNECTED = "CONNECTED"
    READY = "READY"
    STREAMING = "STREAMING"
    TX_READY_OR_TX_STREAMING = "TX_READY||TX_STREAMING"
    FAILED = "FAILED"


class ServerStateManager:
    _STATE_TRANSITIONS: t.ClassVar[t.Dict[Enum, t.Dict[str, Enum]]] = {
        BoltStates.CONNECTED: {
            "hello": BoltStates.READY,
        },
        BoltStates.READY: {
            "run": BoltStates.STREAMING,
            "begin": BoltStates.TX_READY_OR_TX_STREAMING,
        },
        BoltStates.STREAMING: {
            "pull": BoltStates.READY,
            "discard": BoltStates.READY,
            "reset": BoltStates.READY,
        },
        BoltStates.TX_READY_OR_TX_STREAMING: {
            "commit": BoltStates.READY,
            "rollback": BoltStates.READY,
            "reset": BoltStates.READY,
        },
        BoltStates.FAILED: {
            "reset": BoltStates.READY,
        },
    }

    def __init__(self, init_state, on_change=None):
        self.state = init_state
        self._on_change = on_change

    def transition(self, message, metadata):
        if metadata.get("has_more"):
            return
        state_before = self.state
        self.state = self._STATE_TRANSITIONS.get(self.state, {}).get(
            message, self.state
        )
        if state_before != self.state and callable(self._on_change):
            self._on_change(state_before, self.state)

    def failed(self):
        return self.state == BoltStates.FAILED


class ClientStateManager:
    _STATE_TRANSITIONS: t.ClassVar[t.Dict[Enum, t.Dict[str, Enum]]] = {
        BoltStates.CONNECTED: {
            "hello": BoltStates.READY,
        },
        BoltStates.READY: {
            "run": BoltStates.STREAMING,
            "begin": BoltStates.TX_READY_OR_TX_STREAMING,
        },
        BoltStates.STREAMING: {
            "begin": BoltStates.TX_READY_OR_TX_STREAMING,
            "reset": BoltStates.READY,
        },
        BoltStates.TX_READY_OR_TX_STREAMING: {
            "commit": BoltStates.READY,
            "rollback": BoltStates.READY,
            "reset": BoltStates.READY,
        },
    }

    def __init__(self, init_state, on_change=None):
        self.state = init_state
        self._on_change = on_change

    def transition(self, message):
        state_before = self.state
        self.state = self._STATE_TRANSITIONS.get(self.state, {}).get(
            message, self.state
        )
        if state_before != self.state and callable(self._on_change):
            self._on_change(state_before, self.state)


class Bolt(abc.ABC):
    """
    Server connection for the Bolt protocol.

    This is the pooled connection: the pool hands it to one session at a
    time and takes it back on release. A :class:`.Bolt` is constructed by
    :meth:`open` after a successful handshake and takes over the socket
    the handshake was carried out on.
    """

    CODEC_CLS = PackStreamCodec

    MAGIC_PREAMBLE = b"\x60\x60\xB0\x17"

    PROTOCOL_VERSION: Version = None  # type: ignore[assignment]

    # checked out by a session
    in_use = False

    # when the connection was last used
    idle_since = float("-inf")

    # database of the last RUN (auto-commit) or BEGIN
    last_database: t.Optional[str] = None

    # query id of the last RUN inside an explicit transaction
    most_recent_qid = None

    _closing = False
    _closed = False
    _defunct = False
    _stale = False

    #: The pool of which this connection is a member
    pool = None

    def __init__(self, unresolved_address, sock, max_connection_lifetime, *,
                 auth=None, user_agent=None, routing_context=None):
        self.unresolved_address = unresolved_address
        self.socket = sock
        self.local_port = self.socket.getsockname()[1]
        self.server_info = ServerInfo(
            ResolvedAddress(sock.getpeername(),
                            host_name=unresolved_address.host),
            self.PROTOCOL_VERSION,
        )
        self.configuration_hints: t.Dict[str, t.Any] = {}
        self.codec = self.CODEC_CLS()
        self.outbox = Outbox(self.socket, on_error=self._set_defunct_write,
                             codec=self.codec)
        self.inbox = Inbox(self.socket, on_error=self._set_defunct_read,
                           codec=self.codec)
        self.responses: t.Deque[t.Optional[Response]] = deque()
        self._max_connection_lifetime = max_connection_lifetime
        self._creation_timestamp = monotonic()
        self.routing_context = routing_context
        self.idle_since = monotonic()
        self.user_agent = user_agent or USER_AGENT
        self.auth_dict = self._to_auth_dict(auth)
        self._server_state_manager = ServerStateManager(
            BoltStates.CONNECTED, on_change=self._on_server_state_change
        )
        self._client_state_manager = ClientStateManager(
            BoltStates.CONNECTED, on_change=self._on_client_state_change
        )

    @classmethod
    def _to_auth_dict(cls, auth):
        if not auth:
            return {}
        if isinstance(auth, tuple) and 2 <= len(auth) <= 3:
            return vars(Auth("basic", *auth))
        try:
            return vars(auth)
        except TypeError as e:
            raise DriverError(
                ErrorKind.CONFIGURATION,
                f"Cannot determine auth details from {auth!r}"
            ) from e

    def _on_server_state_change(self, old_state, new_state):
        log.debug("[#%04X]  _: <CONNECTION> server state: %s > %s",
                  self.local_port, old_state.name, new_state.name)

    def _on_client_state_change(self, old_state, new_state):
        log.debug("[#%04X]  _: <CONNECTION> client state: %s > %s",
                  self.local_port, old_state.name, new_state.name)

    @property
    def connection_id(self):
        return self.server_info.connection_id or "<unknown id>"

    @property
    def creation_timestamp(self):
        return self._creation_timestamp

    @property
    def is_reset(self):
        # with pending responses the server state is only known if the
        # last message sent was RESET
        if self.responses:
            return bool(self.responses[-1]
                        and self.responses[-1].message == "reset")
        return self._server_state_manager.state == BoltStates.READY

    @property
    def encrypted(self):
        return isinstance(self.socket._socket, SSLSocket)

    @property
    def der_encoded_server_certificate(self):
        return self.socket._socket.getpeercert(binary_form=True)

    @classmethod
    def protocol_handlers(cls, protocol_version=None):
        """
        Return a dictionary of available Bolt protocol handlers.

        The handlers are keyed by version tuple. If an explicit protocol
        version is provided, the dictionary will contain either zero or one
        items, depending on whether that version is supported.

        :raise TypeError: if protocol version is not passed in a tuple
        """
        # local imports, the handlers subclass Bolt
        from ._bolt4 import (
            Bolt4x0,
            Bolt4x4,
        )
        from ._bolt5 import Bolt5x0

        handlers = {
            Bolt4x0.PROTOCOL_VERSION: Bolt4x0,
            Bolt4x4.PROTOCOL_VERSION: Bolt4x4,
            Bolt5x0.PROTOCOL_VERSION: Bolt5x0,
        }

        if protocol_version is None:
            return handlers

        if not isinstance(protocol_version, tuple):
            raise TypeError("Protocol version must be specified as a tuple")

        if protocol_version in handlers:
            return {protocol_version: handlers[protocol_version]}

        return {}

    @classmethod
    def get_handshake(cls):
        """
        Return the supported Bolt versions as bytes.

        The length is 16 bytes as specified in the Bolt version negotiation,
        newest version first, unused slots zero.
        """
        supported_versions = sorted(cls.protocol_handlers().keys(),
                                    reverse=True)
        versions_bytes = (Version(*v).to_bytes() for v in supported_versions)
        return b"".join(versions_bytes).ljust(16, b"\x00")

    @classmethod
    def open(cls, address, *, auth=None, deadline=None, routing_context=None,
             pool_config=None):
        """
        Open a new Bolt connection to a given server address.

        :param address:
        :param auth:
        :param deadline: how long to wait for the connection to be
            established
        :param routing_context: dict containing routing context
        :param pool_config:

        :returns: connected Bolt instance

        :raise DriverError: SERVICE_UNAVAILABLE if there was a connection
            issue or no protocol version could be agreed on
        """
        if pool_config is None:
            pool_config = PoolConfig()
        if deadline is None:
            deadline = Deadline(None)

        trusted_certificates = None
        if pool_config.encrypted:
            trusted_certificates = pool_config.trusted_certificates
        s, protocol_version, handshake, data = BoltSocket.connect(
            address,
            tcp_timeout=pool_config.connection_timeout,
            deadline=deadline,
            custom_resolver=pool_config.resolver,
            ssl_context=pool_config.get_ssl_context(),
            keep_alive=pool_config.keep_alive,
            trusted_certificates=trusted_certificates,
        )

        handlers = cls.protocol_handlers(tuple(protocol_version))
        if not handlers:
            log.debug("[#%04X]  C: <CLOSE>", s.getsockname()[1])
            BoltSocket.close_socket(s)
            supported_versions = cls.protocol_handlers().keys()
            raise DriverError(
                ErrorKind.SERVICE_UNAVAILABLE,
                "The server does not support communication with this "
                "driver. This driver has support for Bolt protocols "
                f"{tuple(map(str, supported_versions))}"
                f"; server response {data!r} to handshake {handshake!r}.",
                address=address,
            )
        bolt_cls, = handlers.values()

        connection = bolt_cls(
            address, s, pool_config.max_connection_lifetime,
            auth=pool_config.auth if auth is None else auth,
            user_agent=pool_config.user_agent,
            routing_context=routing_context,
        )

        try:
            with connection_deadline(connection, deadline):
                connection.hello()
        except (DriverError, OSError) as e:
            log.debug("[#%04X]  C: <OPEN FAILED> %r", connection.local_port,
                      e)
            connection.kill()
            raise

        return connection

    def get_base_headers(self):
        headers = {"user_agent": self.user_agent}
        if self.routing_context is not None:
            headers["routing"] = self.routing_context
        return headers

    def _on_hello_success(self, metadata):
        self.server_info.update(metadata)

    def hello(self):
        """Send HELLO and wait for the server to accept it."""
        headers = self.get_base_headers()
        headers.update(self.auth_dict)
        logged_headers = dict(headers)
        if "credentials" in logged_headers:
            logged_headers["credentials"] = "*******"
        log.debug("[#%04X]  C: HELLO %r", self.local_port, logged_headers)
        self._append(b"\x01", (headers,),
                     response=InitResponse(self, "hello",
                                           on_success=self._on_hello_success))
        self.send_all()
        self.fetch_all()

    @abc.abstractmethod
    def route(self, database=None, bookmarks=None):
        """
        Fetch a routing table from the server for the given database.

        :param database: database name or None for the default database
        :param bookmarks: iterable of bookmark values after which the
            routing table should be fetched

        :returns: list of routing info records, each a dict with the keys
            ``ttl``, ``servers`` and optionally ``db``
        """

    def _run_extra(self, mode, bookmarks, metadata, timeout, db):
        extra = {}
        if mode in (READ_ACCESS, "r"):
            # the server defaults to "w"
            extra["mode"] = "r"
        if db:
            extra["db"] = db
        if bookmarks:
            try:
                extra["bookmarks"] = list(bookmarks)
            except TypeError:
                raise TypeError("Bookmarks must be provided as iterable")
        if metadata:
            try:
                extra["tx_metadata"] = dict(metadata)
            except TypeError:
                raise TypeError("Metadata must be coercible to a dict")
        if timeout is not None:
            extra["tx_timeout"] = tx_timeout_as_ms(timeout)
        return extra

    def run(self, query, parameters=None, mode=None, bookmarks=None,
            metadata=None, timeout=None, db=None, **handlers):
        """Append a RUN message to the outgoing queue."""
        if not parameters:
            parameters = {}
        extra = self._run_extra(mode, bookmarks, metadata, timeout, db)
        if (
            self._client_state_manager.state
            != BoltStates.TX_READY_OR_TX_STREAMING
        ):
            self.last_database = db
        fields = (query, parameters, extra)
        log.debug("[#%04X]  C: RUN %s", self.local_port,
                  " ".join(map(repr, fields)))
        self._append(b"\x10", fields, Response(self, "run", **handlers))

    def discard(self, n=-1, qid=-1, **handlers):
        """Append a DISCARD message to the outgoing queue."""
        extra = {"n": n}
        if qid != -1:
            extra["qid"] = qid
        log.debug("[#%04X]  C: DISCARD %r", self.local_port, extra)
        self._append(b"\x2F", (extra,), Response(self, "discard", **handlers))

    def pull(self, n=-1, qid=-1, **handlers):
        """Append a PULL message to the outgoing queue."""
        extra = {"n": n}
        if qid != -1:
            extra["qid"] = qid
        log.debug("[#%04X]  C: PULL %r", self.local_port, extra)
        self._append(b"\x3F", (extra,), Response(self, "pull", **handlers))

    def begin(self, mode=None, bookmarks=None, metadata=None, timeout=None,
              db=None, **handlers):
        """Append a BEGIN message to the outgoing queue."""
        extra = self._run_extra(mode, bookmarks, metadata, timeout, db)
        self.last_database = db
        log.debug("[#%04X]  C: BEGIN %r", self.local_port, extra)
        self._append(b"\x11", (extra,), Response(self, "begin", **handlers))

    def commit(self, **handlers):
        """Append a COMMIT message to the outgoing queue."""
        log.debug("[#%04X]  C: COMMIT", self.local_port)
        self._append(b"\x12", (), CommitResponse(self, "commit", **handlers))

    def rollback(self, **handlers):
        """Append a ROLLBACK message to the outgoing queue."""
        log.debug("[#%04X]  C: ROLLBACK", self.local_port)
        self._append(b"\x13", (), Response(self, "rollback", **handlers))

    def reset(self):
        """
        Reset the connection.

        Add a RESET message to the outgoing queue, send it and consume all
        remaining messages.
        """
        log.debug("[#%04X]  C: RESET", self.local_port)
        self._append(b"\x0F", response=ResetResponse(self, "reset"))
        self.send_all()
        self.fetch_all()

    def goodbye(self):
        log.debug("[#%04X]  C: GOODBYE", self.local_port)
        self._append(b"\x02", ())

    def _append(self, signature, fields=(), response=None):
        """
        Append a message to the outgoing queue.

        :param signature: the signature of the message
        :param fields: the fields of the message as a tuple
        :param response: a response object to handle callbacks
        """
        self.outbox.append_message(Request(signature, tuple(fields)))
        self.responses.append(response)
        if response:
            self._client_state_manager.transition(response.message)

    def _send_all(self):
        if self.outbox.flush():
            self.idle_since = monotonic()

    def send_all(self):
        """Send all queued messages to the server."""
        if self.closed():
            raise DriverError(
                ErrorKind.SERVICE_UNAVAILABLE,
                "Failed to write to closed connection "
                f"{self.unresolved_address!r} ({self.server_info.address!r})",
                address=self.unresolved_address,
            )
        if self.defunct():
            raise DriverError(
                ErrorKind.SERVICE_UNAVAILABLE,
                "Failed to write to defunct connection "
                f"{self.unresolved_address!r} ({self.server_info.address!r})",
                address=self.unresolved_address,
            )
        self._send_all()

    def _process_message(self, message):
        """
        Process one message received from the server.

        :returns: 2-tuple of number of detail messages and number of summary
                 messages processed
        """
        if message.kind is ResponseKind.RECORD:
            # record contents are not logged
            log.debug("[#%04X]  S: RECORD *", self.local_port)
            self.responses[0].on_records([message.values])
            return 1, 0

        response = self.responses.popleft()
        response.complete = True
        metadata = message.metadata
        if message.kind is ResponseKind.SUCCESS:
            log.debug("[#%04X]  S: SUCCESS %r", self.local_port, metadata)
            self._server_state_manager.transition(response.message, metadata)
            response.on_success(metadata)
        elif message.kind is ResponseKind.IGNORED:
            log.debug("[#%04X]  S: IGNORED", self.local_port)
            response.on_ignored(metadata)
        else:
            log.debug("[#%04X]  S: FAILURE %r", self.local_port, metadata)
            self._server_state_manager.state = BoltStates.FAILED
            try:
                response.on_failure(metadata)
            except DriverError as error:
                error.address = self.unresolved_address
                if self.pool:
                    self._report_failure(error)
                raise
        return 0, 1

    def _report_failure(self, error):
        if error._is_write_failure():
            self.pool.on_write_failure(address=self.unresolved_address,
                                       database=self.last_database)
        elif error._is_database_unavailable():
            self.pool.deactivate(address=self.unresolved_address)

    def fetch_message(self):
        """Receive and process exactly one message, if any is expected."""
        if self._closed:
            raise DriverError(
                ErrorKind.SERVICE_UNAVAILABLE,
                "Failed to read from closed connection "
                f"{self.unresolved_address!r} ({self.server_info.address!r})",
                address=self.unresolved_address,
            )
        if self._defunct:
            raise DriverError(
                ErrorKind.SERVICE_UNAVAILABLE,
                "Failed to read from defunct connection "
                f"{self.unresolved_address!r} ({self.server_info.address!r})",
                address=self.unresolved_address,
            )
        if not self.responses:
            return 0, 0

        message = self.inbox.pop()
        res = self._process_message(message)
        self.idle_since = monotonic()
        return res

    def fetch_all(self):
        """
        Fetch all outstanding messages.

        :returns: 2-tuple of number of detail messages and number of summary
                 messages fetched
        """
        detail_count = summary_count = 0
        while not self._closed and self.responses:
            response = self.responses[0]
            if response is None:
                # messages without response (GOODBYE)
                self.responses.popleft()
                continue
            while not response.complete:
                detail_delta, summary_delta = self.fetch_message()
                detail_count += detail_delta
                summary_count += summary_delta
        return detail_count, summary_count

    def _set_defunct_read(self, error=None, silent=False):
        message = (
            "Failed to read from defunct connection "
            f"{self.unresolved_address!r} ({self.server_info.address!r})"
        )
        self._set_defunct(message, error=error, silent=silent)

    def _set_defunct_write(self, error=None, silent=False):
        message = (
            "Failed to write data to connection "
            f"{self.unresolved_address!r} ({self.server_info.address!r})"
        )
        self._set_defunct(message, error=error, silent=silent)

    def _set_defunct(self, message, error=None, silent=False):
        direct_driver = getattr(self.pool, "is_direct_pool", False)

        if error:
            log.debug("[#%04X]  _: <CONNECTION> error: %r", self.local_port,
                      error)
        log.error(message)
        # the connection broke: close it from our side and drop the
        # address from the pool
        self._defunct = True
        if not self._closing:
            # failing while closing: the pool already knows
            self.close()
            if self.pool and not self._server_state_manager.failed():
                self.pool.deactivate(address=self.unresolved_address)

        if silent:
            return
        # the outcome of an outstanding COMMIT is unknown
        if any(isinstance(response, CommitResponse)
               for response in self.responses):
            kind = ErrorKind.INCOMPLETE_COMMIT
        elif direct_driver:
            kind = ErrorKind.SERVICE_UNAVAILABLE
        else:
            kind = ErrorKind.SESSION_EXPIRED
        raise DriverError(kind, message,
                          address=self.unresolved_address) from error

    def stale(self):
        """Whether the connection must not be reused.

        True once marked with :meth:`set_stale` or when older than the
        maximum connection lifetime (a negative lifetime never expires).
        """
        return self._stale or (
            0 <= self._max_connection_lifetime
            <= monotonic() - self._creation_timestamp
        )

    def set_stale(self):
        self._stale = True

    def close(self):
        """Close the connection."""
        if self._closed or self._closing:
            return
        self._closing = True
        if not self._defunct:
            self.goodbye()
            try:
                self._send_all()
            except (OSError, DriverError) as exc:
                log.debug("[#%04X]  _: <CONNECTION> ignoring failed close %r",
                          self.local_port, exc)
        log.debug("[#%04X]  C: <CLOSE>", self.local_port)
        try:
            self.socket.close()
        except OSError:
            pass
        finally:
            self._closed = True

    def kill(self):
        """Close the socket without flush or GOODBYE."""
        if self._closed:
            return
        log.debug("[#%04X]  C: <KILL>", self.local_port)
        self._closing = True
        try:
            self.socket.kill()
        except OSError as exc:
            log.debug("[#%04X]  _: <CONNECTION> ignoring failed kill %r",
                      self.local_port, exc)
        finally:
            self._closed = True

    def closed(self):
        return self._closed

    def defunct(self):
        return self._defunct

    def is_idle_for(self, timeout):
        """Whether the connection has been idle for at least ``timeout``."""
        return monotonic() - self.idle_since > timeout


BoltSocket.Bolt = Bolt  # type: ignore


def tx_timeout_as_ms(timeout: float) -> int:
    """
    Round a transaction timeout to milliseconds.

    Values in (0, 0.5] ms are rounded up to 1 ms since the server takes 0
    as "no timeout".

    :raise ValueError: if timeout is negative
    """
    try:
        timeout = float(timeout)
    except (TypeError, ValueError) as e:
        err_type = type(e)
        msg = "Timeout must be specified as a number of seconds"
        raise err_type(msg) from None
    if timeout < 0:
        raise ValueError("Timeout must be a positive number or 0.")
    ms = int(round(1000 * timeout))
    if ms == 0 and timeout > 0:
        ms = 1
    return ms
