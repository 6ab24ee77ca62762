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


import logging
from struct import pack as struct_pack

from .._codec.packstream.v1 import UnpackableBuffer
from ..exceptions import (
    DriverError,
    ErrorKind,
)


log = logging.getLogger("graphbolt.io")


def _callback(handler, *args):
    if callable(handler):
        return handler(*args)
    return None


class Inbox:
    """Reads chunked messages from a socket and decodes them."""

    def __init__(self, sock, on_error, codec):
        self.on_error = on_error
        self._local_port = sock.getsockname()[1]
        self._socket = sock
        self._codec = codec
        self._buffer = UnpackableBuffer()
        self._broken = False

    def _buffer_one_message(self):
        if self._broken:
            raise DriverError(ErrorKind.ILLEGAL_STATE,
                              "Reading from a broken connection")
        try:
            chunk_size = 0
            while True:
                while chunk_size == 0:
                    # chunk size, skipping NOOP chunks
                    receive_into_buffer(self._socket, self._buffer, 2)
                    chunk_size = self._buffer.pop_u16()
                    if chunk_size == 0:
                        log.debug("[#%04X]  S: <NOOP>", self._local_port)

                receive_into_buffer(self._socket, self._buffer,
                                    chunk_size + 2)
                chunk_size = self._buffer.pop_u16()

                if chunk_size == 0:
                    # end marker of the message
                    return
        except OSError as error:
            self._broken = True
            _callback(self.on_error, error)
            raise

    def pop(self):
        """Receive the next message and return it as a :class:`.Response`."""
        self._buffer_one_message()
        try:
            return self._codec.decode(
                bytes(self._buffer.data[:self._buffer.used])
            )
        finally:
            self._buffer.reset()


class Outbox:
    """Encodes messages and splits them into chunks for sending."""

    def __init__(self, sock, on_error, codec, max_chunk_size=16384):
        self._max_chunk_size = max_chunk_size
        self._chunked_data = bytearray()
        self._codec = codec
        self.socket = sock
        self.on_error = on_error

    def max_chunk_size(self):
        return self._max_chunk_size

    def _clear(self):
        self._chunked_data = bytearray()

    def _chunk_data(self, data):
        data_len = len(data)
        with memoryview(data) as data_view:
            start = 0
            while start < data_len:
                chunk_size = min(data_len - start, self._max_chunk_size)
                self._chunked_data += struct_pack(">H", chunk_size)
                self._chunked_data += data_view[start:start + chunk_size]
                start += chunk_size

    def append_message(self, request):
        """Encode ``request`` and queue it for the next :meth:`flush`.

        Nothing is queued if encoding fails.
        """
        data = self._codec.encode(request)
        self._chunk_data(data)
        self._chunked_data += b"\x00\x00"

    def flush(self):
        data = self._chunked_data
        if data:
            try:
                self.socket.sendall(data)
            except OSError as error:
                _callback(self.on_error, error)
                return False
            self._clear()
            return True
        return False

    def view(self):
        return bytes(self._chunked_data)


class ConnectionErrorHandler:
    """
    Wrapper class for handling connection errors.

    Each method of the wrapped connection is wrapped to invoke a callback
    if it raises a :class:`.DriverError`. The error is re-raised after the
    callback.

    :param connection: the connection object to wrap
    :param on_error: function to be called with the error
    """

    def __init__(self, connection, on_error):
        self.__connection = connection
        self.__on_error = on_error

    def __getattr__(self, name):
        connection_attr = getattr(self.__connection, name)
        if not callable(connection_attr):
            return connection_attr

        def outer(func):
            def inner(*args, **kwargs):
                try:
                    return func(*args, **kwargs)
                except DriverError as exc:
                    self.__on_error(exc)
                    raise

            return inner

        return outer(connection_attr)

    def __setattr__(self, name, value):
        if name.startswith("_" + self.__class__.__name__ + "__"):
            super().__setattr__(name, value)
        else:
            setattr(self.__connection, name, value)


class Response:
    """
    Subscriber object for a full response.

    I.e., zero or more RECORD messages followed by one summary message.
    """

    def __init__(self, connection, message, **handlers):
        self.connection = connection
        self.handlers = handlers
        self.message = message
        self.complete = False

    def on_records(self, records):
        """Handle one or more RECORD messages been received."""
        _callback(self.handlers.get("on_records"), records)

    def on_success(self, metadata):
        """Handle a SUCCESS message been received."""
        _callback(self.handlers.get("on_success"), metadata)

        if not metadata.get("has_more"):
            _callback(self.handlers.get("on_summary"))

    def on_failure(self, metadata):
        """Handle a FAILURE message been received."""
        try:
            self.connection.reset()
        except DriverError as exc:
            if exc.kind not in (ErrorKind.SESSION_EXPIRED,
                                ErrorKind.SERVICE_UNAVAILABLE):
                raise
        _callback(self.handlers.get("on_failure"), metadata)
        _callback(self.handlers.get("on_summary"))
        raise DriverError.hydrate(**metadata)

    def on_ignored(self, metadata=None):
        """Handle an IGNORED message been received."""
        _callback(self.handlers.get("on_ignored"), metadata)
        _callback(self.handlers.get("on_summary"))


class InitResponse(Response):
    def on_failure(self, metadata):
        # the server closes the connection after a failed HELLO
        self.connection.kill()
        _callback(self.handlers.get("on_failure"), metadata)
        _callback(self.handlers.get("on_summary"))
        metadata["message"] = metadata.get(
            "message",
            "Connection initialisation failed due to an unknown error",
        )
        raise DriverError.hydrate(**metadata)


class ResetResponse(Response):
    def _unexpected_message(self, response):
        log.warning(
            "[#%04X]  _: <CONNECTION> RESET received %s "
            "(unexpected response) => dropping connection",
            self.connection.local_port, response,
        )
        self.connection.close()

    def on_records(self, records):
        self._unexpected_message("RECORD")

    def on_success(self, metadata):
        pass

    def on_failure(self, metadata):
        self._unexpected_message("FAILURE")

    def on_ignored(self, metadata=None):
        self._unexpected_message("IGNORED")


class CommitResponse(Response):
    pass


def receive_into_buffer(sock, buffer, n_bytes):
    end = buffer.used + n_bytes
    if end > len(buffer.data):
        buffer.data += bytearray(end - len(buffer.data))
    with memoryview(buffer.data) as view:
        while buffer.used < end:
            n = sock.recv_into(view[buffer.used:end], end - buffer.used)
            if n == 0:
                raise OSError("No data")
            buffer.used += n
