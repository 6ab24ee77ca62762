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


import pytest

from graphbolt._codec import (
    PackStreamCodec,
    Request,
)
from graphbolt.io._common import (
    Inbox,
    Outbox,
)


class _ServerCodec(PackStreamCodec):
    # requests carry signatures that are not valid responses
    def decode(self, data):
        return self.decode_message(data)


class FakeSocket:

    def __init__(self, address, codec=None):
        self.address = address
        self.captured = b""
        self.messages = None
        if codec is not None:
            self.messages = Inbox(self, on_error=print, codec=codec)

    def getsockname(self):
        return "127.0.0.1", 0xFFFF

    def getpeername(self):
        return self.address

    def recv_into(self, buffer, nbytes):
        data = self.captured[:nbytes]
        actual = len(data)
        buffer[:actual] = data
        self.captured = self.captured[actual:]
        return actual

    def sendall(self, data):
        self.captured += data

    def close(self):
        return

    def pop_message(self):
        assert self.messages
        return self.messages.pop()


class FakeSocket2:

    def __init__(self, address=None, on_send=None, codec=None):
        self.address = address
        self.recv_buffer = bytearray()
        self.on_send = on_send
        self.timeout = None
        self.closed = False
        self.killed = False
        self._outbox = self._messages = None
        if codec is not None:
            self._outbox = Outbox(self, on_error=print, codec=codec)
            self._messages = Inbox(self, on_error=print, codec=codec)

    def getsockname(self):
        return "127.0.0.1", 0xFFFF

    def getpeername(self):
        return self.address

    def settimeout(self, timeout):
        self.timeout = timeout

    def get_deadline(self):
        return None

    def set_deadline(self, deadline):
        return

    def recv_into(self, buffer, nbytes):
        data = self.recv_buffer[:nbytes]
        actual = len(data)
        buffer[:actual] = data
        self.recv_buffer = self.recv_buffer[actual:]
        return actual

    def sendall(self, data):
        if callable(self.on_send):
            self.on_send(data)

    def close(self):
        self.closed = True

    def kill(self):
        self.killed = True

    def inject(self, data):
        self.recv_buffer += data

    def pop_message(self):
        assert self._messages
        return self._messages.pop()

    def send_message(self, tag, *fields):
        assert self._outbox
        self._outbox.append_message(Request(tag, fields))
        self._outbox.flush()


class FakeSocketPair:
    """Client socket wired to a server socket that decodes raw requests."""

    def __init__(self, address):
        self.client = FakeSocket2(address)
        self.server = FakeSocket2(codec=_ServerCodec())
        self.client.on_send = self.server.inject
        self.server.on_send = self.client.inject


@pytest.fixture
def fake_socket():
    return FakeSocket


@pytest.fixture
def fake_socket_2():
    return FakeSocket2


@pytest.fixture
def fake_socket_pair():
    return FakeSocketPair
