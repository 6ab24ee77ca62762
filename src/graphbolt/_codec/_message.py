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
from dataclasses import dataclass
from enum import Enum

from ..exceptions import (
    DriverError,
    ErrorKind,
)
from .packstream import v1 as packstream_v1


class ResponseKind(Enum):
    SUCCESS = b"\x70"
    RECORD = b"\x71"
    IGNORED = b"\x7E"
    FAILURE = b"\x7F"


@dataclass(frozen=True)
class Request:
    """A message sent to the server: a signature byte and its fields."""

    signature: bytes
    fields: t.Tuple[t.Any, ...] = ()


@dataclass(frozen=True)
class Response:
    """A message received from the server."""

    kind: ResponseKind
    fields: t.Tuple[t.Any, ...] = ()

    @property
    def signature(self) -> bytes:
        return self.kind.value

    @property
    def metadata(self) -> t.Dict[str, t.Any]:
        """Metadata map of a SUCCESS, FAILURE or IGNORED message."""
        if self.kind is ResponseKind.RECORD or not self.fields:
            return {}
        return self.fields[0] or {}

    @property
    def values(self) -> t.List[t.Any]:
        """Values of a RECORD message."""
        if self.kind is not ResponseKind.RECORD or not self.fields:
            return []
        return self.fields[0]


class MessageCodec(abc.ABC):
    """Turns requests into bytes and bytes into responses."""

    @abc.abstractmethod
    def encode(self, request: Request) -> bytes:
        ...

    @abc.abstractmethod
    def decode(self, data: bytes) -> Response:
        ...


class PackStreamCodec(MessageCodec):
    """Message codec for PackStream v1 encoded Bolt messages."""

    def encode(self, request: Request) -> bytes:
        buffer = packstream_v1.Packer.new_packable_buffer()
        packstream_v1.Packer(buffer).pack_struct(
            request.signature, request.fields
        )
        return bytes(buffer.data)

    def decode_message(self, data: bytes) -> t.Tuple[bytes, t.List[t.Any]]:
        """Decode a message into its raw signature and fields."""
        unpacker = packstream_v1.Unpacker(
            packstream_v1.Unpacker.new_unpackable_buffer(data)
        )
        size, tag = unpacker.unpack_structure_header()
        if tag is None:
            raise DriverError(ErrorKind.PROTOCOL, "Empty message received")
        fields = [unpacker.unpack() for _ in range(size)]
        return tag, fields

    def decode(self, data: bytes) -> Response:
        try:
            tag, fields = self.decode_message(data)
        except ValueError as exc:
            raise DriverError(ErrorKind.PROTOCOL,
                              f"Malformed message: {exc}") from exc
        try:
            kind = ResponseKind(tag)
        except ValueError:
            raise DriverError(
                ErrorKind.PROTOCOL,
                "Unexpected response message with signature %02X" % ord(tag)
            ) from None
        return Response(kind, tuple(fields))
