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


"""PackStream version 1 for the basic value types.

Supported: None, bool, int (signed 64 bit), float (double precision), str,
bytes, list (and tuple), dict with str keys and :class:`.Structure`.
"""


from codecs import decode
from contextlib import contextmanager
from struct import (
    pack as struct_pack,
    unpack as struct_unpack,
)

from ._common import Structure


PACKED_UINT_8 = [struct_pack(">B", value) for value in range(0x100)]
PACKED_UINT_16 = [struct_pack(">H", value) for value in range(0x10000)]

INT64_MIN = -(2 ** 63)
INT64_MAX = 2 ** 63

# (tiny marker, 8 bit marker, 16 bit marker, 32 bit marker)
_STRING_MARKERS = (0x80, b"\xD0", b"\xD1", b"\xD2")
_LIST_MARKERS = (0x90, b"\xD4", b"\xD5", b"\xD6")
_MAP_MARKERS = (0xA0, b"\xD8", b"\xD9", b"\xDA")
_BYTES_MARKERS = (None, b"\xCC", b"\xCD", b"\xCE")

_SIZE_FORMATS = {0: ">B", 1: ">H", 2: ">I"}


class Packer:

    def __init__(self, stream):
        self.stream = stream
        self._write = self.stream.write

    def pack(self, value):
        write = self._write

        if value is None:
            write(b"\xC0")

        # bool before int, bool is an int subclass
        elif value is True:
            write(b"\xC3")
        elif value is False:
            write(b"\xC2")

        elif isinstance(value, float):
            write(b"\xC1")
            write(struct_pack(">d", value))

        elif isinstance(value, int):
            self._pack_int(value)

        elif isinstance(value, str):
            encoded = value.encode("utf-8")
            self._pack_header(len(encoded), _STRING_MARKERS, "String")
            write(encoded)

        elif isinstance(value, (bytes, bytearray)):
            self._pack_header(len(value), _BYTES_MARKERS, "Bytes")
            write(value)

        elif isinstance(value, (list, tuple)):
            self._pack_header(len(value), _LIST_MARKERS, "List")
            for item in value:
                self.pack(item)

        elif isinstance(value, dict):
            self._pack_header(len(value), _MAP_MARKERS, "Map")
            for key, item in value.items():
                if not isinstance(key, str):
                    raise TypeError(
                        f"Map keys must be strings, not {type(key)}"
                    )
                self.pack(key)
                self.pack(item)

        elif isinstance(value, Structure):
            self.pack_struct(value.tag, value.fields)

        else:
            raise ValueError(f"Values of type {type(value)} are not supported")

    def _pack_int(self, value):
        write = self._write
        if -0x10 <= value < 0x80:
            write(PACKED_UINT_8[value % 0x100])
        elif -0x80 <= value < -0x10:
            write(b"\xC8")
            write(PACKED_UINT_8[value % 0x100])
        elif -0x8000 <= value < 0x8000:
            write(b"\xC9")
            write(PACKED_UINT_16[value % 0x10000])
        elif -0x80000000 <= value < 0x80000000:
            write(b"\xCA")
            write(struct_pack(">i", value))
        elif INT64_MIN <= value < INT64_MAX:
            write(b"\xCB")
            write(struct_pack(">q", value))
        else:
            raise OverflowError(f"Integer {value} out of range")

    def _pack_header(self, size, markers, name):
        write = self._write
        tiny, marker_8, marker_16, marker_32 = markers
        if tiny is not None and size <= 0x0F:
            write(bytes((tiny | size,)))
        elif size < 0x100:
            write(marker_8)
            write(PACKED_UINT_8[size])
        elif size < 0x10000:
            write(marker_16)
            write(PACKED_UINT_16[size])
        elif size < 0x100000000:
            write(marker_32)
            write(struct_pack(">I", size))
        else:
            raise OverflowError(f"{name} header size out of range")

    def pack_struct(self, signature, fields):
        if len(signature) != 1 or not isinstance(signature, bytes):
            raise ValueError("Structure signature must be a single byte value")
        size = len(fields)
        if size > 0x0F:
            raise OverflowError("Structure size out of range")
        self._write(bytes((0xB0 | size,)))
        self._write(signature)
        for value in fields:
            self.pack(value)

    @staticmethod
    def new_packable_buffer():
        return PackableBuffer()


class PackableBuffer:
    def __init__(self):
        self.data = bytearray()
        self.write = self.data.extend
        self.clear = self.data.clear
        self._tmp_buffering = 0

    @contextmanager
    def tmp_buffer(self):
        """Drop everything written within the block if it raises."""
        self._tmp_buffering += 1
        old_len = len(self.data)
        try:
            yield
        except Exception:
            del self.data[old_len:]
            raise
        finally:
            self._tmp_buffering -= 1

    def is_tmp_buffering(self):
        return bool(self._tmp_buffering)


class Unpacker:

    def __init__(self, unpackable):
        self.unpackable = unpackable

    def reset(self):
        self.unpackable.reset()

    def read(self, n=1):
        return self.unpackable.read(n)

    def read_u8(self):
        return self.unpackable.read_u8()

    def _read_size(self, width):
        size, = struct_unpack(_SIZE_FORMATS[width], self.read(1 << width))
        return size

    def unpack(self):
        marker = self.read_u8()

        if marker == -1:
            raise ValueError("Nothing to unpack")

        # tiny int
        if 0x00 <= marker <= 0x7F:
            return marker
        if 0xF0 <= marker <= 0xFF:
            return marker - 0x100

        if marker == 0xC0:
            return None
        if marker == 0xC1:
            value, = struct_unpack(">d", self.read(8))
            return value
        if marker == 0xC2:
            return False
        if marker == 0xC3:
            return True

        if marker == 0xC8:
            return struct_unpack(">b", self.read(1))[0]
        if marker == 0xC9:
            return struct_unpack(">h", self.read(2))[0]
        if marker == 0xCA:
            return struct_unpack(">i", self.read(4))[0]
        if marker == 0xCB:
            return struct_unpack(">q", self.read(8))[0]

        if 0xCC <= marker <= 0xCE:
            size = self._read_size(marker - 0xCC)
            return self.read(size).tobytes()

        marker_high = marker & 0xF0
        if marker_high == 0x80:
            return decode(self.read(marker & 0x0F), "utf-8")
        if 0xD0 <= marker <= 0xD2:
            size = self._read_size(marker - 0xD0)
            return decode(self.read(size), "utf-8")

        if marker_high == 0x90:
            return [self.unpack() for _ in range(marker & 0x0F)]
        if 0xD4 <= marker <= 0xD6:
            size = self._read_size(marker - 0xD4)
            return [self.unpack() for _ in range(size)]

        if marker_high == 0xA0 or 0xD8 <= marker <= 0xDA:
            return self._unpack_map(marker)

        if marker_high == 0xB0:
            size, tag = self._unpack_structure_header(marker)
            return Structure(tag, *(self.unpack() for _ in range(size)))

        raise ValueError("Unknown PackStream marker %02X" % marker)

    def unpack_map(self):
        marker = self.read_u8()
        return self._unpack_map(marker)

    def _unpack_map(self, marker):
        if marker & 0xF0 == 0xA0:
            size = marker & 0x0F
        elif 0xD8 <= marker <= 0xDA:
            size = self._read_size(marker - 0xD8)
        else:
            return None
        value = {}
        for _ in range(size):
            key = self.unpack()
            value[key] = self.unpack()
        return value

    def unpack_structure_header(self):
        marker = self.read_u8()
        if marker == -1:
            return None, None
        return self._unpack_structure_header(marker)

    def _unpack_structure_header(self, marker):
        if marker & 0xF0 == 0xB0:
            signature = self.read(1).tobytes()
            return marker & 0x0F, signature
        raise ValueError("Expected structure, found marker %02X" % marker)

    @staticmethod
    def new_unpackable_buffer(data=None):
        return UnpackableBuffer(data)


class UnpackableBuffer:

    initial_capacity = 8192

    def __init__(self, data=None):
        if data is None:
            self.data = bytearray(self.initial_capacity)
            self.used = 0
        else:
            self.data = bytearray(data)
            self.used = len(self.data)
        self.p = 0

    def reset(self):
        self.used = 0
        self.p = 0

    def read(self, n=1):
        if self.p + n > self.used:
            raise ValueError("Unexpected end of PackStream data")
        view = memoryview(self.data)
        q = self.p + n
        subview = view[self.p:q]
        self.p = q
        return subview

    def read_u8(self):
        if self.used - self.p >= 1:
            value = self.data[self.p]
            self.p += 1
            return value
        return -1

    def pop_u16(self):
        """Remove the last two bytes, returning them as a big-endian u16."""
        if self.used >= 2:
            value = 0x100 * self.data[self.used - 2] + self.data[self.used - 1]
            self.used -= 2
            return value
        return -1
