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
from collections.abc import (
    Mapping,
    Sequence,
)

from ._conf import iter_items


_K = t.Union[int, str]


class Record(tuple, Mapping):
    """One row of a query result.

    A record is a tuple of values that also answers to field names, so
    ``record[0]`` and ``record["name"]`` both work. Iteration yields the
    values, as for any tuple; :meth:`keys`, :meth:`items` and :meth:`data`
    give the mapping view.
    """

    _fields: t.Tuple[str, ...]

    def __new__(cls, iterable=()):
        pairs = list(iter_items(iterable))
        inst = tuple.__new__(cls, [value for _, value in pairs])
        inst._fields = tuple(key for key, _ in pairs)
        return inst

    def __repr__(self) -> str:
        fields = " ".join(f"{key}={value!r}" for key, value in self.items())
        return f"<{self.__class__.__name__} {fields}>"

    __str__ = __repr__

    def __eq__(self, other: object) -> bool:
        # equal to any sequence with the same values and any mapping with
        # the same items
        if not isinstance(other, (Sequence, Mapping)):
            return False
        if isinstance(other, Sequence) and list(self) != list(other):
            return False
        if isinstance(other, Mapping) and dict(self) != dict(other):
            return False
        return True

    def __ne__(self, other: object) -> bool:
        return not self == other

    def __hash__(self):
        result = 0
        for item in self.items():
            result ^= hash(item)
        return result

    def __getitem__(  # type: ignore[override]
        self, key: t.Union[_K, slice]
    ) -> t.Any:
        if isinstance(key, slice):
            return self.__class__(
                zip(self._fields[key], super().__getitem__(key))
            )
        try:
            index = self.index(key)
        except IndexError:
            return None
        return super().__getitem__(index)

    def index(self, key: _K) -> int:  # type: ignore[override]
        """Position of a field given by name or by position.

        :raises KeyError: for an unknown name.
        :raises IndexError: for a position out of range.
        :raises TypeError: for anything else.
        """
        if isinstance(key, int):
            if 0 <= key < len(self._fields):
                return key
            raise IndexError(key)
        if isinstance(key, str):
            try:
                return self._fields.index(key)
            except ValueError:
                raise KeyError(key) from None
        raise TypeError(key)

    def get(self, key: str, default: object = None) -> t.Any:
        """Value of the field ``key``, or ``default`` if there is none."""
        if key in self._fields:
            return super().__getitem__(self._fields.index(key))
        return default

    def value(self, key: _K = 0, default: object = None) -> t.Any:
        """Value of a field given by name or position, the first by default.

        Unknown fields give ``default``.
        """
        try:
            index = self.index(key)
        except (IndexError, KeyError):
            return default
        return super().__getitem__(index)

    def keys(self) -> t.List[str]:  # type: ignore[override]
        return list(self._fields)

    def items(self, *keys):
        """``(name, value)`` pairs, for all fields or only the given ones.

        Unknown names pair with :data:`None`; positions out of range raise
        :exc:`IndexError`.
        """
        if not keys:
            return list(zip(self._fields, self))
        pairs = []
        for key in keys:
            try:
                index = self.index(key)
            except KeyError:
                pairs.append((key, None))
            else:
                pairs.append(
                    (self._fields[index], super().__getitem__(index))
                )
        return pairs

    def values(self, *keys: _K) -> t.List[t.Any]:  # type: ignore[override]
        """Values of all fields or of the given ones, see :meth:`items`."""
        if not keys:
            return list(self)
        return [value for _, value in self.items(*keys)]

    def data(self, *keys: _K) -> t.Dict[str, t.Any]:
        """The record as a dictionary, see :meth:`items`.

        Nested lists and dictionaries are copied, tuples become lists.
        """
        return {key: _plain(value) for key, value in self.items(*keys)}


def _plain(value):
    if isinstance(value, (str, bytes, bytearray)):
        return value
    if isinstance(value, Mapping):
        return {key: _plain(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(item) for item in value]
    return value
