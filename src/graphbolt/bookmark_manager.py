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
from collections.abc import Mapping
from threading import Lock

from .api import (
    BookmarkManager,
    Bookmarks,
)


TBmSupplier = t.Callable[[t.Optional[str]], Bookmarks]
TBmConsumer = t.Callable[[t.Optional[str], Bookmarks], None]
TInitialBookmarks = t.Union[
    Bookmarks,
    t.Iterable[str],
    t.Mapping[t.Optional[str], t.Union[Bookmarks, t.Iterable[str]]],
    None,
]


def _bookmarks_to_set(bookmarks) -> t.Set[str]:
    if isinstance(bookmarks, Bookmarks):
        return set(bookmarks.raw_values)
    if isinstance(bookmarks, str):
        return {bookmarks}
    return set(map(str, bookmarks))


class DatabaseBookmarkManager(BookmarkManager):
    """Thread-safe bookmark manager keeping one bookmark set per database.

    :param initial_bookmarks: bookmarks to start from. Either a mapping of
        database name to bookmarks, or bookmarks for the default database
        (``None``).
    :param bookmarks_supplier: called with the database name whenever
        bookmarks are requested; its bookmarks are added to the result.
    :param bookmarks_consumer: called with the database name and the new
        bookmark set after every update.
    """

    def __init__(
        self,
        initial_bookmarks: TInitialBookmarks = None,
        bookmarks_supplier: t.Optional[TBmSupplier] = None,
        bookmarks_consumer: t.Optional[TBmConsumer] = None,
    ) -> None:
        super().__init__()
        self._bookmarks_supplier = bookmarks_supplier
        self._bookmarks_consumer = bookmarks_consumer
        self._bookmarks: t.Dict[t.Optional[str], t.Set[str]] = {}
        if isinstance(initial_bookmarks, Mapping):
            for database, bookmarks in initial_bookmarks.items():
                values = _bookmarks_to_set(bookmarks)
                if values:
                    self._bookmarks[database] = values
        elif initial_bookmarks:
            self._bookmarks[None] = _bookmarks_to_set(initial_bookmarks)
        self._lock = Lock()

    def update(
        self,
        database: t.Optional[str],
        new_bookmarks: t.Iterable[str],
        superseded: t.Iterable[str] = (),
    ) -> None:
        new_bookmarks = _bookmarks_to_set(new_bookmarks)
        if not new_bookmarks:
            # a transaction without bookmark keeps the causal history
            return
        superseded = _bookmarks_to_set(superseded)
        with self._lock:
            bookmarks = self._bookmarks.setdefault(database, set())
            bookmarks.difference_update(superseded)
            bookmarks.update(new_bookmarks)
            if self._bookmarks_consumer:
                snapshot = Bookmarks.from_raw_values(bookmarks)
        if self._bookmarks_consumer:
            self._bookmarks_consumer(database, snapshot)

    def bookmarks_for(self, database: t.Optional[str]) -> t.FrozenSet[str]:
        with self._lock:
            bookmarks = set(self._bookmarks.get(database, ()))
        if self._bookmarks_supplier:
            extra = self._bookmarks_supplier(database)
            bookmarks.update(_bookmarks_to_set(extra))
        return frozenset(bookmarks)

    def all_bookmarks(self) -> t.FrozenSet[str]:
        with self._lock:
            databases = list(self._bookmarks)
            bookmarks = set().union(*self._bookmarks.values())
        if self._bookmarks_supplier:
            for database in databases:
                extra = self._bookmarks_supplier(database)
                bookmarks.update(_bookmarks_to_set(extra))
        return frozenset(bookmarks)

    def forget(self, databases: t.Iterable[t.Optional[str]]) -> None:
        """Drop the bookmarks of the given databases."""
        with self._lock:
            for database in databases:
                self._bookmarks.pop(database, None)
