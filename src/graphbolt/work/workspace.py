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

import logging

from .._conf import WorkspaceConfig
from ..api import Bookmarks
from ..exceptions import (
    DriverError,
    ErrorKind,
)


log = logging.getLogger("graphbolt.work")


_CONNECTIVITY_KINDS = (ErrorKind.SERVICE_UNAVAILABLE,
                       ErrorKind.SESSION_EXPIRED)


class Workspace:
    """Base of sessions: owns at most one pooled connection at a time."""

    def __init__(self, pool, config):
        assert isinstance(config, WorkspaceConfig)
        self._pool = pool
        self._config = config
        self._connection = None
        self._connection_access_mode = None
        self._bookmarks = ()
        self._initial_bookmarks = ()
        self._bookmark_manager = None
        self._last_from_bookmark_manager = None
        # Workspace has been closed.
        self._closed = False

    def __enter__(self) -> Workspace:
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()

    def _initialize_bookmarks(self, bookmarks):
        if isinstance(bookmarks, Bookmarks):
            prepared_bookmarks = tuple(bookmarks.raw_values)
        elif not bookmarks:
            prepared_bookmarks = ()
        else:
            raise TypeError("Bookmarks must be an instance of Bookmarks")
        self._initial_bookmarks = self._bookmarks = prepared_bookmarks

    def _get_bookmarks(self):
        if self._bookmark_manager is None:
            return self._bookmarks

        self._last_from_bookmark_manager = tuple({
            *self._bookmark_manager.bookmarks_for(self._config.database),
            *self._initial_bookmarks
        })
        return self._last_from_bookmark_manager

    def _update_bookmarks(self, new_bookmarks):
        if not new_bookmarks:
            return
        self._initial_bookmarks = ()
        self._bookmarks = new_bookmarks
        if self._bookmark_manager is None:
            return
        self._bookmark_manager.update(
            self._config.database, new_bookmarks,
            superseded=self._last_from_bookmark_manager or (),
        )

    def _update_bookmark(self, bookmark):
        if not bookmark:
            return
        self._update_bookmarks((bookmark,))

    def _connect(self, access_mode, **acquire_kwargs):
        acquisition_timeout = self._config.connection_acquisition_timeout
        if self._connection:
            # a previous unit of work left its connection behind
            self._connection.send_all()
            self._connection.fetch_all()
            self._disconnect()
        acquire_kwargs_ = {
            "access_mode": access_mode,
            "timeout": acquisition_timeout,
            "database": self._config.database,
            "bookmarks": self._get_bookmarks(),
            "liveness_check_timeout": None,
        }
        acquire_kwargs_.update(acquire_kwargs)
        self._connection = self._pool.acquire(**acquire_kwargs_)
        self._connection_access_mode = access_mode

    def _disconnect(self, sync=False):
        if not self._connection:
            return
        try:
            if sync:
                try:
                    self._connection.send_all()
                    self._connection.fetch_all()
                except DriverError as error:
                    if error.kind not in _CONNECTIVITY_KINDS:
                        raise
        finally:
            # released exactly once, even if syncing failed
            if self._connection:
                self._pool.release(self._connection)
                self._connection = None
            self._connection_access_mode = None

    def close(self) -> None:
        if self._closed:
            return
        try:
            self._disconnect(sync=True)
        finally:
            self._closed = True

    def closed(self) -> bool:
        """Indicate whether the session has been closed.

        :returns: :data:`True` if closed, :data:`False` otherwise.
        """
        return self._closed

    def _check_state(self):
        if self._closed:
            raise DriverError(ErrorKind.SESSION, "Session closed")
