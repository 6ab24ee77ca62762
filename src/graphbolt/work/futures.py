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


"""Future-based front end over the transaction executor.

Every call is handed to a thread pool and runs through the same
:class:`.TransactionExecutor` as the blocking API.
"""


from __future__ import annotations

import typing as t
from concurrent.futures import (
    Future,
    ThreadPoolExecutor,
)

from .._meta import preview
from ..api import (
    READ_ACCESS,
    WRITE_ACCESS,
)


if t.TYPE_CHECKING:
    from ..driver import Driver

    _R = t.TypeVar("_R")


class FutureExecutor:
    """Run units of work and queries in the background.

    ::

        with FutureExecutor(driver, max_workers=4) as executor:
            future = executor.execute_read(count_people_tx)
            print(future.result())

    :param driver: the driver whose pool and bookmark manager are used.
    :param max_workers: size of the thread pool, see
        :class:`concurrent.futures.ThreadPoolExecutor`.
    :param database: database the units of work run against.
    """

    @preview("FutureExecutor is a preview feature.")
    def __init__(self, driver: Driver, max_workers: t.Optional[int] = None,
                 database: t.Optional[str] = None) -> None:
        self._driver = driver
        self._database = database
        self._transaction_executor = driver.transaction_executor()
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="graphbolt"
        )

    def __enter__(self) -> FutureExecutor:
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.shutdown()

    def execute_read(self, work: t.Callable[..., _R], *args: t.Any,
                     **kwargs: t.Any) -> Future:
        """Submit a unit of work for a managed read transaction."""
        return self._executor.submit(
            self._transaction_executor.execute,
            READ_ACCESS, self._database, work, *args, **kwargs
        )

    def execute_write(self, work: t.Callable[..., _R], *args: t.Any,
                      **kwargs: t.Any) -> Future:
        """Submit a unit of work for a managed write transaction."""
        return self._executor.submit(
            self._transaction_executor.execute,
            WRITE_ACCESS, self._database, work, *args, **kwargs
        )

    def execute_query(self, query, parameters=None, **kwargs) -> Future:
        """Submit :meth:`.Driver.execute_query`."""
        kwargs.setdefault("database_", self._database)
        return self._executor.submit(
            self._driver.execute_query, query, parameters, **kwargs
        )

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting work; wait for submitted work if ``wait``."""
        self._executor.shutdown(wait=wait)
