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


"""Retrying units of work on transient failures.

Only this module loops on errors: pools, routing and connections classify a
failure and raise it, :class:`RetryContext` decides whether to try again.
"""


from __future__ import annotations

import typing as t
from logging import getLogger
from random import random
from time import sleep

from .._conf import (
    SessionConfig,
    WorkspaceConfig,
)
from .._deadline import Deadline
from ..api import check_access_mode
from ..exceptions import DriverError


if t.TYPE_CHECKING:
    from ..api import BookmarkManager
    from .session import Session

    _R = t.TypeVar("_R")


log = getLogger("graphbolt.work")


def retry_delay_generator(initial_delay, multiplier, jitter_factor,
                          max_delay=None):
    """Yield exponentially growing, jittered delays.

    The n-th value is ``initial_delay * multiplier ** n``, capped at
    ``max_delay`` and then shifted by a random amount of at most
    ``jitter_factor`` times itself in either direction.
    """
    delay = initial_delay
    while True:
        if max_delay is not None:
            delay = min(delay, max_delay)
        jitter = jitter_factor * delay
        yield delay - jitter + (2 * jitter * random())
        delay *= multiplier


class RetryContext:
    """State of one retried execution of a unit of work.

    :param work: callable running a single attempt.
    :param max_retry_time: no new attempt starts once this many seconds
        passed since the context was created.
    :param delays: iterator of back-off delays, see
        :func:`retry_delay_generator`.
    """

    def __init__(self, work, max_retry_time, delays):
        self.work = work
        self.deadline = Deadline(max_retry_time)
        self.attempts = 0
        self.errors: t.List[DriverError] = []
        self._delays = delays

    @classmethod
    def from_config(cls, work, config, max_retry_time=None):
        if max_retry_time is None:
            max_retry_time = config.max_transaction_retry_time
        delays = retry_delay_generator(
            config.initial_retry_delay,
            config.retry_delay_multiplier,
            config.retry_delay_jitter_factor,
            config.max_retry_delay,
        )
        return cls(work, max_retry_time, delays)

    @property
    def last_error(self) -> t.Optional[DriverError]:
        return self.errors[-1] if self.errors else None

    def next_delay(self) -> t.Optional[float]:
        """Back-off before the next attempt, None once out of time.

        Attempts only start before the deadline, so a delay that would not
        end before it gives None as well.
        """
        remaining = self.deadline.to_timeout()
        if remaining == 0:
            return None
        delay = next(self._delays)
        if remaining is not None and delay >= remaining:
            return None
        return delay

    def run(self):
        """Call the work until it succeeds or fails for good.

        :raises DriverError: the error of the attempt if it is not
            retryable, or RETRIES_EXHAUSTED (caused by the last error) once
            the retry time is used up.
        """
        while True:
            self.attempts += 1
            try:
                return self.work()
            except DriverError as error:
                if not error.retryable:
                    raise
                self.errors.append(error)
            delay = self.next_delay()
            if delay is None:
                break
            log.warning("Transaction failed and will be retried in %ss (%s)",
                        delay, self.last_error)
            sleep(delay)
        last_error = self.last_error
        raise DriverError.retries_exhausted(
            last_error, self.attempts
        ) from last_error


class TransactionExecutor:
    """Runs units of work in managed transactions.

    Each attempt gets a fresh :class:`.Session`, so a failed attempt never
    reuses the connection or the address selection of the previous one::

        executor = driver.transaction_executor()
        count = executor.execute(READ_ACCESS, "neo4j", count_people_tx)

    :param pool: connection pool the sessions acquire from.
    :param config: :class:`.WorkspaceConfig` of the sessions.
    :param bookmark_manager: manager receiving the bookmark of each
        committed unit of work; it also supplies the bookmarks of every
        attempt.
    """

    def __init__(self, pool, config: WorkspaceConfig,
                 bookmark_manager: t.Optional[BookmarkManager] = None):
        self._pool = pool
        self._config = config
        if bookmark_manager is None:
            bookmark_manager = config.bookmark_manager
        self._bookmark_manager = bookmark_manager

    @property
    def bookmark_manager(self) -> t.Optional[BookmarkManager]:
        return self._bookmark_manager

    def _session(self, access_mode, database) -> Session:
        from .session import Session

        config = SessionConfig(
            self._config,
            database=database,
            default_access_mode=access_mode,
            bookmark_manager=self._bookmark_manager,
        )
        return Session(self._pool, config)

    def execute(
        self,
        access_mode: str,
        database: t.Optional[str],
        work: t.Callable[..., _R],
        *args: t.Any,
        max_retry_time: t.Optional[float] = None,
        **kwargs: t.Any
    ) -> _R:
        """Run ``work(tx, *args, **kwargs)`` until it commits.

        :param access_mode: READ_ACCESS or WRITE_ACCESS.
        :param database: database to run against, None for the default.
        :param work: unit of work taking a :class:`.ManagedTransaction`.
            It may be called more than once and has to be idempotent.
        :param max_retry_time: overrides ``max_transaction_retry_time``.

        :returns: what the last, successful call of ``work`` returned.
        """
        access_mode = check_access_mode(access_mode)
        if not callable(work):
            raise TypeError("Unit of work is not callable")

        def attempt():
            with self._session(access_mode, database) as session:
                return session._run_transaction_attempt(
                    access_mode, work, args, kwargs
                )

        retry = RetryContext.from_config(attempt, self._config,
                                         max_retry_time=max_retry_time)
        return retry.run()
