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


"""Logging helpers for debugging driver internals.

The driver logs through the standard :mod:`logging` module under the
``graphbolt`` logger and its children:

* ``graphbolt.io``: wire traffic of every connection
* ``graphbolt.pool``: connection pool and routing table maintenance
* ``graphbolt.work``: sessions, transactions and retries

:func:`watch` and :class:`Watcher` attach a stream handler to any of them.
"""


from __future__ import annotations

import typing as t
from logging import (
    CRITICAL,
    DEBUG,
    ERROR,
    Formatter,
    getLogger,
    INFO,
    LogRecord,
    StreamHandler,
    WARNING,
)
from sys import stderr


__all__ = [
    "Watcher",
    "watch",
]


_ANSI_RESET = "\x1b[0m"


class ColourFormatter(Formatter):
    """Formatter marking the level of each line with an ANSI colour."""

    colours = {
        CRITICAL: "\x1b[31;1m",
        ERROR: "\x1b[33;1m",
        WARNING: "\x1b[33m",
        INFO: "\x1b[37m",
        DEBUG: "\x1b[36m",
    }

    def format(self, record: LogRecord) -> str:
        line = super().format(record)
        colour = self.colours.get(record.levelno)
        if colour:
            line = colour + line + _ANSI_RESET
        return line


def _make_formatter(colour: bool, thread_info: bool) -> Formatter:
    parts = []
    if not colour:
        parts.append("[%(levelname)-8s]")
    if thread_info:
        parts.append("[%(threadName)s]")
    parts.append("%(asctime)s  %(message)s")
    if colour:
        return ColourFormatter(" ".join(parts))
    return Formatter(" ".join(parts))


class Watcher:
    """Send the output of one or more loggers to a stream.

    Usable as a context manager::

        from graphbolt.debug import Watcher

        with Watcher("graphbolt.pool", "graphbolt.work"):
            ...  # pool and retry activity is printed to stderr

    Watchers are not scoped to a thread: while active, a watcher shows log
    lines from all threads.

    :param logger_names: names of the loggers to watch
    :param default_level: minimum level shown when :meth:`watch` is given
        none
    :param default_out: stream used when :meth:`watch` is given none
    :param colour: mark levels with ANSI colours instead of level names
    :param thread_info: prefix every line with the emitting thread's name
    """

    def __init__(
        self,
        *logger_names: t.Optional[str],
        default_level: int = DEBUG,
        default_out: t.TextIO = stderr,
        colour: bool = False,
        thread_info: bool = True,
    ) -> None:
        self.logger_names = logger_names
        self.default_level = default_level
        self.default_out = default_out
        self.formatter = _make_formatter(colour, thread_info)
        self._loggers = [getLogger(name) for name in logger_names]
        self._handler: t.Optional[StreamHandler] = None

    def __enter__(self) -> Watcher:
        self.watch()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()

    def watch(
        self, level: t.Optional[int] = None, out: t.Optional[t.TextIO] = None
    ) -> None:
        """Start (or restart) showing log output.

        Loggers whose effective level would hide records at ``level`` are
        lowered to it.

        :param level: minimum level to show, ``default_level`` if omitted
        :param out: stream to write to, ``default_out`` if omitted
        """
        self.stop()
        if level is None:
            level = self.default_level
        handler = StreamHandler(self.default_out if out is None else out)
        handler.setLevel(level)
        handler.setFormatter(self.formatter)
        for logger in self._loggers:
            logger.addHandler(handler)
            if logger.getEffectiveLevel() > level:
                logger.setLevel(level)
        self._handler = handler

    def stop(self) -> None:
        """Stop showing log output."""
        handler, self._handler = self._handler, None
        if handler is None:
            return
        for logger in self._loggers:
            logger.removeHandler(handler)


def watch(
    *logger_names: t.Optional[str],
    level: int = DEBUG,
    out: t.TextIO = stderr,
    colour: bool = False,
    thread_info: bool = True,
) -> Watcher:
    """Start a :class:`.Watcher` right away and return it.

    ::

        from graphbolt.debug import watch

        watch("graphbolt")
        # DEBUG output of the whole driver now goes to stderr
    """
    watcher = Watcher(
        *logger_names,
        default_level=level,
        default_out=out,
        colour=colour,
        thread_info=thread_info,
    )
    watcher.watch()
    return watcher
