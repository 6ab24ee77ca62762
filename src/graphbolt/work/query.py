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
from functools import wraps


if t.TYPE_CHECKING:
    _T = t.TypeVar("_T")


class Query:
    """A query with attached extra data.

    Pass it to :meth:`.Session.run` or :meth:`.Driver.execute_query` to
    attach transaction metadata or a timeout, fulfilling a similar role as
    :func:`.unit_of_work` for transaction functions.

    :param text: The query text.
    :param metadata: a dictionary with metadata attached to the executing
        transaction. The server lists it with the running transactions and
        writes it to its query log.
    :param timeout: the transaction timeout in seconds. The server terminates
        transactions that run longer. ``0`` lets the transaction run
        indefinitely; :data:`None` uses the server's default.
    """

    def __init__(
        self,
        text: str,
        metadata: t.Optional[t.Dict[str, t.Any]] = None,
        timeout: t.Optional[float] = None
    ) -> None:
        self.text = text
        self.metadata = metadata
        self.timeout = timeout

    def __str__(self) -> str:
        return str(self.text)

    def __repr__(self) -> str:
        return (f"<{self.__class__.__name__} text={self.text!r} "
                f"metadata={self.metadata!r} timeout={self.timeout!r}>")


def unit_of_work(
    metadata: t.Optional[t.Dict[str, t.Any]] = None,
    timeout: t.Optional[float] = None
) -> t.Callable[[_T], _T]:
    """Decorator giving extra control over transaction function configuration.

    For example, a timeout may be applied::

        from graphbolt import unit_of_work

        @unit_of_work(timeout=100)
        def count_people_tx(tx):
            result = tx.run("MATCH (a:Person) RETURN count(a) AS persons")
            record = result.single()
            return record["persons"]

    :param metadata: a dictionary with metadata attached to the transaction.
    :param timeout: the transaction timeout in seconds, see :class:`.Query`.
    """

    def wrapper(f):
        @wraps(f)
        def wrapped(*args, **kwargs):
            return f(*args, **kwargs)

        wrapped.metadata = metadata
        wrapped.timeout = timeout
        return wrapped

    return wrapper
