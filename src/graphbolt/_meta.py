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

import platform
import sys
import typing as t
from functools import wraps
from warnings import warn


if t.TYPE_CHECKING:
    _FuncT = t.TypeVar("_FuncT", bound=t.Callable)


package = "graphbolt"
version = "1.0.0"


def _compute_user_agent() -> str:
    version_info = "{}.{}.{}".format(*sys.version_info[:3])
    return (f"{package}/{version} "
            f"Python/{version_info}-{platform.python_implementation()} "
            f"({sys.platform})")


USER_AGENT = _compute_user_agent()


def get_user_agent():
    """Obtain the default user agent string sent to the server in HELLO."""
    return USER_AGENT


class PreviewWarning(Warning):
    """A driver feature in preview has been used.

    It might be changed without following the deprecation policy.
    """


def preview_warn(message, stack_level=1):
    message += " It might be changed without following the deprecation policy."
    warn(message, category=PreviewWarning, stacklevel=stack_level + 1)


def preview(message: str) -> t.Callable[[_FuncT], _FuncT]:
    """Decorator for tagging preview functions and methods.

    ::

        @preview("foo is a preview.")
        def foo(x):
            pass
    """
    def decorator(f):
        @wraps(f)
        def inner(*args, **kwargs):
            preview_warn(message, stack_level=2)
            return f(*args, **kwargs)

        inner._without_warning = f
        return inner

    return decorator
