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


from .addressing import (
    Address,
    IPv4Address,
    IPv6Address,
)
from .api import (
    Auth,
    basic_auth,
    bearer_auth,
    BookmarkManager,
    Bookmarks,
    custom_auth,
    DEFAULT_DATABASE,
    READ_ACCESS,
    RoutingControl,
    ServerInfo,
    SYSTEM_DATABASE,
    Version,
    WRITE_ACCESS,
)
from ._conf import (
    PoolConfig,
    RoutingConfig,
    SessionConfig,
    TrustAll,
    TrustCustomCAs,
    TrustSystemCAs,
    WorkspaceConfig,
)
from ._data import Record
from ._meta import (
    get_user_agent,
    PreviewWarning,
    version as __version__,
)
from .bookmark_manager import DatabaseBookmarkManager
from .driver import (
    BoltDriver,
    Driver,
    GraphDatabase,
    RoutingDriver,
)
from .exceptions import (
    DriverError,
    ErrorKind,
)
from .work import (
    EagerResult,
    FutureExecutor,
    ManagedTransaction,
    Query,
    Result,
    ResultSummary,
    Session,
    SessionState,
    SummaryCounters,
    Transaction,
    TransactionExecutor,
    unit_of_work,
)


__all__ = [
    "DEFAULT_DATABASE",
    "READ_ACCESS",
    "SYSTEM_DATABASE",
    "WRITE_ACCESS",
    "Address",
    "Auth",
    "BoltDriver",
    "BookmarkManager",
    "Bookmarks",
    "DatabaseBookmarkManager",
    "Driver",
    "DriverError",
    "EagerResult",
    "ErrorKind",
    "FutureExecutor",
    "GraphDatabase",
    "IPv4Address",
    "IPv6Address",
    "ManagedTransaction",
    "PoolConfig",
    "PreviewWarning",
    "Query",
    "Record",
    "Result",
    "ResultSummary",
    "RoutingConfig",
    "RoutingControl",
    "RoutingDriver",
    "ServerInfo",
    "Session",
    "SessionConfig",
    "SessionState",
    "SummaryCounters",
    "Transaction",
    "TransactionExecutor",
    "TrustAll",
    "TrustCustomCAs",
    "TrustSystemCAs",
    "Version",
    "WorkspaceConfig",
    "__version__",
    "basic_auth",
    "bearer_auth",
    "custom_auth",
    "get_user_agent",
    "unit_of_work",
]
