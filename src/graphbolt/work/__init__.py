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


"""Sessions, transactions, results and the retry engine."""


__all__ = [
    "EagerResult",
    "FutureExecutor",
    "ManagedTransaction",
    "Query",
    "Result",
    "ResultSummary",
    "RetryContext",
    "Session",
    "SessionState",
    "SummaryCounters",
    "Transaction",
    "TransactionExecutor",
    "Workspace",
    "retry_delay_generator",
    "unit_of_work",
]


from .futures import FutureExecutor
from .query import (
    Query,
    unit_of_work,
)
from .result import Result
from .retry import (
    retry_delay_generator,
    RetryContext,
    TransactionExecutor,
)
from .session import (
    Session,
    SessionState,
)
from .summary import (
    EagerResult,
    ResultSummary,
    SummaryCounters,
)
from .transaction import (
    ManagedTransaction,
    Transaction,
)
from .workspace import Workspace
