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


import pytest

from graphbolt import (
    Address,
    ServerInfo,
    Version,
)
from graphbolt.exceptions import (
    DriverError,
    ErrorKind,
)
from graphbolt.work import (
    EagerResult,
    ResultSummary,
    SummaryCounters,
)


ADDRESS = Address(("localhost", 7687))
SERVER_INFO = ServerInfo(ADDRESS, Version(5, 0))


def _summary(**metadata):
    metadata.setdefault("server", SERVER_INFO)
    return ResultSummary(ADDRESS, had_key=True, had_record=True,
                         metadata=metadata)


def test_counters_default_to_zero():
    counters = SummaryCounters({})
    assert counters.nodes_created == 0
    assert counters.system_updates == 0
    assert not counters.contains_updates
    assert not counters.contains_system_updates


@pytest.mark.parametrize(("key", "attr"), (
    ("nodes-created", "nodes_created"),
    ("nodes-deleted", "nodes_deleted"),
    ("relationships-created", "relationships_created"),
    ("relationships-deleted", "relationships_deleted"),
    ("properties-set", "properties_set"),
    ("labels-added", "labels_added"),
    ("labels-removed", "labels_removed"),
    ("indexes-added", "indexes_added"),
    ("indexes-removed", "indexes_removed"),
    ("constraints-added", "constraints_added"),
    ("constraints-removed", "constraints_removed"),
))
def test_graph_counters_contain_updates(key, attr):
    counters = SummaryCounters({key: 3})
    assert getattr(counters, attr) == 3
    assert counters.contains_updates
    assert not counters.contains_system_updates


def test_system_updates():
    counters = SummaryCounters({"system-updates": 2})
    assert counters.system_updates == 2
    assert counters.contains_system_updates
    assert not counters.contains_updates


def test_server_flags_take_precedence():
    counters = SummaryCounters({
        "nodes-created": 1,
        "contains-updates": False,
        "contains-system-updates": True,
    })
    assert not counters.contains_updates
    assert counters.contains_system_updates


def test_unknown_counters_are_ignored():
    counters = SummaryCounters({"made-up": 1})
    assert not hasattr(counters, "made_up")
    assert not counters.contains_updates


def test_summary_fields():
    summary = _summary(
        query="RETURN $x", parameters={"x": 1}, db="movies", type="r",
        bookmark="bm:1", t_first=3, t_last=5,
        notifications=[{"code": "Neo.ClientNotification.Hint"}],
        stats={"nodes-created": 1},
    )
    assert summary.server is SERVER_INFO
    assert summary.database == "movies"
    assert summary.query == "RETURN $x"
    assert summary.parameters == {"x": 1}
    assert summary.query_type == "r"
    assert summary.bookmark == "bm:1"
    assert summary.result_available_after == 3
    assert summary.result_consumed_after == 5
    assert summary.notifications == [
        {"code": "Neo.ClientNotification.Hint"}
    ]
    assert summary.counters.nodes_created == 1
    assert "movies" in repr(summary)


def test_summary_database_falls_back_to_requested_database():
    assert _summary(database="movies").database == "movies"
    assert _summary(database="movies", db="films").database == "films"
    assert _summary().database is None


def test_summary_rejects_unknown_query_type():
    with pytest.raises(DriverError) as exc:
        _summary(type="rws")
    assert exc.value.kind is ErrorKind.PROTOCOL
    assert exc.value.address == ADDRESS


def test_eager_result_is_a_named_tuple():
    summary = _summary()
    eager = EagerResult(records=[], summary=summary, keys=["x"])
    records, summary_, keys = eager
    assert records == []
    assert summary_ is summary
    assert keys == ["x"]
    assert eager[2] is eager.keys
