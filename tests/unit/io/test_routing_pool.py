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


import threading

import pytest
from freezegun import freeze_time

from graphbolt._conf import (
    PoolConfig,
    RoutingConfig,
    WorkspaceConfig,
)
from graphbolt.addressing import Address
from graphbolt.api import (
    READ_ACCESS,
    WRITE_ACCESS,
)
from graphbolt.exceptions import (
    DriverError,
    ErrorKind,
)
from graphbolt.io import RoutingPool
from graphbolt.work import TransactionExecutor


ROUTER1_ADDRESS = Address(("1.2.3.1", 9000))
ROUTER2_ADDRESS = Address(("1.2.3.1", 9001))
ROUTER3_ADDRESS = Address(("1.2.3.1", 9002))
READER1_ADDRESS = Address(("1.2.3.1", 9010))
READER2_ADDRESS = Address(("1.2.3.1", 9011))
READER3_ADDRESS = Address(("1.2.3.1", 9012))
WRITER_ADDRESS = Address(("1.2.3.1", 9020))
SEED_ADDRESS = Address(("1.2.3.1", 9100))


def _routing_info(readers=(READER1_ADDRESS,), writers=(WRITER_ADDRESS,),
                  routers=(ROUTER1_ADDRESS, ROUTER2_ADDRESS, ROUTER3_ADDRESS),
                  ttl=1000):
    servers = [{"addresses": [str(a) for a in routers], "role": "ROUTE"}]
    if readers:
        servers.append({"addresses": [str(a) for a in readers],
                        "role": "READ"})
    if writers:
        servers.append({"addresses": [str(a) for a in writers],
                        "role": "WRITE"})
    return [{"ttl": ttl, "servers": servers}]


@pytest.fixture
def routing_failure_opener(fake_connection_generator, mocker):
    def make_opener(failures=None, routing_info=None, unreachable=()):
        def routing_side_effect(*args, **kwargs):
            res = next(failures, None)
            if res is None:
                return opener_.routing_info
            raise res

        def open_(addr, deadline):
            if addr in unreachable:
                raise DriverError(ErrorKind.SERVICE_UNAVAILABLE,
                                  f"Failed to connect to {addr}",
                                  address=addr)
            connection = fake_connection_generator()
            connection.unresolved_address = addr
            connection.deadline = deadline
            route_mock = mocker.Mock()
            route_mock.side_effect = routing_side_effect
            connection.attach_mock(route_mock, "route")
            opener_.connections.append(connection)
            return connection

        failures = iter(failures or [])
        opener_ = mocker.Mock()
        opener_.connections = []
        opener_.routing_info = routing_info or _routing_info()
        opener_.side_effect = open_
        return opener_

    return make_opener


@pytest.fixture
def opener(routing_failure_opener):
    return routing_failure_opener()


def _route_calls(opener):
    return sum(cx.route.call_count for cx in opener.connections)


def _simple_pool(opener, **config) -> RoutingPool:
    return RoutingPool(
        opener, PoolConfig(**config), WorkspaceConfig(), ROUTER1_ADDRESS,
        routing_config=RoutingConfig(),
    )


def test_acquires_new_routing_table_if_deleted(opener):
    pool = _simple_pool(opener)
    cx = pool.acquire(READ_ACCESS, 30, "test_db", None)
    pool.release(cx)
    assert pool.routing_tables.get("test_db")

    del pool.routing_tables["test_db"]

    cx = pool.acquire(READ_ACCESS, 30, "test_db", None)
    pool.release(cx)
    assert pool.routing_tables.get("test_db")
    assert _route_calls(opener) == 2


def test_acquires_new_routing_table_if_stale(opener):
    with freeze_time("2024-01-01 00:00:00") as frozen_time:
        pool = _simple_pool(opener)
        cx = pool.acquire(READ_ACCESS, 30, "test_db", None)
        pool.release(cx)
        old_table = pool.routing_tables["test_db"]

        frozen_time.tick(1001)
        cx = pool.acquire(READ_ACCESS, 30, "test_db", None)
        pool.release(cx)

    new_table = pool.routing_tables["test_db"]
    assert new_table is not old_table
    assert new_table.last_updated_time > old_table.last_updated_time


def test_fresh_routing_table_is_reused(opener):
    pool = _simple_pool(opener)
    for _ in range(3):
        cx = pool.acquire(READ_ACCESS, 30, "test_db", None)
        pool.release(cx)
    assert _route_calls(opener) == 1


def test_removes_old_routing_table(opener):
    with freeze_time("2024-01-01 00:00:00") as frozen_time:
        pool = _simple_pool(opener)
        cx = pool.acquire(READ_ACCESS, 30, "test_db1", None)
        pool.release(cx)
        cx = pool.acquire(READ_ACCESS, 30, "test_db2", None)
        pool.release(cx)

        # ttl of 1000 plus the default purge delay of 30
        frozen_time.tick(1031)
        cx = pool.acquire(READ_ACCESS, 30, "test_db1", None)
        pool.release(cx)

    assert "test_db1" in pool.routing_tables
    assert "test_db2" not in pool.routing_tables


def test_expired_table_kept_within_purge_delay(opener):
    with freeze_time("2024-01-01 00:00:00") as frozen_time:
        pool = _simple_pool(opener)
        for db in ("test_db1", "test_db2"):
            cx = pool.acquire(READ_ACCESS, 30, db, None)
            pool.release(cx)

        frozen_time.tick(1010)
        cx = pool.acquire(READ_ACCESS, 30, "test_db1", None)
        pool.release(cx)

    assert "test_db2" in pool.routing_tables


@pytest.mark.parametrize("type_", ("r", "w"))
def test_chooses_right_connection_type(opener, type_):
    pool = _simple_pool(opener)
    cx1 = pool.acquire(READ_ACCESS if type_ == "r" else WRITE_ACCESS,
                       30, "test_db", None)
    pool.release(cx1)
    if type_ == "r":
        assert cx1.unresolved_address == READER1_ADDRESS
    else:
        assert cx1.unresolved_address == WRITER_ADDRESS


def test_round_robin_over_readers(routing_failure_opener):
    opener = routing_failure_opener(routing_info=_routing_info(
        readers=(READER1_ADDRESS, READER2_ADDRESS, READER3_ADDRESS),
    ))
    pool = _simple_pool(opener)
    addresses = []
    for _ in range(6):
        cx = pool.acquire(READ_ACCESS, 30, "test_db", None)
        addresses.append(cx.unresolved_address)
        pool.release(cx)
    assert addresses == [
        READER1_ADDRESS, READER2_ADDRESS, READER3_ADDRESS,
        READER1_ADDRESS, READER2_ADDRESS, READER3_ADDRESS,
    ]


def test_reuses_connection(opener):
    pool = _simple_pool(opener)
    cx1 = pool.acquire(READ_ACCESS, 30, "test_db", None)
    pool.release(cx1)
    cx2 = pool.acquire(READ_ACCESS, 30, "test_db", None)
    assert cx1 is cx2


def test_concurrent_refreshes_fetch_once(opener):
    pool = _simple_pool(opener)
    barrier = threading.Barrier(8)
    results = []
    lock = threading.Lock()

    def worker():
        barrier.wait()
        updated = pool.ensure_routing_table_is_fresh(
            access_mode=READ_ACCESS, database="test_db", bookmarks=None,
            acquisition_timeout=30,
        )
        with lock:
            results.append(updated)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(results) == [False] * 7 + [True]
    assert _route_calls(opener) == 1


def test_refreshes_of_different_databases_are_independent(opener):
    pool = _simple_pool(opener)
    for db in ("db1", "db2"):
        assert pool.ensure_routing_table_is_fresh(
            access_mode=READ_ACCESS, database=db, bookmarks=None,
            acquisition_timeout=30,
        )
    assert set(pool.routing_tables) == {"db1", "db2"}
    assert pool._database_lock("db1") is not pool._database_lock("db2")


def test_route_receives_database_and_bookmarks(opener):
    pool = _simple_pool(opener)
    cx = pool.acquire(READ_ACCESS, 30, "test_db", ["bm:1"])
    pool.release(cx)
    router, = (c for c in opener.connections
               if c.unresolved_address == ROUTER1_ADDRESS)
    router.route.assert_called_once_with(database="test_db",
                                         bookmarks=["bm:1"])


def test_default_database_from_workspace_config(opener):
    pool = RoutingPool(
        opener, PoolConfig(), WorkspaceConfig(database="movies"),
        ROUTER1_ADDRESS,
    )
    cx = pool.acquire(READ_ACCESS, 30, None, None)
    pool.release(cx)
    router = opener.connections[0]
    router.route.assert_called_once_with(database="movies", bookmarks=None)


def test_unreachable_seed_router(routing_failure_opener):
    opener = routing_failure_opener(unreachable=(ROUTER1_ADDRESS,))
    pool = _simple_pool(opener)

    with pytest.raises(DriverError) as exc:
        pool.acquire(READ_ACCESS, 30, "test_db", None)

    assert exc.value.kind is ErrorKind.SERVICE_UNAVAILABLE
    assert "routing information" in str(exc.value)


def test_all_known_routers_unreachable(routing_failure_opener):
    unreachable = []
    opener = routing_failure_opener(unreachable=unreachable)
    pool = RoutingPool(opener, PoolConfig(), WorkspaceConfig(), SEED_ADDRESS)
    with freeze_time("2024-01-01 00:00:00") as frozen_time:
        cx = pool.acquire(READ_ACCESS, 30, "test_db", None)
        pool.release(cx)
        assert pool.routing_tables["test_db"].routers == (
            ROUTER1_ADDRESS, ROUTER2_ADDRESS, ROUTER3_ADDRESS,
        )

        unreachable.extend((ROUTER1_ADDRESS, ROUTER2_ADDRESS,
                            ROUTER3_ADDRESS, SEED_ADDRESS))
        pool.deactivate(SEED_ADDRESS)
        frozen_time.tick(1001)
        with pytest.raises(DriverError) as exc:
            pool.acquire(READ_ACCESS, 30, "test_db", None)

    assert exc.value.kind is ErrorKind.SERVICE_UNAVAILABLE
    assert exc.value.retryable
    attempted = {call.args[0] for call in opener.call_args_list}
    assert {ROUTER1_ADDRESS, ROUTER2_ADDRESS,
            ROUTER3_ADDRESS} <= attempted


def test_falls_back_to_later_seed_addresses(routing_failure_opener):
    opener = routing_failure_opener(unreachable=(SEED_ADDRESS,))
    pool = RoutingPool(opener, PoolConfig(), WorkspaceConfig(),
                       SEED_ADDRESS, ROUTER2_ADDRESS)
    assert pool.initial_addresses == (SEED_ADDRESS, ROUTER2_ADDRESS)

    cx = pool.acquire(READ_ACCESS, 30, "test_db", None)

    assert cx.unresolved_address == READER1_ADDRESS
    opened = [call.args[0] for call in opener.call_args_list]
    assert opened[:2] == [SEED_ADDRESS, ROUTER2_ADDRESS]


@pytest.mark.parametrize("error", (
    DriverError(ErrorKind.SERVICE_UNAVAILABLE, "down"),
    DriverError(ErrorKind.SESSION_EXPIRED, "expired"),
    DriverError.hydrate(code="Neo.TransientError.General.Foo",
                        message="later"),
))
def test_tries_next_router_on_failure(routing_failure_opener, error):
    with freeze_time("2024-01-01 00:00:00") as frozen_time:
        opener = routing_failure_opener(failures=[None, error])
        pool = _simple_pool(opener)
        cx = pool.acquire(READ_ACCESS, 30, "test_db", None)
        pool.release(cx)

        frozen_time.tick(1001)
        cx = pool.acquire(READ_ACCESS, 30, "test_db", None)
        pool.release(cx)

    assert _route_calls(opener) == 3
    assert pool.routing_tables["test_db"].readers == (READER1_ADDRESS,)


@pytest.mark.parametrize("code", (
    "Neo.ClientError.Database.DatabaseNotFound",
    "Neo.ClientError.Transaction.InvalidBookmark",
    "Neo.ClientError.Transaction.InvalidBookmarkMixture",
    "Neo.ClientError.Statement.TypeError",
    "Neo.ClientError.Statement.ArgumentError",
    "Neo.ClientError.Request.Invalid",
))
def test_fatal_discovery_errors_propagate(routing_failure_opener, code):
    error = DriverError.hydrate(code=code, message="fatal")
    opener = routing_failure_opener(failures=[error])
    pool = _simple_pool(opener)

    with pytest.raises(DriverError) as exc:
        pool.acquire(READ_ACCESS, 30, "test_db", None)

    assert exc.value is error
    assert _route_calls(opener) == 1


def test_security_errors_propagate(routing_failure_opener):
    error = DriverError.hydrate(
        code="Neo.ClientError.Security.Unauthorized", message="no"
    )
    opener = routing_failure_opener(failures=[error])
    pool = _simple_pool(opener)

    with pytest.raises(DriverError) as exc:
        pool.acquire(READ_ACCESS, 30, "test_db", None)

    assert exc.value.kind is ErrorKind.SECURITY


@pytest.mark.parametrize("routing_info", (
    [],
    [None],
    [{"ttl": 1000}],
    [{"servers": []}],
    _routing_info(routers=()),
))
def test_unusable_routing_info_is_rejected(routing_failure_opener,
                                           routing_info):
    opener = routing_failure_opener(routing_info=routing_info or [None])
    pool = _simple_pool(opener)
    with pytest.raises(DriverError) as exc:
        pool.acquire(READ_ACCESS, 30, "test_db", None)
    assert exc.value.kind is ErrorKind.SERVICE_UNAVAILABLE


def test_table_without_readers(routing_failure_opener):
    opener = routing_failure_opener(
        routing_info=_routing_info(readers=())
    )
    pool = _simple_pool(opener)

    with pytest.raises(DriverError) as exc:
        pool.acquire(READ_ACCESS, 30, "test_db", None)

    assert exc.value.kind is ErrorKind.SESSION_EXPIRED
    assert pool.routing_tables["test_db"].readers == ()
    cx = pool.acquire(WRITE_ACCESS, 30, "test_db", None)
    assert cx.unresolved_address == WRITER_ADDRESS


def test_table_without_writers(routing_failure_opener):
    opener = routing_failure_opener(
        routing_info=_routing_info(writers=())
    )
    pool = _simple_pool(opener)
    cx = pool.acquire(READ_ACCESS, 30, "test_db", None)
    pool.release(cx)
    assert pool.routing_tables["test_db"].initialized_without_writers

    with pytest.raises(DriverError) as exc:
        pool.acquire(WRITE_ACCESS, 30, "test_db", None)

    assert exc.value.kind is ErrorKind.SESSION_EXPIRED
    # the write attempt refreshed the table
    assert _route_calls(opener) == 2


def test_write_failure_removes_writer(opener):
    pool = _simple_pool(opener)
    cx = pool.acquire(WRITE_ACCESS, 30, "test_db", None)

    pool.on_write_failure(WRITER_ADDRESS, "test_db")

    table = pool.routing_tables["test_db"]
    assert table.writers == ()
    assert table.readers == (READER1_ADDRESS,)
    assert WRITER_ADDRESS not in table.routers
    pool.release(cx)


def test_write_failure_for_unknown_database_is_noop(opener):
    pool = _simple_pool(opener)
    pool.on_write_failure(WRITER_ADDRESS, "unknown")
    assert "unknown" not in pool.routing_tables


def test_deactivate_removes_address_from_tables(opener):
    pool = _simple_pool(opener)
    for db in ("db1", "db2"):
        cx = pool.acquire(READ_ACCESS, 30, db, None)
        pool.release(cx)

    pool.deactivate(READER1_ADDRESS)

    for db in ("db1", "db2"):
        assert READER1_ADDRESS not in pool.routing_tables[db]
    reader, = (c for c in opener.connections
               if c.unresolved_address == READER1_ADDRESS)
    reader.close.assert_called_once()
    assert pool.connection_count(READER1_ADDRESS) == 0


def test_unreachable_reader_is_skipped(routing_failure_opener):
    opener = routing_failure_opener(
        routing_info=_routing_info(
            readers=(READER1_ADDRESS, READER2_ADDRESS),
        ),
        unreachable=(READER1_ADDRESS,),
    )
    pool = _simple_pool(opener)

    cx = pool.acquire(READ_ACCESS, 30, "test_db", None)

    assert cx.unresolved_address == READER2_ADDRESS
    assert READER1_ADDRESS not in pool.routing_tables["test_db"]


def test_connection_acquisition_timeout_is_not_retried(opener):
    pool = _simple_pool(opener, max_connection_pool_size=1)
    cx = pool.acquire(WRITE_ACCESS, 30, "test_db", None)

    with pytest.raises(DriverError) as exc:
        pool.acquire(WRITE_ACCESS, 0.01, "test_db", None)

    assert exc.value.kind is ErrorKind.CONNECTION_ACQUISITION_TIMEOUT
    assert WRITER_ADDRESS in pool.routing_tables["test_db"]
    pool.release(cx)


def test_stale_addresses_are_dropped_from_pool(routing_failure_opener):
    with freeze_time("2024-01-01 00:00:00") as frozen_time:
        opener = routing_failure_opener(routing_info=_routing_info(
            readers=(READER1_ADDRESS,),
        ))
        pool = _simple_pool(opener)
        cx = pool.acquire(READ_ACCESS, 30, "test_db", None)
        pool.release(cx)

        # the next table no longer lists READER1
        opener.routing_info = _routing_info(readers=(READER2_ADDRESS,))
        frozen_time.tick(1001)
        cx2 = pool.acquire(READ_ACCESS, 30, "test_db", None)

    assert cx2.unresolved_address == READER2_ADDRESS
    cx.close.assert_called_once()
    assert pool.connection_count(READER1_ADDRESS) == 0


def test_zero_timeout_reuses_idle_connection(opener):
    pool = _simple_pool(opener, max_connection_pool_size=1)
    cx1 = pool.acquire(READ_ACCESS, 30, "test_db", None)
    pool.release(cx1)

    cx2 = pool.acquire(READ_ACCESS, 0, "test_db", None)

    assert cx2 is cx1


def _retrying_executor(pool):
    config = WorkspaceConfig(
        max_transaction_retry_time=3, initial_retry_delay=1,
        retry_delay_multiplier=1, retry_delay_jitter_factor=0,
    )
    return TransactionExecutor(pool, config)


def test_executor_retries_routing_until_deadline(routing_failure_opener,
                                                 mocker):
    opener = routing_failure_opener(unreachable=(SEED_ADDRESS,))
    pool = RoutingPool(opener, PoolConfig(), WorkspaceConfig(), SEED_ADDRESS)
    calls = []
    with freeze_time("2024-01-01 00:00:00") as frozen_time:
        sleep = mocker.patch("graphbolt.work.retry.sleep",
                             side_effect=frozen_time.tick)
        with pytest.raises(DriverError) as exc:
            _retrying_executor(pool).execute(READ_ACCESS, "test_db",
                                             calls.append)

    assert exc.value.kind is ErrorKind.RETRIES_EXHAUSTED
    assert exc.value.last_error.kind is ErrorKind.SERVICE_UNAVAILABLE
    assert "3 attempt(s)" in str(exc.value)
    assert sleep.call_count == 2
    assert [call.args[0] for call in opener.call_args_list] == [
        SEED_ADDRESS, SEED_ADDRESS, SEED_ADDRESS,
    ]
    assert calls == []


def test_executor_recovers_once_router_is_reachable(routing_failure_opener,
                                                    mocker):
    unreachable = [SEED_ADDRESS]
    opener = routing_failure_opener(unreachable=unreachable)
    pool = RoutingPool(opener, PoolConfig(), WorkspaceConfig(), SEED_ADDRESS)
    used = []

    def work(tx):
        used.append(tx._connection)
        tx.run("RETURN 1")
        return "ok"

    with freeze_time("2024-01-01 00:00:00") as frozen_time:
        def sleep(delay):
            frozen_time.tick(delay)
            if sleep_mock.call_count == 2:
                unreachable.clear()

        sleep_mock = mocker.patch("graphbolt.work.retry.sleep",
                                  side_effect=sleep)
        result = _retrying_executor(pool).execute(READ_ACCESS, "test_db",
                                                  work)

    assert result == "ok"
    assert sleep_mock.call_count == 2
    assert [cx.unresolved_address for cx in used] == [READER1_ADDRESS]
    used[0].run.assert_called_once()
    used[0].commit.assert_called_once()
    assert pool.routing_tables["test_db"].readers == (READER1_ADDRESS,)


def test_acquire_rejects_invalid_access_mode(opener):
    pool = _simple_pool(opener)
    with pytest.raises(DriverError) as exc:
        pool.acquire("x", 30, "test_db", None)
    assert exc.value.kind is ErrorKind.CONFIGURATION


def test_close_clears_routing_tables(opener):
    pool = _simple_pool(opener)
    cx = pool.acquire(READ_ACCESS, 30, "test_db", None)
    pool.release(cx)

    pool.close()

    assert not pool.routing_tables
    with pytest.raises(DriverError) as exc:
        pool.acquire(READ_ACCESS, 30, "test_db", None)
    assert exc.value.kind is ErrorKind.ILLEGAL_STATE
    for connection in opener.connections:
        connection.close.assert_called_once()


def test_open_adds_address_to_routing_context(mocker):
    pool = RoutingPool.open(
        ROUTER1_ADDRESS, pool_config=PoolConfig(),
        workspace_config=WorkspaceConfig(),
        routing_context={"region": "eu"},
    )
    open_mock = mocker.patch("graphbolt.io._pool.Bolt.open")
    pool.opener(ROUTER1_ADDRESS, None)
    kwargs = open_mock.call_args.kwargs
    assert kwargs["routing_context"] == {"region": "eu",
                                         "address": "1.2.3.1:9000"}
    assert not pool.is_direct_pool


def test_open_rejects_reserved_routing_context_key():
    with pytest.raises(DriverError) as exc:
        RoutingPool.open(
            ROUTER1_ADDRESS, pool_config=PoolConfig(),
            workspace_config=WorkspaceConfig(),
            routing_context={"address": "somewhere"},
        )
    assert exc.value.kind is ErrorKind.CONFIGURATION
