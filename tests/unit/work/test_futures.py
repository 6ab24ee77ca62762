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

from graphbolt import (
    FutureExecutor,
    PreviewWarning,
)
from graphbolt.api import (
    READ_ACCESS,
    WRITE_ACCESS,
)
from graphbolt.exceptions import (
    DriverError,
    ErrorKind,
)


@pytest.fixture
def driver(mocker):
    driver = mocker.Mock()
    driver.transaction_executor.return_value.execute.side_effect = \
        lambda access_mode, database, work, *args, **kwargs: (
            access_mode, database, work(None, *args, **kwargs)
        )
    return driver


def _executor(driver, **kwargs):
    with pytest.warns(PreviewWarning, match="FutureExecutor"):
        return FutureExecutor(driver, **kwargs)


def test_init_warns_preview(driver):
    with _executor(driver) as executor:
        assert isinstance(executor, FutureExecutor)
    driver.transaction_executor.assert_called_once_with()


@pytest.mark.parametrize(("method", "access_mode"), (
    ("execute_read", READ_ACCESS),
    ("execute_write", WRITE_ACCESS),
))
def test_execute_runs_in_worker_thread(driver, method, access_mode):
    def work(tx, x, y=0):
        return threading.current_thread().name, x + y

    with _executor(driver, max_workers=2, database="movies") as executor:
        future = getattr(executor, method)(work, 1, y=2)
        access_mode_, database, (thread_name, value) = future.result(10)

    assert access_mode_ == access_mode
    assert database == "movies"
    assert value == 3
    assert thread_name.startswith("graphbolt")
    assert thread_name != threading.current_thread().name


def test_execute_failure_is_set_on_future(driver):
    error = DriverError(ErrorKind.CLIENT, "bad query")
    driver.transaction_executor.return_value.execute.side_effect = error

    with _executor(driver) as executor:
        future = executor.execute_read(lambda tx: None)
        with pytest.raises(DriverError) as exc:
            future.result(10)

    assert exc.value is error
    assert future.exception() is error


def test_execute_query_defaults_database(driver):
    driver.execute_query.return_value = "eager"
    with _executor(driver, database="movies") as executor:
        future = executor.execute_query("RETURN $x", {"x": 1})
        assert future.result(10) == "eager"
    driver.execute_query.assert_called_once_with(
        "RETURN $x", {"x": 1}, database_="movies"
    )


def test_execute_query_keeps_explicit_database(driver):
    with _executor(driver, database="movies") as executor:
        executor.execute_query("RETURN 1", database_="films").result(10)
    driver.execute_query.assert_called_once_with(
        "RETURN 1", None, database_="films"
    )


def test_shutdown_rejects_new_work(driver):
    executor = _executor(driver)
    executor.shutdown()
    with pytest.raises(RuntimeError):
        executor.execute_read(lambda tx: None)
