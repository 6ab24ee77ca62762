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
    DriverError,
    ErrorKind,
    TrustAll,
    TrustCustomCAs,
    TrustSystemCAs,
    WRITE_ACCESS,
)
from graphbolt._conf import (
    Config,
    PoolConfig,
    RoutingConfig,
    SessionConfig,
    WorkspaceConfig,
)


test_pool_config = {
    "max_connection_lifetime": 3600,
    "max_connection_pool_size": 100,
    "connection_timeout": 30.0,
    "liveness_check_timeout": None,
    "resolver": None,
    "encrypted": False,
    "trusted_certificates": TrustSystemCAs(),
    "user_agent": None,
    "keep_alive": True,
    "auth": None,
}

test_workspace_config = {
    "connection_acquisition_timeout": 60.0,
    "max_transaction_retry_time": 30.0,
    "initial_retry_delay": 1.0,
    "retry_delay_multiplier": 2.0,
    "retry_delay_jitter_factor": 0.2,
    "max_retry_delay": 30.0,
    "database": None,
    "fetch_size": 1000,
    "bookmark_manager": None,
}

test_session_config = {
    **test_workspace_config,
    "bookmarks": None,
    "default_access_mode": WRITE_ACCESS,
}


@pytest.mark.parametrize(("config_cls", "expected"), (
    (PoolConfig, test_pool_config),
    (WorkspaceConfig, test_workspace_config),
    (SessionConfig, test_session_config),
    (RoutingConfig, {"routing_table_purge_delay": 30.0}),
))
def test_config_defaults(config_cls, expected):
    config = config_cls()
    assert set(config.keys()) == set(expected)
    assert dict(config) == expected


def test_config_consume_chain():
    data = {
        "max_connection_pool_size": 10,
        "fetch_size": 100,
        "routing_table_purge_delay": 5,
    }
    pool_config, workspace_config, routing_config = Config.consume_chain(
        data, PoolConfig, WorkspaceConfig, RoutingConfig
    )
    assert data == {}
    assert pool_config.max_connection_pool_size == 10
    assert workspace_config.fetch_size == 100
    assert routing_config.routing_table_purge_delay == 5


def test_config_consume_chain_rejects_unknown_keys():
    with pytest.raises(DriverError) as exc:
        Config.consume_chain({"fetch_size": 1, "foo": "bar"},
                             PoolConfig, WorkspaceConfig)
    assert exc.value.kind is ErrorKind.CONFIGURATION
    assert "foo" in str(exc.value)


def test_config_rejects_unknown_keys():
    with pytest.raises(DriverError) as exc:
        PoolConfig(fetch_size=1)
    assert exc.value.kind is ErrorKind.CONFIGURATION


def test_config_is_immutable():
    config = PoolConfig()
    with pytest.raises(AttributeError):
        config.max_connection_pool_size = 1
    with pytest.raises(AttributeError):
        del config.max_connection_pool_size


def test_config_later_sources_take_precedence():
    base = WorkspaceConfig(fetch_size=10, database="foo")
    config = SessionConfig(base, {"fetch_size": 20}, database=None)
    assert config.fetch_size == 20
    # None keyword arguments do not override
    assert config.database == "foo"


def test_session_config_inherits_from_workspace_config():
    workspace_config = WorkspaceConfig(max_transaction_retry_time=5)
    config = SessionConfig(workspace_config, default_access_mode="READ")
    assert config.max_transaction_retry_time == 5
    assert config.default_access_mode == "READ"


def test_config_getitem():
    config = PoolConfig(max_connection_pool_size=3)
    assert config["max_connection_pool_size"] == 3
    with pytest.raises(KeyError):
        config["fetch_size"]


@pytest.mark.parametrize(("config_cls", "key", "value"), (
    (PoolConfig, "max_connection_pool_size", 0),
    (PoolConfig, "max_connection_pool_size", -2),
    (PoolConfig, "max_connection_pool_size", 1.5),
    (PoolConfig, "max_connection_pool_size", True),
    (PoolConfig, "connection_timeout", -1),
    (PoolConfig, "liveness_check_timeout", -1),
    (PoolConfig, "resolver", "not callable"),
    (PoolConfig, "encrypted", "yes"),
    (PoolConfig, "trusted_certificates", "/path/to/cert"),
    (WorkspaceConfig, "connection_acquisition_timeout", -1),
    (WorkspaceConfig, "connection_acquisition_timeout", 0),
    (WorkspaceConfig, "max_transaction_retry_time", -1),
    (WorkspaceConfig, "initial_retry_delay", 0),
    (WorkspaceConfig, "retry_delay_multiplier", 0.5),
    (WorkspaceConfig, "retry_delay_jitter_factor", -0.1),
    (WorkspaceConfig, "retry_delay_jitter_factor", 1),
    (WorkspaceConfig, "max_retry_delay", 0),
    (WorkspaceConfig, "fetch_size", 0),
    (RoutingConfig, "routing_table_purge_delay", -1),
))
def test_config_validation(config_cls, key, value):
    with pytest.raises(DriverError) as exc:
        config_cls(**{key: value})
    assert exc.value.kind is ErrorKind.CONFIGURATION
    assert key in str(exc.value)


@pytest.mark.parametrize(("config_cls", "key", "value"), (
    (PoolConfig, "max_connection_pool_size", -1),
    (PoolConfig, "max_connection_lifetime", -1),
    (PoolConfig, "liveness_check_timeout", 0),
    (PoolConfig, "resolver", lambda address: [address]),
    (WorkspaceConfig, "retry_delay_jitter_factor", 0),
    (WorkspaceConfig, "retry_delay_multiplier", 1),
    (WorkspaceConfig, "fetch_size", -1),
))
def test_config_accepts_valid_values(config_cls, key, value):
    config = config_cls(**{key: value})
    assert getattr(config, key) == value


def test_max_retry_delay_must_not_undercut_initial_delay():
    with pytest.raises(DriverError) as exc:
        WorkspaceConfig(initial_retry_delay=10, max_retry_delay=5)
    assert exc.value.kind is ErrorKind.CONFIGURATION


def test_ssl_context_not_created_when_not_encrypted():
    assert PoolConfig().get_ssl_context() is None


def test_ssl_context_trust_all():
    import ssl

    config = PoolConfig(encrypted=True, trusted_certificates=TrustAll())
    context = config.get_ssl_context()
    assert context.verify_mode == ssl.CERT_NONE
    assert context.check_hostname is False


def test_ssl_context_trust_system_cas():
    import ssl

    config = PoolConfig(encrypted=True)
    context = config.get_ssl_context()
    assert context.verify_mode == ssl.CERT_REQUIRED
    assert context.check_hostname is True


def test_trust_store_equality():
    assert TrustAll() == TrustAll()
    assert TrustAll() != TrustSystemCAs()
    assert TrustCustomCAs("a") == TrustCustomCAs("a")
    assert TrustCustomCAs("a") != TrustCustomCAs("b")


def test_security_settings():
    settings = PoolConfig(encrypted=True,
                          trusted_certificates=TrustAll()).security_settings
    assert settings.encrypted is True
    assert settings.trusted_certificates == TrustAll()
