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
from abc import ABCMeta
from collections.abc import Mapping
from dataclasses import (
    dataclass,
    field,
)

from .api import (
    DEFAULT_DATABASE,
    WRITE_ACCESS,
)
from .exceptions import (
    DriverError,
    ErrorKind,
)


def iter_items(iterable):
    """Iterate through the key-value pairs of a dictionary-like object.

    If the object has a `keys` method, it is used along with `__getitem__`.
    Otherwise, each element is assumed to be a 2-tuple of key and value.
    """
    if hasattr(iterable, "keys"):
        for key in iterable.keys():
            yield key, iterable[key]
    else:
        for key, value in iterable:
            yield key, value


def _config_error(message):
    return DriverError(ErrorKind.CONFIGURATION, message)


class TrustStore:
    """Base class of all trust strategies.

    A trust strategy decides which server certificates are accepted on
    encrypted connections. :meth:`verify` receives the DER-encoded
    certificate of every new connection once the TLS handshake finished;
    subclasses can override it to add checks such as certificate pinning.
    """

    def verify(self, certificate: t.Optional[bytes]) -> bool:
        return True

    def __eq__(self, other):
        if not isinstance(other, TrustStore):
            return NotImplemented
        return type(self) is type(other) and vars(self) == vars(other)

    def __hash__(self):
        return hash(type(self))


class TrustSystemCAs(TrustStore):
    """Trust certificates that verify against the system CAs (default).

    For example::

        import graphbolt
        driver = graphbolt.GraphDatabase.driver(
            url, auth=auth, trusted_certificates=graphbolt.TrustSystemCAs()
        )
    """


class TrustAll(TrustStore):
    """Trust any server certificate.

    This ensures that communication is encrypted but does not verify the
    server certificate against a certificate authority.

    .. warning::
        This still leaves you vulnerable to man-in-the-middle attacks.
    """


class TrustCustomCAs(TrustStore):
    """Trust certificates signed by the CAs at the given paths.

    :param certificates: paths to the CA certificates to trust.
    """

    def __init__(self, *certificates: str):
        self.certs = certificates


@dataclass(frozen=True)
class SecuritySettings:
    """Encryption settings of a driver."""

    encrypted: bool = False
    trusted_certificates: TrustStore = field(default_factory=TrustSystemCAs)


def default_security_settings() -> SecuritySettings:
    """Return fresh default security settings: unencrypted, system CAs."""
    return SecuritySettings(encrypted=False,
                            trusted_certificates=TrustSystemCAs())


def _positive_or_unbounded(key, value):
    if isinstance(value, bool) or not isinstance(value, int):
        raise _config_error(f"{key} must be an integer, got {value!r}")
    if value == -1 or value > 0:
        return
    raise _config_error(f"{key} must be positive or -1, got {value!r}")


def _non_negative_number(key, value):
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise _config_error(f"{key} must be a number, got {value!r}")
    if value < 0:
        raise _config_error(f"{key} must not be negative, got {value!r}")


def _optional_non_negative_number(key, value):
    if value is not None:
        _non_negative_number(key, value)


def _positive_number(key, value):
    _non_negative_number(key, value)
    if value == 0:
        raise _config_error(f"{key} must be greater than 0")


def _lifetime(key, value):
    # negative values disable the lifetime check
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise _config_error(f"{key} must be a number, got {value!r}")


def _multiplier(key, value):
    _non_negative_number(key, value)
    if value < 1:
        raise _config_error(f"{key} must be at least 1, got {value!r}")


def _fraction(key, value):
    _non_negative_number(key, value)
    if value >= 1:
        raise _config_error(
            f"{key} must be at least 0 and less than 1, got {value!r}"
        )


def _boolean(key, value):
    if not isinstance(value, bool):
        raise _config_error(f"{key} must be a bool, got {value!r}")


def _trust_store(key, value):
    if not isinstance(value, TrustStore):
        raise _config_error(
            f"{key} must be a TrustStore (e.g. TrustSystemCAs(), TrustAll() "
            f"or TrustCustomCAs(...)), got {value!r}"
        )


def _optional_callable(key, value):
    if value is not None and not callable(value):
        raise _config_error(f"{key} must be callable, got {value!r}")


class ConfigType(ABCMeta):

    def __new__(mcs, name, bases, attributes):
        fields = []
        validators = {}

        for base in bases:
            if type(base) is mcs:
                fields += base.keys()
                validators.update(base._validators())

        for k, v in attributes.items():
            if (
                k.startswith("_")
                or callable(v)
                or isinstance(v, (staticmethod, classmethod, property))
            ):
                continue
            fields.append(k)

        validators.update(attributes.pop("_validate", {}))

        def keys(_):
            return set(fields)

        def _validators(_):
            return validators

        attributes.setdefault("keys", classmethod(keys))
        attributes.setdefault("_validators", classmethod(_validators))

        return super(ConfigType, mcs).__new__(mcs, name, bases, attributes)


class Config(Mapping, metaclass=ConfigType):
    """Base class for all configuration containers.

    A config is built once from keyword arguments (or other configs),
    validated, and immutable afterwards::

        >>> config = PoolConfig(max_connection_pool_size=10)
        >>> config.max_connection_pool_size
        10
        >>> config.max_connection_pool_size = 20
        Traceback (most recent call last):
            ...
        AttributeError: PoolConfig is immutable
    """

    _frozen = False

    @staticmethod
    def consume_chain(data, *config_classes):
        """Split ``data`` into one config per class.

        Keys are popped from ``data``; keys no class knows raise a
        configuration error.
        """
        values = []
        for config_class in config_classes:
            if not issubclass(config_class, Config):
                raise TypeError(f"{config_class!r} is not a Config subclass")
            values.append(config_class._consume(data))
        if data:
            raise _config_error(
                "Unexpected config keys: " + ", ".join(sorted(data.keys()))
            )
        return values

    @classmethod
    def consume(cls, data):
        config, = cls.consume_chain(data, cls)
        return config

    @classmethod
    def _consume(cls, data):
        config = {}
        if data:
            for key in cls.keys():
                try:
                    value = data.pop(key)
                except KeyError:
                    pass
                else:
                    config[key] = value
        return cls(config)

    def __init__(self, *args, **kwargs):
        values = {}
        rejected_keys = []
        for data in (*args, kwargs):
            for key, value in iter_items(data):
                if key not in self.keys():
                    if isinstance(data, Config):
                        # configs of other types share some keys
                        continue
                    rejected_keys.append(key)
                elif value is not None or isinstance(data, Config):
                    values[key] = value
        if rejected_keys:
            raise _config_error(
                "Unexpected config keys: " + ", ".join(rejected_keys)
            )
        for key, value in values.items():
            validator = self._validators().get(key)
            if validator is not None and value is not None:
                validator(key, value)
            object.__setattr__(self, key, value)
        self._validate_combination()
        object.__setattr__(self, "_frozen", True)

    def _validate_combination(self):
        pass

    def __setattr__(self, key, value):
        if self._frozen:
            raise AttributeError(f"{self.__class__.__name__} is immutable")
        super().__setattr__(key, value)

    def __delattr__(self, key):
        raise AttributeError(f"{self.__class__.__name__} is immutable")

    def __repr__(self):
        attrs = []
        for key in sorted(self):
            attrs.append(f" {key}={getattr(self, key)!r}")
        return f"<{self.__class__.__name__}{''.join(attrs)}>"

    def __len__(self):
        return len(self.keys())

    def __getitem__(self, key):
        if key not in self.keys():
            raise KeyError(key)
        return getattr(self, key)

    def __iter__(self):
        return iter(self.keys())


class PoolConfig(Config):
    """Connection pool configuration."""

    #: Max Connection Lifetime
    max_connection_lifetime = 3600  # seconds
    # Connections older than this are closed instead of being reused.

    #: Max Connection Pool Size
    max_connection_pool_size = 100
    # Maximum number of connections (idle and in use) per server address.

    #: Connection Timeout
    connection_timeout = 30.0  # seconds
    # The maximum amount of time to wait for a TCP connection to be
    # established.

    #: Liveness Check Timeout
    liveness_check_timeout = None  # seconds
    # Connections idle for longer are RESET before being handed out.

    #: Custom Resolver
    resolver = None
    # Function mapping an address to an iterable of addresses.

    #: Encrypted
    encrypted = False

    #: SSL Certificates to Trust
    trusted_certificates = TrustSystemCAs()

    #: User Agent
    user_agent = None

    #: Socket Keep Alive
    keep_alive = True

    #: Authentication
    auth = None

    _validate = {
        "max_connection_lifetime": _lifetime,
        "max_connection_pool_size": _positive_or_unbounded,
        "connection_timeout": _non_negative_number,
        "liveness_check_timeout": _optional_non_negative_number,
        "resolver": _optional_callable,
        "encrypted": _boolean,
        "trusted_certificates": _trust_store,
        "keep_alive": _boolean,
    }

    @property
    def security_settings(self) -> SecuritySettings:
        return SecuritySettings(self.encrypted, self.trusted_certificates)

    def get_ssl_context(self):
        if not self.encrypted:
            return None

        import ssl

        ssl_context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
        ssl_context.minimum_version = ssl.TLSVersion.TLSv1_2

        if isinstance(self.trusted_certificates, TrustAll):
            ssl_context.check_hostname = False
            ssl_context.verify_mode = ssl.CERT_NONE
        elif isinstance(self.trusted_certificates, TrustCustomCAs):
            ssl_context.check_hostname = True
            ssl_context.verify_mode = ssl.CERT_REQUIRED
            for cert in self.trusted_certificates.certs:
                ssl_context.load_verify_locations(cert)
        else:
            ssl_context.check_hostname = True
            ssl_context.verify_mode = ssl.CERT_REQUIRED
            # load_default_certs also picks up the Windows system store
            ssl_context.load_default_certs()

        return ssl_context


class WorkspaceConfig(Config):
    """Configuration shared by sessions and the transaction executor."""

    #: Connection Acquisition Timeout
    connection_acquisition_timeout = 60.0  # seconds
    # How long to wait for a connection from the pool, including the time
    # it takes to open a new one.

    #: Max Transaction Retry Time
    max_transaction_retry_time = 30.0  # seconds
    # No new attempt of a unit of work is started after this time.

    #: Initial Retry Delay
    initial_retry_delay = 1.0  # seconds

    #: Retry Delay Multiplier
    retry_delay_multiplier = 2.0

    #: Retry Delay Jitter Factor
    retry_delay_jitter_factor = 0.2

    #: Max Retry Delay
    max_retry_delay = 30.0  # seconds

    #: Database Name
    database = DEFAULT_DATABASE

    #: Fetch Size
    fetch_size = 1000

    #: Bookmark Manager
    bookmark_manager = None

    _validate = {
        "connection_acquisition_timeout": _positive_number,
        "max_transaction_retry_time": _non_negative_number,
        "initial_retry_delay": _positive_number,
        "retry_delay_multiplier": _multiplier,
        "retry_delay_jitter_factor": _fraction,
        "max_retry_delay": _positive_number,
        "fetch_size": _positive_or_unbounded,
    }

    def _validate_combination(self):
        if self.max_retry_delay < self.initial_retry_delay:
            raise _config_error(
                "max_retry_delay must not be smaller than initial_retry_delay"
            )


class SessionConfig(WorkspaceConfig):
    """Session configuration."""

    #: Bookmarks
    bookmarks = None

    #: Default AccessMode
    default_access_mode = WRITE_ACCESS


class RoutingConfig(Config):
    """Routing settings of the routing driver."""

    #: Routing Table Purge Delay
    routing_table_purge_delay = 30.0  # seconds
    # Tables of other databases expired for longer are dropped.

    _validate = {
        "routing_table_purge_delay": _non_negative_number,
    }
