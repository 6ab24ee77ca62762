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


"""Base classes and helpers."""


from __future__ import annotations

import abc
import typing as t
from enum import Enum
from urllib.parse import (
    parse_qs,
    urlparse,
)

from .exceptions import (
    DriverError,
    ErrorKind,
)


if t.TYPE_CHECKING:
    from .addressing import Address


__all__ = [
    "DEFAULT_DATABASE",
    "DRIVER_BOLT",
    "DRIVER_ROUTING",
    "READ_ACCESS",
    "SECURITY_TYPE_NOT_SECURE",
    "SECURITY_TYPE_SECURE",
    "SECURITY_TYPE_SELF_SIGNED_CERTIFICATE",
    "SYSTEM_DATABASE",
    "URI_SCHEME_BOLT",
    "URI_SCHEME_BOLT_SECURE",
    "URI_SCHEME_BOLT_SELF_SIGNED_CERTIFICATE",
    "URI_SCHEME_NEO4J",
    "URI_SCHEME_NEO4J_SECURE",
    "URI_SCHEME_NEO4J_SELF_SIGNED_CERTIFICATE",
    "WRITE_ACCESS",
    "Auth",
    "BookmarkManager",
    "Bookmarks",
    "RoutingControl",
    "ServerInfo",
    "Version",
    "basic_auth",
    "bearer_auth",
    "check_access_mode",
    "custom_auth",
    "parse_routing_context",
    "parse_uri",
]


READ_ACCESS = "READ"
WRITE_ACCESS = "WRITE"

DRIVER_BOLT = "DRIVER_BOLT"
DRIVER_ROUTING = "DRIVER_ROUTING"

SECURITY_TYPE_NOT_SECURE = "SECURITY_TYPE_NOT_SECURE"
SECURITY_TYPE_SELF_SIGNED_CERTIFICATE = "SECURITY_TYPE_SELF_SIGNED_CERTIFICATE"
SECURITY_TYPE_SECURE = "SECURITY_TYPE_SECURE"

URI_SCHEME_BOLT = "bolt"
URI_SCHEME_BOLT_SELF_SIGNED_CERTIFICATE = "bolt+ssc"
URI_SCHEME_BOLT_SECURE = "bolt+s"

URI_SCHEME_NEO4J = "neo4j"
URI_SCHEME_NEO4J_SELF_SIGNED_CERTIFICATE = "neo4j+ssc"
URI_SCHEME_NEO4J_SECURE = "neo4j+s"

SYSTEM_DATABASE = "system"
# the server picks the user's home database
DEFAULT_DATABASE = None


_URI_SCHEMES = {
    URI_SCHEME_BOLT: (DRIVER_BOLT, SECURITY_TYPE_NOT_SECURE),
    URI_SCHEME_BOLT_SELF_SIGNED_CERTIFICATE: (
        DRIVER_BOLT, SECURITY_TYPE_SELF_SIGNED_CERTIFICATE
    ),
    URI_SCHEME_BOLT_SECURE: (DRIVER_BOLT, SECURITY_TYPE_SECURE),
    URI_SCHEME_NEO4J: (DRIVER_ROUTING, SECURITY_TYPE_NOT_SECURE),
    URI_SCHEME_NEO4J_SELF_SIGNED_CERTIFICATE: (
        DRIVER_ROUTING, SECURITY_TYPE_SELF_SIGNED_CERTIFICATE
    ),
    URI_SCHEME_NEO4J_SECURE: (DRIVER_ROUTING, SECURITY_TYPE_SECURE),
}


class RoutingControl(str, Enum):
    """Selection of the cluster members a query is routed to.

    Used by :meth:`.Driver.execute_query`.
    """

    READ = "r"
    WRITE = "w"

    @property
    def access_mode(self) -> str:
        return READ_ACCESS if self is RoutingControl.READ else WRITE_ACCESS


class Auth:
    """Container for auth details.

    :param scheme: type of authentication, e.g. ``"basic"``.
    :param principal: who is being authenticated.
    :param credentials: authenticates the principal.
    :param realm: the authentication provider.
    :param parameters: extra parameters passed to the provider.
    """

    def __init__(
        self,
        scheme: t.Optional[str],
        principal: t.Optional[str],
        credentials: t.Optional[str],
        realm: t.Optional[str] = None,
        **parameters: t.Any,
    ) -> None:
        self.scheme = scheme
        # servers before 4.4 require the principal to be present
        if principal is not None:
            self.principal = principal
        if credentials:
            self.credentials = credentials
        if realm:
            self.realm = realm
        if parameters:
            self.parameters = parameters

    def __eq__(self, other: t.Any) -> bool:
        if not isinstance(other, Auth):
            return NotImplemented
        return vars(self) == vars(other)

    def __repr__(self):
        return f"<Auth scheme={self.scheme!r}>"


if t.TYPE_CHECKING:
    _TAuth = t.Union[t.Tuple[t.Any, t.Any], Auth, None]


def basic_auth(
    user: str, password: str, realm: t.Optional[str] = None
) -> Auth:
    """Generate a basic auth token for a user and password."""
    return Auth("basic", user, password, realm)


def bearer_auth(base64_encoded_token: str) -> Auth:
    """Generate an auth token for Single-Sign-On providers."""
    return Auth("bearer", None, base64_encoded_token)


def custom_auth(
    principal: t.Optional[str],
    credentials: t.Optional[str],
    realm: t.Optional[str],
    scheme: t.Optional[str],
    **parameters: t.Any,
) -> Auth:
    return Auth(scheme, principal, credentials, realm, **parameters)


class Bookmarks:
    """Immutable set of bookmark values.

    Bookmarks causally chain sessions: a transaction that begins with the
    bookmarks of an earlier one observes all of its writes.

    Combine containers with addition::

        bookmarks3 = bookmarks1 + bookmarks2
    """

    def __init__(self):
        self._raw_values = frozenset()

    def __repr__(self) -> str:
        return "<Bookmarks values={{{}}}>".format(
            ", ".join(map(repr, sorted(self._raw_values)))
        )

    def __bool__(self) -> bool:
        return bool(self._raw_values)

    def __eq__(self, other: t.Any) -> bool:
        if not isinstance(other, Bookmarks):
            return NotImplemented
        return self._raw_values == other._raw_values

    def __hash__(self):
        return hash(self._raw_values)

    def __iter__(self) -> t.Iterator[str]:
        return iter(self._raw_values)

    def __len__(self) -> int:
        return len(self._raw_values)

    def __add__(self, other: Bookmarks) -> Bookmarks:
        if isinstance(other, Bookmarks):
            if not other:
                return self
            ret = self.__class__()
            ret._raw_values = self._raw_values | other._raw_values
            return ret
        return NotImplemented

    @property
    def raw_values(self) -> t.FrozenSet[str]:
        """The raw bookmark strings, e.g. for serialization."""
        return self._raw_values

    @classmethod
    def from_raw_values(cls, values: t.Iterable[str]) -> Bookmarks:
        """Create a container from raw bookmark strings.

        :param values: ASCII string values
        """
        if isinstance(values, str):
            # a str is an iterable of characters
            values = (values,)
        obj = cls()
        bookmarks = []
        for value in values:
            if not isinstance(value, str):
                raise TypeError(
                    f"Raw bookmark values must be str. Found {type(value)}"
                )
            try:
                value.encode("ascii")
            except UnicodeEncodeError as e:
                raise ValueError(f"The value {value} is not ASCII") from e
            bookmarks.append(value)
        obj._raw_values = frozenset(bookmarks)
        return obj


class BookmarkManager(abc.ABC):
    """Keeps track of the bookmarks of each database.

    Sessions ask the manager for the bookmarks of their database when a
    transaction begins and report the bookmark they received once it
    committed. A manager is shared by many sessions and therefore has to be
    thread-safe.

    The driver ships an implementation available through
    :meth:`.GraphDatabase.bookmark_manager`.
    """

    @abc.abstractmethod
    def bookmarks_for(self, database: t.Optional[str]) -> t.FrozenSet[str]:
        """Return a snapshot of the bookmarks known for ``database``."""
        ...

    @abc.abstractmethod
    def update(
        self,
        database: t.Optional[str],
        new_bookmarks: t.Iterable[str],
        superseded: t.Iterable[str] = (),
    ) -> None:
        """Record the bookmarks a committed transaction produced.

        :param database: the database the transaction ran against.
        :param new_bookmarks: bookmarks the server returned.
        :param superseded: bookmarks the transaction started from. The
            server guarantees the new bookmarks include their history, so
            they are replaced.
        """
        ...

    def all_bookmarks(self) -> t.FrozenSet[str]:
        """Return the bookmarks of all databases."""
        return frozenset()


class ServerInfo:
    """Information about the server a connection is talking to."""

    def __init__(self, address: Address, protocol_version: Version):
        self._address = address
        self._protocol_version = protocol_version
        self._metadata: dict = {}

    @property
    def address(self) -> Address:
        """Network address of the remote server."""
        return self._address

    @property
    def protocol_version(self) -> Version:
        """Bolt protocol version negotiated with the server."""
        return self._protocol_version

    @property
    def agent(self) -> str:
        """Server agent string by which the remote server identifies itself."""
        return str(self._metadata.get("server"))

    @property
    def connection_id(self) -> t.Optional[str]:
        return self._metadata.get("connection_id")

    def update(self, metadata: dict) -> None:
        """Update server information with HELLO response metadata."""
        if "server" in metadata:
            self._metadata["server"] = metadata["server"]
        if "connection_id" in metadata:
            self._metadata["connection_id"] = metadata["connection_id"]

    def __repr__(self):
        return (f"<ServerInfo address={self._address!r} "
                f"protocol_version={self._protocol_version!r}>")


class Version(tuple):
    """Bolt protocol version as a ``(major, minor)`` tuple.

    The minor part may be a ``[high, low]`` list to offer a range of minor
    versions during the handshake.
    """

    def __new__(cls, *v):
        return super().__new__(cls, v)

    def __repr__(self):
        return f"{self.__class__.__name__}{super().__repr__()}"

    def __str__(self):
        return ".".join(map(str, self))

    def to_bytes(self) -> bytes:
        b = bytearray(4)
        for i, v in enumerate(self):
            if not 0 <= i < 2:
                raise ValueError("Too many version components")
            if isinstance(v, list):
                b[-i - 1] = int(v[0] % 0x100)
                b[-i - 2] = int((v[0] - v[-1]) % 0x100)
            else:
                b[-i - 1] = int(v % 0x100)
        return bytes(b)

    @classmethod
    def from_bytes(cls, b: bytes) -> Version:
        b = bytearray(b)
        if len(b) != 4:
            raise ValueError("Byte representation must be exactly four bytes")
        if b[0] != 0 or b[1] != 0:
            raise ValueError("First two bytes must contain zero")
        return Version(b[-1], b[-2])


def parse_uri(uri):
    """Split a connection URI into driver type, security type and parts."""
    parsed = urlparse(uri)

    if parsed.username:
        raise DriverError(ErrorKind.CONFIGURATION,
                          "Username is not supported in the URI")
    if parsed.password:
        raise DriverError(ErrorKind.CONFIGURATION,
                          "Password is not supported in the URI")
    try:
        driver_type, security_type = _URI_SCHEMES[parsed.scheme]
    except KeyError:
        raise DriverError(
            ErrorKind.CONFIGURATION,
            f"URI scheme {parsed.scheme!r} is not supported. "
            f"Supported URI schemes are {sorted(_URI_SCHEMES)}. "
            "Examples: bolt://host[:port] or "
            "neo4j://host[:port][?routing_context]"
        ) from None

    return driver_type, security_type, parsed


def check_access_mode(access_mode):
    if access_mode is None:
        return WRITE_ACCESS
    if access_mode not in {READ_ACCESS, WRITE_ACCESS}:
        raise DriverError(ErrorKind.CONFIGURATION,
                          f"Unsupported access mode {access_mode}")
    return access_mode


def parse_routing_context(query):
    """Parse the query part of a URI into a routing context dictionary."""
    if not query:
        return {}

    context = {}
    parameters = parse_qs(query, True)
    for key in parameters:
        value_list = parameters[key]
        if len(value_list) != 1:
            raise DriverError(
                ErrorKind.CONFIGURATION,
                f"Duplicated query parameters with key '{key}', value "
                f"'{value_list}' found in query string '{query}'"
            )
        value = value_list[0]
        if not value:
            raise DriverError(
                ErrorKind.CONFIGURATION,
                f"Invalid parameters:'{key}={value}' in query string "
                f"'{query}'."
            )
        context[key] = value

    return context
