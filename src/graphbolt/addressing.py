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
from socket import (
    AddressFamily,
    AF_INET,
    AF_INET6,
    getservbyname,
)


__all__ = [
    "Address",
    "IPv4Address",
    "IPv6Address",
    "ResolvedAddress",
    "ResolvedIPv4Address",
    "ResolvedIPv6Address",
]


DEFAULT_PORT = 7687


def _normalize_host(host):
    if isinstance(host, str):
        return host.strip().lower()
    return host


def _normalize_port(port):
    if isinstance(port, str) and port.isdigit():
        return int(port)
    return port


class _AddressMeta(type(tuple)):  # type: ignore[misc]

    def __init__(cls, *args, **kwargs):
        super().__init__(*args, **kwargs)
        cls._family_classes = {}

    def _for_family(cls, family):
        try:
            return cls._family_classes[family]
        except KeyError:
            pass
        candidates = [
            sc for sc in cls.__subclasses__()
            if (sc.__module__ == cls.__module__
                and getattr(sc, "family", None) == family)
        ]
        if len(candidates) != 1:
            raise ValueError(
                f"{cls} needs exactly one direct subclass with "
                f"family {family!r} in its module, found {candidates}"
            )
        cls._family_classes[family] = candidates[0]
        return candidates[0]


class Address(tuple, metaclass=_AddressMeta):
    """Immutable server address.

    A tuple of two (IPv4 or host name) or four (IPv6) parts. The host is
    normalized to lower case and a numeric port string to an :class:`int`,
    so two addresses compare equal when they name the same host and port.

        >>> Address(("Example.COM", "7687"))
        IPv4Address(('example.com', 7687))
        >>> Address(("::1", 7687, 0, 0))
        IPv6Address(('::1', 7687, 0, 0))
    """

    family: t.Optional[AddressFamily] = None

    def __new__(cls, iterable: t.Collection) -> Address:
        if isinstance(iterable, cls):
            return iterable
        parts = list(iterable)
        if len(parts) == 2:
            target = cls._for_family(AF_INET)
        elif len(parts) == 4:
            target = cls._for_family(AF_INET6)
        else:
            raise ValueError("Addresses must consist of either "
                             "two parts (IPv4) or four parts (IPv6)")
        parts[0] = _normalize_host(parts[0])
        parts[1] = _normalize_port(parts[1])
        inst = tuple.__new__(cls, parts)
        inst.__class__ = target
        return inst

    @classmethod
    def parse(
        cls,
        s: str,
        default_host: t.Optional[str] = None,
        default_port: t.Optional[int] = None
    ) -> Address:
        """Parse ``host:port`` or ``[host]:port`` into an address.

            >>> Address.parse("localhost:7687")
            IPv4Address(('localhost', 7687))
            >>> Address.parse("[::1]:7687")
            IPv6Address(('::1', 7687, 0, 0))
            >>> Address.parse("localhost", default_port=1234)
            IPv4Address(('localhost', 1234))
        """
        if not isinstance(s, str):
            raise TypeError("Address.parse requires a string argument")
        port: t.Union[str, int]
        if s.startswith("["):
            host, _, port = s[1:].rpartition("]")
            port = port.lstrip(":")
            return cls((host or default_host or "localhost",
                        port or default_port or 0, 0, 0))
        host, _, port = s.partition(":")
        return cls((host or default_host or "localhost",
                    port or default_port or 0))

    @classmethod
    def parse_list(
        cls,
        *s: str,
        default_host: t.Optional[str] = None,
        default_port: t.Optional[int] = None
    ) -> t.List[Address]:
        """Parse whitespace separated addresses into a list."""
        if not all(isinstance(s0, str) for s0 in s):
            raise TypeError("Address.parse_list requires a string argument")
        return [cls.parse(a, default_host, default_port)
                for a in " ".join(s).split()]

    def __repr__(self):
        return f"{self.__class__.__name__}({tuple(self)!r})"

    @property
    def host(self) -> t.Any:
        return self[0]

    @property
    def port(self) -> t.Any:
        return self[1]

    @property
    def _host_name(self) -> t.Any:
        return self[0]

    @property
    def _unresolved(self) -> Address:
        return self

    @property
    def port_number(self) -> int:
        """The port as an integer, looking up service names if needed.

        :raise ValueError: if the port is an unknown service name.
        :raise TypeError: if the port is neither a string nor a number.
        """
        if isinstance(self[1], int):
            return self[1]
        try:
            return getservbyname(self[1])
        except OSError:
            raise ValueError(f"Unknown port value {self[1]!r}") from None
        except TypeError:
            raise TypeError(f"Unknown port value {self[1]!r}") from None


class IPv4Address(Address):
    """Address of family ``AF_INET``, also used for host names."""

    family = AF_INET

    def __str__(self) -> str:
        return "{}:{}".format(*self)


class IPv6Address(Address):
    """Address of family ``AF_INET6``."""

    family = AF_INET6

    def __str__(self) -> str:
        return "[{}]:{}".format(*self)


class ResolvedAddress(Address):
    """An address produced by DNS resolution.

    It remembers the host name it was resolved from, which is used for SNI
    and for logging.
    """

    _unresolved_host_name: str

    def __new__(cls, iterable, *, host_name: str) -> ResolvedAddress:
        new = super().__new__(cls, iterable)
        new = t.cast(ResolvedAddress, new)
        new._unresolved_host_name = host_name
        return new

    @property
    def _host_name(self) -> str:
        return self._unresolved_host_name

    @property
    def _unresolved(self) -> Address:
        return Address((self._host_name, *self[1:]))


class ResolvedIPv4Address(IPv4Address, ResolvedAddress):
    pass


class ResolvedIPv6Address(IPv6Address, ResolvedAddress):
    pass
