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
    AF_INET,
    AF_INET6,
)

import pytest

from graphbolt import (
    Address,
    IPv4Address,
    IPv6Address,
)
from graphbolt.addressing import ResolvedAddress


@pytest.mark.parametrize(
    "test_input, expected",
    [
        (("127.0.0.1", 7687), {"family": AF_INET, "host": "127.0.0.1", "port": 7687, "str": "127.0.0.1:7687", "repr": "IPv4Address(('127.0.0.1', 7687))"}),
        (("localhost", 7687), {"family": AF_INET, "host": "localhost", "port": 7687, "str": "localhost:7687", "repr": "IPv4Address(('localhost', 7687))"}),
        (("::1", 7687, 0, 0), {"family": AF_INET6, "host": "::1", "port": 7687, "str": "[::1]:7687", "repr": "IPv6Address(('::1', 7687, 0, 0))"}),
        (("::1", 7687, 1, 2), {"family": AF_INET6, "host": "::1", "port": 7687, "str": "[::1]:7687", "repr": "IPv6Address(('::1', 7687, 1, 2))"}),
        (Address(("127.0.0.1", 7687)), {"family": AF_INET, "host": "127.0.0.1", "port": 7687, "str": "127.0.0.1:7687", "repr": "IPv4Address(('127.0.0.1', 7687))"}),
    ]
)
def test_address_initialization(
    test_input: t.Union[tuple, Address], expected: dict
) -> None:
    address = Address(test_input)
    assert address.family == expected["family"]
    assert address.host == expected["host"]
    assert address.port == expected["port"]
    assert str(address) == expected["str"]
    assert repr(address) == expected["repr"]


def test_address_init_with_address_object_returns_same_instance() -> None:
    original = Address(("127.0.0.1", 7687))
    assert Address(original) is original


@pytest.mark.parametrize(
    "test_input",
    [
        ("127.0.0.1",),
        ("127.0.0.1", 7687, 0),
        ("[::1]", 7687, 0, 0, 0),
    ]
)
def test_address_initialization_with_incorrect_input(
    test_input: tuple
) -> None:
    with pytest.raises(ValueError):
        _ = Address(test_input)


@pytest.mark.parametrize(
    ("a", "b"),
    [
        (("Example.COM", 7687), ("example.com", 7687)),
        (("example.com", "7687"), ("example.com", 7687)),
        ((" example.com ", 7687), ("example.com", 7687)),
    ]
)
def test_address_equality_is_normalized(a, b) -> None:
    assert Address(a) == Address(b)
    assert hash(Address(a)) == hash(Address(b))


@pytest.mark.parametrize(
    "test_input, expected",
    [
        ("127.0.0.1:7687", ("127.0.0.1", 7687)),
        ("localhost:7687", ("localhost", 7687)),
        (":7687", ("localhost", 7687)),
        (":", ("localhost", 0)),
        ("", ("localhost", 0)),
        ("localhost", ("localhost", 0)),
        ("[::1]:7687", ("::1", 7687, 0, 0)),
        ("[::1]", ("::1", 0, 0, 0)),
        ("[]", ("localhost", 0, 0, 0)),
    ]
)
def test_address_parse_with_ipv4_and_ipv6(test_input, expected) -> None:
    parsed = Address.parse(test_input)
    assert parsed == expected


def test_address_parse_with_defaults() -> None:
    parsed = Address.parse(":", default_host="example.com", default_port=1234)
    assert parsed == ("example.com", 1234)
    assert isinstance(parsed, IPv4Address)


def test_address_parse_with_invalid_input() -> None:
    with pytest.raises(TypeError):
        _ = Address.parse(None)  # type: ignore[arg-type]


def test_address_parse_list() -> None:
    addresses = Address.parse_list("localhost:7687 [::1]:7687",
                                   "127.0.0.1:7688")
    assert len(addresses) == 3
    assert addresses[0] == Address(("localhost", 7687))
    assert isinstance(addresses[1], IPv6Address)
    assert addresses[2] == Address(("127.0.0.1", 7688))


def test_address_parse_list_with_invalid_input() -> None:
    with pytest.raises(TypeError):
        _ = Address.parse_list("localhost:7687", None)  # type: ignore[arg-type]


def test_resolved_address_remembers_host_name() -> None:
    resolved = ResolvedAddress(("127.0.0.1", 7687), host_name="example.com")
    assert resolved == Address(("127.0.0.1", 7687))
    assert resolved._host_name == "example.com"
    assert resolved._unresolved == Address(("example.com", 7687))


def test_port_number() -> None:
    assert Address(("localhost", 7687)).port_number == 7687
    with pytest.raises(ValueError):
        _ = Address(("localhost", "no-such-service-xyz")).port_number
