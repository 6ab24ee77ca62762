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

import logging
import socket
import struct
import typing as t
from contextlib import suppress
from socket import (
    AF_INET,
    AF_INET6,
    SHUT_RDWR,
    SO_KEEPALIVE,
    SOL_SOCKET,
    timeout as SocketTimeout,
)
from ssl import (
    CertificateError,
    HAS_SNI,
    SSLError,
)

from .. import addressing
from .._deadline import Deadline
from ..exceptions import (
    DriverError,
    ErrorKind,
)


if t.TYPE_CHECKING:
    from ._bolt import Bolt


log = logging.getLogger("graphbolt.io")


def _resolved_addresses_from_info(info, host_name):
    resolved = []
    for fam, _, _, _, addr in info:
        if fam == AF_INET6 and addr[3] != 0:
            # IPv6 addresses with a non-zero scope id are skipped
            continue
        if addr not in resolved:
            resolved.append(addr)
            yield addressing.ResolvedAddress(addr, host_name=host_name)


class NetworkUtil:
    @staticmethod
    def get_address_info(host, port, *, family=0, type=0, proto=0, flags=0):
        return socket.getaddrinfo(host, port, family, type, proto, flags)

    @staticmethod
    def _dns_resolver(address, family=0):
        try:
            info = NetworkUtil.get_address_info(
                address.host,
                address.port,
                family=family,
                type=socket.SOCK_STREAM,
            )
        except OSError as e:
            raise ValueError(f"Cannot resolve address {address}") from e
        return _resolved_addresses_from_info(info, address._host_name)

    @staticmethod
    def resolve_address(address, family=0, resolver=None):
        """
        Carry out domain name resolution on an address.

        If a custom resolver is given, it is called first with the address
        and may return several addresses, each of which then goes through
        regular DNS resolution. Already resolved addresses are yielded
        unchanged.

        :param address: the :class:`.Address` to resolve
        :param family: optional address family to filter by
        :param resolver: optional custom resolver function
        """
        if isinstance(address, addressing.ResolvedAddress):
            yield address
            return

        log.debug("[#0000]  _: <RESOLVE> in: %s", address)
        if resolver:
            custom_addresses = map(addressing.Address, resolver(address))
        else:
            custom_addresses = (address,)
        for custom_address in custom_addresses:
            if resolver:
                log.debug("[#0000]  _: <RESOLVE> custom resolver out: %s",
                          custom_address)
            for resolved in NetworkUtil._dns_resolver(custom_address,
                                                      family=family):
                log.debug("[#0000]  _: <RESOLVE> dns resolver out: %s",
                          resolved)
                yield resolved


def _sanitize_deadline(deadline):
    if deadline is None:
        return None
    deadline = Deadline.from_timeout_or_deadline(deadline)
    if deadline.to_timeout() is None:
        return None
    return deadline


class BoltSocket:
    """A TCP (optionally TLS) socket speaking the Bolt handshake.

    All blocking calls honour the deadline set with :meth:`set_deadline`;
    running past it raises :class:`socket.timeout`.
    """

    #: Connection class whose handshake is offered. Set by the io package.
    Bolt: t.Type[Bolt] = None  # type: ignore[assignment]

    def __init__(self, socket_):
        self._socket = socket_
        self._deadline = None
        self.getsockname = socket_.getsockname
        self.getpeername = socket_.getpeername
        self.gettimeout = socket_.gettimeout
        self.settimeout = socket_.settimeout

    def _wait_for_io(self, func, *args, **kwargs):
        if self._deadline is None:
            return func(*args, **kwargs)
        timeout = self._socket.gettimeout()
        deadline_timeout = self._deadline.to_timeout()
        if deadline_timeout <= 0:
            raise SocketTimeout("timed out")
        if timeout is None or deadline_timeout <= timeout:
            self._socket.settimeout(deadline_timeout)
            try:
                return func(*args, **kwargs)
            finally:
                self._socket.settimeout(timeout)
        return func(*args, **kwargs)

    def get_deadline(self):
        return self._deadline

    def set_deadline(self, deadline):
        self._deadline = _sanitize_deadline(deadline)

    def recv(self, n):
        return self._wait_for_io(self._socket.recv, n)

    def recv_into(self, buffer, nbytes):
        return self._wait_for_io(self._socket.recv_into, buffer, nbytes)

    def sendall(self, data):
        return self._wait_for_io(self._socket.sendall, data)

    def close(self):
        self.close_socket(self._socket)

    def kill(self):
        self._socket.close()

    @classmethod
    def close_socket(cls, socket_):
        if isinstance(socket_, BoltSocket):
            socket_ = socket_._socket
        cls._kill_raw_socket(socket_)

    @classmethod
    def _kill_raw_socket(cls, socket_):
        if socket_ is None:
            return
        with suppress(OSError):
            socket_.shutdown(SHUT_RDWR)
        with suppress(OSError):
            socket_.close()

    @classmethod
    def _connect_secure(cls, resolved_address, timeout, keep_alive,
                        ssl_context, trusted_certificates=None):
        """
        Connect to the address and return the socket.

        :param resolved_address:
        :param timeout: seconds
        :param keep_alive: True or False
        :param ssl_context: wraps the socket if not None
        :param trusted_certificates: :class:`.TrustStore` that gets to
            verify the server certificate of encrypted connections
        :returns: socket object
        """
        s = None

        try:
            if len(resolved_address) == 2:
                s = socket.socket(AF_INET)
            elif len(resolved_address) == 4:
                s = socket.socket(AF_INET6)
            else:
                raise ValueError(f"Unsupported address {resolved_address!r}")
            original_timeout = s.gettimeout()
            if timeout:
                s.settimeout(timeout)
            log.debug("[#0000]  C: <OPEN> %s", resolved_address)
            s.connect(resolved_address)
            s.settimeout(original_timeout)
            s.setsockopt(SOL_SOCKET, SO_KEEPALIVE, 1 if keep_alive else 0)
        except SocketTimeout:
            log.debug("[#0000]  S: <TIMEOUT> %s", resolved_address)
            log.debug("[#0000]  C: <CLOSE> %s", resolved_address)
            cls._kill_raw_socket(s)
            raise DriverError(
                ErrorKind.SERVICE_UNAVAILABLE,
                "Timed out trying to establish connection to "
                f"{resolved_address!r}",
                address=resolved_address,
            ) from None
        except OSError as error:
            log.debug("[#0000]  S: <ERROR> %s %s", type(error).__name__,
                      " ".join(map(repr, error.args)))
            log.debug("[#0000]  C: <CLOSE> %s", resolved_address)
            cls._kill_raw_socket(s)
            raise DriverError(
                ErrorKind.SERVICE_UNAVAILABLE,
                f"Failed to establish connection to {resolved_address!r} "
                f"(reason {error})",
                address=resolved_address,
            ) from error

        local_port = s.getsockname()[1]
        if ssl_context:
            hostname = resolved_address._host_name or None
            sni_host = hostname if HAS_SNI and hostname else None
            log.debug("[#%04X]  C: <SECURE> %s", local_port, hostname)
            try:
                s = ssl_context.wrap_socket(s, server_hostname=sni_host)
            except (OSError, SSLError, CertificateError) as cause:
                cls._kill_raw_socket(s)
                raise DriverError(
                    ErrorKind.SECURITY,
                    "Failed to establish encrypted connection.",
                    address=(hostname, local_port),
                ) from cause
            der_encoded_server_certificate = s.getpeercert(binary_form=True)
            if der_encoded_server_certificate is None:
                cls._kill_raw_socket(s)
                raise DriverError(
                    ErrorKind.PROTOCOL,
                    "When using an encrypted socket, the server should "
                    "always provide a certificate",
                    address=(hostname, local_port),
                )
            if (
                trusted_certificates is not None
                and not trusted_certificates.verify(
                    der_encoded_server_certificate
                )
            ):
                log.debug("[#%04X]  C: <UNTRUSTED> %s", local_port, hostname)
                cls._kill_raw_socket(s)
                raise DriverError(
                    ErrorKind.SECURITY,
                    "Server certificate rejected by the trust strategy.",
                    address=(hostname, local_port),
                )

        return cls(s)

    def _handshake(self, resolved_address, deadline):
        """
        Perform the Bolt handshake.

        :returns: (agreed version, offered versions, raw server response)
        """
        local_port = self.getsockname()[1]

        handshake = self.Bolt.get_handshake()
        offered = struct.unpack(">16B", handshake)
        offered = [offered[i:i + 4] for i in range(0, len(offered), 4)]

        log.debug("[#%04X]  C: <MAGIC> 0x%08X", local_port,
                  int.from_bytes(self.Bolt.MAGIC_PREAMBLE, byteorder="big"))
        log.debug(
            "[#%04X]  C: <HANDSHAKE> %s %s %s %s", local_port,
            *(f"0x{v[0]:02X}{v[1]:02X}{v[2]:02X}{v[3]:02X}" for v in offered)
        )

        request = self.Bolt.MAGIC_PREAMBLE + handshake

        original_timeout = self.gettimeout()
        self.settimeout(deadline.to_timeout())
        try:
            self.sendall(request)
            response = self.recv(4)
        except OSError as exc:
            raise DriverError(
                ErrorKind.SERVICE_UNAVAILABLE,
                f"Failed to read any data from server {resolved_address!r} "
                f"after connected (deadline {deadline})",
                address=resolved_address,
            ) from exc
        finally:
            self.settimeout(original_timeout)

        data_size = len(response)
        if data_size == 0:
            # the server closed the connection
            log.debug("[#%04X]  S: <CLOSE>", local_port)
            self.close()
            raise DriverError(
                ErrorKind.SERVICE_UNAVAILABLE,
                f"Connection to {resolved_address} closed without handshake "
                "response",
                address=resolved_address,
            )
        if data_size != 4:
            log.debug("[#%04X]  S: @*#!", local_port)
            self.close()
            raise DriverError(
                ErrorKind.PROTOCOL,
                "Expected four byte Bolt handshake response from "
                f"{resolved_address!r}, received {response!r} instead; "
                "check for incorrect port number",
                address=resolved_address,
            )
        if response == b"HTTP":
            log.debug("[#%04X]  S: <CLOSE>", local_port)
            self.close()
            raise DriverError(
                ErrorKind.SERVICE_UNAVAILABLE,
                f"Cannot to connect to Bolt service on {resolved_address!r} "
                "(looks like HTTP)",
                address=resolved_address,
            )
        agreed_version = response[-1], response[-2]
        log.debug("[#%04X]  S: <HANDSHAKE> 0x%06X%02X", local_port,
                  agreed_version[1], agreed_version[0])
        return agreed_version, offered, response

    @classmethod
    def connect(cls, address, *, tcp_timeout, deadline, custom_resolver,
                ssl_context, keep_alive, trusted_certificates=None):
        """
        Connect and perform a handshake.

        Every address the given one resolves to is tried in turn.

        :returns: (socket, agreed version, offered versions, raw response)
        :raises DriverError: of kind SERVICE_UNAVAILABLE if no resolved
            address could be connected to
        """
        errors = []
        failed_addresses = []

        try:
            resolved_addresses = list(NetworkUtil.resolve_address(
                addressing.Address(address), resolver=custom_resolver
            ))
        except ValueError as error:
            raise DriverError(
                ErrorKind.SERVICE_UNAVAILABLE, str(error), address=address
            ) from error
        for resolved_address in resolved_addresses:
            deadline_timeout = deadline.to_timeout()
            if (
                deadline_timeout is not None
                and deadline_timeout <= tcp_timeout
            ):
                tcp_timeout = deadline_timeout
            s = None
            try:
                s = cls._connect_secure(resolved_address, tcp_timeout,
                                        keep_alive, ssl_context,
                                        trusted_certificates)
                return (s, *s._handshake(resolved_address, deadline))
            except (DriverError, OSError) as error:
                if (
                    isinstance(error, DriverError)
                    and error.kind is ErrorKind.SECURITY
                ):
                    raise
                try:
                    local_port = s.getsockname()[1]
                except (OSError, AttributeError, TypeError):
                    local_port = 0
                err_str = error.__class__.__name__
                if str(error):
                    err_str += ": " + str(error)
                log.debug("[#%04X]  S: <CONNECTION FAILED> %s %s",
                          local_port, resolved_address, err_str)
                if s:
                    cls.close_socket(s)
                errors.append(error)
                failed_addresses.append(resolved_address)
        address_strs = tuple(map(str, failed_addresses))
        if not errors:
            raise DriverError(
                ErrorKind.SERVICE_UNAVAILABLE,
                f"Couldn't connect to {address} (resolved to {address_strs})",
                address=address,
            )
        error_strs = "\n".join(map(str, errors))
        raise DriverError(
            ErrorKind.SERVICE_UNAVAILABLE,
            f"Couldn't connect to {address} (resolved to {address_strs}):"
            f"\n{error_strs}",
            address=address,
        ) from errors[-1]
