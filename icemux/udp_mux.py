"""Multiplexing of many ICE sessions over shared UDP sockets."""

from __future__ import annotations

import ipaddress
import logging
import select
import socket
import threading
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

import psutil

from .errors import ClosedPipeError, IceError, InvalidAddressError, NoMuxAvailableError
from .message import ATTR_USERNAME, decode_message, is_message
from .tcp_packet_conn import RECEIVE_MTU
from .udp_muxed_conn import IPPort, UDPMuxedConn, ip_port

NETWORK_UDP4 = "udp4"
NETWORK_UDP6 = "udp6"

_POLL_INTERVAL = 0.1
_FAMILIES = {
    "udp4": socket.AF_INET,
    "tcp4": socket.AF_INET,
    "udp6": socket.AF_INET6,
    "tcp6": socket.AF_INET6,
}

_LOGGER = logging.getLogger("icemux")


def _parse_host(host: Any) -> Any:
    return ipaddress.ip_address(str(host).split("%")[0])


def _addr_key(addr: Any) -> Tuple[str, int]:
    ip = _parse_host(addr[0])
    if ip.version == 6 and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    return str(ip), int(addr[1])


def _is_ipv6_addr(addr: Any) -> bool:
    try:
        ip = _parse_host(addr[0])
    except (TypeError, IndexError, ValueError):
        return False
    return ip.version == 6 and ip.ipv4_mapped is None


def _families(networks: Iterable[str]) -> Set[int]:
    families = set()
    for network in networks:
        try:
            families.add(_FAMILIES[network])
        except KeyError:
            raise ValueError(f"unsupported network type: {network!r}") from None
    return families


def _local_interfaces(
    interface_filter: Optional[Callable[[str], bool]],
    ip_filter: Optional[Callable[[Any], bool]],
    networks: Iterable[str],
    include_loopback: bool,
) -> List[Any]:
    families = _families(networks)
    stats = psutil.net_if_stats()
    found: Dict[Any, None] = {}
    for name, entries in psutil.net_if_addrs().items():
        stat = stats.get(name)
        if stat is not None and not stat.isup:
            continue
        if interface_filter is not None and not interface_filter(name):
            continue
        for entry in entries:
            if entry.family not in families:
                continue
            try:
                ip = _parse_host(entry.address)
            except ValueError:
                continue
            if ip.is_loopback and not include_loopback:
                continue
            if ip.version == 6 and ip.is_link_local:
                continue
            if ip_filter is not None and not ip_filter(ip):
                continue
            found.setdefault(ip, None)
    return list(found)


class UDPMuxDefault:
    """Shares one UDP socket between many connections told apart by ufrag."""

    def __init__(self, udp_conn: socket.socket, *, logger: Optional[logging.Logger] = None) -> None:
        self._conn = udp_conn
        self._logger = logger or _LOGGER
        self._local_addr = udp_conn.getsockname()
        self._local_addrs_for_unspecified: List[Tuple[str, int]] = []
        try:
            local_ip = _parse_host(self._local_addr[0])
            self._local_key: Optional[Tuple[str, int]] = _addr_key(self._local_addr)
        except (TypeError, IndexError, ValueError):
            self._logger.error("LocalAddr is not a UDP address, got %r", self._local_addr)
            local_ip = None
            self._local_key = None
        if local_ip is not None and local_ip.is_unspecified:
            self._logger.warning(
                "UDPMuxDefault should not listen on an unspecified address, use new_multi_udp_mux_from_port instead"
            )
            if udp_conn.family == socket.AF_INET:
                networks = [NETWORK_UDP4]
            else:
                networks = [NETWORK_UDP4, NETWORK_UDP6]
            try:
                ips = _local_interfaces(None, None, networks, True)
            except (OSError, ValueError) as err:
                self._logger.error("Failed to get local interfaces for unspecified addr: %s", err)
            else:
                port = self._local_addr[1]
                self._local_addrs_for_unspecified = [(str(ip), port) for ip in ips]

        self._lock = threading.Lock()
        self._address_lock = threading.Lock()
        self._conns_ipv4: Dict[str, UDPMuxedConn] = {}
        self._conns_ipv6: Dict[str, UDPMuxedConn] = {}
        self._address_map: Dict[IPPort, UDPMuxedConn] = {}
        self._closed = threading.Event()
        self._worker = threading.Thread(target=self._conn_worker, daemon=True)
        self._worker.start()

    @property
    def local_addr(self) -> Any:
        """The address of the shared socket."""
        return self._local_addr

    def get_listen_addresses(self) -> List[Any]:
        if self._local_addrs_for_unspecified:
            return list(self._local_addrs_for_unspecified)
        return [self._local_addr]

    def get_conn(self, ufrag: str, addr: Any) -> UDPMuxedConn:
        """Return the connection for ``ufrag``, creating it if needed."""
        if not self._local_addrs_for_unspecified:
            try:
                key = _addr_key(addr)
            except (TypeError, IndexError, ValueError) as err:
                raise InvalidAddressError() from err
            if key != self._local_key:
                raise InvalidAddressError()
        is_ipv6 = _is_ipv6_addr(addr)
        with self._lock:
            if self.is_closed():
                raise ClosedPipeError()
            table = self._conns_ipv6 if is_ipv6 else self._conns_ipv4
            conn = table.get(ufrag)
            if conn is None:
                conn = UDPMuxedConn(
                    ufrag,
                    self._local_addr,
                    send=self._write_to,
                    register=self._register_conn_for_address,
                    on_close=self._on_conn_closed,
                    logger=self._logger,
                )
                table[ufrag] = conn
            return conn

    def _on_conn_closed(self, conn: UDPMuxedConn) -> None:
        self.remove_conn_by_ufrag(conn.key)

    def remove_conn_by_ufrag(self, ufrag: str) -> None:
        """Forget the connections of ``ufrag`` and the addresses they used."""
        removed = []
        with self._lock:
            for table in (self._conns_ipv4, self._conns_ipv6):
                conn = table.pop(ufrag, None)
                if conn is not None:
                    removed.append(conn)
        if not removed:
            return
        with self._address_lock:
            for conn in removed:
                for addr in conn.get_addresses():
                    self._address_map.pop(addr, None)

    def is_closed(self) -> bool:
        return self._closed.is_set()

    def close(self) -> None:
        """Close every connection and the shared socket."""
        with self._lock:
            if self._closed.is_set():
                return
            conns = list(self._conns_ipv4.values()) + list(self._conns_ipv6.values())
            self._conns_ipv4 = {}
            self._conns_ipv6 = {}
            self._closed.set()
        for conn in conns:
            conn.close()
        try:
            self._conn.close()
        except OSError:
            pass
        if self._worker is not threading.current_thread():
            self._worker.join()

    def _write_to(self, data: bytes, addr: Any) -> int:
        return self._conn.sendto(data, addr)

    def _register_conn_for_address(self, conn: UDPMuxedConn, addr: IPPort) -> None:
        if self.is_closed():
            return
        with self._address_lock:
            existing = self._address_map.get(addr)
            if existing is not None:
                existing.remove_address(addr)
            self._address_map[addr] = conn
        self._logger.debug("Registered %s for %s", addr, conn.key)

    def _read_from(self) -> Optional[Tuple[bytes, Any]]:
        """Read one datagram, or return None when none arrived within the poll interval."""
        readable, _, _ = select.select([self._conn], [], [], _POLL_INTERVAL)
        if not readable:
            return None
        return self._conn.recvfrom(RECEIVE_MTU)

    def _conn_worker(self) -> None:
        try:
            while True:
                try:
                    packet = self._read_from()
                except (OSError, ValueError) as err:
                    if self.is_closed():
                        return
                    if isinstance(err, TimeoutError):
                        continue
                    self._logger.error("Failed to read UDP packet: %s", err)
                    return
                if self.is_closed():
                    return
                if packet is None:
                    continue
                if not self._dispatch(*packet):
                    return
        finally:
            self.close()

    def _dispatch(self, data: bytes, addr: Any) -> bool:
        try:
            source = ip_port(addr[0], addr[1])
        except (InvalidAddressError, TypeError, IndexError):
            self._logger.error("Failed to create a new IP/Port host pair")
            return False

        with self._address_lock:
            destination = self._address_map.get(source)

        if destination is None and is_message(data):
            try:
                message = decode_message(data)
            except ValueError as err:
                self._logger.warning("Failed to handle decode ICE from %s: %s", source, err)
                return True
            try:
                username = message.get(ATTR_USERNAME)
            except KeyError:
                self._logger.warning("No Username attribute in STUN message from %s", source)
                return True
            ufrag = username.decode("utf-8", errors="replace").split(":")[0]
            is_ipv6 = source.ip.ipv4_mapped is None
            with self._lock:
                destination = (self._conns_ipv6 if is_ipv6 else self._conns_ipv4).get(ufrag)

        if destination is None:
            self._logger.debug("Dropping packet from %s", source)
            return True

        try:
            destination.write_packet(data, addr)
        except IceError as err:
            self._logger.error("Failed to write packet: %s", err)
        return True

    def __enter__(self) -> "UDPMuxDefault":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


class MultiUDPMuxDefault:
    """Combines several UDP muxes and routes by local listening address."""

    def __init__(self, *muxes: Any) -> None:
        self._muxes = list(muxes)
        self._local_addr_to_mux: Dict[Tuple[str, int], Any] = {}
        for mux in self._muxes:
            for addr in mux.get_listen_addresses():
                self._local_addr_to_mux[_addr_key(addr)] = mux

    @property
    def muxes(self) -> Tuple[Any, ...]:
        return tuple(self._muxes)

    def get_conn(self, ufrag: str, addr: Any) -> Any:
        """Return a connection from the mux listening on ``addr``."""
        try:
            mux = self._local_addr_to_mux.get(_addr_key(addr))
        except (TypeError, IndexError, ValueError):
            mux = None
        if mux is None:
            raise NoMuxAvailableError()
        return mux.get_conn(ufrag, addr)

    def remove_conn_by_ufrag(self, ufrag: str) -> None:
        for mux in self._muxes:
            mux.remove_conn_by_ufrag(ufrag)

    def get_listen_addresses(self) -> List[Any]:
        return [addr for mux in self._muxes for addr in mux.get_listen_addresses()]

    def close(self) -> None:
        """Close every mux; the last error seen is raised."""
        error: Optional[BaseException] = None
        for mux in self._muxes:
            try:
                mux.close()
            except (OSError, IceError) as err:
                error = err
        if error is not None:
            raise error

    def __enter__(self) -> "MultiUDPMuxDefault":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


def _listen_udp(ip: Any, port: int, read_buffer_size: int, write_buffer_size: int) -> socket.socket:
    family = socket.AF_INET6 if ip.version == 6 else socket.AF_INET
    sock = socket.socket(family, socket.SOCK_DGRAM)
    try:
        if family == socket.AF_INET6 and hasattr(socket, "IPV6_V6ONLY"):
            sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 1)
        sock.bind((str(ip), port))
    except OSError:
        sock.close()
        raise
    for option, size in ((socket.SO_RCVBUF, read_buffer_size), (socket.SO_SNDBUF, write_buffer_size)):
        if size > 0:
            try:
                sock.setsockopt(socket.SOL_SOCKET, option, size)
            except OSError:
                pass
    return sock


def new_multi_udp_mux_from_port(
    port: int,
    *,
    interface_filter: Optional[Callable[[str], bool]] = None,
    ip_filter: Optional[Callable[[Any], bool]] = None,
    networks: Iterable[str] = (NETWORK_UDP4, NETWORK_UDP6),
    read_buffer_size: int = 0,
    write_buffer_size: int = 0,
    logger: Optional[logging.Logger] = None,
    include_loopback: bool = False,
) -> MultiUDPMuxDefault:
    """Listen on ``port`` on every selected local address and mux them together."""
    ips = _local_interfaces(interface_filter, ip_filter, networks, include_loopback)
    conns: List[socket.socket] = []
    try:
        for ip in ips:
            conns.append(_listen_udp(ip, port, read_buffer_size, write_buffer_size))
    except OSError:
        for conn in conns:
            conn.close()
        raise
    return MultiUDPMuxDefault(*(UDPMuxDefault(conn, logger=logger) for conn in conns))