"""Logical packet connection for one remote peer sharing a UDP socket."""

from __future__ import annotations

import ipaddress
import logging
import threading
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, List, Optional, Tuple

from .errors import ClosedPipeError, InvalidAddressError, ShortBufferError
from .tcp_packet_conn import RECEIVE_MTU

_LOGGER = logging.getLogger("icemux")


@dataclass(frozen=True)
class IPPort:
    """An address in IPv6 form with its zone and port; usable as a dict key."""

    ip: ipaddress.IPv6Address
    port: int
    zone: str = ""

    @property
    def host(self) -> str:
        mapped = self.ip.ipv4_mapped
        text = str(mapped) if mapped is not None else str(self.ip)
        return f"{text}%{self.zone}" if self.zone else text

    def __str__(self) -> str:
        host = self.host
        return f"[{host}]:{self.port}" if ":" in host else f"{host}:{self.port}"


def ip_port(host: Any, port: int) -> IPPort:
    """Build an IPPort; IPv4 addresses are stored in their IPv4-mapped IPv6 form."""
    text = str(host)
    zone = ""
    if "%" in text:
        text, zone = text.split("%", 1)
    try:
        ip = ipaddress.ip_address(text)
        port = int(port)
    except (TypeError, ValueError) as err:
        raise InvalidAddressError(f"invalid ip address: {host}") from err
    if not 0 <= port <= 0xFFFF:
        raise InvalidAddressError(f"invalid port: {port}")
    if ip.version == 4:
        ip = ipaddress.IPv6Address(b"\x00" * 10 + b"\xff\xff" + ip.packed)
    return IPPort(ip=ip, port=port, zone=zone)


class UDPMuxedConn:
    """Packet connection for a single remote ufrag on top of a shared UDP socket.

    ``send`` transmits a datagram on the shared socket, ``register`` maps a
    remote address to this connection and ``on_close`` is told when it closes.
    """

    def __init__(
        self,
        key: str,
        local_addr: Any,
        *,
        send: Callable[[bytes, Any], int],
        register: Callable[["UDPMuxedConn", IPPort], None],
        on_close: Optional[Callable[["UDPMuxedConn"], None]] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.key = key
        self._local_addr = local_addr
        self._send = send
        self._register = register
        self._on_close = on_close
        self._logger = logger or _LOGGER
        self._addresses: List[IPPort] = []
        self._queue: Deque[Tuple[bytes, Any]] = deque()
        self._cond = threading.Condition()
        self._closed = False

    @property
    def local_addr(self) -> Any:
        return self._local_addr

    def read_from(self) -> Tuple[bytes, Any]:
        """Block for the next packet; raise EOFError once closed."""
        with self._cond:
            while not self._queue and not self._closed:
                self._cond.wait()
            if not self._queue:
                raise EOFError("muxed connection closed")
            return self._queue.popleft()

    def write_to(self, data: bytes, addr: Any) -> int:
        """Send a packet to ``addr``, registering the address with the mux first."""
        if self.is_closed():
            raise ClosedPipeError()
        try:
            host, port = addr[0], int(addr[1])
        except (TypeError, IndexError, ValueError) as err:
            raise InvalidAddressError("failed to cast address to a UDP address") from err
        remote = ip_port(host, port)
        if not self.contains_address(remote):
            self._add_address(remote)
        return self._send(bytes(data), addr)

    def write_packet(self, data: bytes, addr: Any) -> None:
        """Queue an inbound packet for read_from."""
        data = bytes(data)
        if len(data) > RECEIVE_MTU:
            raise ShortBufferError(f"packet of {len(data)} bytes exceeds {RECEIVE_MTU} bytes")
        with self._cond:
            if self._closed:
                raise ClosedPipeError()
            self._queue.append((data, addr))
            self._cond.notify_all()

    def close(self) -> None:
        """Drop queued packets and wake blocked readers."""
        with self._cond:
            if self._closed:
                return
            self._closed = True
            self._queue.clear()
            self._cond.notify_all()
        if self._on_close is not None:
            self._on_close(self)

    def is_closed(self) -> bool:
        with self._cond:
            return self._closed

    def get_addresses(self) -> List[IPPort]:
        with self._cond:
            return list(self._addresses)

    def _add_address(self, addr: IPPort) -> None:
        with self._cond:
            self._addresses.append(addr)
        self._register(self, addr)

    def remove_address(self, addr: IPPort) -> None:
        with self._cond:
            self._addresses = [current for current in self._addresses if current != addr]

    def contains_address(self, addr: IPPort) -> bool:
        with self._cond:
            return addr in self._addresses

    def __enter__(self) -> "UDPMuxedConn":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()