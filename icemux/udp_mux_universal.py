"""UDP mux that also resolves server reflexive addresses over the shared socket."""

from __future__ import annotations

import ipaddress
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

from .errors import (
    IceError,
    NoXorAddrMappingError,
    NotImplementedFeatureError,
    XorMappedAddrTimeoutError,
)
from .message import (
    ATTR_XOR_MAPPED_ADDRESS,
    BINDING_REQUEST,
    Message,
    XorMappedAddress,
    decode_message,
    get_xor_mapped_address,
    is_message,
)
from .udp_mux import UDPMuxDefault
from .udp_muxed_conn import UDPMuxedConn

DEFAULT_XOR_MAPPED_ADDR_CACHE_TTL = 25.0

_LOGGER = logging.getLogger("icemux")


def _server_key(addr: Any) -> Tuple[str, int]:
    ip = ipaddress.ip_address(str(addr[0]).split("%")[0])
    if ip.version == 6 and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    return str(ip), int(addr[1])


@dataclass
class _XorMapped:
    expires_at: float
    addr: Optional[XorMappedAddress] = None
    received: threading.Event = field(default_factory=threading.Event)

    def close_waiters(self) -> None:
        self.received.set()

    def pending(self) -> bool:
        return self.addr is None

    def expired(self) -> bool:
        return self.expires_at < time.monotonic()

    def set_addr(self, addr: XorMappedAddress) -> None:
        self.addr = addr
        self.close_waiters()


class UniversalUDPMuxDefault(UDPMuxDefault):
    """A UDP mux that also answers server reflexive address lookups.

    Responses from STUN servers carrying XOR-MAPPED-ADDRESS are recorded
    before the packet is handed on to the ordinary muxing.  Durations are
    in seconds.
    """

    def __init__(
        self,
        udp_conn: Any,
        *,
        logger: Optional[logging.Logger] = None,
        xor_mapped_addr_cache_ttl: float = 0.0,
    ) -> None:
        # The worker thread started by the base class uses these at once.
        self.xor_mapped_addr_cache_ttl = xor_mapped_addr_cache_ttl or DEFAULT_XOR_MAPPED_ADDR_CACHE_TTL
        self._xor_lock = threading.Lock()
        self._xor_mapped_map: Dict[Tuple[str, int], _XorMapped] = {}
        self._universal_logger = logger or _LOGGER
        super().__init__(udp_conn, logger=logger)

    def get_relayed_addr(self, turn_addr: Any, deadline: float) -> Any:
        """Relayed addresses are not supported on a shared socket."""
        raise NotImplementedFeatureError()

    def get_conn_for_url(self, ufrag: str, url: Any, addr: Any) -> UDPMuxedConn:
        """Return a connection unique to the pair of ufrag and server URL."""
        return self.get_conn(f"{ufrag}{url}", addr)

    def _read_from(self) -> Optional[Tuple[bytes, Any]]:
        packet = super()._read_from()
        if packet is None:
            return None
        data, addr = packet
        if is_message(data):
            try:
                message = decode_message(data)
            except ValueError as err:
                self._universal_logger.warning("Failed to handle decode ICE from %s: %s", addr, err)
                return packet
            try:
                key = _server_key(addr)
            except (TypeError, IndexError, ValueError):
                return packet
            if self._is_xor_mapped_response(message, key):
                try:
                    self._handle_xor_mapped_response(key, message)
                except (IceError, KeyError, ValueError) as err:
                    self._universal_logger.debug("failed to get XOR-MAPPED-ADDRESS response: %s", err)
        return packet

    def _is_xor_mapped_response(self, message: Message, key: Tuple[str, int]) -> bool:
        # Only known STUN servers count: peers also send binding successes.
        with self._xor_lock:
            known = key in self._xor_mapped_map
        return known and message.contains(ATTR_XOR_MAPPED_ADDRESS)

    def _handle_xor_mapped_response(self, key: Tuple[str, int], message: Message) -> None:
        with self._xor_lock:
            entry = self._xor_mapped_map.get(key)
            if entry is None:
                raise NoXorAddrMappingError()
            entry.set_addr(get_xor_mapped_address(message))

    def get_xor_mapped_addr(self, server_addr: Any, deadline: float) -> XorMappedAddress:
        """Return the mapped address seen by a STUN server, asking it if needed.

        Blocks for at most ``deadline`` seconds while waiting for the answer.
        """
        key = _server_key(server_addr)
        with self._xor_lock:
            entry = self._xor_mapped_map.get(key)
            cached = entry is not None
            if entry is not None:
                if entry.expired():
                    entry.close_waiters()
                    del self._xor_mapped_map[key]
                    cached = False
                elif entry.pending():
                    cached = False
        if cached and entry is not None and entry.addr is not None:
            return entry.addr

        try:
            received = self._write_stun(server_addr, key)
        except (OSError, IceError, ValueError) as err:
            raise IceError(f"failed to send STUN message: {err}") from err

        if not received.wait(deadline):
            raise XorMappedAddrTimeoutError()
        with self._xor_lock:
            entry = self._xor_mapped_map.get(key)
            addr = entry.addr if entry is not None else None
        if addr is None:
            raise NoXorAddrMappingError()
        return addr

    def _write_stun(self, server_addr: Any, key: Tuple[str, int]) -> threading.Event:
        with self._xor_lock:
            entry = self._xor_mapped_map.get(key)
            if entry is None:
                entry = _XorMapped(expires_at=time.monotonic() + self.xor_mapped_addr_cache_ttl)
                self._xor_mapped_map[key] = entry
            request = Message(msg_type=BINDING_REQUEST)
            self._write_to(request.encode(), server_addr)
            return entry.received

    def __enter__(self) -> "UniversalUDPMuxDefault":
        return self