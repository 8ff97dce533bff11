"""Multiplexing of accepted TCP streams into packet connections grouped by ufrag."""

from __future__ import annotations

import dataclasses
import ipaddress
import logging
import select
import socket
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from .errors import ClosedPipeError, IceError, NoMuxAvailableError, ShortBufferError, TransportAddressError
from .message import ATTR_USERNAME, METHOD_BINDING, decode_message
from .tcp_packet_conn import TCPPacketConn, read_streaming_packet

DEFAULT_TIMEOUT = 30.0
FIRST_PACKET_MAX_SIZE = 512
_ACCEPT_POLL_INTERVAL = 0.1

_LOGGER = logging.getLogger("icemux")


def _parse_ip(value: Any) -> Any:
    ip = ipaddress.ip_address(str(value).split("%")[0])
    if ip.version == 6 and ip.ipv4_mapped is not None:
        return ip.ipv4_mapped
    return ip


def _ip_key(local: Any) -> str:
    return str(_parse_ip(local))


def _is_ipv6(host: str) -> bool:
    try:
        return _parse_ip(host).version == 6
    except ValueError:
        return True


def _close_socket(conn: Any) -> None:
    try:
        conn.shutdown(socket.SHUT_RDWR)
    except OSError:
        pass
    conn.close()


@dataclass
class TCPMuxParams:
    """Settings of a TCPMuxDefault; durations are in seconds."""

    listener: socket.socket
    logger: Optional[logging.Logger] = None
    read_buffer_size: int = 0
    # 0 means writes block until the whole packet is sent.
    write_buffer_size: int = 0
    # A stream is dropped when no first STUN request arrives in time (0 means 30s).
    first_stun_bind_timeout: float = 0.0
    # Unused connections created from STUN requests are dropped after this (0 means 30s).
    alive_duration_for_conn_from_stun: float = 0.0


class TCPMuxDefault:
    """Accepts TCP streams and groups them into packet connections by ufrag."""

    def __init__(self, params: TCPMuxParams) -> None:
        params = dataclasses.replace(params)
        if params.logger is None:
            params.logger = _LOGGER
        if params.first_stun_bind_timeout == 0:
            params.first_stun_bind_timeout = DEFAULT_TIMEOUT
        if params.alive_duration_for_conn_from_stun == 0:
            params.alive_duration_for_conn_from_stun = DEFAULT_TIMEOUT
        self._params = params
        self._logger: logging.Logger = params.logger
        self._closed = False
        self._conns_ipv4: Dict[str, Dict[str, TCPPacketConn]] = {}
        self._conns_ipv6: Dict[str, Dict[str, TCPPacketConn]] = {}
        self._pending: set = set()
        self._lock = threading.Lock()
        self._threads: List[threading.Thread] = []
        self._threads_lock = threading.Lock()
        self._spawn(self._accept_loop)

    @property
    def local_addr(self) -> Any:
        """The listening address."""
        return self._params.listener.getsockname()

    def _spawn(self, target: Callable[..., None], *args: Any) -> None:
        thread = threading.Thread(target=target, args=args, daemon=True)
        with self._threads_lock:
            self._threads = [t for t in self._threads if t.is_alive()]
            self._threads.append(thread)
        thread.start()

    def _accept_loop(self) -> None:
        listener = self._params.listener
        try:
            self._logger.info("Listening TCP on %s", listener.getsockname())
        except OSError:
            pass
        while True:
            try:
                readable, _, _ = select.select([listener], [], [], _ACCEPT_POLL_INTERVAL)
                if self._closed:
                    return
                if not readable:
                    continue
                conn, _ = listener.accept()
            except (OSError, ValueError) as err:
                self._logger.info("Error accepting connection: %s", err)
                return
            with self._lock:
                if self._closed:
                    _close_socket(conn)
                    return
                self._pending.add(conn)
            self._logger.debug("Accepted connection from %s", conn.getpeername())
            self._spawn(self._handle_conn, conn)

    def _discard(self, conn: Any) -> None:
        with self._lock:
            self._pending.discard(conn)
        try:
            _close_socket(conn)
        except OSError as err:
            self._logger.warning("Error closing connection: %s", err)

    def _handle_conn(self, conn: socket.socket) -> None:
        try:
            remote = conn.getpeername()
            local = conn.getsockname()
        except OSError as err:
            self._logger.warning("Failed to read addresses of accepted connection: %s", err)
            self._discard(conn)
            return

        if self._params.first_stun_bind_timeout > 0:
            try:
                conn.settimeout(self._params.first_stun_bind_timeout)
            except OSError as err:
                self._logger.warning("Failed to set read deadline for first STUN message from %s: %s", remote, err)
        try:
            first = read_streaming_packet(conn, FIRST_PACKET_MAX_SIZE)
        except ShortBufferError as err:
            self._logger.warning("Buffer too small for first packet from %s: %s", remote, err)
            self._discard(conn)
            return
        except (OSError, EOFError) as err:
            self._logger.warning("Error reading first packet from %s: %s", remote, err)
            self._discard(conn)
            return
        try:
            conn.settimeout(None)
        except OSError as err:
            self._logger.warning("Failed to reset read deadline from %s: %s", remote, err)

        try:
            message = decode_message(first)
        except ValueError as err:
            self._discard(conn)
            self._logger.warning("Failed to handle decode ICE from %s to %s: %s", remote, local, err)
            return
        if message.method != METHOD_BINDING:
            self._discard(conn)
            self._logger.warning("Not a STUN message from %s to %s", remote, local)
            return
        for attr_type, value in message:
            self._logger.debug("Message attribute: 0x%04x (%d bytes)", attr_type, len(value))
        try:
            username = message.get(ATTR_USERNAME)
        except KeyError:
            self._discard(conn)
            self._logger.warning("No Username attribute in STUN message from %s to %s", remote, local)
            return

        ufrag = username.decode("utf-8", errors="replace").split(":")[0]
        self._logger.debug("Ufrag: %s", ufrag)
        is_ipv6 = _is_ipv6(remote[0])

        with self._lock:
            self._pending.discard(conn)
            packet_conn = None
            if not self._closed:
                packet_conn = self._get_conn(ufrag, is_ipv6, local[0])
                if packet_conn is None:
                    try:
                        packet_conn = self._create_conn(ufrag, is_ipv6, local[0], from_stun=True)
                    except TransportAddressError:
                        packet_conn = None
        if packet_conn is None:
            self._discard(conn)
            self._logger.warning("Failed to create packetConn for STUN message from %s to %s", remote, local)
            return

        try:
            packet_conn.add_conn(conn, first)
        except IceError as err:
            self._discard(conn)
            self._logger.warning("Error adding conn to tcpPacketConn from %s to %s: %s", remote, local, err)

    def _listener_addr(self) -> Any:
        try:
            addr = self._params.listener.getsockname()
        except OSError as err:
            raise TransportAddressError() from err
        if not isinstance(addr, tuple):
            raise TransportAddressError()
        return addr

    def _create_conn(self, ufrag: str, is_ipv6: bool, local: Any, from_stun: bool) -> TCPPacketConn:
        addr = self._listener_addr()
        key = _ip_key(local)
        alive = self._params.alive_duration_for_conn_from_stun if from_stun else 0.0
        conn = TCPPacketConn(
            (key, addr[1]),
            read_buffer=self._params.read_buffer_size,
            write_buffer=self._params.write_buffer_size,
            alive_duration=alive,
            logger=self._logger,
        )
        table = self._conns_ipv6 if is_ipv6 else self._conns_ipv4
        table.setdefault(ufrag, {})[key] = conn
        self._spawn(self._watch_conn, conn, ufrag, key)
        return conn

    def _watch_conn(self, conn: TCPPacketConn, ufrag: str, key: str) -> None:
        conn.wait_closed()
        self._remove_conn_by_ufrag_and_local_host(ufrag, key)

    def _get_conn(self, ufrag: str, is_ipv6: bool, local: Any) -> Optional[TCPPacketConn]:
        table = self._conns_ipv6 if is_ipv6 else self._conns_ipv4
        return table.get(ufrag, {}).get(_ip_key(local))

    def get_conn_by_ufrag(self, ufrag: str, is_ipv6: bool, local: Any) -> TCPPacketConn:
        """Return the packet connection for a ufrag, creating it if needed."""
        with self._lock:
            if self._closed:
                raise ClosedPipeError()
            conn = self._get_conn(ufrag, is_ipv6, local)
            if conn is not None:
                conn.clear_alive_timer()
                return conn
            return self._create_conn(ufrag, is_ipv6, local, from_stun=False)

    def _close_and_log(self, conn: TCPPacketConn) -> None:
        try:
            conn.close()
        except (OSError, IceError) as err:
            self._logger.warning("Error closing connection: %s", err)

    def remove_conn_by_ufrag(self, ufrag: str) -> None:
        """Close and forget every packet connection of a ufrag."""
        removed: List[TCPPacketConn] = []
        with self._lock:
            for table in (self._conns_ipv4, self._conns_ipv6):
                removed.extend(table.pop(ufrag, {}).values())
        for conn in removed:
            self._close_and_log(conn)

    def _remove_conn_by_ufrag_and_local_host(self, ufrag: str, key: str) -> None:
        removed: List[TCPPacketConn] = []
        with self._lock:
            for table in (self._conns_ipv4, self._conns_ipv6):
                conns = table.get(ufrag)
                if conns is not None and key in conns:
                    removed.append(conns.pop(key))
                    if not conns:
                        del table[ufrag]
        for conn in removed:
            self._close_and_log(conn)

    def close(self) -> None:
        """Close the listener and every connection, and wait for worker threads."""
        error: Optional[OSError] = None
        with self._lock:
            self._closed = True
            conns = [
                conn
                for table in (self._conns_ipv4, self._conns_ipv6)
                for group in table.values()
                for conn in group.values()
            ]
            self._conns_ipv4 = {}
            self._conns_ipv6 = {}
            pending = list(self._pending)
            self._pending.clear()
            try:
                self._params.listener.close()
            except OSError as err:
                error = err
        for conn in conns:
            self._close_and_log(conn)
        for sock in pending:
            try:
                _close_socket(sock)
            except OSError:
                pass
        current = threading.current_thread()
        while True:
            with self._threads_lock:
                alive = [t for t in self._threads if t.is_alive() and t is not current]
            if not alive:
                break
            for thread in alive:
                thread.join()
        if error is not None:
            raise error

    def __enter__(self) -> "TCPMuxDefault":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


class MultiTCPMuxDefault:
    """Combines several TCP muxes, one per listening port."""

    def __init__(self, *muxes: Any) -> None:
        self._muxes = list(muxes)

    def get_conn_by_ufrag(self, ufrag: str, is_ipv6: bool, local: Any) -> Any:
        """Return a packet connection from the first mux only."""
        if not self._muxes:
            raise NoMuxAvailableError()
        return self._muxes[0].get_conn_by_ufrag(ufrag, is_ipv6, local)

    def remove_conn_by_ufrag(self, ufrag: str) -> None:
        for mux in self._muxes:
            mux.remove_conn_by_ufrag(ufrag)

    def get_all_conns(self, ufrag: str, is_ipv6: bool, local: Any) -> List[Any]:
        """Return one packet connection from each mux, or raise on the first failure."""
        if not self._muxes:
            raise NoMuxAvailableError()
        conns = []
        for mux in self._muxes:
            conn = mux.get_conn_by_ufrag(ufrag, is_ipv6, local)
            if conn is not None:
                conns.append(conn)
        return conns

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

    def __enter__(self) -> "MultiTCPMuxDefault":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()