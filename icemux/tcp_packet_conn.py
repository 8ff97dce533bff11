"""Packet-oriented connection built from framed TCP streams (RFC 4571)."""

from __future__ import annotations

import errno
import logging
import socket
import struct
import threading
from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, Dict, List, Optional, Tuple

from .errors import ClosedPipeError, ConnectionAddrAlreadyExistError, IceError, ShortBufferError

RECEIVE_MTU = 8192
STREAMING_PACKET_HEADER_LEN = 2

_LOGGER = logging.getLogger("icemux")


def _recv_exact(conn: Any, size: int) -> bytes:
    received = bytearray()
    while len(received) < size:
        chunk = conn.recv(size - len(received))
        if not chunk:
            raise EOFError("connection closed by peer")
        received += chunk
    return bytes(received)


def read_streaming_packet(conn: Any, max_size: int) -> bytes:
    """Read one length-prefixed packet from a stream.

    Raises ShortBufferError when the announced length exceeds ``max_size``
    and EOFError when the stream ends.
    """
    header = _recv_exact(conn, STREAMING_PACKET_HEADER_LEN)
    (length,) = struct.unpack("!H", header)
    if length > max_size:
        raise ShortBufferError(f"packet of {length} bytes exceeds buffer of {max_size} bytes")
    return _recv_exact(conn, length)


def write_streaming_packet(conn: Any, data: bytes) -> int:
    """Write one length-prefixed packet and return the payload size."""
    data = bytes(data)
    if len(data) > 0xFFFF:
        raise ValueError(f"packet of {len(data)} bytes is too large to frame")
    conn.sendall(struct.pack("!H", len(data)) + data)
    return len(data)


def _close_stream(conn: Any) -> None:
    try:
        conn.shutdown(socket.SHUT_RDWR)
    except OSError:
        pass
    conn.close()


class BufferedConn:
    """Stream wrapper whose writes are queued and sent by a background thread."""

    def __init__(self, conn: Any, buffer_size: int = 0, logger: Optional[logging.Logger] = None) -> None:
        self._conn = conn
        self._limit = buffer_size if buffer_size > 0 else 0
        self._logger = logger or _LOGGER
        self._queue: Deque[bytes] = deque()
        self._size = 0
        self._closed = False
        self._cond = threading.Condition()
        self._writer = threading.Thread(target=self._write_process, daemon=True)
        self._writer.start()

    def write(self, data: bytes) -> int:
        """Queue a chunk for sending; raise when the buffer has no room."""
        data = bytes(data)
        with self._cond:
            if self._closed:
                raise ClosedPipeError()
            if self._limit and self._size + len(data) > self._limit:
                raise IceError("write buffer is full, discarding write")
            self._queue.append(data)
            self._size += len(data)
            self._cond.notify_all()
        return len(data)

    def sendall(self, data: bytes) -> None:
        self.write(data)

    def recv(self, size: int) -> bytes:
        return self._conn.recv(size)

    def getpeername(self) -> Any:
        return self._conn.getpeername()

    def getsockname(self) -> Any:
        return self._conn.getsockname()

    def settimeout(self, timeout: Optional[float]) -> None:
        self._conn.settimeout(timeout)

    def shutdown(self, how: int) -> None:
        self._conn.shutdown(how)

    def _write_process(self) -> None:
        while True:
            with self._cond:
                while not self._queue and not self._closed:
                    self._cond.wait()
                if self._closed:
                    return
                packet = self._queue.popleft()
                self._size -= len(packet)
            try:
                self._conn.sendall(packet)
            except OSError as err:
                self._logger.warning("Failed to write: %s", err)

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._queue.clear()
            self._size = 0
            self._cond.notify_all()
        _close_stream(self._conn)


@dataclass
class _Packet:
    data: bytes
    addr: Any
    error: Optional[BaseException] = None


def _addr_key(addr: Any) -> Tuple[str, int]:
    return str(addr[0]).split("%")[0].lower(), int(addr[1])


def _is_closed_error(err: BaseException) -> bool:
    if isinstance(err, EOFError):
        return True
    return isinstance(err, OSError) and err.errno in (errno.EBADF, errno.ENOTCONN, errno.ESHUTDOWN)


class TCPPacketConn:
    """Groups TCP streams by remote address and exposes them as one packet conn."""

    def __init__(
        self,
        local_addr: Any,
        *,
        read_buffer: int = 0,
        write_buffer: int = 0,
        alive_duration: float = 0.0,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._local_addr = local_addr
        self._write_buffer = write_buffer
        self._logger = logger or _LOGGER
        self._conns: Dict[Tuple[str, int], Any] = {}
        self._queue: Deque[_Packet] = deque()
        self._capacity = max(1, read_buffer)
        self._lock = threading.Lock()
        self._cond = threading.Condition(self._lock)
        self._closed = threading.Event()
        self._drained = False
        self._readers: List[threading.Thread] = []
        self._alive_timer: Optional[threading.Timer] = None
        if alive_duration > 0:
            self._alive_timer = threading.Timer(alive_duration, self._on_alive_timeout)
            self._alive_timer.daemon = True
            self._alive_timer.start()

    @property
    def local_addr(self) -> Any:
        return self._local_addr

    def _on_alive_timeout(self) -> None:
        self._logger.warning("close tcp packet conn by alive timeout")
        self.close()

    def clear_alive_timer(self) -> None:
        """Stop the timer that would close an unused connection."""
        with self._lock:
            if self._alive_timer is not None:
                self._alive_timer.cancel()

    def add_conn(self, conn: Any, first_packet: Optional[bytes] = None) -> None:
        """Register a stream; ``first_packet`` is delivered before anything read from it."""
        peer = conn.getpeername()
        self._logger.info("Added connection: remote %s to local %s", peer, conn.getsockname())
        with self._lock:
            if self._closed.is_set():
                raise ClosedPipeError()
            key = _addr_key(peer)
            if key in self._conns:
                raise ConnectionAddrAlreadyExistError(f"{peer[0]}:{peer[1]}")
            if self._write_buffer > 0:
                conn = BufferedConn(conn, self._write_buffer, self._logger)
            self._conns[key] = conn
            reader = threading.Thread(target=self._serve, args=(conn, peer, first_packet), daemon=True)
            self._readers = [thread for thread in self._readers if thread.is_alive()]
            self._readers.append(reader)
            reader.start()

    def _serve(self, conn: Any, peer: Any, first_packet: Optional[bytes]) -> None:
        if first_packet is not None:
            self._handle_recv(_Packet(bytes(first_packet), peer))
            if self._closed.is_set():
                return
        self._start_reading(conn, peer)

    def _start_reading(self, conn: Any, peer: Any) -> None:
        while True:
            try:
                data = read_streaming_packet(conn, RECEIVE_MTU)
            except (OSError, EOFError, IceError) as err:
                self._logger.warning("Failed to read streaming packet: %s", err)
                last = self._remove_conn(conn, peer)
                # Closure errors only surface when no other stream remains.
                if last or not _is_closed_error(err):
                    self._handle_recv(_Packet(b"", peer, err))
                return
            self._handle_recv(_Packet(data, peer))

    def _handle_recv(self, packet: _Packet) -> None:
        with self._cond:
            while len(self._queue) >= self._capacity and not self._closed.is_set():
                self._cond.wait()
            if self._closed.is_set():
                return
            self._queue.append(packet)
            self._cond.notify_all()

    def read_from(self) -> Tuple[bytes, Any]:
        """Block for the next packet and return ``(data, remote_address)``."""
        with self._cond:
            while not self._queue and not self._drained:
                self._cond.wait()
            if not self._queue:
                raise ClosedPipeError()
            packet = self._queue.popleft()
            self._cond.notify_all()
        if packet.error is not None:
            raise packet.error
        return packet.data, packet.addr

    def write_to(self, data: bytes, addr: Any) -> int:
        """Send a packet over the stream connected to ``addr``."""
        with self._lock:
            conn = self._conns.get(_addr_key(addr))
        if conn is None:
            raise ClosedPipeError()
        try:
            return write_streaming_packet(conn, data)
        except (OSError, IceError) as err:
            self._logger.debug("failed to write to %s: %s", addr, err)
            raise

    def _close_and_log(self, conn: Any) -> None:
        try:
            _close_stream(conn)
        except OSError as err:
            self._logger.warning("failed to close connection: %s", err)

    def _remove_conn(self, conn: Any, peer: Any) -> bool:
        with self._lock:
            self._close_and_log(conn)
            self._conns.pop(_addr_key(peer), None)
            return not self._conns

    def close(self) -> None:
        """Close every stream and wake blocked readers."""
        with self._cond:
            first = not self._closed.is_set()
            if first:
                self._closed.set()
                if self._alive_timer is not None:
                    self._alive_timer.cancel()
            conns = list(self._conns.values())
            self._conns.clear()
            readers = list(self._readers)
            self._cond.notify_all()
        for conn in conns:
            self._close_and_log(conn)
        current = threading.current_thread()
        for reader in readers:
            if reader is not current:
                reader.join()
        if first:
            with self._cond:
                self._drained = True
                self._cond.notify_all()

    def is_closed(self) -> bool:
        return self._closed.is_set()

    def wait_closed(self, timeout: Optional[float] = None) -> bool:
        """Wait until the connection is closed; return whether it is."""
        return self._closed.wait(timeout)

    def __enter__(self) -> "TCPPacketConn":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def __str__(self) -> str:
        return f"tcpPacketConn{{LocalAddr: {self._local_addr}}}"