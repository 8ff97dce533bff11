import ipaddress
import threading

import pytest

from icemux.errors import ClosedPipeError, InvalidAddressError, ShortBufferError
from icemux.tcp_packet_conn import RECEIVE_MTU
from icemux.udp_muxed_conn import UDPMuxedConn, ip_port


class _Recorder:
    def __init__(self):
        self.sent = []
        self.registered = []
        self.closed = []

    def send(self, data, addr):
        self.sent.append((data, addr))
        return len(data)

    def register(self, conn, addr):
        self.registered.append((conn, addr))

    def on_close(self, conn):
        self.closed.append(conn)


def _make(recorder):
    return UDPMuxedConn(
        "ufrag",
        ("127.0.0.1", 4000),
        send=recorder.send,
        register=recorder.register,
        on_close=recorder.on_close,
    )


def test_ip_port_maps_ipv4_to_ipv6_form():
    assert ip_port("127.0.0.1", 5) == ip_port("::ffff:127.0.0.1", 5)
    assert ip_port("127.0.0.1", 5).ip.ipv4_mapped == ipaddress.IPv4Address("127.0.0.1")


def test_ip_port_text_forms():
    assert ip_port("10.0.0.1", 80).host == "10.0.0.1"
    assert str(ip_port("10.0.0.1", 80)) == "10.0.0.1:80"
    assert ip_port("::1", 9).ip == ipaddress.IPv6Address("::1")


def test_ip_port_keeps_zone():
    value = ip_port("fe80::1%eth0", 1)
    assert value.zone == "eth0"
    assert value != ip_port("fe80::1", 1)


def test_ip_port_rejects_bad_host():
    with pytest.raises(InvalidAddressError):
        ip_port("not-an-ip", 1)
    with pytest.raises(InvalidAddressError):
        ip_port("127.0.0.1", 70000)


def test_packets_round_trip_in_order():
    conn = _make(_Recorder())
    conn.write_packet(b"first", ("1.2.3.4", 1))
    conn.write_packet(b"second", ("1.2.3.5", 2))
    assert conn.read_from() == (b"first", ("1.2.3.4", 1))
    assert conn.read_from() == (b"second", ("1.2.3.5", 2))


def test_oversized_packet_is_refused():
    conn = _make(_Recorder())
    with pytest.raises(ShortBufferError):
        conn.write_packet(b"x" * (RECEIVE_MTU + 1), ("1.2.3.4", 1))


def test_write_to_registers_address_once():
    recorder = _Recorder()
    conn = _make(recorder)
    addr = ("1.2.3.4", 5000)
    assert conn.write_to(b"hello", addr) == len(b"hello")
    assert conn.write_to(b"again", addr) == len(b"again")
    assert recorder.sent == [(b"hello", addr), (b"again", addr)]
    assert recorder.registered == [(conn, ip_port("1.2.3.4", 5000))]
    assert conn.contains_address(ip_port("1.2.3.4", 5000))
    assert conn.get_addresses() == [ip_port("1.2.3.4", 5000)]


def test_remove_address():
    conn = _make(_Recorder())
    conn.write_to(b"a", ("1.2.3.4", 1))
    conn.write_to(b"b", ("1.2.3.5", 2))
    conn.remove_address(ip_port("1.2.3.4", 1))
    assert conn.get_addresses() == [ip_port("1.2.3.5", 2)]
    assert not conn.contains_address(ip_port("1.2.3.4", 1))


def test_write_to_rejects_bad_address():
    conn = _make(_Recorder())
    with pytest.raises(InvalidAddressError):
        conn.write_to(b"a", None)


def test_closed_conn_refuses_io():
    recorder = _Recorder()
    conn = _make(recorder)
    conn.write_packet(b"pending", ("1.2.3.4", 1))
    conn.close()
    assert conn.is_closed()
    with pytest.raises(EOFError):
        conn.read_from()
    with pytest.raises(ClosedPipeError):
        conn.write_packet(b"late", ("1.2.3.4", 1))
    with pytest.raises(ClosedPipeError):
        conn.write_to(b"late", ("1.2.3.4", 1))
    assert recorder.sent == []


def test_close_notifies_once():
    recorder = _Recorder()
    conn = _make(recorder)
    conn.close()
    conn.close()
    assert recorder.closed == [conn]


def test_blocked_reader_gets_packet_from_other_thread():
    conn = _make(_Recorder())
    writer = threading.Timer(0.05, conn.write_packet, args=(b"data", ("1.2.3.4", 7)))
    writer.start()
    try:
        assert conn.read_from() == (b"data", ("1.2.3.4", 7))
    finally:
        writer.join(timeout=5)
        conn.close()


def test_blocked_reader_woken_by_close():
    conn = _make(_Recorder())
    closer = threading.Timer(0.05, conn.close)
    closer.start()
    try:
        with pytest.raises(EOFError):
            conn.read_from()
    finally:
        closer.join(timeout=5)
    assert conn.is_closed()