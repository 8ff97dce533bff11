import socket
import struct
import time

import pytest

from icemux.errors import ClosedPipeError, NoMuxAvailableError
from icemux.message import ATTR_USERNAME, BINDING_REQUEST, Message
from icemux.tcp_mux import MultiTCPMuxDefault, TCPMuxDefault, TCPMuxParams
from icemux.tcp_packet_conn import read_streaming_packet, write_streaming_packet


def _listener():
    sock = socket.socket()
    sock.bind(("127.0.0.1", 0))
    sock.listen()
    return sock


def _stun_packet(username):
    message = Message(msg_type=BINDING_REQUEST)
    message.add(ATTR_USERNAME, username.encode())
    return message.encode()


@pytest.fixture
def make_mux():
    created = []

    def make(**kwargs):
        kwargs.setdefault("read_buffer_size", 20)
        mux = TCPMuxDefault(TCPMuxParams(listener=_listener(), **kwargs))
        created.append(mux)
        return mux

    yield make
    for mux in created:
        mux.close()


@pytest.fixture
def clients():
    created = []

    def connect(addr):
        sock = socket.create_connection(addr[:2], timeout=5)
        created.append(sock)
        return sock

    yield connect
    for sock in created:
        sock.close()


def _exchange(pkt_conn, client, ufrag):
    raw = _stun_packet(f"{ufrag}:otherufrag")
    n = write_streaming_packet(client, raw)
    assert n == len(raw)
    data, addr = pkt_conn.read_from()
    assert addr[:2] == client.getsockname()[:2]
    assert data == raw
    assert pkt_conn.write_to(data, client.getsockname()) == len(raw)
    assert read_streaming_packet(client, len(raw)) == raw


@pytest.mark.parametrize("write_buffer", [0, 4 * 1024 * 1024])
def test_recv(make_mux, clients, write_buffer):
    mux = make_mux(write_buffer_size=write_buffer)
    client = clients(mux.local_addr)
    raw = _stun_packet("myufrag:otherufrag")
    write_streaming_packet(client, raw)

    pkt_conn = mux.get_conn_by_ufrag("myufrag", False, "127.0.0.1")
    try:
        data, addr = pkt_conn.read_from()
        assert addr[:2] == client.getsockname()[:2]
        assert data == raw
        assert pkt_conn.write_to(data, client.getsockname()) == len(raw)
        assert read_streaming_packet(client, len(raw)) == raw
    finally:
        pkt_conn.close()


def test_no_deadlock_when_closing_unused_packet_conn(make_mux):
    mux = make_mux()
    mux.get_conn_by_ufrag("test", False, "127.0.0.1")
    mux.close()
    with pytest.raises(ClosedPipeError):
        mux.get_conn_by_ufrag("test", False, "127.0.0.1")


def test_first_packet_timeout(make_mux, clients):
    mux = make_mux(first_stun_bind_timeout=0.5)
    client = clients(mux.local_addr)
    time.sleep(0.8)
    assert client.recv(1) == b""


def test_connection_from_stun_closed_after_alive_timeout(make_mux, clients):
    mux = make_mux(alive_duration_for_conn_from_stun=0.5)
    client = clients(mux.local_addr)
    write_streaming_packet(client, _stun_packet("myufrag:otherufrag"))
    time.sleep(0.8)
    assert client.recv(1) == b""


def test_connection_kept_alive_when_used(make_mux, clients):
    mux = make_mux(alive_duration_for_conn_from_stun=0.5)
    client = clients(mux.local_addr)
    raw = _stun_packet("myufrag2:otherufrag2")
    write_streaming_packet(client, raw)
    time.sleep(0.1)

    pkt_conn = mux.get_conn_by_ufrag("myufrag2", False, "127.0.0.1")
    try:
        time.sleep(0.8)
        client.settimeout(0.1)
        with pytest.raises(socket.timeout):
            client.recv(1024)
        data, addr = pkt_conn.read_from()
        assert addr[:2] == client.getsockname()[:2]
        assert data == raw
    finally:
        pkt_conn.close()


def test_non_stun_first_packet_closes_stream(make_mux, clients):
    mux = make_mux()
    client = clients(mux.local_addr)
    write_streaming_packet(client, b"hello world")
    assert client.recv(1) == b""


def test_missing_username_closes_stream(make_mux, clients):
    mux = make_mux()
    client = clients(mux.local_addr)
    write_streaming_packet(client, Message(msg_type=BINDING_REQUEST).encode())
    assert client.recv(1) == b""


def test_oversized_first_packet_closes_stream(make_mux, clients):
    mux = make_mux()
    client = clients(mux.local_addr)
    client.sendall(struct.pack("!H", 600))
    assert client.recv(1) == b""


def test_same_ufrag_returns_same_conn(make_mux):
    mux = make_mux()
    first = mux.get_conn_by_ufrag("abc", False, "127.0.0.1")
    second = mux.get_conn_by_ufrag("abc", False, "127.0.0.1")
    assert first is second
    assert first.local_addr == ("127.0.0.1", mux.local_addr[1])


def test_ipv4_and_ipv6_tables_are_separate(make_mux):
    mux = make_mux()
    v4 = mux.get_conn_by_ufrag("abc", False, "127.0.0.1")
    v6 = mux.get_conn_by_ufrag("abc", True, "127.0.0.1")
    assert v4 is not v6
    assert not v4.is_closed() and not v6.is_closed()


def test_remove_conn_by_ufrag_closes_conn(make_mux):
    mux = make_mux()
    conn = mux.get_conn_by_ufrag("gone", False, "127.0.0.1")
    mux.remove_conn_by_ufrag("gone")
    assert conn.is_closed()
    fresh = mux.get_conn_by_ufrag("gone", False, "127.0.0.1")
    assert not fresh.is_closed()


@pytest.mark.parametrize("write_buffer", [0, 4 * 1024 * 1024])
def test_multi_recv(make_mux, clients, write_buffer):
    muxes = [make_mux(write_buffer_size=write_buffer) for _ in range(3)]
    multi = MultiTCPMuxDefault(*muxes)
    pkt_conns = multi.get_all_conns("myufrag", False, "127.0.0.1")
    assert len(pkt_conns) == 3
    assert sorted(c.local_addr[1] for c in pkt_conns) == sorted(m.local_addr[1] for m in muxes)
    for pkt_conn in pkt_conns:
        client = clients(pkt_conn.local_addr)
        _exchange(pkt_conn, client, "myufrag")
    multi.close()


def test_multi_no_deadlock_when_closing_unused_packet_conn(make_mux):
    multi = MultiTCPMuxDefault(*[make_mux() for _ in range(3)])
    assert len(multi.get_all_conns("test", False, "127.0.0.1")) == 3
    multi.close()
    with pytest.raises(ClosedPipeError):
        multi.get_all_conns("test", False, "127.0.0.1")


def test_multi_get_conn_uses_first_mux(make_mux):
    muxes = [make_mux() for _ in range(2)]
    multi = MultiTCPMuxDefault(*muxes)
    conn = multi.get_conn_by_ufrag("first", False, "127.0.0.1")
    assert conn is muxes[0].get_conn_by_ufrag("first", False, "127.0.0.1")
    assert conn.local_addr[1] == muxes[0].local_addr[1]


def test_multi_remove_conn_by_ufrag(make_mux):
    muxes = [make_mux() for _ in range(2)]
    multi = MultiTCPMuxDefault(*muxes)
    conns = multi.get_all_conns("drop", False, "127.0.0.1")
    multi.remove_conn_by_ufrag("drop")
    assert all(conn.is_closed() for conn in conns)


def test_empty_multi_mux():
    multi = MultiTCPMuxDefault()
    with pytest.raises(NoMuxAvailableError):
        multi.get_conn_by_ufrag("x", False, "127.0.0.1")
    with pytest.raises(NoMuxAvailableError):
        multi.get_all_conns("x", False, "127.0.0.1")