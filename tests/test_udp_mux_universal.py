import socket
import threading
import time

import pytest

from icemux.errors import NotImplementedFeatureError, XorMappedAddrTimeoutError
from icemux.message import (
    ATTR_USERNAME,
    BINDING_REQUEST,
    Message,
    XorMappedAddress,
    decode_message,
)
from icemux.udp_mux_universal import UniversalUDPMuxDefault

TEST_XOR_IP = "213.141.156.236"
TEST_XOR_PORT = 21254


@pytest.fixture
def mux():
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.bind(("127.0.0.1", 0))
    udp_mux = UniversalUDPMuxDefault(sock)
    yield udp_mux
    udp_mux.close()


@pytest.fixture
def remote():
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.bind(("127.0.0.1", 0))
    sock.settimeout(2.0)
    yield sock
    sock.close()


def _run_in_thread(func):
    result = {}

    def target():
        try:
            result["value"] = func()
        except Exception as err:  # noqa: BLE001
            result["error"] = err

    thread = threading.Thread(target=target, daemon=True)
    thread.start()
    return thread, result


def test_srflx_connection(mux, remote):
    ufrag = "ufrag4"
    pkt_conn = mux.get_conn(ufrag, mux.local_addr)
    mux.xor_mapped_addr_cache_ttl = 0.2
    server = remote.getsockname()

    thread, result = _run_in_thread(lambda: mux.get_xor_mapped_addr(server, 1.0))

    data, _ = remote.recvfrom(8192)
    request = decode_message(data)
    assert request.msg_type == BINDING_REQUEST

    response = Message(msg_type=BINDING_REQUEST)
    response.add(ATTR_USERNAME, f"{ufrag}:otherufrag".encode())
    XorMappedAddress(ip=TEST_XOR_IP, port=TEST_XOR_PORT).add_to(response)
    raw = response.encode()
    remote.sendto(raw, mux.local_addr)

    thread.join(2.0)
    assert "error" not in result
    address = result["value"]
    assert str(address.ip) == TEST_XOR_IP
    assert address.port == TEST_XOR_PORT

    # The packet is also muxed to the connection of its ufrag.
    reader, read_result = _run_in_thread(pkt_conn.read_from)
    reader.join(2.0)
    assert read_result["value"][0] == raw

    # Cached: no second request is sent.
    cached = mux.get_xor_mapped_addr(server, 1.0)
    assert cached == address
    remote.settimeout(0.05)
    with pytest.raises(socket.timeout):
        remote.recvfrom(8192)

    # After the TTL a new request goes out and no answer means a timeout.
    time.sleep(0.25)
    with pytest.raises(XorMappedAddrTimeoutError):
        mux.get_xor_mapped_addr(server, 0.005)
    remote.settimeout(2.0)
    data, _ = remote.recvfrom(8192)
    assert decode_message(data).msg_type == BINDING_REQUEST


def test_timeout_without_response(mux, remote):
    with pytest.raises(XorMappedAddrTimeoutError):
        mux.get_xor_mapped_addr(remote.getsockname(), 0.05)


def test_get_relayed_addr_not_implemented(mux, remote):
    with pytest.raises(NotImplementedFeatureError):
        mux.get_relayed_addr(remote.getsockname(), 1.0)


def test_get_conn_for_url_is_unique_per_url(mux):
    plain = mux.get_conn("ufrag", mux.local_addr)
    first = mux.get_conn_for_url("ufrag", "stun:stun.example.com:3478", mux.local_addr)
    second = mux.get_conn_for_url("ufrag", "stun:other.example.com:3478", mux.local_addr)
    assert first.key == "ufragstun:stun.example.com:3478"
    assert first is not plain
    assert first is not second
    assert mux.get_conn_for_url("ufrag", "stun:stun.example.com:3478", mux.local_addr) is first


def test_default_cache_ttl(mux):
    assert mux.xor_mapped_addr_cache_ttl == 25.0