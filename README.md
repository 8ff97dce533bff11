# icemux

Share one UDP socket or one TCP listener among many ICE sessions.
Traffic from a remote address that the mux has not seen before goes to the
session whose username fragment (ufrag) appears in the USERNAME attribute of
the first STUN binding request from that address. After that, packets from
that address go to the same session.

All durations are given in seconds.

## Modules

- `icemux.message` is a small STUN codec. It provides `Message` with `add`,
  `get`, `contains` and `encode`, and the functions `decode_message`,
  `is_message` and `new_transaction_id`. It also has the USE-CANDIDATE
  attribute (`use_candidate()` and `UseCandidateAttr` with `add_to` and
  `is_set`) and `XorMappedAddress`, which you write with `add_to` and read
  with `get_xor_mapped_address`. `decode_message` raises `ValueError` when a
  message is malformed. `Message.get` raises `KeyError` when an attribute is
  missing.
- `icemux.tcptype` holds the `TCPType` enum for ICE-TCP candidates
  (`UNSPECIFIED`, `ACTIVE`, `PASSIVE`, `SIMULTANEOUS_OPEN`).
  `TCPType.parse("active")` reads a name and ignores case. An unknown name
  gives `UNSPECIFIED`. `str()` gives back `"active"`, `"passive"`, `"so"`, or
  `""` for `UNSPECIFIED`.
- `icemux.stats` holds the `CandidatePairStats` and `CandidateStats`
  dataclasses. They are plain records, and nothing in the package fills them
  in.
- `icemux.tcp_packet_conn` provides:
  - RFC 4571 framing with `read_streaming_packet(conn, max_size)` and
    `write_streaming_packet(conn, data)`;
  - `TCPPacketConn`, which gives datagram-style `read_from()` and
    `write_to(data, addr)` over a set of TCP streams, keyed by remote address;
  - `BufferedConn`, which queues writes and sends them from a background
    thread.
- `icemux.tcp_mux` provides `TCPMuxParams`, `TCPMuxDefault` and
  `MultiTCPMuxDefault`. `TCPMuxDefault` accepts connections on a listening
  socket and reads the first framed STUN binding request, which may be at most
  512 bytes. It then attaches the stream to the `TCPPacketConn` for that ufrag
  and local IP. A stream that sends no first request within
  `first_stun_bind_timeout` is closed. A connection created from an incoming
  request is closed if no caller asks for it with `get_conn_by_ufrag` within
  `alive_duration_for_conn_from_stun`. Both settings default to 30 seconds.
  `MultiTCPMuxDefault.get_conn_by_ufrag` uses only the first mux.
  `get_all_conns` returns one connection per mux.
- `icemux.udp_mux` provides `UDPMuxDefault`, `MultiUDPMuxDefault` and
  `new_multi_udp_mux_from_port(port, ...)`. The last one binds `port` on every
  local address that `psutil` reports. You can limit the addresses with
  `interface_filter`, `ip_filter`, `networks` (`"udp4"`, `"udp6"`) and
  `include_loopback`. Buffer sizes are set with `read_buffer_size` and
  `write_buffer_size`.
- `icemux.udp_muxed_conn` provides `UDPMuxedConn`, the per-ufrag packet
  connection, and `IPPort` / `ip_port(host, port)`, the address keys it uses.
  `UDPMuxedConn.read_from()` raises `EOFError` once the connection is closed.
- `icemux.udp_mux_universal` provides `UniversalUDPMuxDefault`, a
  `UDPMuxDefault` that also finds server-reflexive addresses.
  `get_xor_mapped_addr(server_addr, deadline)` sends a binding request over
  the shared socket and waits for the XOR-MAPPED-ADDRESS in the reply. The
  answer is cached for `xor_mapped_addr_cache_ttl` seconds, 25 by default.
  `get_conn_for_url(ufrag, url, addr)` keys a connection by ufrag and server
  URL. `get_relayed_addr` always raises `NotImplementedFeatureError`.

Errors are subclasses of `icemux.errors.IceError`. Examples are
`ClosedPipeError` once a mux or connection has been closed, and
`InvalidAddressError` for an address the mux does not listen on. Others are
`NoMuxAvailableError`, `XorMappedAddrTimeoutError` and `NoXorAddrMappingError`.

Each mux and each connection has `close()` and can be used as a context
manager.

## Example: UDP

```python
import socket

from icemux.udp_mux import UDPMuxDefault

sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
sock.bind(("127.0.0.1", 0))

with UDPMuxDefault(sock) as mux:
    conn = mux.get_conn("myufrag", sock.getsockname())
    # Packets from an address that has sent a STUN binding request with
    # the username "myufrag:..." now arrive here:
    data, addr = conn.read_from()
    conn.write_to(data, addr)
```

## Example: TCP

```python
import socket

from icemux.tcp_mux import TCPMuxDefault, TCPMuxParams

listener = socket.create_server(("127.0.0.1", 0))
with TCPMuxDefault(TCPMuxParams(listener=listener, read_buffer_size=20)) as mux:
    conn = mux.get_conn_by_ufrag("myufrag", False, "127.0.0.1")
    data, addr = conn.read_from()
    conn.write_to(data, addr)
```

## What it does not do

This package only multiplexes sockets. It has no ICE agent:

- It does not gather candidates.
- It does not run connectivity checks, nominate pairs or send keepalives.
- It does not answer STUN binding requests.
- It does not check message integrity or fingerprints.
- It does not allocate TURN relays.

Those parts must come from the program that uses these muxes.

## Running the tests

```
pip install -e .[test]
pytest
```