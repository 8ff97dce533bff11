"""Minimal STUN message encoding and decoding with ICE attributes."""

from __future__ import annotations

import ipaddress
import os
import struct
from dataclasses import dataclass, field
from typing import Iterator, List, Tuple, Union

MAGIC_COOKIE = 0x2112A442
HEADER_SIZE = 20
TRANSACTION_ID_SIZE = 12

METHOD_BINDING = 0x001

CLASS_REQUEST = 0
CLASS_INDICATION = 1
CLASS_SUCCESS_RESPONSE = 2
CLASS_ERROR_RESPONSE = 3

ATTR_USERNAME = 0x0006
ATTR_XOR_MAPPED_ADDRESS = 0x0020
ATTR_PRIORITY = 0x0024
ATTR_USE_CANDIDATE = 0x0025
ATTR_ICE_CONTROLLED = 0x8029
ATTR_ICE_CONTROLLING = 0x802A

_FAMILY_IPV4 = 0x01
_FAMILY_IPV6 = 0x02

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


def _compose_type(method: int, message_class: int) -> int:
    value = (method & 0x000F) | ((method >> 4) & 0x7) << 5 | ((method >> 7) & 0x1F) << 9
    value |= (message_class & 0x1) << 4
    value |= ((message_class >> 1) & 0x1) << 8
    return value


BINDING_REQUEST = _compose_type(METHOD_BINDING, CLASS_REQUEST)
BINDING_SUCCESS = _compose_type(METHOD_BINDING, CLASS_SUCCESS_RESPONSE)


def new_transaction_id() -> bytes:
    """Return a fresh random 96-bit transaction id."""
    return os.urandom(TRANSACTION_ID_SIZE)


def _padded(length: int) -> int:
    return (length + 3) & ~3


@dataclass
class Message:
    """A STUN message: a type, a transaction id and ordered attributes."""

    msg_type: int = 0
    transaction_id: bytes = field(default_factory=new_transaction_id)
    attributes: List[Tuple[int, bytes]] = field(default_factory=list)

    def __post_init__(self) -> None:
        if len(self.transaction_id) != TRANSACTION_ID_SIZE:
            raise ValueError(
                f"transaction id must be {TRANSACTION_ID_SIZE} bytes, got {len(self.transaction_id)}"
            )
        if not 0 <= self.msg_type <= 0x3FFF:
            raise ValueError(f"invalid message type 0x{self.msg_type:x}")

    @property
    def method(self) -> int:
        t = self.msg_type
        return (t & 0xF) | ((t >> 5) & 0x7) << 4 | ((t >> 9) & 0x1F) << 7

    @property
    def message_class(self) -> int:
        t = self.msg_type
        return ((t >> 4) & 0x1) | ((t >> 8) & 0x1) << 1

    def add(self, attr_type: int, value: bytes | None) -> None:
        """Append an attribute; ``None`` stands for an empty value."""
        data = bytes(value or b"")
        if len(data) > 0xFFFF:
            raise ValueError("attribute value too long")
        self.attributes.append((attr_type, data))

    def get(self, attr_type: int) -> bytes:
        """Return the value of the first attribute of this type, or raise KeyError."""
        for current, value in self.attributes:
            if current == attr_type:
                return value
        raise KeyError(f"attribute 0x{attr_type:04x} not found")

    def contains(self, attr_type: int) -> bool:
        return any(current == attr_type for current, _ in self.attributes)

    def __iter__(self) -> Iterator[Tuple[int, bytes]]:
        return iter(self.attributes)

    def encode(self) -> bytes:
        """Serialise the message to its wire form."""
        body = bytearray()
        for attr_type, value in self.attributes:
            body += struct.pack("!HH", attr_type, len(value))
            body += value
            body += b"\x00" * (_padded(len(value)) - len(value))
        header = struct.pack("!HHI", self.msg_type, len(body), MAGIC_COOKIE)
        return header + self.transaction_id + bytes(body)


def is_message(data: bytes) -> bool:
    """Tell whether the bytes look like a STUN message."""
    if len(data) < HEADER_SIZE:
        return False
    return struct.unpack_from("!I", data, 4)[0] == MAGIC_COOKIE


def decode_message(raw: bytes) -> Message:
    """Parse a STUN message, raising ValueError when it is malformed."""
    raw = bytes(raw)
    if len(raw) < HEADER_SIZE:
        raise ValueError(f"message too short: {len(raw)} bytes")
    msg_type, length, cookie = struct.unpack_from("!HHI", raw, 0)
    if msg_type & 0xC000:
        raise ValueError("first two bits of the message type must be zero")
    if cookie != MAGIC_COOKIE:
        raise ValueError(f"bad magic cookie 0x{cookie:08x}")
    full_size = HEADER_SIZE + length
    if len(raw) < full_size:
        raise ValueError(f"message declares {length} bytes of attributes, got {len(raw) - HEADER_SIZE}")
    message = Message(msg_type=msg_type, transaction_id=raw[8:HEADER_SIZE])
    offset = HEADER_SIZE
    while offset < full_size:
        if full_size - offset < 4:
            raise ValueError("truncated attribute header")
        attr_type, attr_length = struct.unpack_from("!HH", raw, offset)
        offset += 4
        end = offset + attr_length
        if end > full_size:
            raise ValueError("attribute value exceeds message length")
        message.attributes.append((attr_type, raw[offset:end]))
        offset += _padded(attr_length)
    return message


class UseCandidateAttr:
    """The USE-CANDIDATE attribute, which carries no value."""

    def add_to(self, message: Message) -> None:
        message.add(ATTR_USE_CANDIDATE, None)

    def is_set(self, message: Message) -> bool:
        return message.contains(ATTR_USE_CANDIDATE)


def use_candidate() -> UseCandidateAttr:
    """Shorthand for UseCandidateAttr()."""
    return UseCandidateAttr()


def _xor_key(transaction_id: bytes) -> bytes:
    return struct.pack("!I", MAGIC_COOKIE) + transaction_id


@dataclass(frozen=True)
class XorMappedAddress:
    """The XOR-MAPPED-ADDRESS attribute."""

    ip: IPAddress
    port: int

    def __post_init__(self) -> None:
        object.__setattr__(self, "ip", ipaddress.ip_address(self.ip))
        if not 0 <= self.port <= 0xFFFF:
            raise ValueError(f"invalid port {self.port}")

    def add_to(self, message: Message) -> None:
        family = _FAMILY_IPV4 if self.ip.version == 4 else _FAMILY_IPV6
        key = _xor_key(message.transaction_id)
        packed = bytes(a ^ b for a, b in zip(self.ip.packed, key))
        port = self.port ^ (MAGIC_COOKIE >> 16)
        message.add(ATTR_XOR_MAPPED_ADDRESS, struct.pack("!BBH", 0, family, port) + packed)


def get_xor_mapped_address(message: Message) -> XorMappedAddress:
    """Read XOR-MAPPED-ADDRESS from a message (KeyError if absent, ValueError if bad)."""
    value = message.get(ATTR_XOR_MAPPED_ADDRESS)
    if len(value) < 4:
        raise ValueError("XOR-MAPPED-ADDRESS too short")
    _, family, xport = struct.unpack_from("!BBH", value, 0)
    if family == _FAMILY_IPV4:
        size = 4
    elif family == _FAMILY_IPV6:
        size = 16
    else:
        raise ValueError(f"unknown address family {family}")
    data = value[4:]
    if len(data) < size:
        raise ValueError("XOR-MAPPED-ADDRESS address truncated")
    key = _xor_key(message.transaction_id)
    ip = ipaddress.ip_address(bytes(a ^ b for a, b in zip(data[:size], key)))
    return XorMappedAddress(ip=ip, port=xport ^ (MAGIC_COOKIE >> 16))