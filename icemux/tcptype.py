"""ICE TCP candidate types (RFC 6544 section 4.5)."""

from __future__ import annotations

import enum


class TCPType(enum.IntEnum):
    """Type of an ICE TCP candidate."""

    UNSPECIFIED = 0
    ACTIVE = 1
    PASSIVE = 2
    SIMULTANEOUS_OPEN = 3

    @classmethod
    def parse(cls, value: str) -> "TCPType":
        """Read a TCP type name; unknown names give UNSPECIFIED."""
        return _BY_NAME.get(value.lower(), cls.UNSPECIFIED)

    def __str__(self) -> str:
        return _NAMES[self]


_NAMES = {
    TCPType.UNSPECIFIED: "",
    TCPType.ACTIVE: "active",
    TCPType.PASSIVE: "passive",
    TCPType.SIMULTANEOUS_OPEN: "so",
}

_BY_NAME = {name: tcp_type for tcp_type, name in _NAMES.items() if name}