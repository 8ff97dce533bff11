"""Multiplex UDP and TCP sockets among ICE sessions by STUN username fragment, with a small STUN codec."""

__version__ = "0.1.0"