"""Exceptions raised by the multiplexers and connections."""


class IceError(Exception):
    """Base class of every error raised by this package."""


class ClosedPipeError(IceError):
    """The connection or mux has been closed."""

    def __init__(self, message: str = "io: read/write on closed pipe") -> None:
        super().__init__(message)


class ShortBufferError(IceError):
    """A packet is larger than the space available for it."""

    def __init__(self, message: str = "short buffer") -> None:
        super().__init__(message)


class TransportAddressError(IceError):
    """A local address could not be read as a TCP or UDP address."""

    def __init__(self, message: str = "failed to get local transport address") -> None:
        super().__init__(message)


class ConnectionAddrAlreadyExistError(IceError):
    """A connection for the same remote address is already registered."""

    def __init__(self, address: str = "") -> None:
        text = "connection with same remote address already exists"
        super().__init__(f"{text}: {address}" if address else text)
        self.address = address


class InvalidAddressError(IceError):
    """The address does not belong to this mux."""

    def __init__(self, message: str = "invalid address") -> None:
        super().__init__(message)


class NoMuxAvailableError(IceError):
    """No underlying mux can serve the request."""

    def __init__(self, message: str = "no mux available") -> None:
        super().__init__(message)


class XorMappedAddrTimeoutError(IceError):
    """No XOR-MAPPED-ADDRESS arrived before the deadline."""

    def __init__(self, message: str = "timeout while waiting for XORMappedAddr") -> None:
        super().__init__(message)


class NoXorAddrMappingError(IceError):
    """No XOR-MAPPED-ADDRESS mapping is known for the server."""

    def __init__(self, message: str = "no address mapping") -> None:
        super().__init__(message)


class NotImplementedFeatureError(IceError):
    """The requested feature is not available."""

    def __init__(self, message: str = "not implemented yet") -> None:
        super().__init__(message)