"""Exception hierarchy shared by the messaging core."""


class XChatError(RuntimeError):
    """Base exception for failures raised by the messaging core."""


class InvalidKeyError(XChatError, ValueError):
    """Raised when key material is malformed or not a usable curve point.

    Fatal to the handshake attempt that produced it, never to an
    established session.
    """


class TransportError(XChatError):
    """Raised when the relay row store rejects an insert, select or delete."""
