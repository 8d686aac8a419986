"""Bidirectional message stream contract between the relay and its network."""

from __future__ import annotations


class TransportError(Exception):
    """The stream can no longer carry messages."""


class TransportClosed(TransportError):
    pass


class TransportTimeout(TransportError):
    pass


class PayloadTooLarge(ValueError):
    """One payload is too big for the stream. The stream itself is still usable."""


class Transport:
    """
    One participant's message stream.

    Subclasses deliver whole payloads: ``read`` returns exactly one inbound
    payload and ``write`` sends exactly one outbound payload. ``close`` must
    be idempotent and may be called from any thread; it wakes a blocked
    ``read`` with ``TransportClosed``.
    """

    def read(self, timeout: float | None = None) -> bytes:
        raise NotImplementedError

    def write(self, payload: bytes) -> None:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError

    @property
    def closed(self) -> bool:
        raise NotImplementedError

    def remote_identity(self, timeout: float = 0.0) -> bytes | None:
        """Identity hash announced by the remote side, if any."""
        return None

    def describe(self) -> str:
        return "-"
