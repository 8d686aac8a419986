from __future__ import annotations

import logging
import queue
import threading

import RNS

from .transport import (
    PayloadTooLarge,
    Transport,
    TransportClosed,
    TransportError,
    TransportTimeout,
)

_CLOSED = object()


class LinkTransport(Transport):
    """
    Adapts an established ``RNS.Link`` to the ``Transport`` contract.

    Reticulum delivers packets on its own threads through callbacks; they are
    queued here and handed to the connection's inbound loop one at a time.
    Each outbound payload is sent as a single packet, so it must fit the
    link MDU.
    """

    def __init__(self, link: RNS.Link) -> None:
        self.link = link
        self.log = logging.getLogger("roomd.link")
        self._inbox: queue.Queue = queue.Queue()
        self._closed = threading.Event()
        self._identified = threading.Event()
        self._peer: bytes | None = None

        link.set_packet_callback(lambda data, pkt: self._on_packet(data))
        link.set_link_closed_callback(lambda closed_link: self._on_closed())
        link.set_remote_identified_callback(
            lambda identified_link, ident: self._on_identified(ident)
        )

        # The peer may have identified before callbacks were attached.
        ri = link.get_remote_identity()
        if ri is not None:
            self._on_identified(ri)

    def _on_packet(self, data: bytes) -> None:
        if not self._closed.is_set():
            self._inbox.put(bytes(data))

    def _on_closed(self) -> None:
        if not self._closed.is_set():
            self._closed.set()
            self._inbox.put(_CLOSED)

    def _on_identified(self, identity: RNS.Identity | None) -> None:
        if identity is not None:
            self._peer = bytes(identity.hash)
            self._identified.set()

    def read(self, timeout: float | None = None) -> bytes:
        if self._closed.is_set() and self._inbox.empty():
            raise TransportClosed("link closed")
        try:
            item = self._inbox.get(timeout=timeout)
        except queue.Empty:
            raise TransportTimeout(f"no packet within {timeout}s") from None
        if item is _CLOSED:
            # Leave the marker for any later reader.
            self._inbox.put(_CLOSED)
            raise TransportClosed("link closed")
        return item

    def write(self, payload: bytes) -> None:
        if self._closed.is_set():
            raise TransportClosed("link closed")

        mdu = getattr(self.link, "MDU", None)
        if mdu is not None and len(payload) > mdu:
            raise PayloadTooLarge(f"payload of {len(payload)} bytes exceeds link MDU {mdu}")

        try:
            RNS.Packet(self.link, payload).send()
        except OSError as e:
            raise TransportError(f"send failed: {e}") from e

    def close(self) -> None:
        if self._closed.is_set():
            return
        self._on_closed()
        try:
            self.link.teardown()
        except Exception:
            self.log.debug("Link teardown failed link_id=%s", self.describe(), exc_info=True)

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def remote_identity(self, timeout: float = 0.0) -> bytes | None:
        if timeout > 0:
            self._identified.wait(timeout)
        return self._peer

    def describe(self) -> str:
        lid = getattr(self.link, "link_id", None)
        if isinstance(lid, (bytes, bytearray)):
            return bytes(lid).hex()
        h = getattr(self.link, "hash", None)
        if isinstance(h, (bytes, bytearray)):
            return bytes(h).hex()
        return "-"
