import queue
import threading
import time

import pytest

from roomd.codec import decode, encode
from roomd.connection import serve_connection
from roomd.constants import K_BODY
from roomd.identity import Identity
from roomd.message import Message, decode_message
from roomd.room import Room
from roomd.transport import (
    PayloadTooLarge,
    Transport,
    TransportClosed,
    TransportError,
    TransportTimeout,
)

_EOF = object()


class FakeTransport(Transport):
    """In-memory stand-in for a Reticulum link."""

    def __init__(
        self, name: str = "fake", peer: bytes | None = None, mdu: int | None = None
    ) -> None:
        self.name = name
        self.peer = peer
        self.mdu = mdu
        self.inbound: queue.Queue = queue.Queue()
        self.sent: queue.Queue = queue.Queue()
        self.fail_writes = False
        self.close_calls = 0
        self._closed = threading.Event()

    def feed(self, payload: bytes) -> None:
        self.inbound.put(payload)

    def say(self, body: str) -> None:
        self.feed(encode({K_BODY: body}))

    def read(self, timeout=None) -> bytes:
        try:
            item = self.inbound.get(timeout=timeout)
        except queue.Empty:
            raise TransportTimeout("idle") from None
        if item is _EOF:
            self.inbound.put(_EOF)
            raise TransportClosed("closed")
        return item

    def write(self, payload: bytes) -> None:
        if self._closed.is_set():
            raise TransportClosed("closed")
        if self.fail_writes:
            raise TransportError("broken pipe")
        if self.mdu is not None and len(payload) > self.mdu:
            raise PayloadTooLarge(f"{len(payload)} > {self.mdu}")
        self.sent.put(payload)

    def close(self) -> None:
        self.close_calls += 1
        if not self._closed.is_set():
            self._closed.set()
            self.inbound.put(_EOF)

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def remote_identity(self, timeout: float = 0.0):
        return self.peer

    def describe(self) -> str:
        return self.name

    def next_message(self, timeout: float = 2.0) -> Message:
        return decode_message(self.sent.get(timeout=timeout))

    def next_raw(self, timeout: float = 2.0) -> dict:
        return decode(self.sent.get(timeout=timeout))

    def assert_nothing_sent(self) -> None:
        assert self.sent.empty()


def wait_for(predicate, timeout: float = 2.0) -> None:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return
        time.sleep(0.01)
    raise AssertionError("condition not met in time")


@pytest.fixture
def room():
    r = Room("test").start()
    yield r
    r.stop(timeout=2.0)


@pytest.fixture
def connect(room):
    """Run a connection through the entry point on a background thread."""

    running: list = []

    def _connect(ident_id: int, *, target_room=None, mdu=None, **kwargs):
        r = target_room if target_room is not None else room
        transport = FakeTransport(name=f"conn-{ident_id}", mdu=mdu)
        t = threading.Thread(
            target=serve_connection,
            args=(r, transport, Identity(id=ident_id)),
            kwargs=kwargs,
            daemon=True,
        )
        t.start()
        running.append((transport, t))
        wait_for(lambda: any(h.transport is transport for h in r.members()))
        return transport, t

    yield _connect

    for transport, t in running:
        transport.close()
        t.join(timeout=2.0)


@pytest.fixture
def make_transport():
    return FakeTransport


@pytest.fixture
def wait():
    return wait_for
