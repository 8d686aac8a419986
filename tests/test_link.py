import threading

import pytest

import roomd.link as link_mod
from roomd.link import LinkTransport
from roomd.transport import PayloadTooLarge, TransportClosed, TransportTimeout


class FakeIdentity:
    def __init__(self, h: bytes) -> None:
        self.hash = h


class FakeLink:
    MDU = 64

    def __init__(self, remote=None) -> None:
        self.link_id = b"\x01\x02\x03\x04"
        self.remote = remote
        self.teardowns = 0
        self.packet_cb = None
        self.closed_cb = None
        self.identified_cb = None

    def set_packet_callback(self, cb):
        self.packet_cb = cb

    def set_link_closed_callback(self, cb):
        self.closed_cb = cb

    def set_remote_identified_callback(self, cb):
        self.identified_cb = cb

    def get_remote_identity(self):
        return self.remote

    def teardown(self):
        self.teardowns += 1
        if self.closed_cb is not None:
            self.closed_cb(self)


class FakePacket:
    sent: list = []

    def __init__(self, link, payload) -> None:
        self.link = link
        self.payload = payload

    def send(self):
        FakePacket.sent.append((self.link, self.payload))


@pytest.fixture
def packets(monkeypatch):
    FakePacket.sent = []
    monkeypatch.setattr(link_mod.RNS, "Packet", FakePacket)
    return FakePacket.sent


def test_packets_are_read_in_order() -> None:
    link = FakeLink()
    t = LinkTransport(link)
    link.packet_cb(b"one", None)
    link.packet_cb(b"two", None)
    assert t.read(timeout=0.1) == b"one"
    assert t.read(timeout=0.1) == b"two"


def test_read_times_out() -> None:
    t = LinkTransport(FakeLink())
    with pytest.raises(TransportTimeout):
        t.read(timeout=0.01)


def test_remote_close_wakes_reader() -> None:
    link = FakeLink()
    t = LinkTransport(link)
    errors = []

    def reader():
        try:
            t.read()
        except TransportClosed as e:
            errors.append(e)

    th = threading.Thread(target=reader)
    th.start()
    link.closed_cb(link)
    th.join(timeout=1.0)
    assert len(errors) == 1
    assert t.closed
    with pytest.raises(TransportClosed):
        t.read(timeout=0.01)


def test_write_sends_one_packet(packets) -> None:
    link = FakeLink()
    t = LinkTransport(link)
    t.write(b"payload")
    assert packets == [(link, b"payload")]


def test_write_over_mdu_rejects_only_that_payload(packets) -> None:
    link = FakeLink()
    t = LinkTransport(link)
    with pytest.raises(PayloadTooLarge):
        t.write(b"x" * 65)
    assert packets == []

    assert not t.closed
    assert link.teardowns == 0
    t.write(b"x" * 64)
    assert packets == [(link, b"x" * 64)]


def test_close_tears_down_once(packets) -> None:
    link = FakeLink()
    t = LinkTransport(link)
    t.close()
    t.close()
    assert link.teardowns == 1
    with pytest.raises(TransportClosed):
        t.write(b"late")


def test_remote_identity() -> None:
    link = FakeLink()
    t = LinkTransport(link)
    assert t.remote_identity() is None
    link.identified_cb(link, FakeIdentity(b"\xab" * 16))
    assert t.remote_identity(timeout=0.1) == b"\xab" * 16


def test_remote_identity_known_at_attach() -> None:
    t = LinkTransport(FakeLink(remote=FakeIdentity(b"\xcd" * 16)))
    assert t.remote_identity() == b"\xcd" * 16
    assert t.describe() == "01020304"
