import signal
import threading

from roomd.config import RelayConfig
from roomd.service import RelayService


def _service(**overrides) -> RelayService:
    svc = RelayService(RelayConfig(**overrides))
    svc.room.start()
    return svc


def test_unidentified_link_never_joins(make_transport) -> None:
    svc = _service(require_identified=True, identify_timeout_s=0.05)
    try:
        t = make_transport()
        with svc._transports_lock:
            svc._transports.add(t)

        svc._serve(t)

        assert t.closed
        assert svc.stats.get("identity_failures") == 1
        assert svc.room.members() == frozenset()
        assert svc.stats.get("joins") == 0
        assert t not in svc._transports
        t.assert_nothing_sent()
    finally:
        svc.room.stop(timeout=1.0)


def test_identified_link_joins_and_leaves(make_transport, wait) -> None:
    svc = _service(require_identified=True, identify_timeout_s=0.05)
    try:
        t = make_transport(peer=b"\xaa\xbb\xcc\xdd")
        th = threading.Thread(target=svc._serve, args=(t,), daemon=True)
        th.start()
        wait(lambda: len(svc.room.members()) == 1)

        (handle,) = svc.room.members()
        assert handle.identity.peer == b"\xaa\xbb\xcc\xdd"
        assert handle.nick_max_chars == svc.config.nick_max_chars

        t.say("hello")
        assert t.next_message().body == "hello"

        t.close()
        th.join(timeout=2.0)
        assert not th.is_alive()
        assert svc.room.members() == frozenset()
    finally:
        svc.room.stop(timeout=1.0)


def test_run_forever_exits_nonzero_when_room_fails(monkeypatch) -> None:
    monkeypatch.setattr(signal, "signal", lambda *_: None)
    svc = _service()
    # Pretend start() already ran so no Reticulum instance is needed.
    svc.destination = object()

    svc.room._submit("bogus")
    assert svc.run_forever() == 1
    assert svc.room.closed


def test_stop_closes_tracked_transports(make_transport) -> None:
    svc = _service()
    t = make_transport()
    with svc._transports_lock:
        svc._transports.add(t)

    svc.stop()
    assert t.closed
    assert svc.room.stopped.is_set()
