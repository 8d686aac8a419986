"""The broadcast actor.

A Room owns its membership set and is the only code that reads or mutates
it. Every operation is a request on one FIFO queue consumed by a single
thread, so join, leave and forward are serialized without locks around the
set itself.
"""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, Callable

from .connection import OutboxClosed
from .constants import (
    POLICY_BLOCK,
    POLICY_DISCONNECT,
    POLICY_DROP,
    SLOW_CONSUMER_POLICIES,
)

if TYPE_CHECKING:
    from .connection import ConnectionHandle
    from .message import Message
    from .stats import Stats

Observer = Callable[["Message"], None]

_JOIN = "join"
_LEAVE = "leave"
_FORWARD = "forward"
_SNAPSHOT = "snapshot"
_STOP = "stop"


class RoomClosed(Exception):
    """The room has stopped and accepts no further joins or messages."""


@dataclass
class _Request:
    op: str
    arg: Any = None
    done: threading.Event = field(default_factory=threading.Event)
    result: Any = None


class Room:
    def __init__(
        self,
        name: str = "lobby",
        *,
        slow_consumer_policy: str = POLICY_BLOCK,
        stats: Stats | None = None,
    ) -> None:
        if slow_consumer_policy not in SLOW_CONSUMER_POLICIES:
            raise ValueError(f"unknown slow consumer policy {slow_consumer_policy!r}")

        self.name = name
        self.policy = slow_consumer_policy
        self.stats = stats
        self.log = logging.getLogger("roomd.room")

        self._requests: queue.Queue[_Request] = queue.Queue()
        self._members: set[ConnectionHandle] = set()
        self._observers: list[Observer] = []

        # Guards _closed against submissions racing with stop().
        self._submit_lock = threading.Lock()
        self._closed = False
        self._thread: threading.Thread | None = None
        self.stopped = threading.Event()
        self.failed = threading.Event()

    def start(self) -> Room:
        if self._thread is not None:
            return self
        self._thread = threading.Thread(
            target=self._run, name=f"roomd-room-{self.name}", daemon=True
        )
        self._thread.start()
        self.log.info("Room started name=%s policy=%s", self.name, self.policy)
        return self

    def add_observer(self, observer: Observer) -> None:
        """Register a passive observer of forwarded messages.

        Observers receive a copy of each message after fan-out and must not
        block. Register them before ``start``.
        """
        self._observers.append(observer)

    # Public operations. Each is a request serviced by the room thread.

    def join(self, handle: ConnectionHandle, *, wait: bool = True) -> None:
        req = self._submit(_JOIN, handle)
        if wait:
            req.done.wait()
            if self.failed.is_set():
                raise RoomClosed(f"room {self.name} failed")

    def leave(self, handle: ConnectionHandle, *, wait: bool = False) -> None:
        try:
            req = self._submit(_LEAVE, handle)
        except RoomClosed:
            # Shutdown already closed every member's outbox.
            return
        if wait:
            req.done.wait()

    def forward(self, msg: Message) -> threading.Event:
        """Queue ``msg`` for every member at the time it is processed.

        Returns an event set once delivery to all recipients was attempted.
        """
        return self._submit(_FORWARD, msg).done

    def members(self, timeout: float | None = None) -> frozenset[ConnectionHandle]:
        req = self._submit(_SNAPSHOT)
        if not req.done.wait(timeout):
            raise TimeoutError("room did not answer in time")
        if req.result is None:
            raise RoomClosed(f"room {self.name} is closed")
        return req.result

    def stop(self, timeout: float | None = None) -> bool:
        """Close all member outboxes and end the room thread."""
        with self._submit_lock:
            if self._closed:
                return self.stopped.wait(timeout)
            self._closed = True
            self._requests.put(_Request(_STOP))
        if self._thread is None:
            self._shutdown()
            return True
        return self.stopped.wait(timeout)

    @property
    def closed(self) -> bool:
        return self._closed

    def _submit(self, op: str, arg: Any = None) -> _Request:
        req = _Request(op, arg)
        with self._submit_lock:
            if self._closed:
                raise RoomClosed(f"room {self.name} is closed")
            self._requests.put(req)
        return req

    def _inc(self, key: str, delta: int = 1) -> None:
        if self.stats is not None:
            self.stats.inc(key, delta)

    # Room thread

    def _run(self) -> None:
        try:
            while True:
                req = self._requests.get()
                if req.op == _STOP:
                    self._shutdown()
                    req.done.set()
                    return
                try:
                    self._dispatch(req)
                finally:
                    req.done.set()
        except Exception:
            self.log.critical("Room loop crashed name=%s", self.name, exc_info=True)
            self.failed.set()
            with self._submit_lock:
                self._closed = True
            self._shutdown()
            self._release_pending()

    def _dispatch(self, req: _Request) -> None:
        if req.op == _JOIN:
            self._on_join(req.arg)
        elif req.op == _LEAVE:
            self._on_leave(req.arg)
        elif req.op == _FORWARD:
            self._on_forward(req.arg)
        elif req.op == _SNAPSHOT:
            req.result = frozenset(self._members)
        else:
            raise RuntimeError(f"unknown room request {req.op!r}")

    def _on_join(self, handle: ConnectionHandle) -> None:
        if handle in self._members:
            return
        self._members.add(handle)
        self._inc("joins")
        self.log.debug("Join %r members=%s", handle, len(self._members))

    def _on_leave(self, handle: ConnectionHandle) -> None:
        if handle not in self._members:
            # Already dropped by the disconnect policy or never joined.
            return
        self._members.discard(handle)
        handle.outbox.close()
        self._inc("parts")
        self.log.debug("Leave %r members=%s", handle, len(self._members))

    def _on_forward(self, msg: Message) -> None:
        self._inc("msgs_forwarded")
        slow: list[ConnectionHandle] = []

        for handle in self._members:
            try:
                if self.policy == POLICY_BLOCK:
                    handle.outbox.put(msg)
                else:
                    handle.outbox.put(msg, block=False)
            except queue.Full:
                if self.policy == POLICY_DROP:
                    self._inc("dropped")
                    self.log.warning(
                        "Outbox full; dropped message for %r name=%r",
                        handle,
                        handle.identity.display_name,
                    )
                elif self.policy == POLICY_DISCONNECT:
                    slow.append(handle)
                continue
            except OutboxClosed:
                # A member's outbox is only closed here, on removal.
                self.log.error("Member %r has a closed outbox", handle)
                continue
            self._inc("deliveries")

        for handle in slow:
            self._disconnect(handle)

        for observer in self._observers:
            try:
                observer(replace(msg))
            except Exception:
                self.log.exception("Observer %r failed", observer)

    def _disconnect(self, handle: ConnectionHandle) -> None:
        self._members.discard(handle)
        handle.outbox.close()
        self._inc("slow_disconnects")
        self.log.warning(
            "Disconnecting slow consumer %r name=%r",
            handle,
            handle.identity.display_name,
        )
        handle.abort()

    def _shutdown(self) -> None:
        members = list(self._members)
        self._members.clear()
        for handle in members:
            handle.outbox.close()
        self.stopped.set()
        self.log.info("Room stopped name=%s members_closed=%s", self.name, len(members))

    def _release_pending(self) -> None:
        # Wake anyone waiting on a request the crashed loop will never see.
        while True:
            try:
                req = self._requests.get_nowait()
            except queue.Empty:
                return
            req.done.set()
