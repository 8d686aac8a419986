from __future__ import annotations

import logging
import queue
import threading
from collections import deque
from typing import TYPE_CHECKING

from cbor2 import CBORDecodeError

from .constants import (
    MAX_BODY_BYTES,
    MESSAGE_BUFFER_SIZE,
    NICK_CONFIRM,
    NICK_MAX_CHARS,
    NICK_REFUSED,
)
from .identity import Identity
from .message import Message, decode_message, encode_message, parse_nick_command, utc_now
from .transport import PayloadTooLarge, Transport, TransportError, TransportTimeout

if TYPE_CHECKING:
    from .room import Room
    from .stats import Stats


class OutboxClosed(Exception):
    """Put on an outbox after the Room closed it."""


class Outbox:
    """
    Bounded outbound queue for one connection.

    Written by the Room (and by the owner's inbound loop for command
    replies), read only by the owner's outbound loop. ``close`` lets the
    reader drain what is queued and then observe end-of-stream.
    ``discard`` is used once the reader is gone: pending messages are
    dropped and further puts are accepted and thrown away, so a writer can
    never block on a dead reader.
    """

    def __init__(self, maxsize: int = MESSAGE_BUFFER_SIZE) -> None:
        if maxsize <= 0:
            raise ValueError("outbox size must be positive")
        self.maxsize = int(maxsize)
        self._items: deque[Message] = deque()
        self._cond = threading.Condition()
        self._closed = False
        self._discarding = False

    def put(self, msg: Message, block: bool = True, timeout: float | None = None) -> None:
        with self._cond:
            if self._closed:
                raise OutboxClosed("outbox closed")
            if self._discarding:
                return
            if len(self._items) >= self.maxsize:
                if not block:
                    raise queue.Full
                if not self._cond.wait_for(
                    lambda: len(self._items) < self.maxsize
                    or self._closed
                    or self._discarding,
                    timeout=timeout,
                ):
                    raise queue.Full
                if self._closed:
                    raise OutboxClosed("outbox closed")
                if self._discarding:
                    return
            self._items.append(msg)
            self._cond.notify_all()

    def get(self, timeout: float | None = None) -> Message | None:
        """Next message, or None once closed and drained.

        Raises ``queue.Empty`` if ``timeout`` expires first.
        """
        with self._cond:
            if not self._cond.wait_for(
                lambda: self._items or self._closed, timeout=timeout
            ):
                raise queue.Empty
            if self._items:
                msg = self._items.popleft()
                self._cond.notify_all()
                return msg
            return None

    def close(self) -> bool:
        """Close the outbox. Returns False if it was already closed."""
        with self._cond:
            if self._closed:
                return False
            self._closed = True
            self._cond.notify_all()
            return True

    def discard(self) -> None:
        with self._cond:
            self._discarding = True
            self._items.clear()
            self._cond.notify_all()

    @property
    def closed(self) -> bool:
        with self._cond:
            return self._closed

    def qsize(self) -> int:
        with self._cond:
            return len(self._items)

    def full(self) -> bool:
        with self._cond:
            return len(self._items) >= self.maxsize


class ConnectionHandle:
    """
    One participant in a Room.

    Owns the transport exclusively. ``read_loop`` runs on the connection's
    own thread; ``write_loop`` runs on a second thread for the lifetime of
    the connection.
    """

    def __init__(
        self,
        room: Room,
        transport: Transport,
        identity: Identity,
        *,
        outbox_size: int = MESSAGE_BUFFER_SIZE,
        max_body_bytes: int = MAX_BODY_BYTES,
        nick_max_chars: int = NICK_MAX_CHARS,
        idle_timeout_s: float = 0.0,
        stats: Stats | None = None,
    ) -> None:
        self.room = room
        self.transport = transport
        self.identity = identity
        self.outbox = Outbox(outbox_size)
        self.max_body_bytes = int(max_body_bytes)
        self.nick_max_chars = int(nick_max_chars)
        self.idle_timeout_s = float(idle_timeout_s)
        self.stats = stats
        self.log = logging.getLogger("roomd.conn")

        self._leave_lock = threading.Lock()
        self._left = False

    def __repr__(self) -> str:
        return f"<ConnectionHandle id={self.identity.id} link_id={self.transport.describe()}>"

    def _inc(self, key: str, delta: int = 1) -> None:
        if self.stats is not None:
            self.stats.inc(key, delta)

    def read_loop(self) -> None:
        timeout = self.idle_timeout_s if self.idle_timeout_s > 0 else None
        try:
            while True:
                try:
                    data = self.transport.read(timeout=timeout)
                except TransportTimeout:
                    self.log.info(
                        "Idle timeout id=%s link_id=%s",
                        self.identity.id,
                        self.transport.describe(),
                    )
                    return
                except TransportError as e:
                    self.log.debug("Read ended id=%s: %s", self.identity.id, e)
                    return

                self._inc("pkts_in")
                self._inc("bytes_in", len(data))

                try:
                    msg = decode_message(data, max_body_bytes=self.max_body_bytes)
                except (CBORDecodeError, TypeError, ValueError) as e:
                    self._inc("pkts_bad")
                    self.log.info(
                        "Malformed payload id=%s bytes=%s err=%s; closing",
                        self.identity.id,
                        len(data),
                        e,
                    )
                    return

                self.handle_message(msg)
        except OutboxClosed:
            self.log.debug("Outbox closed under reader id=%s", self.identity.id)
        finally:
            self.transport.close()

    def handle_message(self, msg: Message) -> None:
        msg.timestamp = utc_now()
        name = self.identity.ensure_display_name()

        new_name = parse_nick_command(msg.body)
        if new_name is not None:
            if len(new_name) > self.nick_max_chars:
                msg.sender_name = name
                msg.body = NICK_REFUSED.format(max=self.nick_max_chars)
                self._inc("renames_refused")
                self.log.info(
                    "Rename refused id=%s len=%s", self.identity.id, len(new_name)
                )
            else:
                self.identity.display_name = new_name
                msg.sender_name = new_name
                msg.body = NICK_CONFIRM.format(name=new_name)
                self._inc("renames")
                self.log.info("Rename id=%s %r -> %r", self.identity.id, name, new_name)
            # Replies go straight to our own outbox, never through the Room.
            self.outbox.put(msg)
            return

        msg.sender_name = name
        if self.log.isEnabledFor(logging.DEBUG):
            self.log.debug(
                "RX id=%s name=%r body_len=%s", self.identity.id, name, len(msg.body)
            )
        self.room.forward(msg)

    def write_loop(self) -> None:
        try:
            while True:
                msg = self.outbox.get()
                if msg is None:
                    return
                payload = encode_message(msg)
                try:
                    self.transport.write(payload)
                except PayloadTooLarge as e:
                    # Only this message is lost; the link stays up.
                    self._inc("pkts_oversize")
                    self.log.warning(
                        "Dropped oversize message id=%s link_id=%s: %s",
                        self.identity.id,
                        self.transport.describe(),
                        e,
                    )
                    continue
                except TransportError as e:
                    self.log.info(
                        "Write failed id=%s link_id=%s err=%s",
                        self.identity.id,
                        self.transport.describe(),
                        e,
                    )
                    self.outbox.discard()
                    return
                self._inc("bytes_out", len(payload))
        finally:
            self.transport.close()

    def leave(self) -> bool:
        """Ask the Room to drop this handle. Only the first call has effect."""
        with self._leave_lock:
            if self._left:
                return False
            self._left = True
        self.room.leave(self)
        return True

    def abort(self) -> None:
        """Close the transport so both loops wind down."""
        self.transport.close()


def serve_connection(
    room: Room,
    transport: Transport,
    identity: Identity,
    *,
    outbox_size: int = MESSAGE_BUFFER_SIZE,
    max_body_bytes: int = MAX_BODY_BYTES,
    nick_max_chars: int = NICK_MAX_CHARS,
    idle_timeout_s: float = 0.0,
    stats: Stats | None = None,
) -> ConnectionHandle | None:
    """
    Run one connection to completion on the calling thread.

    Joins ``room``, starts the outbound loop on its own thread, runs the
    inbound loop here, and leaves exactly once on every exit path. Returns
    the finished handle, or None if the room refused the join.
    """
    from .room import RoomClosed

    log = logging.getLogger("roomd.conn")
    handle = ConnectionHandle(
        room,
        transport,
        identity,
        outbox_size=outbox_size,
        max_body_bytes=max_body_bytes,
        nick_max_chars=nick_max_chars,
        idle_timeout_s=idle_timeout_s,
        stats=stats,
    )

    try:
        room.join(handle)
    except RoomClosed:
        log.info("Room closed; refusing id=%s", identity.id)
        transport.close()
        return None

    log.info(
        "Connection joined id=%s room=%s link_id=%s",
        identity.id,
        room.name,
        transport.describe(),
    )

    writer = threading.Thread(
        target=handle.write_loop,
        name=f"roomd-write-{identity.id}",
        daemon=True,
    )
    try:
        writer.start()
        handle.read_loop()
    except RoomClosed:
        log.info("Room closed under id=%s", identity.id)
    finally:
        handle.leave()
        transport.close()
        if room.closed:
            # Shutdown closed member outboxes; this covers a join it never saw.
            handle.outbox.close()

    writer.join()
    log.info(
        "Connection closed id=%s name=%r link_id=%s",
        identity.id,
        identity.display_name,
        transport.describe(),
    )
    return handle
