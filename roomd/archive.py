"""Append-only message archive fed by the Room's observer hook."""

from __future__ import annotations

import logging
import os
import queue
import threading
from collections.abc import Iterator
from pathlib import Path

import cbor2

from .codec import encode
from .constants import K_BODY, K_NAME, K_WHEN
from .message import Message, make_message

_STOP = object()


class MessageArchive:
    """
    Persists forwarded messages as a sequence of CBOR records.

    ``observe`` only enqueues, so the Room never waits on disk I/O; a
    background thread does the writing.
    """

    def __init__(self, path: str | os.PathLike) -> None:
        self.path = Path(path)
        self.log = logging.getLogger("roomd.archive")
        self._queue: queue.Queue = queue.Queue()
        self._thread: threading.Thread | None = None
        self.written = 0

    def start(self) -> MessageArchive:
        if self._thread is not None:
            return self
        if self.path.parent:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        self._thread = threading.Thread(
            target=self._run, name="roomd-archive", daemon=True
        )
        self._thread.start()
        self.log.info("Archiving messages to %s", self.path)
        return self

    def observe(self, msg: Message) -> None:
        self._queue.put(msg)

    def stop(self, timeout: float | None = 5.0) -> None:
        if self._thread is None:
            return
        self._queue.put(_STOP)
        self._thread.join(timeout)
        self._thread = None

    def _run(self) -> None:
        with open(self.path, "ab") as f:
            try:
                os.chmod(self.path, 0o600)
            except Exception:
                pass
            while True:
                item = self._queue.get()
                if item is _STOP:
                    return
                try:
                    f.write(encode(make_message(item)))
                    f.flush()
                    self.written += 1
                except OSError:
                    self.log.exception("Archive write failed path=%s", self.path)


def iter_archive(path: str | os.PathLike) -> Iterator[Message]:
    with open(path, "rb") as f:
        size = os.fstat(f.fileno()).st_size
        while f.tell() < size:
            rec = cbor2.load(f)
            yield Message(
                sender_name=rec.get(K_NAME, ""),
                body=rec.get(K_BODY, ""),
                timestamp=rec[K_WHEN],
            )
