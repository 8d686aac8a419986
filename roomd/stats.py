"""Statistics tracking and reporting for the relay."""

from __future__ import annotations

import threading
import time


class Stats:
    """
    Lifetime counters for the relay.

    Tracks:
    - Bytes and payloads in/out
    - Malformed payloads
    - Room joins/parts
    - Messages forwarded and per-recipient deliveries
    - Back-pressure drops and slow consumer disconnects
    - Renames
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.started_monotonic = time.monotonic()
        self._counters: dict[str, int] = {
            "bytes_in": 0,
            "bytes_out": 0,
            "pkts_in": 0,
            "pkts_bad": 0,
            "connections": 0,
            "identity_failures": 0,
            "joins": 0,
            "parts": 0,
            "msgs_forwarded": 0,
            "deliveries": 0,
            "dropped": 0,
            "slow_disconnects": 0,
            "renames": 0,
            "announces": 0,
        }

    def inc(self, key: str, delta: int = 1) -> None:
        with self._lock:
            self._counters[key] = int(self._counters.get(key, 0)) + int(delta)

    def get(self, key: str) -> int:
        with self._lock:
            return int(self._counters.get(key, 0))

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return dict(self._counters)

    def format_stats(self, *, members: int | None = None) -> str:
        from . import __version__

        uptime_s = time.monotonic() - self.started_monotonic
        c = self.snapshot()

        lines: list[str] = []
        lines.append(f"roomd {__version__} stats")
        lines.append(f"uptime_s={uptime_s:.1f}")
        if members is not None:
            lines.append(f"members={members}")
        lines.append(
            "io: pkts_in={} pkts_bad={} bytes_in={} bytes_out={}".format(
                c.get("pkts_in", 0),
                c.get("pkts_bad", 0),
                c.get("bytes_in", 0),
                c.get("bytes_out", 0),
            )
        )
        lines.append(
            "events: connections={} identity_failures={} joins={} parts={} renames={}".format(
                c.get("connections", 0),
                c.get("identity_failures", 0),
                c.get("joins", 0),
                c.get("parts", 0),
                c.get("renames", 0),
            )
        )
        lines.append(
            "fanout: msgs_fwd={} deliveries={} dropped={} slow_disconnects={}".format(
                c.get("msgs_forwarded", 0),
                c.get("deliveries", 0),
                c.get("dropped", 0),
                c.get("slow_disconnects", 0),
            )
        )

        return "\n".join(lines)
