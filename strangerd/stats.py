"""Statistics tracking and reporting for the pairing daemon."""

from __future__ import annotations

import threading
import time
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .presence import AggregateStats


_REPORT_GROUPS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("io", ("pkts_in", "pkts_bad", "bytes_in", "bytes_out", "send_failures")),
    (
        "sessions",
        ("joins", "pairings", "waits", "nexts", "leaves", "disconnects", "partners_left"),
    ),
    (
        "events",
        (
            "msgs_forwarded",
            "msgs_dropped",
            "typing_forwarded",
            "ignored",
            "errors_sent",
            "rate_limited",
        ),
    ),
    ("liveness", ("pings_in", "pings_out", "pongs_in", "pongs_out", "announces")),
)


class StatsManager:
    """Lifetime counters for the daemon, shared by every component."""

    def __init__(self, lock: threading.RLock | None = None) -> None:
        self._lock = lock if lock is not None else threading.RLock()

        self.started_monotonic: float | None = None

        self._counters: dict[str, int] = {
            key: 0 for _, keys in _REPORT_GROUPS for key in keys
        }

    def set_start_time(self) -> None:
        """Set the start time for uptime calculations."""
        self.started_monotonic = time.monotonic()

    def uptime_s(self) -> float:
        if self.started_monotonic is None:
            return 0.0
        return time.monotonic() - self.started_monotonic

    def inc(self, key: str, delta: int = 1) -> None:
        """Increment a counter by the given delta."""
        with self._lock:
            self._counters[key] = int(self._counters.get(key, 0)) + int(delta)

    def get(self, key: str) -> int:
        with self._lock:
            return int(self._counters.get(key, 0))

    def counters(self) -> dict[str, int]:
        with self._lock:
            return dict(self._counters)

    def format_stats(self, presence: AggregateStats) -> str:
        """Format current statistics as a human-readable string."""
        from . import __version__

        c = self.counters()
        lines = [
            f"strangerd {__version__} stats",
            f"uptime_s={self.uptime_s():.1f}",
            f"presence: online={presence.online_count} "
            f"waiting={presence.waiting_count} "
            f"active_chats={presence.active_pair_count}",
        ]
        for label, keys in _REPORT_GROUPS:
            lines.append(f"{label}: " + " ".join(f"{k}={c.get(k, 0)}" for k in keys))
        return "\n".join(lines)
