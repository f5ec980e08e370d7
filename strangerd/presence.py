"""Aggregate presence counts and their fan-out to every connection."""

from __future__ import annotations

from collections.abc import Hashable
from dataclasses import dataclass
from typing import Any

from .constants import B_STATS_ACTIVE, B_STATS_ONLINE, B_STATS_WAITING, T_ONLINE_STATS
from .envelope import make_envelope
from .pairing import PairingTable
from .pool import WaitingPool
from .registry import ConnectionRegistry


@dataclass(frozen=True)
class AggregateStats:
    online_count: int = 0
    waiting_count: int = 0
    active_pair_count: int = 0

    def to_body(self) -> dict[int, int]:
        return {
            B_STATS_ONLINE: self.online_count,
            B_STATS_WAITING: self.waiting_count,
            B_STATS_ACTIVE: self.active_pair_count,
        }

    def to_dict(self) -> dict[str, int]:
        return {
            "onlineUsers": self.online_count,
            "waitingUsers": self.waiting_count,
            "activeChats": self.active_pair_count,
        }


class PresenceBroadcaster:
    """
    Derives AggregateStats from the coordinator's collections and queues
    ``online_stats`` envelopes for every registered handle.

    Read-only with respect to the collections it is given. Must be used
    with the coordinator's state lock held.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        pool: WaitingPool,
        pairings: PairingTable,
        *,
        src: bytes | None = None,
        enabled: bool = True,
    ) -> None:
        self.registry = registry
        self.pool = pool
        self.pairings = pairings
        self.src = src
        self.enabled = enabled
        self._last: AggregateStats | None = None

    def snapshot(self) -> AggregateStats:
        return AggregateStats(
            online_count=len(self.registry),
            waiting_count=len(self.pool),
            active_pair_count=len(self.pairings),
        )

    def queue_if_changed(self, outgoing: list[tuple[Hashable, dict[int, Any]]]) -> bool:
        current = self.snapshot()
        if current == self._last:
            return False
        self._last = current
        if not self.enabled:
            return False
        self._fan_out(outgoing, current)
        return True

    def queue_broadcast(self, outgoing: list[tuple[Hashable, dict[int, Any]]]) -> AggregateStats:
        current = self.snapshot()
        self._last = current
        self._fan_out(outgoing, current)
        return current

    def _fan_out(
        self, outgoing: list[tuple[Hashable, dict[int, Any]]], stats: AggregateStats
    ) -> None:
        body = stats.to_body()
        for handle in self.registry.handles():
            outgoing.append(
                (handle, make_envelope(T_ONLINE_STATS, src=self.src, body=dict(body)))
            )

    def reset(self) -> None:
        self._last = None
