from __future__ import annotations

import time
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .matcher import Matcher


@dataclass(frozen=True)
class WaitingEntry:
    user_id: str
    interests: frozenset[str] = frozenset()
    enqueued_at: float = field(default_factory=time.monotonic)


class WaitingPool:
    """Users waiting for a partner, oldest first.

    Backed by an insertion-ordered dict so removal on disconnect is O(1)
    and iteration order is enqueue order.
    """

    def __init__(self) -> None:
        self._entries: dict[str, WaitingEntry] = {}

    def enqueue(self, user_id: str, interests: Iterable[str] = ()) -> bool:
        if user_id in self._entries:
            return False
        self._entries[user_id] = WaitingEntry(user_id, frozenset(interests))
        return True

    def dequeue_match(
        self,
        for_id: str,
        for_interests: Iterable[str],
        matcher: Matcher,
        *,
        exclude: Iterable[str] = (),
    ) -> WaitingEntry | None:
        skip = {for_id, *exclude}
        candidates = (e for e in self._entries.values() if e.user_id not in skip)
        picked = matcher.pick(candidates, frozenset(for_interests))
        if picked is None:
            return None
        return self._entries.pop(picked.user_id)

    def remove(self, user_id: str) -> bool:
        return self._entries.pop(user_id, None) is not None

    def user_ids(self) -> list[str]:
        return list(self._entries.keys())

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, user_id: object) -> bool:
        return user_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)
