"""Partner selection for a user entering the waiting pool."""

from __future__ import annotations

from collections.abc import Iterable

from .constants import MATCH_POLICIES, MATCH_POLICY_FIFO, MATCH_POLICY_INTEREST
from .pool import WaitingEntry


def shared_interests(a: Iterable[str], b: Iterable[str]) -> frozenset[str]:
    """Case-insensitive intersection of two tag sets."""
    left = {t.casefold() for t in a}
    if not left:
        return frozenset()
    return frozenset(left.intersection(t.casefold() for t in b))


class Matcher:
    """
    Picks a partner out of the waiting candidates.

    Candidates must be supplied oldest first; every policy breaks ties by
    taking the earliest one.

    - ``fifo``: the oldest candidate, interests are ignored for selection.
    - ``interest``: the oldest candidate sharing at least one interest. When
      nobody does, ``fallback`` decides between the oldest candidate overall
      and no match at all. Without fallback two users with no interests can
      still be paired with each other.
    """

    def __init__(
        self, policy: str = MATCH_POLICY_INTEREST, *, fallback: bool = True
    ) -> None:
        if policy not in MATCH_POLICIES:
            raise ValueError(f"unknown match policy {policy!r}")
        self.policy = policy
        self.fallback = bool(fallback)

    def pick(
        self, candidates: Iterable[WaitingEntry], interests: frozenset[str]
    ) -> WaitingEntry | None:
        if self.policy == MATCH_POLICY_FIFO:
            return next(iter(candidates), None)

        first: WaitingEntry | None = None
        first_plain: WaitingEntry | None = None
        for entry in candidates:
            if interests and shared_interests(interests, entry.interests):
                return entry
            if first is None:
                first = entry
            if first_plain is None and not entry.interests:
                first_plain = entry

        if self.fallback:
            return first
        if not interests:
            return first_plain
        return None
