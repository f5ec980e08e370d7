from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    import RNS

    from .service import PairingService


@dataclass
class _RateState:
    """Token bucket for one link; capacity is one minute's allowance."""

    tokens: float
    last_refill: float

    def take(self, cost: float, per_minute: float, now: float) -> bool:
        elapsed = max(0.0, now - self.last_refill)
        self.tokens = min(per_minute, self.tokens + elapsed * per_minute / 60.0)
        self.last_refill = now
        if self.tokens < cost:
            return False
        self.tokens -= cost
        return True


class LinkSessionManager:
    """
    Per-link transport state for the pairing daemon.

    This class is responsible for:
    - Creating and dropping link sessions
    - Remembering the remote identity once a link identifies
    - Rate limiting with a token bucket per link
    - Tracking outstanding hub pings

    Which user a link speaks for is the coordinator's business, not this
    class's. All methods must be called with the state lock held.
    """

    def __init__(self, hub: PairingService) -> None:
        self.hub = hub
        self.log = logging.getLogger("strangerd.session")
        self.sessions: dict[RNS.Link, dict[str, Any]] = {}
        self._rate: dict[RNS.Link, _RateState] = {}

    def on_link_established(self, link: RNS.Link) -> None:
        now = time.monotonic()
        self.sessions[link] = {"peer": None, "awaiting_pong": None, "established_at": now}

        self._rate[link] = _RateState(
            float(max(1, int(self.hub.config.rate_limit_msgs_per_minute))), now
        )

        self.log.debug("Session created link_id=%s", self.hub._fmt_link_id(link))

    def on_remote_identified(
        self, link: RNS.Link, identity: RNS.Identity | None
    ) -> tuple[bool, bytes | None]:
        """
        Record the remote identity of a link.

        Returns:
            (allowed, peer_hash) tuple
        """
        sess = self.sessions.get(link)
        if sess is None or identity is None:
            return True, None

        peer_hash = bytes(identity.hash)
        sess["peer"] = peer_hash
        allowed = self.hub.access_policy.is_allowed(peer_hash)
        if allowed:
            self.log.info(
                "Remote identified peer=%s link_id=%s",
                self.hub._fmt_hash(peer_hash),
                self.hub._fmt_link_id(link),
            )
        return allowed, peer_hash

    def on_link_closed(self, link: RNS.Link) -> dict[str, Any] | None:
        self._rate.pop(link, None)
        return self.sessions.pop(link, None)

    def refill_and_take(self, link: RNS.Link, cost: float = 1.0) -> bool:
        """Take `cost` tokens from the link's bucket; False when rate limited."""
        state = self._rate.get(link)
        if state is None:
            return True
        per_min = float(max(1, int(self.hub.config.rate_limit_msgs_per_minute)))
        return state.take(cost, per_min, time.monotonic())

    def get_session(self, link: RNS.Link) -> dict[str, Any] | None:
        return self.sessions.get(link)

    def clear_all(self) -> list[RNS.Link]:
        """Clear all sessions and return their links for teardown."""
        links = list(self.sessions.keys())
        self.sessions.clear()
        self._rate.clear()
        return links

    def get_stats(self) -> dict[str, int]:
        return {
            "links": len(self.sessions),
            "identified": sum(
                1 for s in self.sessions.values() if s.get("peer") is not None
            ),
        }
