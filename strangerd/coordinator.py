"""Session coordination for strangerd.

This module owns all pairing state:
- The connection registry (user id <-> transport handle)
- The waiting pool and the matcher that draws from it
- The pairing table
- An explicit per-user state (disconnected, idle, waiting, paired)

Every public operation takes the state lock, runs to completion and returns
the envelopes to send as ``(handle, envelope)`` pairs. Nothing here performs
I/O, so a slow or failed send can never leave the state half-updated.
"""

from __future__ import annotations

import enum
import logging
import threading
from collections.abc import Hashable
from typing import Any

from .config import PairingRuntimeConfig
from .constants import (
    B_MSG_FROM,
    B_MSG_TEXT,
    B_PAIRED_PARTNER,
    B_PAIRED_SHARED,
    T_MSG,
    T_PAIRED,
    T_STRANGER_LEFT,
    T_STRANGER_STOPPED_TYPING,
    T_STRANGER_TYPING,
    T_WAITING,
)
from .envelope import make_envelope
from .matcher import Matcher, shared_interests
from .pairing import AlreadyPaired, PairingTable
from .pool import WaitingPool
from .presence import AggregateStats, PresenceBroadcaster
from .registry import ConnectionRegistry
from .stats import StatsManager
from .util import normalize_interests, normalize_text, normalize_user_id

Outgoing = list[tuple[Hashable, dict[int, Any]]]


class UserState(enum.Enum):
    DISCONNECTED = "disconnected"
    IDLE = "idle"
    WAITING = "waiting"
    PAIRED = "paired"


class InvalidTransition(RuntimeError):
    """A user was moved between states in a way the state machine forbids."""


_TRANSITIONS: dict[UserState, frozenset[UserState]] = {
    UserState.DISCONNECTED: frozenset({UserState.WAITING, UserState.PAIRED}),
    UserState.IDLE: frozenset(
        {UserState.WAITING, UserState.PAIRED, UserState.DISCONNECTED}
    ),
    UserState.WAITING: frozenset({UserState.PAIRED, UserState.DISCONNECTED}),
    UserState.PAIRED: frozenset({UserState.IDLE, UserState.DISCONNECTED}),
}

_ACTIVE = (UserState.WAITING, UserState.PAIRED)


class SessionCoordinator:
    def __init__(
        self,
        config: PairingRuntimeConfig | None = None,
        *,
        src: bytes | None = None,
        lock: threading.RLock | None = None,
        stats: StatsManager | None = None,
    ) -> None:
        self.config = config if config is not None else PairingRuntimeConfig()
        self.log = logging.getLogger("strangerd.coordinator")

        # Shared with the service so per-link state and coordinator state
        # change under one lock.
        self._state_lock = lock if lock is not None else threading.RLock()
        self.stats_manager = stats if stats is not None else StatsManager(self._state_lock)

        self.src = src
        self.registry = ConnectionRegistry()
        self.pool = WaitingPool()
        self.pairings = PairingTable()
        self.matcher = Matcher(
            self.config.match_policy, fallback=self.config.interest_fallback
        )
        self.presence = PresenceBroadcaster(
            self.registry,
            self.pool,
            self.pairings,
            src=src,
            enabled=self.config.presence_broadcast,
        )

        self._states: dict[str, UserState] = {}
        self._interests: dict[str, frozenset[str]] = {}
        self._stale_handles: list[Hashable] = []

    def set_source(self, src: bytes | None) -> None:
        """Set the identity hash stamped on outbound envelopes."""
        with self._state_lock:
            self.src = src
            self.presence.src = src

    # Inbound events

    def join(
        self, user_id: Any, handle: Hashable, interests: Any = None
    ) -> Outgoing:
        outgoing: Outgoing = []
        uid = normalize_user_id(user_id, max_chars=self.config.user_id_max_chars)
        if uid is None:
            self._ignore("join", user_id, "invalid user id")
            return outgoing

        tags = normalize_interests(
            interests,
            max_count=self.config.max_interests,
            max_chars=self.config.interest_max_chars,
        )

        with self._state_lock:
            state = self.state_of(uid)
            if state in _ACTIVE:
                self._ignore("join", uid, f"already {state.value}")
                return outgoing

            bound = self.registry.user_for(handle)
            if bound is not None and bound != uid:
                if self.state_of(bound) in _ACTIVE:
                    self._ignore("join", uid, f"connection in use by {bound}")
                    return outgoing
                self._unwind(bound, outgoing)

            replaced = self.registry.register(uid, handle)
            if replaced is not None:
                self.log.info("Rejoin replaced connection user=%s", uid)
                self._stale_handles.append(replaced)

            self._interests[uid] = tags
            self.stats_manager.inc("joins")
            self.log.info("Join user=%s interests=%s", uid, sorted(tags))

            self._enqueue_or_match(uid, outgoing)
            self.presence.queue_if_changed(outgoing)
        return outgoing

    def message(self, user_id: str, text: Any) -> Outgoing:
        outgoing: Outgoing = []
        with self._state_lock:
            partner = self.pairings.get_partner(user_id)
            if partner is None:
                self._ignore("message", user_id, "no partner")
                return outgoing

            body_text = normalize_text(text, max_chars=self.config.max_msg_chars)
            if body_text is None:
                self._ignore("message", user_id, "invalid text")
                return outgoing

            body = {B_MSG_TEXT: body_text, B_MSG_FROM: user_id}
            if self._queue(outgoing, partner, T_MSG, body):
                self.stats_manager.inc("msgs_forwarded")
            else:
                self.stats_manager.inc("msgs_dropped")
                self.log.debug(
                    "Dropped message user=%s partner=%s: partner unreachable",
                    user_id,
                    partner,
                )
        return outgoing

    def typing(self, user_id: str) -> Outgoing:
        return self._forward_typing(user_id, T_STRANGER_TYPING, "typing")

    def stopped_typing(self, user_id: str) -> Outgoing:
        return self._forward_typing(
            user_id, T_STRANGER_STOPPED_TYPING, "stopped_typing"
        )

    def next_chat(self, user_id: str) -> Outgoing:
        """End the current chat, if any, and look for a new partner."""
        outgoing: Outgoing = []
        with self._state_lock:
            state = self.state_of(user_id)
            if state not in (UserState.PAIRED, UserState.IDLE):
                self._ignore("next", user_id, f"state is {state.value}")
                return outgoing

            partner = None
            if state is UserState.PAIRED:
                partner = self._break_pairing(user_id, outgoing)
                self._transition(user_id, UserState.IDLE)

            self.stats_manager.inc("nexts")
            self.log.info("Next chat user=%s left_partner=%s", user_id, partner)

            exclude = frozenset({partner}) if partner else frozenset()
            self._enqueue_or_match(user_id, outgoing, exclude=exclude)
            if partner is not None and self.config.requeue_on_partner_left:
                self._enqueue_or_match(partner, outgoing, exclude=frozenset({user_id}))

            self.presence.queue_if_changed(outgoing)
        return outgoing

    def leave(self, user_id: str) -> Outgoing:
        """User-initiated disconnect; the transport stays up."""
        outgoing: Outgoing = []
        with self._state_lock:
            if not self._unwind(user_id, outgoing):
                self._ignore("leave", user_id, "not connected")
                return outgoing
            self.stats_manager.inc("leaves")
            self.log.info("Leave user=%s", user_id)
            self.presence.queue_if_changed(outgoing)
        return outgoing

    def disconnect(self, user_id: str, handle: Hashable | None = None) -> Outgoing:
        outgoing: Outgoing = []
        with self._state_lock:
            if handle is not None and self.registry.lookup(user_id) is not handle:
                # The user rejoined over another connection already.
                return outgoing
            if not self._unwind(user_id, outgoing):
                return outgoing
            self.stats_manager.inc("disconnects")
            self.log.info("Disconnect user=%s", user_id)
            self.presence.queue_if_changed(outgoing)
        return outgoing

    def handle_closed(self, handle: Hashable) -> Outgoing:
        with self._state_lock:
            user_id = self.registry.user_for(handle)
            if user_id is None:
                return []
            return self.disconnect(user_id, handle)

    # Queries

    def state_of(self, user_id: str) -> UserState:
        with self._state_lock:
            return self._states.get(user_id, UserState.DISCONNECTED)

    def partner_of(self, user_id: str) -> str | None:
        with self._state_lock:
            return self.pairings.get_partner(user_id)

    def shared_interests_of(self, user_id: str) -> frozenset[str]:
        with self._state_lock:
            pairing = self.pairings.get_pairing(user_id)
            return pairing.shared_interests if pairing is not None else frozenset()

    def user_for(self, handle: Hashable) -> str | None:
        with self._state_lock:
            return self.registry.user_for(handle)

    def snapshot(self) -> AggregateStats:
        with self._state_lock:
            return self.presence.snapshot()

    def broadcast_presence(self) -> Outgoing:
        outgoing: Outgoing = []
        with self._state_lock:
            self.presence.queue_broadcast(outgoing)
        return outgoing

    def take_stale_handles(self) -> list[Hashable]:
        """Handles dropped by a rejoin since the last call; the caller closes them."""
        with self._state_lock:
            stale, self._stale_handles = self._stale_handles, []
            return stale

    def clear_all(self) -> list[Hashable]:
        """Drop all state and return the handles that were registered."""
        with self._state_lock:
            handles = self.registry.clear()
            self.pool.clear()
            self.pairings.clear()
            self._states.clear()
            self._interests.clear()
            self._stale_handles.clear()
            self.presence.reset()
            return handles

    # Internals; all expect the state lock to be held.

    def _enqueue_or_match(
        self,
        user_id: str,
        outgoing: Outgoing,
        *,
        exclude: frozenset[str] = frozenset(),
    ) -> None:
        tags = self._interests.get(user_id, frozenset())
        candidate = self.pool.dequeue_match(
            user_id, tags, self.matcher, exclude=exclude
        )

        if candidate is None:
            self.pool.enqueue(user_id, tags)
            self._transition(user_id, UserState.WAITING)
            self.stats_manager.inc("waits")
            self._queue(outgoing, user_id, T_WAITING)
            self.log.info("Waiting user=%s pool_size=%s", user_id, len(self.pool))
            return

        shared = shared_interests(tags, candidate.interests)
        try:
            self.pairings.create(user_id, candidate.user_id, shared)
        except AlreadyPaired:
            self.log.critical(
                "Pairing table conflict user=%s candidate=%s",
                user_id,
                candidate.user_id,
                exc_info=True,
            )
            raise

        self._transition(candidate.user_id, UserState.PAIRED)
        self._transition(user_id, UserState.PAIRED)
        self.stats_manager.inc("pairings")

        self._queue_paired(outgoing, user_id, candidate.user_id, shared)
        self._queue_paired(outgoing, candidate.user_id, user_id, shared)
        self.log.info(
            "Paired user=%s partner=%s shared=%s",
            user_id,
            candidate.user_id,
            sorted(shared),
        )

    def _break_pairing(self, user_id: str, outgoing: Outgoing) -> str | None:
        """Destroy ``user_id``'s pairing and tell the partner.

        Leaves the partner IDLE. The caller moves ``user_id`` itself.
        """
        partner = self.pairings.destroy(user_id)
        if partner is None:
            return None

        self._transition(partner, UserState.IDLE)
        self.stats_manager.inc("partners_left")
        if not self._queue(outgoing, partner, T_STRANGER_LEFT):
            self.log.debug("Partner unreachable for stranger_left partner=%s", partner)
        self.log.info("Pairing broken user=%s partner=%s", user_id, partner)
        return partner

    def _unwind(self, user_id: str, outgoing: Outgoing) -> bool:
        """Remove every trace of ``user_id``. False if it was not connected."""
        if self.state_of(user_id) is UserState.DISCONNECTED:
            return False

        self.pool.remove(user_id)
        partner = self._break_pairing(user_id, outgoing)
        self.registry.unregister(user_id)
        self._interests.pop(user_id, None)
        self._transition(user_id, UserState.DISCONNECTED)

        if partner is not None and self.config.requeue_on_partner_left:
            self._enqueue_or_match(partner, outgoing)
        return True

    def _transition(self, user_id: str, new: UserState) -> None:
        old = self._states.get(user_id, UserState.DISCONNECTED)
        if new not in _TRANSITIONS[old]:
            self.log.error(
                "Illegal transition user=%s %s -> %s", user_id, old.value, new.value
            )
            raise InvalidTransition(f"{user_id!r}: {old.value} -> {new.value}")

        if new is UserState.DISCONNECTED:
            self._states.pop(user_id, None)
        else:
            self._states[user_id] = new

    def _forward_typing(self, user_id: str, msg_type: int, label: str) -> Outgoing:
        outgoing: Outgoing = []
        with self._state_lock:
            partner = self.pairings.get_partner(user_id)
            if partner is None:
                self._ignore(label, user_id, "no partner")
                return outgoing
            if self._queue(outgoing, partner, msg_type):
                self.stats_manager.inc("typing_forwarded")
        return outgoing

    def _queue(
        self, outgoing: Outgoing, user_id: str, msg_type: int, body: Any = None
    ) -> bool:
        handle = self.registry.lookup(user_id)
        if handle is None:
            return False
        outgoing.append((handle, make_envelope(msg_type, src=self.src, body=body)))
        return True

    def _queue_paired(
        self,
        outgoing: Outgoing,
        user_id: str,
        partner: str,
        shared: frozenset[str],
    ) -> None:
        body: dict[int, Any] = {B_PAIRED_PARTNER: partner}
        if shared:
            body[B_PAIRED_SHARED] = sorted(shared)
        self._queue(outgoing, user_id, T_PAIRED, body)

    def _ignore(self, event: str, user_id: Any, reason: str) -> None:
        self.stats_manager.inc("ignored")
        self.log.debug("Ignored %s user=%r: %s", event, user_id, reason)
