from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Callable

from .codec import decode_envelope
from .constants import (
    K_BODY,
    K_T,
    K_USER,
    T_ERROR,
    T_JOIN,
    T_LEAVE,
    T_MSG,
    T_NEXT,
    T_PING,
    T_PONG,
    T_STOPPED_TYPING,
    T_TYPING,
)
from .envelope import join_interests, make_envelope, message_text
from .util import normalize_user_id

if TYPE_CHECKING:
    import RNS

    from .service import PairingService

Outgoing = list[tuple[Any, dict[int, Any]]]


class MessageRouter:
    """
    Turns raw link packets into coordinator events.

    This class is responsible for:
    - Access checks for links that must identify first
    - Rate limiting
    - Decoding and validating envelopes
    - Resolving which user a link speaks for
    - Dispatching by message type and answering pings
    """

    def __init__(self, hub: PairingService) -> None:
        self.hub = hub
        self.log = logging.getLogger("strangerd.router")

        coordinator = hub.coordinator
        # Events that need a joined user; each takes (user_id, envelope).
        self._user_events: dict[int, Callable[[str, dict], Outgoing]] = {
            T_MSG: lambda uid, env: coordinator.message(uid, message_text(env)),
            T_TYPING: lambda uid, env: coordinator.typing(uid),
            T_STOPPED_TYPING: lambda uid, env: coordinator.stopped_typing(uid),
            T_NEXT: lambda uid, env: coordinator.next_chat(uid),
            T_LEAVE: lambda uid, env: coordinator.leave(uid),
        }

    def route_packet(self, link: RNS.Link, data: bytes, outgoing: Outgoing) -> None:
        """
        Main entry point for an incoming packet.

        Must be called with the state lock held.
        """
        sess = self.hub.session_manager.get_session(link)
        if sess is None:
            return

        stats = self.hub.stats_manager
        stats.inc("pkts_in")
        stats.inc("bytes_in", len(data))

        if self.hub.access_policy.requires_identity and not self._link_allowed(link, sess):
            return

        if not self.hub.session_manager.refill_and_take(link, 1.0):
            stats.inc("rate_limited")
            self.log.debug("Rate limited link_id=%s", self.hub._fmt_link_id(link))
            self._emit_error(outgoing, link, "rate limited")
            return

        try:
            env = decode_envelope(data)
        except (TypeError, ValueError) as e:
            stats.inc("pkts_bad")
            self.log.debug(
                "Bad packet link_id=%s bytes=%s err=%s",
                self.hub._fmt_link_id(link),
                len(data),
                e,
            )
            self._emit_error(outgoing, link, f"bad message: {e}")
            return

        t = env[K_T]
        if self.log.isEnabledFor(logging.DEBUG):
            self.log.debug(
                "RX link_id=%s t=%s user=%r bytes=%s body_type=%s",
                self.hub._fmt_link_id(link),
                t,
                env.get(K_USER),
                len(data),
                type(env.get(K_BODY)).__name__,
            )

        if t == T_PONG:
            stats.inc("pongs_in")
            sess["awaiting_pong"] = None
        elif t == T_PING:
            stats.inc("pings_in")
            stats.inc("pongs_out")
            outgoing.append(
                (link, make_envelope(T_PONG, src=self.hub.source_hash(), body=env.get(K_BODY)))
            )
        elif t == T_JOIN:
            outgoing.extend(
                self.hub.coordinator.join(env.get(K_USER), link, join_interests(env))
            )
        elif t in self._user_events:
            user_id = self._bound_user(link, env)
            if user_id is not None:
                outgoing.extend(self._user_events[t](user_id, env))
        else:
            self.log.debug(
                "Unhandled message type t=%s link_id=%s", t, self.hub._fmt_link_id(link)
            )

    def _link_allowed(self, link: RNS.Link, sess: dict[str, Any]) -> bool:
        peer = sess.get("peer")
        if peer is None:
            ri = link.get_remote_identity()
            if ri is None:
                # Nothing gets through until the link identifies.
                return False
            peer = bytes(ri.hash)
            sess["peer"] = peer
        return self.hub.access_policy.is_allowed(peer)

    def _bound_user(self, link: RNS.Link, env: dict) -> str | None:
        user_id = self.hub.coordinator.user_for(link)
        claimed = env.get(K_USER)
        if claimed is not None:
            # Joined ids are stored normalized.
            claimed = normalize_user_id(
                claimed, max_chars=self.hub.config.user_id_max_chars
            )

        if user_id is None or (K_USER in env and claimed != user_id):
            self.hub.stats_manager.inc("ignored")
            self.log.debug(
                "Ignored t=%s claimed=%r bound=%r link_id=%s",
                env[K_T],
                claimed,
                user_id,
                self.hub._fmt_link_id(link),
            )
            return None
        return user_id

    def _emit_error(self, outgoing: Outgoing, link: RNS.Link, text: str) -> None:
        self.hub.stats_manager.inc("errors_sent")
        outgoing.append(
            (link, make_envelope(T_ERROR, src=self.hub.source_hash(), body=text))
        )
