from __future__ import annotations

import logging
import os
import signal
import threading
import time
from typing import Any

import RNS

from . import __version__
from .access import AccessPolicy
from .codec import encode
from .config import PairingRuntimeConfig
from .constants import PATH_HEALTH, PATH_STATS, T_ERROR, T_PING
from .coordinator import SessionCoordinator
from .envelope import make_envelope
from .router import MessageRouter
from .session import LinkSessionManager
from .stats import StatsManager
from .util import expand_path


class PairingService:
    def __init__(self, config: PairingRuntimeConfig) -> None:
        self.config = config
        self.log = logging.getLogger("strangerd.service")

        # Shared by Reticulum callbacks, worker threads and every manager below.
        self._state_lock = threading.RLock()

        self._shutdown = threading.Event()

        self.stats_manager = StatsManager(self._state_lock)
        self.access_policy = AccessPolicy.from_config(config, lock=self._state_lock)
        self.coordinator = SessionCoordinator(
            config, lock=self._state_lock, stats=self.stats_manager
        )
        self.session_manager = LinkSessionManager(self)
        self.router = MessageRouter(self)

        self.identity: RNS.Identity | None = None
        self.destination: RNS.Destination | None = None

        self._threads: list[threading.Thread] = []

    def _fmt_hash(self, h: Any, *, prefix: int = 12) -> str:
        if not isinstance(h, (bytes, bytearray)):
            return "-"
        text = bytes(h).hex()
        return text[:prefix] if prefix > 0 else text

    def _fmt_link_id(self, link: RNS.Link) -> str:
        for attr in ("link_id", "hash"):
            value = getattr(link, attr, None)
            if isinstance(value, (bytes, bytearray)):
                return bytes(value).hex()
        return "-"

    def source_hash(self) -> bytes | None:
        return self.identity.hash if self.identity is not None else None

    def start(self) -> None:
        self.log.info("Starting Reticulum")
        self.stats_manager.set_start_time()
        RNS.Reticulum(configdir=self.config.configdir, require_shared_instance=False)

        if not self.config.identity_path:
            raise RuntimeError("identity_path is not set")
        self.identity = self._load_identity(self.config.identity_path)
        self.coordinator.set_source(self.identity.hash)

        self.destination = self._open_destination(self.identity)
        if self.config.enable_stats_requests:
            for path, generator in (
                (PATH_STATS, self.stats_response),
                (PATH_HEALTH, self.health_response),
            ):
                self.destination.register_request_handler(
                    path, response_generator=generator, allow=RNS.Destination.ALLOW_ALL
                )

        if self.config.announce_on_start:
            self._announce_once()

        self.log.info(
            "Pairing daemon running dest_name=%s dest_hash=%s",
            self.config.dest_name,
            self.destination.hash.hex(),
        )
        self.log.info(
            "Policy match_policy=%s interest_fallback=%s requeue_on_partner_left=%s "
            "rate_limit_msgs_per_minute=%s access=%s",
            self.config.match_policy,
            self.config.interest_fallback,
            self.config.requeue_on_partner_left,
            self.config.rate_limit_msgs_per_minute,
            self.access_policy.get_stats() if self.access_policy.enabled else "off",
        )

        self._start_worker_threads()

    def _start_worker_threads(self) -> None:
        cfg = self.config
        loops = (
            ("announce", cfg.announce_period_s > 0, self._announce_loop),
            ("presence", cfg.presence_broadcast and cfg.presence_interval_s > 0, self._presence_loop),
            ("ping", cfg.ping_interval_s > 0, self._ping_loop),
        )
        for name, enabled, target in loops:
            if not enabled:
                continue
            thread = threading.Thread(target=target, name=f"strangerd-{name}", daemon=True)
            thread.start()
            self._threads.append(thread)

    def _announce_once(self) -> None:
        if self.destination is None:
            return
        try:
            self.destination.announce(
                app_data=encode({"proto": "strangerd", "v": 1, "name": self.config.hub_name})
            )
            self.stats_manager.inc("announces")
        except Exception:
            self.log.exception("Announce failed")

    def _announce_loop(self) -> None:
        period = float(self.config.announce_period_s)
        while not self._shutdown.wait(period):
            self._announce_once()

    def _presence_loop(self) -> None:
        period = float(self.config.presence_interval_s)
        while not self._shutdown.wait(period):
            self._send_outgoing(self.coordinator.broadcast_presence())

    def run_forever(self) -> None:
        if self.destination is None:
            self.start()

        signal.signal(signal.SIGINT, lambda *_: self.stop())
        signal.signal(signal.SIGTERM, lambda *_: self.stop())

        while not self._shutdown.wait(0.25):
            pass

    def stop(self) -> None:
        if self._shutdown.is_set():
            return
        self._shutdown.set()

        with self._state_lock:
            self.log.info(
                "Shutting down\n%s",
                self.stats_manager.format_stats(self.coordinator.snapshot()),
            )
            links = self.session_manager.clear_all()
            self.coordinator.clear_all()

        for link in links:
            self._teardown(link)

    def _open_destination(self, identity: RNS.Identity) -> RNS.Destination:
        app_name, *aspects = [p for p in str(self.config.dest_name).split(".") if p] or [""]
        if not app_name:
            raise ValueError("dest_name must not be empty")
        destination = RNS.Destination(
            identity, RNS.Destination.IN, RNS.Destination.SINGLE, app_name, *aspects
        )
        destination.set_link_established_callback(self._on_link)
        return destination

    def _load_identity(self, path: str) -> RNS.Identity:
        p = expand_path(path)
        if not os.path.exists(p):
            raise RuntimeError(f"Identity not found at {p}")
        ident = RNS.Identity.from_file(p)
        if ident is None:
            raise RuntimeError(f"Failed to load identity from {p}")
        return ident

    # Read-only side channel (Reticulum request handlers)

    def stats_response(
        self,
        path: str,
        data: Any,
        request_id: bytes,
        link_id: bytes,
        remote_identity: RNS.Identity | None,
        requested_at: float,
    ) -> dict[str, int]:
        return self.coordinator.snapshot().to_dict()

    def health_response(
        self,
        path: str,
        data: Any,
        request_id: bytes,
        link_id: bytes,
        remote_identity: RNS.Identity | None,
        requested_at: float,
    ) -> dict[str, Any]:
        snap = self.coordinator.snapshot()
        return {
            "status": "ok",
            "version": __version__,
            "uptime_s": round(self.stats_manager.uptime_s(), 1),
            "onlineUsers": snap.online_count,
            "waiting": snap.waiting_count,
            "activePairs": snap.active_pair_count,
            "links": self.session_manager.get_stats(),
            "counters": self.stats_manager.counters(),
        }

    # Link callbacks

    def _on_link(self, link: RNS.Link) -> None:
        with self._state_lock:
            self.session_manager.on_link_established(link)

        link.set_packet_callback(lambda data, pkt: self._on_packet(link, data))
        link.set_link_closed_callback(lambda closed_link: self._on_close(closed_link))
        link.set_remote_identified_callback(
            lambda identified_link, ident: self._on_remote_identified(
                identified_link, ident
            )
        )

        self.log.info("Link established link_id=%s", self._fmt_link_id(link))

    def _on_remote_identified(
        self, link: RNS.Link, identity: RNS.Identity | None
    ) -> None:
        with self._state_lock:
            allowed, peer_hash = self.session_manager.on_remote_identified(
                link, identity
            )

        if allowed:
            return

        self.log.warning(
            "Disconnecting refused peer=%s link_id=%s",
            self._fmt_hash(peer_hash),
            self._fmt_link_id(link),
        )
        self.stats_manager.inc("errors_sent")
        self._send(link, make_envelope(T_ERROR, src=self.source_hash(), body="access denied"))
        self._teardown(link)

    def _on_packet(self, link: RNS.Link, data: bytes) -> None:
        # Mutate state under the lock, send after releasing it.
        outgoing: list[tuple[RNS.Link, dict]] = []
        with self._state_lock:
            self.router.route_packet(link, data, outgoing)
            stale = self.coordinator.take_stale_handles()

        if self.log.isEnabledFor(logging.DEBUG) and outgoing:
            self.log.debug(
                "Sending %d envelope(s) for link_id=%s",
                len(outgoing),
                self._fmt_link_id(link),
            )
        self._send_outgoing(outgoing)

        for old_link in stale:
            self.log.info(
                "Closing replaced link_id=%s", self._fmt_link_id(old_link)
            )
            self._teardown(old_link)

    def _on_close(self, link: RNS.Link) -> None:
        with self._state_lock:
            self.session_manager.on_link_closed(link)
            user_id = self.coordinator.user_for(link)
            outgoing = self.coordinator.handle_closed(link)

        self.log.info(
            "Link closed user=%s link_id=%s", user_id, self._fmt_link_id(link)
        )
        self._send_outgoing(outgoing)

    def _send_outgoing(self, outgoing: list[tuple[RNS.Link, dict]]) -> None:
        for out_link, env in outgoing:
            self._send(out_link, env)

    def _send(self, link: RNS.Link, env: dict) -> None:
        payload = encode(env)
        self.stats_manager.inc("bytes_out", len(payload))
        try:
            RNS.Packet(link, payload).send()
        except OSError as e:
            # Usually a payload too large for the link MTU.
            self.stats_manager.inc("send_failures")
            self.log.warning(
                "Send failed link_id=%s bytes=%s err=%s",
                self._fmt_link_id(link),
                len(payload),
                e,
            )
        except Exception:
            self.stats_manager.inc("send_failures")
            self.log.debug(
                "Send failed link_id=%s bytes=%s",
                self._fmt_link_id(link),
                len(payload),
                exc_info=True,
            )

    def _teardown(self, link: RNS.Link) -> None:
        try:
            link.teardown()
        except Exception:
            self.log.debug(
                "Teardown failed link_id=%s", self._fmt_link_id(link), exc_info=True
            )

    def _ping_loop(self) -> None:
        interval = float(self.config.ping_interval_s)
        while not self._shutdown.wait(interval):
            now = time.monotonic()
            with self._state_lock:
                to_ping, expired = self._due_pings(now)

            for link in expired:
                self.log.info("Ping timeout link_id=%s", self._fmt_link_id(link))
                self._teardown(link)

            for link in to_ping:
                self.stats_manager.inc("pings_out")
                self._send(link, make_envelope(T_PING, src=self.source_hash(), body=now))

    def _due_pings(self, now: float) -> tuple[list[RNS.Link], list[RNS.Link]]:
        """Split joined links into those to ping and those whose pong is overdue.

        Must be called with the state lock held.
        """
        timeout = float(self.config.ping_timeout_s)
        to_ping: list[RNS.Link] = []
        expired: list[RNS.Link] = []
        for link, sess in self.session_manager.sessions.items():
            if self.coordinator.user_for(link) is None:
                continue
            sent_at = sess.get("awaiting_pong")
            if sent_at is None:
                sess["awaiting_pong"] = now
                to_ping.append(link)
            elif timeout > 0 and now - float(sent_at) > timeout:
                expired.append(link)
        return to_ping, expired
