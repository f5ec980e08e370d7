"""Identity allow/deny lists for links reaching the pairing daemon."""

from __future__ import annotations

import threading
from collections.abc import Iterable
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .config import PairingRuntimeConfig


def parse_identity_hash(text: str) -> bytes:
    s = str(text).strip().lower()
    if s.startswith("0x"):
        s = s[2:]
    s = "".join(ch for ch in s if not ch.isspace())
    try:
        b = bytes.fromhex(s)
    except ValueError as e:
        raise ValueError(f"invalid identity hash {text!r}: {e}") from e
    if len(b) < 4:
        raise ValueError(f"identity hash too short: {text!r}")
    return b


def _parse_all(items: Iterable[str] | None) -> set[bytes]:
    return {parse_identity_hash(h) for h in (items or ()) if str(h).strip()}


class AccessPolicy:
    """
    Decides which Reticulum identities may use the daemon.

    - Denied identities are always refused.
    - With a non-empty allow list, only listed identities are accepted and
      links that never identify cannot reach the coordinator.
    - With both lists empty the policy is disabled and every link passes.
    """

    def __init__(
        self,
        allowed: Iterable[str] | None = None,
        denied: Iterable[str] | None = None,
        *,
        lock: threading.RLock | None = None,
    ) -> None:
        self._lock = lock if lock is not None else threading.RLock()
        self._allowed: set[bytes] = _parse_all(allowed)
        self._denied: set[bytes] = _parse_all(denied)

    @classmethod
    def from_config(
        cls, cfg: PairingRuntimeConfig, *, lock: threading.RLock | None = None
    ) -> AccessPolicy:
        return cls(cfg.allowed_identities, cfg.denied_identities, lock=lock)

    @property
    def enabled(self) -> bool:
        with self._lock:
            return bool(self._allowed or self._denied)

    @property
    def requires_identity(self) -> bool:
        with self._lock:
            return bool(self._allowed)

    def is_allowed(self, peer_hash: bytes | None) -> bool:
        with self._lock:
            if peer_hash is not None and bytes(peer_hash) in self._denied:
                return False
            if not self._allowed:
                return True
            return peer_hash is not None and bytes(peer_hash) in self._allowed

    def get_stats(self) -> dict[str, int]:
        with self._lock:
            return {
                "allowed_count": len(self._allowed),
                "denied_count": len(self._denied),
            }
