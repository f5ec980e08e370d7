from __future__ import annotations

import time
from dataclasses import dataclass, field


class AlreadyPaired(RuntimeError):
    """Raised when a pairing would give a user a second partner."""


@dataclass(frozen=True)
class Pairing:
    a: str
    b: str
    shared_interests: frozenset[str] = frozenset()
    created_at: float = field(default_factory=time.monotonic)

    def partner_of(self, user_id: str) -> str:
        if user_id == self.a:
            return self.b
        if user_id == self.b:
            return self.a
        raise KeyError(user_id)


class PairingTable:
    """Symmetric user <-> partner relation.

    Both directions point at the same Pairing object, so the relation can
    only ever be created and destroyed as a whole.
    """

    def __init__(self) -> None:
        self._by_user: dict[str, Pairing] = {}

    def create(
        self, a: str, b: str, shared_interests: frozenset[str] = frozenset()
    ) -> Pairing:
        if a == b:
            raise ValueError(f"cannot pair {a!r} with itself")
        for user_id in (a, b):
            existing = self._by_user.get(user_id)
            if existing is not None:
                raise AlreadyPaired(
                    f"{user_id!r} is already paired with {existing.partner_of(user_id)!r}"
                )

        pairing = Pairing(a, b, frozenset(shared_interests))
        self._by_user[a] = pairing
        self._by_user[b] = pairing
        return pairing

    def get_partner(self, user_id: str) -> str | None:
        pairing = self._by_user.get(user_id)
        if pairing is None:
            return None
        return pairing.partner_of(user_id)

    def get_pairing(self, user_id: str) -> Pairing | None:
        return self._by_user.get(user_id)

    def destroy(self, user_id: str) -> str | None:
        pairing = self._by_user.pop(user_id, None)
        if pairing is None:
            return None
        partner = pairing.partner_of(user_id)
        self._by_user.pop(partner, None)
        return partner

    def pairs(self) -> list[Pairing]:
        seen: dict[int, Pairing] = {}
        for pairing in self._by_user.values():
            seen.setdefault(id(pairing), pairing)
        return list(seen.values())

    def clear(self) -> None:
        self._by_user.clear()

    def __contains__(self, user_id: object) -> bool:
        return user_id in self._by_user

    def __len__(self) -> int:
        return len(self._by_user) // 2
