"""Connection registry: which transport handle belongs to which user id."""

from __future__ import annotations

import logging
from collections.abc import Hashable


class ConnectionRegistry:
    """
    Owns the UserId -> handle mapping plus the reverse index.

    Handles are opaque to the registry (in the daemon they are RNS.Link
    objects); they only need to be hashable. At most one handle is bound to
    a user id and at most one user id is bound to a handle.

    Not thread-safe on its own; the coordinator holds the state lock.
    """

    def __init__(self) -> None:
        self.log = logging.getLogger("strangerd.registry")
        self._handles: dict[str, Hashable] = {}
        self._users: dict[Hashable, str] = {}

    def register(self, user_id: str, handle: Hashable) -> Hashable | None:
        """Bind ``handle`` to ``user_id``; returns the handle it replaced."""
        previous = self._handles.get(user_id)
        if previous is not None and previous is not handle:
            self._users.pop(previous, None)

        other = self._users.get(handle)
        if other is not None and other != user_id:
            self._handles.pop(other, None)

        self._handles[user_id] = handle
        self._users[handle] = user_id

        if previous is not None and previous is not handle:
            self.log.debug("Replaced handle for user=%s", user_id)
            return previous
        return None

    def unregister(self, user_id: str, handle: Hashable | None = None) -> bool:
        """Remove ``user_id``. Returns False if nothing was removed.

        When ``handle`` is given the entry is only removed while it is still
        bound to that handle.
        """
        current = self._handles.get(user_id)
        if current is None:
            return False
        if handle is not None and current is not handle:
            return False

        self._handles.pop(user_id, None)
        self._users.pop(current, None)
        return True

    def lookup(self, user_id: str) -> Hashable | None:
        return self._handles.get(user_id)

    def user_for(self, handle: Hashable) -> str | None:
        return self._users.get(handle)

    def handles(self) -> list[Hashable]:
        return list(self._handles.values())

    def user_ids(self) -> list[str]:
        return list(self._handles.keys())

    def clear(self) -> list[Hashable]:
        handles = list(self._handles.values())
        self._handles.clear()
        self._users.clear()
        return handles

    def __contains__(self, user_id: object) -> bool:
        return user_id in self._handles

    def __len__(self) -> int:
        return len(self._handles)
