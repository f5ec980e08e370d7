from __future__ import annotations

import os

from .constants import USER_ID_MAX_CHARS


def expand_path(p: str) -> str:
    return os.path.expanduser(os.path.expandvars(p))


def _has_control_breaks(s: str) -> bool:
    return "\n" in s or "\r" in s or "\x00" in s


def normalize_user_id(value, *, max_chars: int = USER_ID_MAX_CHARS) -> str | None:
    if not isinstance(value, str):
        return None

    s = value.strip()
    if not s:
        return None

    if max_chars > 0 and len(s) > int(max_chars):
        return None

    # Ids end up in log lines and on other clients' screens.
    if _has_control_breaks(s):
        return None

    try:
        s.encode("utf-8", "strict")
    except UnicodeError:
        return None

    return s


def normalize_interests(
    value, *, max_count: int = 10, max_chars: int = 32
) -> frozenset[str]:
    """Turn a client-supplied tag list into a case-folded set.

    Non-string items, empty tags and tags longer than ``max_chars`` are
    dropped. At most ``max_count`` distinct tags are kept, in the order the
    client sent them.
    """
    if not isinstance(value, (list, tuple)):
        return frozenset()

    kept: list[str] = []
    for item in value:
        if not isinstance(item, str):
            continue
        tag = item.strip().casefold()
        if not tag or _has_control_breaks(tag):
            continue
        if max_chars > 0 and len(tag) > max_chars:
            continue
        if tag in kept:
            continue
        kept.append(tag)
        if max_count > 0 and len(kept) >= max_count:
            break

    return frozenset(kept)


def normalize_text(value, *, max_chars: int) -> str | None:
    if not isinstance(value, str):
        return None
    if not value.strip():
        return None
    if max_chars > 0 and len(value) > max_chars:
        return None
    if "\x00" in value:
        return None
    return value
