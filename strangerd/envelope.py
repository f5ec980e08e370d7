"""Envelope construction, validation and body accessors.

An envelope is a CBOR map with small unsigned integer keys. Version, type,
message id and timestamp are always present; the sender hash, the user id
and the body are optional. Unknown keys are accepted so newer clients can
add fields.
"""

from __future__ import annotations

import os
import time
from typing import Any

from .constants import (
    B_JOIN_INTERESTS,
    B_MSG_TEXT,
    K_BODY,
    K_ID,
    K_SRC,
    K_T,
    K_TS,
    K_USER,
    K_V,
    STRANGER_VERSION,
)

_REQUIRED: tuple[tuple[int, type | tuple[type, ...], str], ...] = (
    (K_V, int, "protocol version must be an integer"),
    (K_T, int, "message type must be an integer"),
    (K_ID, (bytes, bytearray), "message id must be bytes"),
    (K_TS, int, "timestamp must be an integer"),
)

_OPTIONAL: tuple[tuple[int, type | tuple[type, ...], str], ...] = (
    (K_SRC, (bytes, bytearray), "sender identity must be bytes"),
    (K_USER, str, "user id must be a string"),
)


def now_ms() -> int:
    return int(time.time() * 1000)


def make_envelope(
    msg_type: int,
    *,
    src: bytes | None = None,
    user: str | None = None,
    body: Any = None,
    mid: bytes | None = None,
    ts: int | None = None,
) -> dict[int, Any]:
    env: dict[int, Any] = {
        K_V: STRANGER_VERSION,
        K_T: int(msg_type),
        K_ID: mid or os.urandom(8),
        K_TS: now_ms() if ts is None else int(ts),
    }
    for key, value in ((K_SRC, src), (K_USER, user), (K_BODY, body)):
        if value is not None:
            env[key] = value
    return env


def validate_envelope(env: Any) -> None:
    """Raise TypeError or ValueError if ``env`` is not a usable envelope."""
    if not isinstance(env, dict):
        raise TypeError("envelope must be a CBOR map (dict)")

    if any(not isinstance(k, int) for k in env):
        raise TypeError("envelope keys must be integers")
    if any(k < 0 for k in env):
        raise ValueError("envelope keys must be unsigned integers")

    for key, kind, message in _REQUIRED:
        if key not in env:
            raise ValueError(f"missing envelope key {key}")
        if not isinstance(env[key], kind):
            raise TypeError(message)

    for key, kind, message in _OPTIONAL:
        if key in env and not isinstance(env[key], kind):
            raise TypeError(message)

    if env[K_V] != STRANGER_VERSION:
        raise ValueError(f"unsupported version {env[K_V]}")
    if env[K_TS] < 0:
        raise ValueError("timestamp must be unsigned")
    if env.get(K_USER) == "":
        raise ValueError("user id must not be empty")


def join_interests(env: dict[int, Any]) -> Any:
    body = env.get(K_BODY)
    return body.get(B_JOIN_INTERESTS) if isinstance(body, dict) else None


def message_text(env: dict[int, Any]) -> Any:
    """Chat text from a message body; a bare string body is accepted too."""
    body = env.get(K_BODY)
    if isinstance(body, dict):
        return body.get(B_MSG_TEXT)
    return body
