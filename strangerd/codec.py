from __future__ import annotations

import cbor2

from .envelope import validate_envelope


def encode(obj) -> bytes:
    return cbor2.dumps(obj)


def decode(b: bytes):
    return cbor2.loads(b)


def decode_envelope(b: bytes) -> dict:
    """Decode a packet payload and check it is a well-formed envelope.

    Raises ValueError/TypeError for anything the router should reject,
    including CBOR that does not parse.
    """
    try:
        env = cbor2.loads(b)
    except cbor2.CBORDecodeError as e:
        raise ValueError(f"undecodable payload: {e}") from e
    validate_envelope(env)
    return env
