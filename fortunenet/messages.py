import json
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Tuple, Type, TypeVar, Union

from .crypto import INT64_MAX, INT64_MIN

"""
messages.py — the wire shapes exchanged with clients.

What this module does:
- Declares one small dataclass per message shape (nonce challenge, hash
  response, handoff info, content request/payload, error notice).
- Encodes them as compact JSON objects, one per datagram.
- Decodes permissively but checks shape strictly: a payload "is" a given
  message only if it is a JSON object carrying every field of that message
  with the right JSON type. Extra keys are ignored.

There is no type tag on the wire. The receiver knows what it expects at each
protocol step and tries to decode as that; failing to decode is itself a
signal (the auth server treats anything that is not a hash response as a
probe).

Field names match the deployed fortune wire format.
"""

# Error notice texts. These are part of the wire contract.
ERR_MALFORMED = "could not interpret message"
ERR_UNKNOWN_CLIENT = "unknown remote client address"
ERR_BAD_HASH = "unexpected hash value"
ERR_BAD_TOKEN = "incorrect fortune nonce"

# Opaque probe body. Not JSON, so no peer can mistake it for a hash response.
PROBE_PAYLOAD = b"probe"


class MessageDecodeError(ValueError):
    """Payload does not decode as the expected message shape."""


@dataclass(frozen=True)
class Probe:
    """Client hello to the auth server; the content is ignored."""


@dataclass(frozen=True)
class NonceChallenge:
    nonce: int


@dataclass(frozen=True)
class HashResponse:
    hash: str


@dataclass(frozen=True)
class HandoffInfo:
    """Where to fetch content, and the access token the content server minted."""
    content_server: str
    access_token: int


@dataclass(frozen=True)
class ContentRequest:
    access_token: int


@dataclass(frozen=True)
class ContentPayload:
    content: str


@dataclass(frozen=True)
class ErrorNotice:
    message: str


Message = Union[
    Probe, NonceChallenge, HashResponse, HandoffInfo,
    ContentRequest, ContentPayload, ErrorNotice,
]
M = TypeVar("M", NonceChallenge, HashResponse, HandoffInfo,
            ContentRequest, ContentPayload, ErrorNotice)

# Python attribute -> (wire key, expected JSON type) per message class.
_FIELDS: Dict[type, Tuple[Tuple[str, str, type], ...]] = {
    NonceChallenge: (("nonce", "Nonce", int),),
    HashResponse: (("hash", "Hash", str),),
    HandoffInfo: (("content_server", "FortuneServer", str),
                  ("access_token", "FortuneNonce", int)),
    ContentRequest: (("access_token", "FortuneNonce", int),),
    ContentPayload: (("content", "Fortune", str),),
    ErrorNotice: (("message", "Error", str),),
}


def to_wire(message: Message) -> Dict[str, Any]:
    """The JSON object for a message (not valid for Probe, which is opaque)."""
    try:
        fields = _FIELDS[type(message)]
    except KeyError:
        raise TypeError(f"{type(message).__name__} has no JSON form") from None
    return {wire: getattr(message, attr) for attr, wire, _ in fields}


def from_wire(obj: Any, kind: Type[M]) -> M:
    """Build `kind` from an already parsed JSON value, checking every field."""
    if not isinstance(obj, dict):
        raise MessageDecodeError(f"expected a JSON object for {kind.__name__}")

    values = {}
    for attr, wire, json_type in _FIELDS[kind]:
        if wire not in obj:
            raise MessageDecodeError(f"{kind.__name__}: missing field {wire!r}")
        value = obj[wire]
        # bool is an int subclass in Python but never a valid integer field.
        if not isinstance(value, json_type) or isinstance(value, bool):
            raise MessageDecodeError(f"{kind.__name__}: field {wire!r} has the wrong type")
        if json_type is int and not INT64_MIN <= value <= INT64_MAX:
            raise MessageDecodeError(f"{kind.__name__}: field {wire!r} out of int64 range")
        values[attr] = value
    return kind(**values)


def encode(message: Message) -> bytes:
    """Serialize one message into datagram bytes."""
    if isinstance(message, Probe):
        return PROBE_PAYLOAD
    return json.dumps(to_wire(message), separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def decode(data: bytes, kind: Type[M]) -> M:
    """
    Decode datagram bytes as `kind`.

    Raises:
        MessageDecodeError: not UTF-8 JSON, or not the shape of `kind`.
    """
    try:
        obj = json.loads(data.decode("utf-8"))
    except (ValueError, RecursionError) as exc:
        # ValueError covers bad UTF-8, bad JSON and over-long integer literals.
        raise MessageDecodeError(f"not a JSON message: {exc}") from exc
    return from_wire(obj, kind)


def decode_any(data: bytes, kinds: Iterable[type]) -> Message:
    """Return the first of `kinds` that `data` decodes as."""
    for kind in kinds:
        try:
            return decode(data, kind)
        except MessageDecodeError:
            continue
    raise MessageDecodeError("payload matches none of the expected messages")
