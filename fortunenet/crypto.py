"""
crypto.py — the challenge hash, token minting and control-channel signatures.

Why this exists:
- Keep every byte-level detail of the nonce/secret challenge in one place so the
  client and the auth server can never drift apart.
- Tokens (auth nonces and content access tokens) come from the OS CSPRNG.
- The control channel between the two services can be HMAC-signed with a
  shared key; the helpers here sign/verify frames the same way on both ends.

Notes:
- The challenge digest is MD5 over the zig-zag varint of (nonce + secret) with
  64-bit signed wrap-around. MD5 is weak, but it is the wire contract.
- Signatures use HMAC-SHA256 and URL-safe Base64 without '=' padding so they
  drop cleanly into JSON.
"""

import base64
import json
import secrets
from typing import Any, Dict, Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, hmac

INT64_MIN = -(1 << 63)
INT64_MAX = (1 << 63) - 1
_UINT64_MASK = (1 << 64) - 1

TOKEN_BITS = 63
CONTROL_KEY_BYTES = 32


# -----------------------------
# Base64 URL helpers (no padding)
# -----------------------------

def b64url_encode(data: bytes) -> str:
    """URL-safe Base64 without '=' padding."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(data: str) -> bytes:
    """Decode our URL-safe, no-padding Base64 back to bytes."""
    pad_len = (-len(data)) % 4
    return base64.urlsafe_b64decode(data + "=" * pad_len)


# ------------------
# Challenge encoding
# ------------------

def wrap_int64(value: int) -> int:
    """Wrap an arbitrary int into the signed 64-bit range (two's complement)."""
    return ((value - INT64_MIN) & _UINT64_MASK) + INT64_MIN


def put_varint(value: int) -> bytes:
    """
    Zig-zag varint encoding of a signed 64-bit integer.

    Same bytes as Go's binary.PutVarint / protobuf sint64: the sign is folded
    into the low bit, then 7 bits per byte, least significant group first.
    """
    value = wrap_int64(value)
    ux = (value << 1) & _UINT64_MASK
    if value < 0:
        ux ^= _UINT64_MASK

    out = bytearray()
    while ux >= 0x80:
        out.append((ux & 0x7F) | 0x80)
        ux >>= 7
    out.append(ux)
    return bytes(out)


def challenge_hash(nonce: int, secret: int) -> str:
    """Lowercase hex MD5 of varint(nonce + secret), the value the client proves."""
    digest = hashes.Hash(hashes.MD5())
    digest.update(put_varint(wrap_int64(nonce + secret)))
    return digest.finalize().hex()


def hashes_match(expected: str, supplied: str) -> bool:
    """Constant-time comparison of two hex digests."""
    return secrets.compare_digest(expected.encode("utf-8"), supplied.encode("utf-8"))


def new_token() -> int:
    """A fresh token, uniform over [0, 2**63)."""
    return secrets.randbits(TOKEN_BITS)


# -------------------------------
# Control-channel frame signatures
# -------------------------------

def generate_control_key() -> str:
    """New random control key, Base64url encoded (what FORTUNENET_CONTROL_KEY holds)."""
    return b64url_encode(secrets.token_bytes(CONTROL_KEY_BYTES))


def canonical_frame_bytes(frame: Dict[str, Any]) -> bytes:
    """
    Deterministic JSON for signing: drop 'sig', sort keys, compact separators.
    """
    body = {k: v for k, v in frame.items() if k != "sig"}
    return json.dumps(body, sort_keys=True, separators=(",", ":")).encode("utf-8")


def sign_frame(key: bytes, frame: Dict[str, Any]) -> Dict[str, Any]:
    """Attach an HMAC-SHA256 signature over the canonical frame as frame['sig']."""
    mac = hmac.HMAC(key, hashes.SHA256())
    mac.update(canonical_frame_bytes(frame))
    frame["sig"] = b64url_encode(mac.finalize())
    return frame


def verify_frame(key: bytes, frame: Dict[str, Any]) -> bool:
    """
    Check frame['sig'] against the canonical frame bytes.
    Returns False when the signature is missing, malformed or wrong.
    """
    sig: Optional[Any] = frame.get("sig")
    if not isinstance(sig, str) or not sig:
        return False
    try:
        raw = b64url_decode(sig)
    except ValueError:
        return False

    mac = hmac.HMAC(key, hashes.SHA256())
    mac.update(canonical_frame_bytes(frame))
    try:
        mac.verify(raw)
    except InvalidSignature:
        return False
    return True
