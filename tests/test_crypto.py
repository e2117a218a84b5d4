"""
Unit tests for the challenge hash, tokens and control-frame signatures.
"""

import hashlib

import pytest

from fortunenet.crypto import (
    INT64_MAX,
    INT64_MIN,
    b64url_decode,
    b64url_encode,
    challenge_hash,
    generate_control_key,
    hashes_match,
    new_token,
    put_varint,
    sign_frame,
    verify_frame,
    wrap_int64,
)


class TestVarint:
    """Zig-zag varint must match Go's binary.PutVarint byte for byte."""

    @pytest.mark.parametrize("value, expected", [
        (0, b"\x00"),
        (-1, b"\x01"),
        (1, b"\x02"),
        (63, b"\x7e"),
        (-64, b"\x7f"),
        (64, b"\x80\x01"),
        (-65, b"\x81\x01"),
        (150, b"\xac\x02"),
        (1984, b"\x80\x1f"),
    ])
    def test_small_values(self, value, expected):
        assert put_varint(value) == expected

    def test_extremes_use_ten_bytes(self):
        assert put_varint(INT64_MAX) == b"\xfe" + b"\xff" * 8 + b"\x01"
        assert put_varint(INT64_MIN) == b"\xff" * 9 + b"\x01"

    def test_wrap_int64(self):
        assert wrap_int64(INT64_MAX + 1) == INT64_MIN
        assert wrap_int64(INT64_MIN - 1) == INT64_MAX
        assert wrap_int64(-5) == -5
        assert wrap_int64(1 << 64) == 0


class TestChallengeHash:

    def test_matches_independent_md5(self):
        """The cryptography-backed digest agrees with hashlib over the same bytes."""
        for nonce in (0, 1, 12345678901234, INT64_MAX - 1984):
            expected = hashlib.md5(put_varint(nonce + 1984)).hexdigest()
            assert challenge_hash(nonce, 1984) == expected

    def test_deterministic(self):
        assert challenge_hash(987654321, 1984) == challenge_hash(987654321, 1984)

    def test_lowercase_hex(self):
        digest = challenge_hash(42, 1984)
        assert len(digest) == 32
        assert digest == digest.lower()
        int(digest, 16)

    def test_sum_wraps_like_int64(self):
        assert challenge_hash(INT64_MAX, 1) == challenge_hash(INT64_MIN, 0)

    def test_depends_on_nonce_and_secret(self):
        assert challenge_hash(1, 1984) != challenge_hash(2, 1984)
        assert challenge_hash(1, 1984) != challenge_hash(1, 1985)

    def test_hashes_match(self):
        digest = challenge_hash(7, 1984)
        assert hashes_match(digest, digest)
        assert not hashes_match(digest, digest.upper())
        assert not hashes_match(digest, "")
        assert not hashes_match(digest, "é")


class TestTokens:

    def test_range(self):
        for _ in range(1000):
            token = new_token()
            assert 0 <= token < (1 << 63)

    def test_no_collisions(self):
        tokens = [new_token() for _ in range(5000)]
        assert len(set(tokens)) == len(tokens)


class TestFrameSignatures:

    @pytest.fixture
    def key(self) -> bytes:
        return b64url_decode(generate_control_key())

    def test_sign_then_verify(self, key):
        frame = sign_frame(key, {"id": 1, "method": "GetAccessGrant", "params": {"client_addr": "a:1"}})
        assert verify_frame(key, frame)

    def test_key_order_does_not_matter(self, key):
        frame = sign_frame(key, {"b": 2, "a": 1})
        reordered = {"sig": frame["sig"], "a": 1, "b": 2}
        assert verify_frame(key, reordered)

    def test_tampered_frame(self, key):
        frame = sign_frame(key, {"id": 1, "params": {"client_addr": "a:1"}})
        frame["params"]["client_addr"] = "b:2"
        assert not verify_frame(key, frame)

    def test_wrong_key(self, key):
        frame = sign_frame(key, {"id": 1})
        assert not verify_frame(b"x" * 32, frame)

    @pytest.mark.parametrize("sig", [None, "", 17, "!!not base64!!"])
    def test_missing_or_garbage_signature(self, key, sig):
        assert not verify_frame(key, {"id": 1, "sig": sig})

    def test_generated_key_length(self):
        assert len(b64url_decode(generate_control_key())) == 32
        assert "=" not in b64url_encode(b"\x00\x01")
