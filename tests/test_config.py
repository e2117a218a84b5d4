"""
Unit tests for configuration parsing.
"""

import pytest

from fortunenet.config import (
    CONTROL_KEY_ENV,
    ConfigError,
    control_key_from_env,
    format_address,
    parse_address,
    parse_secret,
    parse_timeout,
)
from fortunenet.crypto import b64url_encode, generate_control_key


class TestAddresses:

    def test_ipv4(self):
        assert parse_address("127.0.0.1:7070") == ("127.0.0.1", 7070)

    def test_hostname(self):
        assert parse_address("localhost:80") == ("localhost", 80)

    def test_empty_host_means_all_interfaces(self):
        assert parse_address(":7070") == ("0.0.0.0", 7070)

    def test_bracketed_ipv6(self):
        assert parse_address("[::1]:2020") == ("::1", 2020)

    @pytest.mark.parametrize("text", [
        "127.0.0.1", "127.0.0.1:", "127.0.0.1:port", "127.0.0.1:70000",
        "::1:2020", "[::1]2020", "",
    ])
    def test_rejects_bad_addresses(self, text):
        with pytest.raises(ConfigError):
            parse_address(text)

    def test_format(self):
        assert format_address(("127.0.0.1", 2020)) == "127.0.0.1:2020"
        assert format_address(("::1", 2020, 0, 0)) == "[::1]:2020"


class TestSecret:

    @pytest.mark.parametrize("text, value", [
        ("1984", 1984), ("-7", -7), ("+7", 7), (" 12 ", 12),
        ("9223372036854775807", (1 << 63) - 1),
        ("-9223372036854775808", -(1 << 63)),
    ])
    def test_valid(self, text, value):
        assert parse_secret(text) == value

    @pytest.mark.parametrize("text", [
        "", "abc", "1.5", "1_000", "0x10", "9223372036854775808",
    ])
    def test_invalid(self, text):
        with pytest.raises(ConfigError):
            parse_secret(text)


class TestTimeout:

    def test_default_is_forever(self):
        assert parse_timeout(None) is None
        assert parse_timeout("none") is None

    def test_seconds(self):
        assert parse_timeout("2.5") == 2.5

    @pytest.mark.parametrize("text", ["0", "-1", "soon"])
    def test_invalid(self, text):
        with pytest.raises(ConfigError):
            parse_timeout(text)


class TestControlKey:

    def test_unset(self):
        assert control_key_from_env({}) is None
        assert control_key_from_env({CONTROL_KEY_ENV: "  "}) is None

    def test_generated_key(self):
        key = control_key_from_env({CONTROL_KEY_ENV: generate_control_key()})
        assert len(key) == 32

    def test_too_short(self):
        with pytest.raises(ConfigError):
            control_key_from_env({CONTROL_KEY_ENV: b64url_encode(b"short")})

    def test_not_base64(self):
        with pytest.raises(ConfigError):
            control_key_from_env({CONTROL_KEY_ENV: "a"})
