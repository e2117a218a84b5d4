"""
config.py — configuration surface of the three programs.

Everything here is parsed once at start-up. Bad input raises ConfigError,
which run_node turns into a non-zero exit; nothing in this module is consulted
after the service loops start.
"""

import os
import re
from dataclasses import dataclass
from typing import Mapping, Optional, Tuple

from .crypto import INT64_MAX, INT64_MIN, b64url_decode

Address = Tuple[str, int]

CONTROL_KEY_ENV = "FORTUNENET_CONTROL_KEY"
MIN_CONTROL_KEY_BYTES = 16

_INT_RE = re.compile(r"^[+-]?\d+$")


class ConfigError(ValueError):
    """A configuration value could not be parsed."""


def parse_address(text: str) -> Address:
    """
    Parse "host:port" (or "[v6-host]:port") into a (host, port) tuple.

    An empty host (":7070") means all IPv4 interfaces, as with most servers.
    """
    text = text.strip()
    if text.startswith("["):
        host, sep, port_text = text[1:].partition("]:")
    else:
        host, sep, port_text = text.rpartition(":")
        if ":" in host:
            raise ConfigError(f"IPv6 addresses need brackets: {text!r}")
    if not sep:
        raise ConfigError(f"expected host:port, got {text!r}")
    if not (port_text.isascii() and port_text.isdigit()):
        raise ConfigError(f"bad port in {text!r}")
    port = int(port_text)
    if port > 65535:
        raise ConfigError(f"port out of range in {text!r}")
    return (host or "0.0.0.0", port)


def format_address(addr) -> str:
    """
    "host:port" form of a socket address. This is the session-table key, so
    the same peer always maps to the same string. Extra IPv6 tuple members
    (flowinfo, scope id) are ignored.
    """
    host, port = addr[0], addr[1]
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


def parse_secret(text: str) -> int:
    """Parse the pre-shared secret: a signed 64-bit decimal integer."""
    text = text.strip()
    if not _INT_RE.match(text):
        raise ConfigError(f"secret must be a decimal integer, got {text!r}")
    value = int(text)
    if not INT64_MIN <= value <= INT64_MAX:
        raise ConfigError("secret does not fit in a signed 64-bit integer")
    return value


def parse_timeout(text: Optional[str]) -> Optional[float]:
    """Seconds to wait for each reply; None (or "none") waits forever."""
    if text is None or text.strip().lower() in ("", "none"):
        return None
    try:
        value = float(text)
    except ValueError:
        raise ConfigError(f"timeout must be a number of seconds, got {text!r}") from None
    if not value > 0:
        raise ConfigError("timeout must be positive")
    return value


def control_key_from_env(environ: Mapping[str, str] = os.environ) -> Optional[bytes]:
    """
    Shared HMAC key for the control channel, from FORTUNENET_CONTROL_KEY.

    Unset means the channel is unauthenticated (it should then only listen on
    a trusted interface).
    """
    raw = environ.get(CONTROL_KEY_ENV, "").strip()
    if not raw:
        return None
    try:
        key = b64url_decode(raw)
    except ValueError:
        raise ConfigError(f"{CONTROL_KEY_ENV} is not valid base64url") from None
    if len(key) < MIN_CONTROL_KEY_BYTES:
        raise ConfigError(f"{CONTROL_KEY_ENV} must decode to at least {MIN_CONTROL_KEY_BYTES} bytes")
    return key


@dataclass
class ContentServerConfig:
    control: Address             # TCP control listener (auth server connects here)
    listen: Address              # UDP listener for clients
    content: str                 # the fortune handed out
    advertise: Optional[str] = None  # address given to clients; defaults to `listen`
    control_key: Optional[bytes] = None


@dataclass
class AuthServerConfig:
    listen: Address              # UDP listener for clients
    control: Address             # content server's control listener
    secret: int
    control_key: Optional[bytes] = None


@dataclass
class ClientConfig:
    local: Address               # local UDP bind; reused for the content server
    server: Address              # auth server
    secret: int
    timeout: Optional[float] = None  # None blocks forever on each reply
