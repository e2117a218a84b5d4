import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from .client import ProtocolError, fetch_fortune
from .config import (
    AuthServerConfig,
    ClientConfig,
    ConfigError,
    ContentServerConfig,
    control_key_from_env,
    parse_address,
    parse_secret,
    parse_timeout,
)
from .crypto import generate_control_key
from .node import AuthServer, ContentServer

"""
run_node.py — single entry point for the three programs.

Quick examples:
  Content server: fortunenet --mode content --control 127.0.0.1:9001 \
                      --listen 127.0.0.1:9000 --content "seize the day"
  Auth server:    fortunenet --mode auth --listen 127.0.0.1:7070 \
                      --control 127.0.0.1:9001 --secret 1984
  Client:         fortunenet --mode client --listen 127.0.0.1:2020 \
                      --server 127.0.0.1:7070 --secret 1984
  Control key:    fortunenet --mode keygen   (export as FORTUNENET_CONTROL_KEY)

Any start-up problem (bad address, bad integer, cannot bind/connect) exits
non-zero with a message. Once a server is running, client mistakes are
answered on the wire and never stop it.
"""


# -------------------------
# Process runners (thin wrappers)
# -------------------------

async def run_content(config: ContentServerConfig) -> None:
    server = ContentServer(config)
    await server.start()
    try:
        await server.serve_forever()
    finally:
        await server.close()


async def run_auth(config: AuthServerConfig) -> None:
    server = AuthServer(config)
    await server.start()
    try:
        await server.serve_forever()
    finally:
        await server.close()


# -------------------------
# Argument parsing
# -------------------------

def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="fortunenet", description="Nonce-authenticated fortune service")
    p.add_argument("--mode", choices=["auth", "content", "client", "keygen"], required=True)
    p.add_argument("--listen", help="local UDP ip:port (server listener, or client bind address)")
    p.add_argument("--control", help="content server control-channel ip:port (TCP)")
    p.add_argument("--server", help="auth server ip:port (client mode)")
    p.add_argument("--secret", help="pre-shared signed 64-bit integer")
    p.add_argument("--content", help="content string served by the content server")
    p.add_argument("--advertise", help="address the content server hands out to clients")
    p.add_argument("--timeout", help="client: seconds to wait for each reply (default: forever)")
    p.add_argument("--log-level", default="INFO",
                   choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    return p


def _require(args: argparse.Namespace, *names: str) -> None:
    missing = [f"--{n}" for n in names if getattr(args, n) is None]
    if missing:
        raise ConfigError(f"{', '.join(missing)} required for {args.mode} mode")


def content_config(args: argparse.Namespace) -> ContentServerConfig:
    _require(args, "control", "listen", "content")
    return ContentServerConfig(
        control=parse_address(args.control),
        listen=parse_address(args.listen),
        content=args.content,
        advertise=args.advertise,
        control_key=control_key_from_env(),
    )


def auth_config(args: argparse.Namespace) -> AuthServerConfig:
    _require(args, "listen", "control", "secret")
    return AuthServerConfig(
        listen=parse_address(args.listen),
        control=parse_address(args.control),
        secret=parse_secret(args.secret),
        control_key=control_key_from_env(),
    )


def client_config(args: argparse.Namespace) -> ClientConfig:
    _require(args, "listen", "server", "secret")
    return ClientConfig(
        local=parse_address(args.listen),
        server=parse_address(args.server),
        secret=parse_secret(args.secret),
        timeout=parse_timeout(args.timeout),
    )


# -------------------------
# Main entrypoint
# -------------------------

def main(argv: Optional[List[str]] = None) -> None:
    """Dispatch into the chosen mode; keep top-level code very small."""
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    if args.mode == "keygen":
        print(generate_control_key())
        return

    try:
        if args.mode == "content":
            asyncio.run(run_content(content_config(args)))
        elif args.mode == "auth":
            asyncio.run(run_auth(auth_config(args)))
        else:
            fortune = asyncio.run(fetch_fortune(client_config(args)))
            print(fortune)
    except ConfigError as exc:
        raise SystemExit(f"Error on argument parsing: {exc}")
    except ProtocolError as exc:
        raise SystemExit(f"Error: {exc}")
    except OSError as exc:
        raise SystemExit(f"Error on setup: {exc}")
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
