import abc
import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Set

from .config import AuthServerConfig, ContentServerConfig, format_address
from .crypto import challenge_hash, hashes_match, new_token
from .handoff import AccessGrantIssuer, HandoffClient, HandoffError, HandoffServer
from .messages import (
    ERR_BAD_HASH,
    ERR_BAD_TOKEN,
    ERR_MALFORMED,
    ERR_UNKNOWN_CLIENT,
    ContentPayload,
    ContentRequest,
    ErrorNotice,
    HashResponse,
    Message,
    MessageDecodeError,
    NonceChallenge,
    decode,
    encode,
)
from .sessions import SessionTable

"""
node.py — the authorization server and the content server.

Both follow the same shape:
- one UDP endpoint whose receive callback never blocks;
- every datagram becomes its own asyncio task running a handler;
- a handler returns an Outcome (what happened + the reply, if any) instead of
  raising, so a client's bad input can never take the service down;
- the only shared state is the service's own SessionTable.

The content server also runs the control listener for the handoff call (see
handoff.py). The auth server holds the matching client.
"""

logger = logging.getLogger(__name__)


class Status(Enum):
    CHALLENGED = "challenged"   # nonce issued
    GRANTED = "granted"         # hash verified, handoff info sent
    DELIVERED = "delivered"     # content sent
    REJECTED = "rejected"       # error notice sent
    DROPPED = "dropped"         # nothing sent (handoff failed)


@dataclass(frozen=True)
class Outcome:
    """Result of handling one datagram."""
    status: Status
    reply: Optional[Message] = None


def reject(reason: str) -> Outcome:
    return Outcome(Status.REJECTED, ErrorNotice(reason))


# -------------------------
# Shared UDP plumbing
# -------------------------

class DatagramListener(asyncio.DatagramProtocol):
    """Hands every datagram to a callback; the callback must not block."""

    def __init__(self, on_datagram) -> None:
        self.on_datagram = on_datagram

    def datagram_received(self, data: bytes, addr) -> None:
        self.on_datagram(data, addr)

    def error_received(self, exc: Exception) -> None:
        # ICMP errors from earlier sends; nothing to retry in this protocol.
        logger.warning("UDP socket error: %s", exc)


class DatagramService(abc.ABC):
    """
    Receive loop + per-datagram task spawning. Subclasses implement handle().
    """

    def __init__(self) -> None:
        self._transport: Optional[asyncio.DatagramTransport] = None
        self._tasks: Set[asyncio.Task] = set()
        self._stopped: Optional[asyncio.Future] = None

    async def _bind(self, addr) -> None:
        loop = asyncio.get_running_loop()
        self._transport, _ = await loop.create_datagram_endpoint(
            lambda: DatagramListener(self._on_datagram), local_addr=addr
        )
        self._stopped = loop.create_future()

    @property
    def sockname(self):
        if self._transport is None:
            return None
        return self._transport.get_extra_info("sockname")

    def _on_datagram(self, data: bytes, addr) -> None:
        logger.info("message: %r received from %s", data[:128], format_address(addr))
        task = asyncio.create_task(self._run(data, addr))
        # Keep a reference until the task finishes.
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, data: bytes, addr) -> None:
        client_addr = format_address(addr)
        try:
            outcome = await self.handle(data, client_addr)
        except Exception:
            logger.exception("Unhandled error while serving %s", client_addr)
            return

        logger.info("%s -> %s", client_addr, outcome.status.value)
        if outcome.reply is None:
            return
        if self._transport is None or self._transport.is_closing():
            return
        self._transport.sendto(encode(outcome.reply), addr)

    @abc.abstractmethod
    async def handle(self, payload: bytes, client_addr: str) -> Outcome:
        """Serve one datagram from `client_addr`."""

    async def drain(self) -> None:
        """Wait for the datagram tasks that are currently running."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def serve_forever(self) -> None:
        """Block until close() is called."""
        if self._stopped is None:
            raise RuntimeError("service not started")
        await self._stopped

    def _close_transport(self) -> None:
        if self._transport is not None:
            self._transport.close()
        if self._stopped is not None and not self._stopped.done():
            self._stopped.set_result(None)


# -------------------------
# Authorization server
# -------------------------

class AuthorizationHandler:
    """
    Per-datagram state machine of the auth server.

    Anything that does not decode as a hash response is a probe and (re)starts
    the exchange for that address. A hash response is checked against the
    nonce last issued to the same address; a match triggers the handoff call
    and the grant is forwarded to the client as-is.
    """

    def __init__(self, sessions: SessionTable, secret: int, grants) -> None:
        self.sessions = sessions
        self.secret = secret
        # Anything with `async get_access_grant(client_addr) -> HandoffInfo`.
        self.grants = grants

    def challenge(self, client_addr: str) -> Outcome:
        nonce = new_token()
        self.sessions.put(client_addr, nonce)
        return Outcome(Status.CHALLENGED, NonceChallenge(nonce))

    async def handle(self, payload: bytes, client_addr: str) -> Outcome:
        try:
            response = decode(payload, HashResponse)
        except MessageDecodeError:
            return self.challenge(client_addr)

        nonce = self.sessions.get(client_addr)
        if nonce is None:
            return reject(ERR_UNKNOWN_CLIENT)

        if not hashes_match(challenge_hash(nonce, self.secret), response.hash):
            return reject(ERR_BAD_HASH)

        try:
            grant = await self.grants.get_access_grant(client_addr)
        except HandoffError as exc:
            # No reply; the client sees a timeout.
            logger.warning("Handoff for %s failed, dropping request: %s", client_addr, exc)
            return Outcome(Status.DROPPED)
        return Outcome(Status.GRANTED, grant)


class AuthServer(DatagramService):
    """UDP auth server wired to the content server's control channel."""

    def __init__(self, config: AuthServerConfig) -> None:
        super().__init__()
        self.config = config
        self.sessions = SessionTable()
        self.grants = HandoffClient(config.control[0], config.control[1], config.control_key)
        self.handler = AuthorizationHandler(self.sessions, config.secret, self.grants)

    async def start(self) -> None:
        """
        Bind the UDP listener, then connect to the content server.
        Either failing raises OSError; that is a start-up error.
        """
        await self._bind(self.config.listen)
        try:
            await self.grants.connect()
        except OSError:
            self._close_transport()
            raise
        logger.info("Auth server listening on %s", format_address(self.sockname))

    async def handle(self, payload: bytes, client_addr: str) -> Outcome:
        return await self.handler.handle(payload, client_addr)

    async def close(self) -> None:
        self._close_transport()
        await self.grants.close()


# -------------------------
# Content server
# -------------------------

class ContentHandler:
    """
    Per-datagram state machine of the content server.

    The request must come from the address the grant was issued for and carry
    the token minted for it. Tokens are not consumed; the same request can be
    repeated until a new handoff replaces the token.
    """

    def __init__(self, sessions: SessionTable, content: str) -> None:
        self.sessions = sessions
        self.content = content

    def handle(self, payload: bytes, client_addr: str) -> Outcome:
        try:
            request = decode(payload, ContentRequest)
        except MessageDecodeError:
            return reject(ERR_MALFORMED)

        token = self.sessions.get(client_addr)
        if token is None:
            return reject(ERR_UNKNOWN_CLIENT)
        if request.access_token != token:
            return reject(ERR_BAD_TOKEN)
        return Outcome(Status.DELIVERED, ContentPayload(self.content))


class ContentServer(DatagramService):
    """UDP content server plus the TCP control listener for handoffs."""

    def __init__(self, config: ContentServerConfig) -> None:
        super().__init__()
        self.config = config
        self.sessions = SessionTable()
        self.handler = ContentHandler(self.sessions, config.content)
        self.issuer = AccessGrantIssuer(self.sessions)
        self.control = HandoffServer(
            self.issuer, config.control[0], config.control[1], config.control_key
        )

    def advertised_address(self) -> str:
        """Address handed to clients: explicit, else configured, else the bound one."""
        if self.config.advertise:
            return self.config.advertise
        if self.config.listen[1] != 0:
            return format_address(self.config.listen)
        return format_address(self.sockname)

    async def start(self) -> None:
        """Bind UDP first (grants need the address), then the control listener."""
        await self._bind(self.config.listen)
        self.issuer.address = self.advertised_address()
        try:
            await self.control.start()
        except OSError:
            self._close_transport()
            raise
        logger.info("Content server listening on %s (advertised as %s)",
                    format_address(self.sockname), self.issuer.address)

    async def handle(self, payload: bytes, client_addr: str) -> Outcome:
        return self.handler.handle(payload, client_addr)

    async def close(self) -> None:
        self._close_transport()
        self.control.close()
        await self.control.wait_closed()
