import asyncio
import logging
from typing import Optional, Tuple, Type, Union

from .config import Address, ClientConfig, ConfigError, parse_address
from .crypto import challenge_hash
from .messages import (
    M,
    ContentPayload,
    ContentRequest,
    ErrorNotice,
    HandoffInfo,
    HashResponse,
    MessageDecodeError,
    NonceChallenge,
    Probe,
    decode_any,
    encode,
)

"""
client.py — the client side of the fortune exchange.

Three strictly sequential round trips:
  1. probe -> nonce                 (auth server)
  2. hash(nonce + secret) -> grant  (auth server)
  3. grant token -> fortune         (content server, same local address)

The content server only honours the grant from the address the auth server
saw, so step 3 rebinds the exact local address used for steps 1 and 2.

There is no retry. With the default timeout of None a lost datagram blocks
the client forever; set ClientConfig.timeout to bound every wait.
"""

logger = logging.getLogger(__name__)


class ProtocolError(Exception):
    """The exchange cannot continue (unexpected reply, socket error, ...)."""


class ServerError(ProtocolError):
    """A server answered with an error notice."""

    def __init__(self, notice: str) -> None:
        super().__init__(notice)
        self.notice = notice


class ProtocolTimeout(ProtocolError):
    """No reply within the configured timeout."""


class ReplyQueue(asyncio.DatagramProtocol):
    """Queues every datagram (or socket error) received on a connected endpoint."""

    def __init__(self) -> None:
        self.queue: "asyncio.Queue[Union[bytes, Exception]]" = asyncio.Queue()
        self.closed = asyncio.get_running_loop().create_future()

    def datagram_received(self, data: bytes, addr) -> None:
        self.queue.put_nowait(data)

    def error_received(self, exc: Exception) -> None:
        # e.g. ICMP port unreachable: the server is not there.
        self.queue.put_nowait(exc)

    def connection_lost(self, exc: Optional[Exception]) -> None:
        if not self.closed.done():
            self.closed.set_result(None)


class FortuneClient:
    def __init__(self, config: ClientConfig) -> None:
        self.config = config

    async def _open(self, local: Address, remote: Address) -> Tuple[asyncio.DatagramTransport, ReplyQueue]:
        loop = asyncio.get_running_loop()
        try:
            transport, replies = await loop.create_datagram_endpoint(
                ReplyQueue, local_addr=local, remote_addr=remote
            )
        except OSError as exc:
            raise ProtocolError(f"cannot open UDP socket {local} -> {remote}: {exc}") from exc
        return transport, replies

    @staticmethod
    async def _close(transport: asyncio.DatagramTransport, replies: ReplyQueue) -> None:
        # The socket is released in connection_lost; wait so the port can be rebound.
        transport.close()
        await replies.closed

    async def _next(self, replies: ReplyQueue) -> bytes:
        if self.config.timeout is None:
            item = await replies.queue.get()
        else:
            try:
                item = await asyncio.wait_for(replies.queue.get(), self.config.timeout)
            except asyncio.TimeoutError:
                raise ProtocolTimeout(f"no reply within {self.config.timeout:g}s") from None
        if isinstance(item, Exception):
            raise ProtocolError(f"socket error: {item}") from item
        return item

    async def _expect(self, replies: ReplyQueue, kind: Type[M]) -> M:
        """Wait for the next reply and decode it as `kind`; error notices raise."""
        data = await self._next(replies)
        try:
            message = decode_any(data, (kind, ErrorNotice))
        except MessageDecodeError:
            raise ProtocolError(
                f"unexpected reply while waiting for {kind.__name__}: {data[:64]!r}"
            ) from None
        if isinstance(message, ErrorNotice):
            raise ServerError(message.message)
        return message

    async def authenticate(self) -> Tuple[HandoffInfo, Address]:
        """
        Steps 1 and 2 against the auth server.
        Returns the grant and the local address it is bound to.
        """
        transport, replies = await self._open(self.config.local, self.config.server)
        try:
            transport.sendto(encode(Probe()))
            challenge = await self._expect(replies, NonceChallenge)
            logger.debug("received nonce %d", challenge.nonce)

            digest = challenge_hash(challenge.nonce, self.config.secret)
            transport.sendto(encode(HashResponse(digest)))
            grant = await self._expect(replies, HandoffInfo)
            logger.debug("granted access at %s", grant.content_server)

            local = transport.get_extra_info("sockname")
        finally:
            await self._close(transport, replies)
        return grant, (local[0], local[1])

    async def redeem(self, grant: HandoffInfo, local: Address) -> str:
        """Step 3: present the grant's token to the content server."""
        try:
            content_addr = parse_address(grant.content_server)
        except ConfigError as exc:
            raise ProtocolError(f"bad content server address in grant: {exc}") from exc

        transport, replies = await self._open(local, content_addr)
        try:
            transport.sendto(encode(ContentRequest(grant.access_token)))
            payload = await self._expect(replies, ContentPayload)
        finally:
            await self._close(transport, replies)
        return payload.content

    async def fetch(self) -> str:
        """Run the whole exchange and return the content string."""
        grant, local = await self.authenticate()
        return await self.redeem(grant, local)


async def fetch_fortune(config: ClientConfig) -> str:
    return await FortuneClient(config).fetch()
