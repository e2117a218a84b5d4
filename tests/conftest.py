"""
pytest configuration and fixtures.
"""

import asyncio
from typing import AsyncGenerator, List, Tuple

import pytest
import pytest_asyncio

from fortunenet.client import ReplyQueue
from fortunenet.config import (
    AuthServerConfig,
    ClientConfig,
    ContentServerConfig,
    format_address,
)
from fortunenet.handoff import HandoffError
from fortunenet.messages import HandoffInfo
from fortunenet.node import AuthServer, ContentServer

SECRET = 1984
CONTENT = "seize the day"
LOCALHOST = "127.0.0.1"


class StubGrants:
    """Stands in for the handoff client; records every call."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.calls: List[str] = []

    async def get_access_grant(self, client_addr: str) -> HandoffInfo:
        self.calls.append(client_addr)
        if self.fail:
            raise HandoffError("content server unavailable")
        return HandoffInfo(content_server="127.0.0.1:9000", access_token=42)


class PeerQueue(ReplyQueue):
    """ReplyQueue that also remembers who sent each datagram."""

    def __init__(self) -> None:
        super().__init__()
        self.senders: List[Tuple[str, int]] = []

    def datagram_received(self, data: bytes, addr) -> None:
        self.senders.append(addr)
        super().datagram_received(data, addr)


class RawPeer:
    """
    A bare UDP socket for poking the services with hand-made datagrams.
    Unconnected, so one peer (one address) can talk to both services.
    """

    def __init__(self, transport: asyncio.DatagramTransport, replies: PeerQueue) -> None:
        self.transport = transport
        self.replies = replies

    @classmethod
    async def open(cls, local: Tuple[str, int] = (LOCALHOST, 0)) -> "RawPeer":
        loop = asyncio.get_running_loop()
        transport, replies = await loop.create_datagram_endpoint(PeerQueue, local_addr=local)
        return cls(transport, replies)

    @property
    def address(self) -> str:
        return format_address(self.transport.get_extra_info("sockname"))

    async def request(self, target, payload: bytes, timeout: float = 2.0) -> bytes:
        self.transport.sendto(payload, target)
        item = await asyncio.wait_for(self.replies.queue.get(), timeout)
        assert isinstance(item, bytes), item
        return item

    async def close(self) -> None:
        self.transport.close()
        await self.replies.closed


@pytest.fixture
def stub_grants() -> StubGrants:
    return StubGrants()


@pytest_asyncio.fixture
async def content_server() -> AsyncGenerator[ContentServer, None]:
    """Content server on ephemeral UDP and TCP ports."""
    server = ContentServer(ContentServerConfig(
        control=(LOCALHOST, 0),
        listen=(LOCALHOST, 0),
        content=CONTENT,
    ))
    await server.start()
    yield server
    await server.close()


@pytest_asyncio.fixture
async def auth_server(content_server: ContentServer) -> AsyncGenerator[AuthServer, None]:
    """Auth server connected to the content_server fixture."""
    control_port = content_server.control.sockname[1]
    server = AuthServer(AuthServerConfig(
        listen=(LOCALHOST, 0),
        control=(LOCALHOST, control_port),
        secret=SECRET,
    ))
    await server.start()
    yield server
    await server.close()


@pytest_asyncio.fixture
async def raw_peer() -> AsyncGenerator[RawPeer, None]:
    peer = await RawPeer.open()
    yield peer
    await peer.close()


@pytest.fixture
def client_config(auth_server: AuthServer) -> ClientConfig:
    return ClientConfig(
        local=(LOCALHOST, 0),
        server=(LOCALHOST, auth_server.sockname[1]),
        secret=SECRET,
        timeout=5.0,
    )
