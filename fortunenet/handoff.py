import asyncio
import itertools
import logging
import time
import uuid
from collections import OrderedDict
from typing import Any, Dict, Optional, Set

from .crypto import new_token, sign_frame, verify_frame
from .framing import read_frame, write_frame
from .messages import HandoffInfo, MessageDecodeError, from_wire, to_wire
from .sessions import SessionTable

"""
handoff.py — the private control call from the auth server to the content server.

GetAccessGrant(client_addr) asks the content server to mint an access token
bound to a client address. It runs over TCP with length-prefixed JSON frames:

    request:  {"id": 7, "method": "GetAccessGrant", "params": {"client_addr": "1.2.3.4:5"}}
    response: {"id": 7, "result": {"FortuneServer": "...", "FortuneNonce": 123}, "error": null}

One persistent connection carries any number of calls; responses are matched
to requests by id, so slow or concurrent calls do not serialize behind each
other. When a control key is configured, both directions carry an HMAC 'sig'.

Every request also carries a random "nonce" and a millisecond "ts". On a keyed
channel the server refuses a request whose ts is more than REPLAY_WINDOW_MS
away from its own clock, or whose nonce it has already accepted, so a captured
signed request cannot be resent to rotate a client's access token. Unkeyed
channels skip the check: anyone on the network could forge those anyway.

This channel is never exposed on the client-facing UDP socket.
"""

logger = logging.getLogger(__name__)

GET_ACCESS_GRANT = "GetAccessGrant"

ERR_UNAUTHORIZED = "unauthorized control request"
ERR_UNKNOWN_METHOD = "unknown method"
ERR_BAD_PARAMS = "client_addr must be a non-empty string"
ERR_REPLAYED = "stale or replayed control request"

REPLAY_WINDOW_MS = 60_000
REPLAY_CACHE_SIZE = 16384


class HandoffError(Exception):
    """The control call failed: transport down, remote error, or a bad reply."""


class AccessGrantIssuer:
    """Content-server side of GetAccessGrant: mint, remember, return."""

    def __init__(self, sessions: SessionTable, address: Optional[str] = None) -> None:
        self.sessions = sessions
        # Advertised client-facing address. Set once the UDP socket is bound.
        self.address = address

    def get_access_grant(self, client_addr: str) -> HandoffInfo:
        if self.address is None:
            raise RuntimeError("content address is not known yet")
        token = new_token()
        self.sessions.put(client_addr, token)
        return HandoffInfo(content_server=self.address, access_token=token)


def now_ms() -> int:
    return int(time.time() * 1000)


class ReplayGuard:
    """
    Accepts each request nonce once, and only with a fresh timestamp.

    A nonce is remembered until its ts falls out of the window; after that the
    ts check alone rejects it. The cache is also capped at `max_entries`.
    """

    def __init__(self, window_ms: int = REPLAY_WINDOW_MS, max_entries: int = REPLAY_CACHE_SIZE) -> None:
        self.window_ms = window_ms
        self.max_entries = max_entries
        self._expiry: "OrderedDict[str, int]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._expiry)

    def accept(self, frame: Dict[str, Any], now: Optional[int] = None) -> bool:
        nonce = frame.get("nonce")
        ts = frame.get("ts")
        if not isinstance(nonce, str) or not nonce:
            return False
        if not isinstance(ts, int) or isinstance(ts, bool):
            return False
        if now is None:
            now = now_ms()
        if abs(now - ts) > self.window_ms:
            return False

        while self._expiry:
            oldest, expires = next(iter(self._expiry.items()))
            if expires >= now and len(self._expiry) < self.max_entries:
                break
            del self._expiry[oldest]

        if nonce in self._expiry:
            return False
        self._expiry[nonce] = ts + self.window_ms
        return True


class HandoffServer:
    """TCP acceptor for control calls. One loop per connection."""

    def __init__(
        self,
        issuer: AccessGrantIssuer,
        host: str,
        port: int,
        control_key: Optional[bytes] = None,
    ) -> None:
        self.issuer = issuer
        self.host = host
        self.port = port
        self.control_key = control_key
        self._server: Optional[asyncio.AbstractServer] = None
        self.replays = ReplayGuard()
        self._writers: Set[asyncio.StreamWriter] = set()

    async def start(self) -> None:
        """Bind the control listener; connections are served in the background."""
        self._server = await asyncio.start_server(self.handle_conn, self.host, self.port)
        addrs = ", ".join(str(sock.getsockname()) for sock in self._server.sockets or [])
        logger.info("Control channel listening on %s", addrs)

    @property
    def sockname(self):
        if self._server is None or not self._server.sockets:
            return None
        return self._server.sockets[0].getsockname()

    def close(self) -> None:
        if self._server is not None:
            self._server.close()
        # Server.wait_closed() also waits for open connections.
        for writer in list(self._writers):
            writer.close()

    async def wait_closed(self) -> None:
        if self._server is not None:
            await self._server.wait_closed()

    async def handle_conn(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        """Per-connection loop: read a request frame, answer it, repeat."""
        peer = writer.get_extra_info("peername")
        logger.info("Control connection from %s", peer)
        self._writers.add(writer)
        try:
            while True:
                frame = await read_frame(reader)
                await write_frame(writer, self.process_frame(frame))
        except asyncio.IncompleteReadError:
            # Peer went away; normal end of a connection.
            pass
        except (ValueError, ConnectionError) as exc:
            logger.warning("Dropping control connection from %s: %s", peer, exc)
        finally:
            self._writers.discard(writer)
            writer.close()
            try:
                await writer.wait_closed()
            except ConnectionError:
                pass

    def process_frame(self, frame: Dict[str, Any]) -> Dict[str, Any]:
        """Turn one request frame into its response frame."""
        req_id = frame.get("id")
        params = frame.get("params")
        client_addr = params.get("client_addr") if isinstance(params, dict) else None

        if self.control_key is not None and not verify_frame(self.control_key, frame):
            resp = {"id": req_id, "result": None, "error": ERR_UNAUTHORIZED}
        elif self.control_key is not None and not self.replays.accept(frame):
            resp = {"id": req_id, "result": None, "error": ERR_REPLAYED}
        elif frame.get("method") != GET_ACCESS_GRANT:
            resp = {"id": req_id, "result": None, "error": ERR_UNKNOWN_METHOD}
        elif not isinstance(client_addr, str) or not client_addr:
            resp = {"id": req_id, "result": None, "error": ERR_BAD_PARAMS}
        else:
            grant = self.issuer.get_access_grant(client_addr)
            logger.info("Granted access token for %s", client_addr)
            resp = {"id": req_id, "result": to_wire(grant), "error": None}

        if resp["error"] is not None:
            logger.warning("Rejected control request %r: %s", req_id, resp["error"])
        if self.control_key is not None:
            resp = sign_frame(self.control_key, resp)
        return resp


class HandoffClient:
    """
    Auth-server side of GetAccessGrant.

    Keeps one connection open, writes requests tagged with increasing ids and
    lets a background reader resolve the matching futures. If the connection
    drops, pending calls fail with HandoffError and the next call reconnects.
    """

    def __init__(self, host: str, port: int, control_key: Optional[bytes] = None) -> None:
        self.host = host
        self.port = port
        self.control_key = control_key
        self._ids = itertools.count(1)
        self._pending: Dict[int, asyncio.Future] = {}
        self._writer: Optional[asyncio.StreamWriter] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._connect_lock = asyncio.Lock()
        self._write_lock = asyncio.Lock()

    @property
    def connected(self) -> bool:
        return self._writer is not None and not self._writer.is_closing()

    async def connect(self) -> None:
        """Open the control connection. OSError propagates (a setup failure)."""
        reader, writer = await asyncio.open_connection(self.host, self.port)
        self._writer = writer
        self._reader_task = asyncio.create_task(self._read_loop(reader, writer))
        logger.info("Connected to content server control channel at %s:%s", self.host, self.port)

    async def _ensure_connected(self) -> asyncio.StreamWriter:
        async with self._connect_lock:
            if not self.connected:
                try:
                    await self.connect()
                except OSError as exc:
                    raise HandoffError(f"cannot reach content server: {exc}") from exc
            return self._writer

    async def get_access_grant(self, client_addr: str) -> HandoffInfo:
        """Ask the content server for a grant bound to `client_addr`."""
        writer = await self._ensure_connected()

        req_id = next(self._ids)
        request: Dict[str, Any] = {
            "id": req_id,
            "method": GET_ACCESS_GRANT,
            "params": {"client_addr": client_addr},
            "nonce": str(uuid.uuid4()),
            "ts": now_ms(),
        }
        if self.control_key is not None:
            request = sign_frame(self.control_key, request)

        fut = asyncio.get_running_loop().create_future()
        self._pending[req_id] = fut
        try:
            async with self._write_lock:
                await write_frame(writer, request)
            resp = await fut
        except (ConnectionError, OSError) as exc:
            raise HandoffError(f"control channel write failed: {exc}") from exc
        finally:
            self._pending.pop(req_id, None)

        if self.control_key is not None and not verify_frame(self.control_key, resp):
            raise HandoffError("control response has a bad signature")
        if resp.get("error"):
            raise HandoffError(str(resp["error"]))
        try:
            return from_wire(resp.get("result"), HandoffInfo)
        except MessageDecodeError as exc:
            raise HandoffError(f"malformed grant: {exc}") from exc

    async def _read_loop(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        """Background reader: route each response frame to its waiting call."""
        reason = "control channel closed"
        try:
            while True:
                frame = await read_frame(reader)
                req_id = frame.get("id")
                fut = self._pending.get(req_id) if isinstance(req_id, int) else None
                if fut is None or fut.done():
                    logger.warning("Unexpected control response id %r", req_id)
                    continue
                fut.set_result(frame)
        except asyncio.IncompleteReadError:
            pass
        except (ValueError, ConnectionError) as exc:
            reason = f"control channel failed: {exc}"
            logger.warning("Control channel to %s:%s failed: %s", self.host, self.port, exc)
        finally:
            if self._writer is writer:
                self._writer = None
            writer.close()
            for fut in list(self._pending.values()):
                if not fut.done():
                    fut.set_exception(HandoffError(reason))

    async def close(self) -> None:
        writer, task = self._writer, self._reader_task
        self._writer = None
        if writer is not None:
            writer.close()
            try:
                await writer.wait_closed()
            except ConnectionError:
                pass
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
