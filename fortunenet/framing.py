import asyncio
import json
import struct
from typing import Any, Dict

"""
framing.py — length-prefixed JSON framing for the control channel.

Protocol (simple on purpose):
- Each frame = 4-byte little-endian unsigned length (N) + N bytes of UTF-8 JSON.
- Hard cap at 64 KiB; control calls are tiny, anything bigger is a broken peer.
- JSON is compact (no extra spaces).

Only the auth-server -> content-server control channel uses this. Client
traffic is one JSON object per UDP datagram and needs no framing.
"""

MAX_FRAME_SIZE = 64 * 1024  # 64 KiB hard limit
LENGTH_STRUCT = struct.Struct("<I")  # little-endian unsigned 32-bit length


async def read_frame(reader: asyncio.StreamReader) -> Dict[str, Any]:
    """
    Read one framed JSON object.

    Raises:
        asyncio.IncompleteReadError: the peer closed the stream (possibly mid-frame).
        ValueError: the frame is too big, is not valid JSON, or is not an object.
    """
    len_bytes = await reader.readexactly(LENGTH_STRUCT.size)
    (length,) = LENGTH_STRUCT.unpack(len_bytes)

    # Check before allocating/reading the body.
    if length > MAX_FRAME_SIZE:
        raise ValueError(f"Frame too large: {length} > {MAX_FRAME_SIZE}")

    payload = await reader.readexactly(length)

    try:
        obj = json.loads(payload.decode("utf-8"))
    except (ValueError, RecursionError) as exc:
        # No payload echo; keep the message short.
        raise ValueError(f"Invalid JSON frame: {exc}") from exc

    if not isinstance(obj, dict):
        raise ValueError("Frame is not a JSON object")
    return obj


async def write_frame(writer: asyncio.StreamWriter, obj: Dict[str, Any]) -> None:
    """Serialize a dict to compact JSON and write it as one frame."""
    payload = json.dumps(obj, separators=(",", ":"), ensure_ascii=False).encode("utf-8")

    if len(payload) > MAX_FRAME_SIZE:
        raise ValueError("Frame exceeds maximum size")

    writer.write(LENGTH_STRUCT.pack(len(payload)) + payload)
    await writer.drain()  # let the transport flush under backpressure
