import asyncio
import json
import struct
from typing import Any, Dict, List, Optional

"""
framing.py — how the agent and the SaaS server cut the TCP stream into messages.

A message is a little-endian uint32 byte count followed by that many bytes
of UTF-8 JSON. Neither side sends or accepts a message over MAX_FRAME_SIZE.

Every message is one of two kinds:
- event: {"type": "event", "event": <name>, "data": <any>, "id": <int|null>}
         An id means the sender is waiting for an acknowledgement.
- ack:   {"type": "ack", "id": <int>, "args": [<any>, ...]}
"""

MAX_FRAME_SIZE = 4 * 1024 * 1024
LENGTH_STRUCT = struct.Struct("<I")

EVENT = "event"
ACK = "ack"


async def read_frame(reader: asyncio.StreamReader) -> Optional[Dict[str, Any]]:
    """
    Next message from the server, or None when it hung up between messages.

    ValueError covers oversized, undecodable and non-object messages;
    asyncio.IncompleteReadError means the stream ended inside one.
    """
    try:
        len_bytes = await reader.readexactly(LENGTH_STRUCT.size)
    except asyncio.IncompleteReadError as exc:
        if not exc.partial:
            return None
        raise
    (length,) = LENGTH_STRUCT.unpack(len_bytes)

    if length > MAX_FRAME_SIZE:
        raise ValueError(f"Frame too large: {length} > {MAX_FRAME_SIZE}")

    payload = await reader.readexactly(length)

    try:
        frame = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        # No payload echo; frames may carry ciphertext.
        raise ValueError(f"Invalid JSON frame: {exc}") from exc

    if not isinstance(frame, dict):
        raise ValueError("Frame must be a JSON object")
    return frame


async def write_frame(writer: asyncio.StreamWriter, obj: Dict[str, Any]) -> None:
    """Send one message. Oversized payloads raise ValueError before anything is written."""
    payload = json.dumps(obj, separators=(",", ":"), ensure_ascii=False).encode("utf-8")

    if len(payload) > MAX_FRAME_SIZE:
        raise ValueError("Frame exceeds maximum size")

    writer.write(LENGTH_STRUCT.pack(len(payload)) + payload)
    await writer.drain()


# -------------------
# Frame constructors
# -------------------

def event_frame(event: str, data: Any = None, ack_id: Optional[int] = None) -> Dict[str, Any]:
    """Build a named event frame; pass ack_id when a reply is expected."""
    return {"type": EVENT, "event": event, "data": data, "id": ack_id}


def ack_frame(ack_id: int, args: List[Any]) -> Dict[str, Any]:
    """Build the acknowledgement for event `ack_id`."""
    return {"type": ACK, "id": ack_id, "args": list(args)}
