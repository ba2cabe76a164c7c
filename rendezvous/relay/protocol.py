"""Wire protocol for the relay's WebSocket channel.

Every frame carries one event envelope.

Text frames
-----------
UTF-8 JSON::

    {
        "event": "send-message",       # event kind (see EventKind)
        "data": {"targetId": "...", "message": "hi"}
    }

Binary frames
-------------
Used for file chunks so the payload never goes through base64.  The frame is a
4-byte big-endian header length, the JSON header (same shape as a text frame,
minus the chunk), then the raw chunk bytes::

    !I <len>  |  {"event": "file-data", "data": {...}}  |  <chunk bytes>

On decode the chunk is put back into ``data["chunk"]``.
"""

from __future__ import annotations

import json
import struct
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from loguru import logger

_HEADER = struct.Struct("!I")

CHUNK_FIELD = "chunk"


class EventKind(str, Enum):
    """Recognised event kinds, inbound and outbound."""

    # Presence / discovery
    DEVICE_INFO = "device-info"
    DEVICE_JOINED = "device-joined"
    DEVICE_INFO_UPDATE = "device-info-update"
    DEVICE_LEFT = "device-left"
    HEARTBEAT = "heartbeat"
    # Chat
    SEND_MESSAGE = "send-message"
    MESSAGE = "message"
    # File transfer control and data
    FILE_TRANSFER_REQUEST = "file-transfer-request"
    FILE_TRANSFER_RESPONSE = "file-transfer-response"
    FILE_DATA = "file-data"
    CANCEL_TRANSFER = "cancel-transfer"
    # Peer-connection negotiation
    SIGNAL = "signal"
    P2P_FAILED = "p2p-failed"


class ProtocolError(ValueError):
    """Raised when a frame cannot be decoded into an envelope."""


@dataclass
class Envelope:
    """One event on the wire."""

    event: str
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def is_binary(self) -> bool:
        return isinstance(self.data.get(CHUNK_FIELD), (bytes, bytearray, memoryview))

    # -- serialisation -------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        return {"event": str(getattr(self.event, "value", self.event)), "data": self.data}

    def to_text(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)

    def to_binary(self) -> bytes:
        """Serialise as a binary frame; ``data["chunk"]`` becomes the tail."""
        data = dict(self.data)
        chunk = bytes(data.pop(CHUNK_FIELD, b"") or b"")
        header = json.dumps(
            {"event": str(getattr(self.event, "value", self.event)), "data": data},
            ensure_ascii=False,
        ).encode("utf-8")
        return _HEADER.pack(len(header)) + header + chunk

    def encode(self) -> str | bytes:
        """Return the frame to put on the socket (binary only when carrying a chunk)."""
        return self.to_binary() if self.is_binary else self.to_text()

    @classmethod
    def from_dict(cls, obj: Any) -> "Envelope":
        if not isinstance(obj, dict):
            raise ProtocolError(f"envelope must be an object, got {type(obj).__name__}")
        event = obj.get("event")
        if not isinstance(event, str) or not event:
            raise ProtocolError("envelope has no event name")
        data = obj.get("data")
        if data is None:
            data = {}
        return cls(event=event, data=data)

    @classmethod
    def from_text(cls, text: str | bytes) -> "Envelope":
        try:
            obj = json.loads(text)
        except (json.JSONDecodeError, UnicodeDecodeError, RecursionError) as exc:
            raise ProtocolError(f"invalid JSON: {exc!s:.200}") from exc
        return cls.from_dict(obj)

    @classmethod
    def from_binary(cls, frame: bytes) -> "Envelope":
        if len(frame) < _HEADER.size:
            raise ProtocolError("binary frame shorter than its length prefix")
        (length,) = _HEADER.unpack_from(frame)
        end = _HEADER.size + length
        if end > len(frame):
            raise ProtocolError(
                f"binary header claims {length} bytes, frame has {len(frame) - _HEADER.size}"
            )
        env = cls.from_text(frame[_HEADER.size:end])
        if not isinstance(env.data, dict):
            raise ProtocolError("binary frame data must be an object")
        env.data[CHUNK_FIELD] = frame[end:]
        return env


def decode_frame(frame: str | bytes) -> Envelope | None:
    """Decode one WebSocket message.

    Returns ``None`` (and logs) for malformed frames so the caller can keep
    the connection open.
    """
    try:
        if isinstance(frame, str):
            return Envelope.from_text(frame)
        return Envelope.from_binary(bytes(frame))
    except ProtocolError as exc:
        logger.warning("[Relay/Protocol] malformed frame: {}", exc)
        return None
