"""
Wire codec for realtime messages.

Values without binary fields travel as JSON text frames. As soon as a value
carries raw bytes (bytes, bytearray, memoryview or a numpy array) the whole
value is sent as a msgpack binary frame with the bytes inline. Inbound frames
are decoded according to their own frame kind, independently of what the
client sent last.
"""

from __future__ import annotations

import base64
import dataclasses
import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union

import msgpack
import numpy as np

from .errors import InvalidInputError, InvalidResultError, ServiceError

ERROR_MESSAGE_TYPE = "x-fal-error"
META_MESSAGE_TYPE = "x-fal-message"
TIMEOUT_ERROR = "TIMEOUT"

BINARY_TYPES = (bytes, bytearray, memoryview, np.ndarray)


class FrameKind(Enum):
    TEXT = "text"
    BINARY = "binary"


@dataclass(frozen=True)
class EncodedFrame:
    """One outbound frame, ready for the transport."""
    kind: FrameKind
    data: Union[str, bytes]


class Envelope(Enum):
    """Classification of a decoded inbound message."""
    RESULT = "result"
    ERROR = "error"
    SKIP = "skip"


def has_binary_data(value: Any) -> bool:
    """Return True if value contains a binary field at any depth."""
    if isinstance(value, BINARY_TYPES):
        return True
    if isinstance(value, dict):
        return any(has_binary_data(v) for v in value.values())
    if isinstance(value, (list, tuple)):
        return any(has_binary_data(v) for v in value)
    contains = getattr(value, "contains_binary_data", None)
    if callable(contains):
        return bool(contains())
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return any(
            has_binary_data(getattr(value, f.name)) for f in dataclasses.fields(value)
        )
    return False


def _to_data_uri(data: bytes) -> str:
    encoded = base64.b64encode(data).decode("ascii")
    return f"data:application/octet-stream;base64,{encoded}"


def _as_mapping(obj: Any) -> Optional[Dict[str, Any]]:
    """
    Wire map for a structured object, or None if it has none.

    A to_dict() method wins, then dataclass fields. Objects that declare
    contains_binary_data() fall back to their public attributes.
    """
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return dataclasses.asdict(obj)
    if callable(getattr(obj, "contains_binary_data", None)) and hasattr(obj, "__dict__"):
        return {k: v for k, v in vars(obj).items() if not k.startswith("_")}
    return None


def _json_default(obj: Any) -> Any:
    if isinstance(obj, np.ndarray):
        return _to_data_uri(obj.tobytes())
    if isinstance(obj, (bytes, bytearray, memoryview)):
        return _to_data_uri(bytes(obj))
    if isinstance(obj, np.generic):
        return obj.item()
    mapping = _as_mapping(obj)
    if mapping is not None:
        return mapping
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def _msgpack_default(obj: Any) -> Any:
    if isinstance(obj, np.ndarray):
        return obj.tobytes()
    if isinstance(obj, np.generic):
        return obj.item()
    mapping = _as_mapping(obj)
    if mapping is not None:
        return mapping
    raise TypeError(f"Object of type {type(obj).__name__} is not msgpack serializable")


def dumps_json(value: Any) -> str:
    """JSON-encode value, turning binary fields into base64 data URIs."""
    try:
        return json.dumps(value, default=_json_default)
    except (TypeError, ValueError) as e:
        raise InvalidInputError(f"Cannot encode value as JSON: {e}") from e


def encode(value: Any) -> EncodedFrame:
    """Encode value into a text or binary frame depending on its contents."""
    if not has_binary_data(value):
        return EncodedFrame(FrameKind.TEXT, dumps_json(value))
    try:
        return EncodedFrame(
            FrameKind.BINARY,
            msgpack.packb(value, default=_msgpack_default, use_bin_type=True),
        )
    except (TypeError, ValueError, OverflowError) as e:
        raise InvalidInputError(f"Cannot encode value as msgpack: {e}") from e


def decode(kind: FrameKind, data: Union[str, bytes]) -> Any:
    """Decode one inbound frame."""
    try:
        if kind is FrameKind.BINARY:
            if isinstance(data, memoryview):
                data = data.tobytes()
            return msgpack.unpackb(data, raw=False)
        return json.loads(data)
    except (ValueError, TypeError, msgpack.exceptions.UnpackException) as e:
        raise InvalidResultError(f"Cannot decode {kind.value} frame: {e}") from e


def classify(message: Any) -> Tuple[Envelope, Any]:
    """
    Sort a decoded message into result, service error or ignorable frame.

    TIMEOUT errors are the server's idle keepalive and are skipped, as are
    x-fal-message meta frames.
    """
    if not isinstance(message, dict):
        return Envelope.RESULT, message

    msg_type = message.get("type")
    if msg_type == ERROR_MESSAGE_TYPE:
        error = message.get("error") or "UNKNOWN_ERROR"
        if error == TIMEOUT_ERROR:
            return Envelope.SKIP, None
        return Envelope.ERROR, ServiceError(str(error), str(message.get("reason") or ""))
    if msg_type == META_MESSAGE_TYPE:
        return Envelope.SKIP, None
    if message.get("status") == "error":
        error = message.get("error") or "UNKNOWN_ERROR"
        reason = message.get("reason") or message.get("detail") or ""
        return Envelope.ERROR, ServiceError(str(error), str(reason))
    return Envelope.RESULT, message
