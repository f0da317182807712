"""Tests for the realtime message codec."""

import base64
import json
from dataclasses import dataclass

import msgpack
import numpy as np
import pytest

from falrt.codec import (
    Envelope,
    FrameKind,
    classify,
    decode,
    dumps_json,
    encode,
    has_binary_data,
)
from falrt.errors import InvalidResultError, ServiceError


@dataclass
class Frame:
    prompt: str
    image: bytes


class CustomPayload:
    def __init__(self, binary):
        self.binary = binary

    def contains_binary_data(self):
        return self.binary


class TestBinaryDetection:
    """Test detection of binary fields."""

    def test_plain_values(self):
        assert not has_binary_data({"prompt": "a cat", "steps": 4, "tags": ["x"]})
        assert not has_binary_data(None)

    def test_nested_bytes(self):
        assert has_binary_data({"inputs": [{"image": b"\x89PNG"}]})
        assert has_binary_data([bytearray(b"ab")])

    def test_numpy_array(self):
        assert has_binary_data({"frame": np.zeros((2, 2), dtype=np.uint8)})

    def test_dataclass_fields(self):
        assert has_binary_data(Frame(prompt="a cat", image=b"\x00"))

    def test_capability_method(self):
        assert has_binary_data(CustomPayload(True))
        assert not has_binary_data(CustomPayload(False))


class TestEncode:
    """Test frame encoding."""

    def test_no_binary_produces_json_text(self):
        frame = encode({"prompt": "a cat", "seed": 42})

        assert frame.kind is FrameKind.TEXT
        assert json.loads(frame.data) == {"prompt": "a cat", "seed": 42}

    def test_binary_round_trip(self):
        value = {"prompt": "a cat", "image": b"\x00\xff\x10binary", "strength": 0.5}
        frame = encode(value)

        assert frame.kind is FrameKind.BINARY
        assert decode(frame.kind, frame.data) == value

    def test_numpy_sent_as_raw_bytes(self):
        arr = np.arange(6, dtype=np.float32)
        frame = encode({"tensor": arr})

        decoded = decode(frame.kind, frame.data)
        np.testing.assert_array_equal(
            np.frombuffer(decoded["tensor"], dtype=np.float32), arr
        )

    def test_dataclass_encoded_as_map(self):
        frame = encode(Frame(prompt="a cat", image=b"\x01\x02"))

        assert decode(frame.kind, frame.data) == {"prompt": "a cat", "image": b"\x01\x02"}

    def test_declared_binary_object_round_trip(self):
        class ImageRequest:
            def __init__(self):
                self.prompt = "a cat"
                self.image = b"\x00\x01"
                self._cache = "not sent"

            def contains_binary_data(self):
                return True

        frame = encode(ImageRequest())

        assert frame.kind is FrameKind.BINARY
        assert decode(frame.kind, frame.data) == {"prompt": "a cat", "image": b"\x00\x01"}

    def test_declared_text_object_uses_to_dict(self):
        class TextRequest:
            def contains_binary_data(self):
                return False

            def to_dict(self):
                return {"prompt": "a cat", "steps": 4}

        frame = encode(TextRequest())

        assert frame.kind is FrameKind.TEXT
        assert decode(frame.kind, frame.data) == {"prompt": "a cat", "steps": 4}

    def test_json_uses_data_uri_for_bytes(self):
        text = dumps_json({"file": b"hello"})
        encoded = base64.b64encode(b"hello").decode("ascii")

        assert json.loads(text) == {"file": f"data:application/octet-stream;base64,{encoded}"}


class TestDecode:
    """Test frame decoding."""

    def test_decodes_either_kind(self):
        payload = {"seq": 1}

        assert decode(FrameKind.TEXT, json.dumps(payload)) == payload
        assert decode(FrameKind.TEXT, json.dumps(payload).encode()) == payload
        assert decode(FrameKind.BINARY, msgpack.packb(payload, use_bin_type=True)) == payload

    def test_invalid_frames(self):
        with pytest.raises(InvalidResultError):
            decode(FrameKind.TEXT, "{broken")
        with pytest.raises(InvalidResultError):
            decode(FrameKind.BINARY, b"\xc1")


class TestClassify:
    """Test envelope classification."""

    def test_result(self):
        assert classify({"images": []}) == (Envelope.RESULT, {"images": []})

    def test_timeout_skipped(self):
        envelope, _ = classify({"type": "x-fal-error", "error": "TIMEOUT", "reason": ""})
        assert envelope is Envelope.SKIP

    def test_meta_message_skipped(self):
        envelope, _ = classify({"type": "x-fal-message", "action": "pong"})
        assert envelope is Envelope.SKIP

    def test_service_error(self):
        envelope, error = classify(
            {"type": "x-fal-error", "error": "MODEL_ERROR", "reason": "oom"}
        )
        assert envelope is Envelope.ERROR
        assert error == ServiceError("MODEL_ERROR", "oom")
        assert str(error) == "MODEL_ERROR: oom"

    def test_status_error(self):
        envelope, error = classify({"status": "error", "error": "BAD_INPUT"})
        assert envelope is Envelope.ERROR
        assert error.error_type == "BAD_INPUT"
