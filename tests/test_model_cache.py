"""Tests for the single-flight model cache."""

from __future__ import annotations

import json
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from boxinspector.config import Settings
from boxinspector.ml.errors import ModelLoadError
from boxinspector.ml.model_cache import ModelCache, parse_metadata

MODEL_LOCATION = "/models/box/model.onnx"
METADATA_LOCATION = "/models/box/metadata.json"

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_settings(**overrides: object) -> Settings:
    defaults: dict[str, object] = {
        "model_base_url": "/models/box",
        "models_dir": "/tmp/boxinspector_test_models",
        "image_size": 224,
        "intra_op_threads": 0,
        "inter_op_threads": 1,
    }
    defaults.update(overrides)
    return Settings(**defaults)  # type: ignore[arg-type]


def _metadata(labels: list[str] | None = None, image_size: int | None = 224) -> bytes:
    data: dict[str, object] = {"labels": labels if labels is not None else ["Damaged", "Good"]}
    if image_size is not None:
        data["imageSize"] = image_size
    return json.dumps(data).encode()


def _fake_session(input_shape: list[object] | None = None, output_shape: list[object] | None = None) -> MagicMock:
    session = MagicMock()
    session.get_inputs.return_value = [
        SimpleNamespace(name="input_1", shape=input_shape or [None, 224, 224, 3]),
    ]
    session.get_outputs.return_value = [SimpleNamespace(name="probs", shape=output_shape or [None, 2])]
    return session


class FakeSource:
    """In-memory descriptor source that records every fetch."""

    def __init__(self, metadata: bytes | None = None, gate: threading.Event | None = None) -> None:
        self.descriptors = {MODEL_LOCATION: b"onnx-bytes", METADATA_LOCATION: metadata or _metadata()}
        self.calls: list[str] = []
        self.gate = gate
        self.error: ModelLoadError | None = None
        self._lock = threading.Lock()

    def fetch_descriptor(self, location: str) -> bytes:
        with self._lock:
            self.calls.append(location)
        if self.gate is not None:
            self.gate.wait(timeout=5)
        if self.error is not None:
            raise self.error
        return self.descriptors[location]


# ---------------------------------------------------------------------------
# Metadata parsing
# ---------------------------------------------------------------------------


class TestParseMetadata:
    def test_labels_and_image_size(self) -> None:
        metadata = parse_metadata(_metadata(["Damaged", "Good"], 224))
        assert metadata.labels == ("Damaged", "Good")
        assert metadata.image_size == 224

    def test_image_size_optional(self) -> None:
        assert parse_metadata(_metadata(image_size=None)).image_size is None

    def test_invalid_json_raises(self) -> None:
        with pytest.raises(ModelLoadError, match="not valid JSON"):
            parse_metadata(b"{not json")

    def test_non_object_raises(self) -> None:
        with pytest.raises(ModelLoadError, match="JSON object"):
            parse_metadata(b"[1, 2]")

    def test_missing_labels_raises(self) -> None:
        with pytest.raises(ModelLoadError, match="labels"):
            parse_metadata(b'{"imageSize": 224}')

    def test_empty_labels_raises(self) -> None:
        with pytest.raises(ModelLoadError, match="labels"):
            parse_metadata(_metadata(labels=[]))

    def test_bad_image_size_raises(self) -> None:
        with pytest.raises(ModelLoadError, match="imageSize"):
            parse_metadata(b'{"labels": ["A"], "imageSize": -1}')


# ---------------------------------------------------------------------------
# ModelCache
# ---------------------------------------------------------------------------


class TestModelCache:
    @patch("boxinspector.ml.model_cache.InferenceSession")
    def test_acquire_loads_once_and_caches(self, mock_session_cls: MagicMock) -> None:
        mock_session_cls.return_value = _fake_session()
        source = FakeSource()
        cache = ModelCache(_make_settings(), source=source)

        assert cache.is_loaded is False
        first = cache.acquire()
        second = cache.acquire()

        assert first is second
        assert cache.is_loaded is True
        assert source.calls == [MODEL_LOCATION, METADATA_LOCATION]
        mock_session_cls.assert_called_once()
        assert mock_session_cls.call_args.args[0] == b"onnx-bytes"
        assert mock_session_cls.call_args.kwargs["providers"] == ["CPUExecutionProvider"]

    @patch("boxinspector.ml.model_cache.InferenceSession")
    def test_handle_fields_nhwc(self, mock_session_cls: MagicMock) -> None:
        mock_session_cls.return_value = _fake_session()
        handle = ModelCache(_make_settings(), source=FakeSource()).acquire()

        assert handle.labels == ("Damaged", "Good")
        assert handle.input_name == "input_1"
        assert handle.image_size == 224
        assert handle.channels_first is False

    @patch("boxinspector.ml.model_cache.InferenceSession")
    def test_channels_first_detected(self, mock_session_cls: MagicMock) -> None:
        mock_session_cls.return_value = _fake_session(input_shape=["batch", 3, 224, 224])
        handle = ModelCache(_make_settings(), source=FakeSource()).acquire()
        assert handle.channels_first is True
        assert handle.image_size == 224

    @patch("boxinspector.ml.model_cache.InferenceSession")
    def test_image_size_falls_back_to_model_shape(self, mock_session_cls: MagicMock) -> None:
        mock_session_cls.return_value = _fake_session(input_shape=[None, 192, 192, 3])
        source = FakeSource(metadata=_metadata(image_size=None))
        handle = ModelCache(_make_settings(), source=source).acquire()
        assert handle.image_size == 192

    @patch("boxinspector.ml.model_cache.InferenceSession")
    def test_image_size_falls_back_to_settings(self, mock_session_cls: MagicMock) -> None:
        mock_session_cls.return_value = _fake_session(input_shape=["batch", "h", "w", 3])
        source = FakeSource(metadata=_metadata(image_size=None))
        handle = ModelCache(_make_settings(image_size=160), source=source).acquire()
        assert handle.image_size == 160

    @patch("boxinspector.ml.model_cache.InferenceSession")
    def test_image_size_conflict_raises(self, mock_session_cls: MagicMock) -> None:
        mock_session_cls.return_value = _fake_session(input_shape=[None, 192, 192, 3])
        cache = ModelCache(_make_settings(), source=FakeSource(metadata=_metadata(image_size=224)))
        with pytest.raises(ModelLoadError, match="does not match"):
            cache.acquire()

    @patch("boxinspector.ml.model_cache.InferenceSession")
    def test_label_count_mismatch_raises(self, mock_session_cls: MagicMock) -> None:
        mock_session_cls.return_value = _fake_session(output_shape=[None, 3])
        cache = ModelCache(_make_settings(), source=FakeSource())
        with pytest.raises(ModelLoadError, match="3 != 2"):
            cache.acquire()
        assert cache.is_loaded is False

    @patch("boxinspector.ml.model_cache.InferenceSession")
    def test_non_image_input_raises(self, mock_session_cls: MagicMock) -> None:
        mock_session_cls.return_value = _fake_session(input_shape=[None, 10])
        with pytest.raises(ModelLoadError, match="4D"):
            ModelCache(_make_settings(), source=FakeSource()).acquire()

    @patch("boxinspector.ml.model_cache.InferenceSession")
    def test_session_failure_wrapped_and_retried(self, mock_session_cls: MagicMock) -> None:
        mock_session_cls.side_effect = [RuntimeError("bad protobuf"), _fake_session()]
        source = FakeSource()
        cache = ModelCache(_make_settings(), source=source)

        with pytest.raises(ModelLoadError, match="topology") as exc_info:
            cache.acquire()
        assert isinstance(exc_info.value.__cause__, RuntimeError)

        handle = cache.acquire()
        assert handle.labels == ("Damaged", "Good")
        assert source.calls.count(MODEL_LOCATION) == 2

    @patch("boxinspector.ml.model_cache.InferenceSession")
    def test_invalidate_forces_reload(self, mock_session_cls: MagicMock) -> None:
        mock_session_cls.return_value = _fake_session()
        source = FakeSource()
        cache = ModelCache(_make_settings(), source=source)

        cache.acquire()
        cache.invalidate()
        assert cache.is_loaded is False
        cache.acquire()

        assert source.calls.count(MODEL_LOCATION) == 2

    @patch("boxinspector.ml.model_cache.InferenceSession")
    def test_shutdown_drops_handle(self, mock_session_cls: MagicMock) -> None:
        mock_session_cls.return_value = _fake_session()
        cache = ModelCache(_make_settings(), source=FakeSource())
        cache.acquire()
        cache.shutdown()
        assert cache.is_loaded is False

    def test_session_options_follow_settings(self) -> None:
        cache = ModelCache(_make_settings(intra_op_threads=3, inter_op_threads=2), source=FakeSource())
        assert cache._session_options.intra_op_num_threads == 3
        assert cache._session_options.inter_op_num_threads == 2


# ---------------------------------------------------------------------------
# Single-flight behaviour
# ---------------------------------------------------------------------------


def _acquire_concurrently(cache: ModelCache, gate: threading.Event, callers: int) -> list[object]:
    def call() -> object:
        try:
            return cache.acquire()
        except ModelLoadError as exc:
            return exc

    with ThreadPoolExecutor(max_workers=callers) as executor:
        futures = [executor.submit(call) for _ in range(callers)]
        # Give every caller time to join the in-flight load before it finishes.
        time.sleep(0.2)
        gate.set()
        return [future.result(timeout=5) for future in futures]


class TestSingleFlight:
    @patch("boxinspector.ml.model_cache.InferenceSession")
    def test_concurrent_first_calls_fetch_once(self, mock_session_cls: MagicMock) -> None:
        mock_session_cls.return_value = _fake_session()
        gate = threading.Event()
        source = FakeSource(gate=gate)
        cache = ModelCache(_make_settings(), source=source)

        results = _acquire_concurrently(cache, gate, callers=8)

        assert source.calls.count(MODEL_LOCATION) == 1
        assert source.calls.count(METADATA_LOCATION) == 1
        mock_session_cls.assert_called_once()
        assert all(result is results[0] for result in results)

    def test_concurrent_callers_share_failure(self) -> None:
        gate = threading.Event()
        source = FakeSource(gate=gate)
        source.error = ModelLoadError("Could not fetch /models/box/model.onnx")
        cache = ModelCache(_make_settings(), source=source)

        results = _acquire_concurrently(cache, gate, callers=8)

        assert source.calls.count(MODEL_LOCATION) == 1
        assert all(isinstance(result, ModelLoadError) for result in results)
        assert cache.is_loaded is False
