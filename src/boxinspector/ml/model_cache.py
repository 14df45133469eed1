"""Model cache: fetch, load and hold the process-wide classifier.

The classifier is described by two artifacts under a configured base
location: an ONNX graph and a Teachable-Machine-style ``metadata.json``
carrying the class labels. The cache loads them lazily on first use and then
serves the same immutable ``ModelHandle`` until the process exits.
"""

from __future__ import annotations

import json
import logging
import threading
from concurrent.futures import Future
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from onnxruntime import InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

from boxinspector.ml.artifacts import ArtifactSource, join_location
from boxinspector.ml.errors import ModelLoadError

if TYPE_CHECKING:
    from boxinspector.config import Settings
    from boxinspector.ml.artifacts import DescriptorSource

logger = logging.getLogger(__name__)

_PROVIDERS = ["CPUExecutionProvider"]


@dataclass(frozen=True)
class ModelMetadata:
    """Parsed contents of the metadata descriptor."""

    labels: tuple[str, ...]
    image_size: int | None


@dataclass(frozen=True)
class ModelHandle:
    """A loaded classifier and everything needed to feed it."""

    session: InferenceSession
    labels: tuple[str, ...]
    input_name: str
    image_size: int
    channels_first: bool


def parse_metadata(raw: bytes) -> ModelMetadata:
    """Parse a metadata descriptor, validating the label list."""
    try:
        data = json.loads(raw)
    except (UnicodeDecodeError, ValueError) as exc:
        raise ModelLoadError("Model metadata is not valid JSON") from exc
    if not isinstance(data, dict):
        raise ModelLoadError("Model metadata must be a JSON object")

    labels = data.get("labels")
    if not isinstance(labels, list) or not labels or not all(isinstance(label, str) for label in labels):
        raise ModelLoadError("Model metadata must contain a non-empty 'labels' list of strings")

    image_size = data.get("imageSize")
    if image_size is not None and (not isinstance(image_size, int) or isinstance(image_size, bool) or image_size <= 0):
        raise ModelLoadError(f"Invalid imageSize in model metadata: {image_size!r}")

    return ModelMetadata(labels=tuple(labels), image_size=image_size)


def _static_dim(value: Any) -> int | None:
    return value if isinstance(value, int) and value > 0 else None


class ModelCache:
    """Holds at most one loaded classifier; loads it once, single-flight."""

    def __init__(self, settings: Settings, source: DescriptorSource | None = None) -> None:
        self._settings = settings
        self._source = source if source is not None else ArtifactSource(settings)
        self._model_location = join_location(settings.model_base_url, settings.model_filename)
        self._metadata_location = join_location(settings.model_base_url, settings.metadata_filename)

        self._lock = threading.Lock()
        self._handle: ModelHandle | None = None
        self._inflight: Future[ModelHandle] | None = None

        self._session_options = self._build_session_options()

    # -- Public API ---------------------------------------------------------

    @property
    def is_loaded(self) -> bool:
        return self._handle is not None

    def acquire(self) -> ModelHandle:
        """Return the cached handle, loading it if this is the first call.

        Callers arriving while a load is in progress wait for that load and
        receive its handle or its ``ModelLoadError``. A failed load is not
        remembered; the next call starts a fresh one.
        """
        handle = self._handle
        if handle is not None:
            return handle

        with self._lock:
            if self._handle is not None:
                return self._handle
            inflight = self._inflight
            leader = inflight is None
            if inflight is None:
                inflight = self._inflight = Future()

        if not leader:
            return inflight.result()

        try:
            handle = self._load()
        except ModelLoadError as exc:
            inflight.set_exception(exc)
            raise
        else:
            with self._lock:
                self._handle = handle
            inflight.set_result(handle)
            return handle
        finally:
            with self._lock:
                self._inflight = None
            if not inflight.done():
                inflight.set_exception(ModelLoadError("Model load was interrupted"))

    def invalidate(self) -> None:
        """Drop the cached handle so the next ``acquire`` reloads it."""
        with self._lock:
            self._handle = None

    def shutdown(self) -> None:
        """Release the cached model."""
        self.invalidate()
        logger.info("Model cache cleared")

    # -- Internal -----------------------------------------------------------

    def _load(self) -> ModelHandle:
        logger.info("Loading model from %s", self._settings.model_base_url)
        model_bytes = self._source.fetch_descriptor(self._model_location)
        metadata = parse_metadata(self._source.fetch_descriptor(self._metadata_location))

        try:
            session = InferenceSession(
                model_bytes,
                sess_options=self._session_options,
                providers=_PROVIDERS,
            )
        except Exception as exc:  # noqa: BLE001
            raise ModelLoadError("Model topology could not be loaded") from exc

        handle = self._build_handle(session, metadata)
        logger.info(
            "Model loaded (labels=%s, image_size=%d, layout=%s)",
            ", ".join(handle.labels),
            handle.image_size,
            "NCHW" if handle.channels_first else "NHWC",
        )
        return handle

    def _build_handle(self, session: InferenceSession, metadata: ModelMetadata) -> ModelHandle:
        inputs = session.get_inputs()
        outputs = session.get_outputs()
        if not inputs or not outputs:
            raise ModelLoadError("Model must declare at least one input and one output")

        input_shape = list(inputs[0].shape)
        if len(input_shape) != 4:
            raise ModelLoadError(f"Model input must be a 4D image batch, got shape {input_shape}")
        channels_first = input_shape[1] == 3
        declared_size = _static_dim(input_shape[2] if channels_first else input_shape[1])

        image_size = metadata.image_size or declared_size or self._settings.image_size
        if declared_size is not None and declared_size != image_size:
            raise ModelLoadError(
                f"Metadata imageSize {image_size} does not match model input size {declared_size}"
            )

        output_width = _static_dim(list(outputs[0].shape)[-1]) if outputs[0].shape else None
        if output_width is not None and output_width != len(metadata.labels):
            raise ModelLoadError(
                "Mismatch between model output units and metadata labels: "
                f"{output_width} != {len(metadata.labels)}"
            )

        return ModelHandle(
            session=session,
            labels=metadata.labels,
            input_name=inputs[0].name,
            image_size=image_size,
            channels_first=channels_first,
        )

    def _build_session_options(self) -> SessionOptions:
        opts = SessionOptions()
        opts.intra_op_num_threads = self._settings.intra_op_threads
        opts.inter_op_num_threads = self._settings.inter_op_threads
        opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL
        opts.enable_mem_pattern = True
        opts.enable_mem_reuse = True
        return opts
