"""Image classifier: run the loaded model on a preprocessed frame."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

import numpy as np

from boxinspector.ml.errors import InferenceError

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from boxinspector.ml.model_cache import ModelHandle
    from boxinspector.ml.preprocessing import PreprocessedFrame


@dataclass(frozen=True)
class PredictionEntry:
    """A single class score."""

    label: str
    probability: float


class ImageClassifier(Protocol):
    """Protocol for image classification models."""

    def predict(self, model: ModelHandle, frame: PreprocessedFrame) -> list[PredictionEntry]:
        """Score a frame against every known class.

        Args:
            model: Loaded model handle.
            frame: Square RGB frame matching ``model.image_size``.

        Returns:
            One entry per class, in the model's native class order (unsorted).
        """
        ...


def frame_to_tensor(frame: PreprocessedFrame, channels_first: bool) -> NDArray[np.float32]:
    """Scale pixels to [-1, 1] and add a batch axis."""
    tensor = frame.pixels.astype(np.float32) / 127.5 - 1.0
    if channels_first:
        tensor = tensor.transpose(2, 0, 1)
    return np.expand_dims(tensor, axis=0)


class OnnxImageClassifier:
    """Classifier backed by an ONNX Runtime session."""

    def predict(self, model: ModelHandle, frame: PreprocessedFrame) -> list[PredictionEntry]:
        if frame.pixels.shape != (model.image_size, model.image_size, 3):
            raise InferenceError(
                f"Frame shape {frame.pixels.shape} does not match model input "
                f"({model.image_size}, {model.image_size}, 3)"
            )

        batch = frame_to_tensor(frame, model.channels_first)
        try:
            outputs = model.session.run(None, {model.input_name: batch})
        except Exception as exc:  # noqa: BLE001
            raise InferenceError("Model invocation failed") from exc

        scores = np.asarray(outputs[0], dtype=np.float64).reshape(-1)
        if scores.shape[0] != len(model.labels):
            raise InferenceError(f"Model returned {scores.shape[0]} scores for {len(model.labels)} labels")
        if not np.all(np.isfinite(scores)):
            raise InferenceError("Model returned non-finite scores")
        if np.any((scores < 0.0) | (scores > 1.0)):
            raise InferenceError("Model returned scores outside [0, 1]")

        return [
            PredictionEntry(label=label, probability=float(score))
            for label, score in zip(model.labels, scores, strict=True)
        ]
