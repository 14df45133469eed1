"""Request-scoped inference: acquire, preprocess, classify, reduce."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from boxinspector.ml.classifier import OnnxImageClassifier
from boxinspector.ml.model_cache import ModelCache
from boxinspector.ml.preprocessing import ImagePreprocessor
from boxinspector.ml.reducer import InferenceResult, reduce

if TYPE_CHECKING:
    from boxinspector.config import Settings
    from boxinspector.ml.artifacts import DescriptorSource
    from boxinspector.ml.classifier import ImageClassifier

logger = logging.getLogger(__name__)


class InferenceService:
    """Composes the model cache, preprocessor, classifier and reducer.

    Each stage raises a ``BoxInspectorError`` subclass on failure; the
    service lets it propagate so no partial result ever reaches the caller.
    """

    def __init__(
        self,
        model_cache: ModelCache,
        preprocessor: ImagePreprocessor,
        classifier: ImageClassifier,
    ) -> None:
        self._model_cache = model_cache
        self._preprocessor = preprocessor
        self._classifier = classifier

    @classmethod
    def from_settings(cls, settings: Settings, source: DescriptorSource | None = None) -> InferenceService:
        """Build a service with the default ONNX-backed components."""
        return cls(
            model_cache=ModelCache(settings, source=source),
            preprocessor=ImagePreprocessor(settings.max_image_pixels),
            classifier=OnnxImageClassifier(),
        )

    @property
    def model_cache(self) -> ModelCache:
        return self._model_cache

    def classify_image(self, image_bytes: bytes) -> InferenceResult:
        """Classify one uploaded image."""
        model = self._model_cache.acquire()
        frame = self._preprocessor.preprocess(image_bytes, model.image_size)
        entries = self._classifier.predict(model, frame)
        result = reduce(entries)
        logger.info(
            "Classified image as %s (confidence=%.2f, damaged=%s)",
            result.status,
            result.confidence,
            result.is_damaged,
        )
        return result
