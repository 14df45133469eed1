"""Error taxonomy for the inference pipeline.

Every failure the pipeline can surface is a ``BoxInspectorError``. Each class
carries a stable ``error_code`` for the JSON error body and a ``client_error``
flag telling the HTTP layer whether the caller or the server is at fault.
"""

from __future__ import annotations


class BoxInspectorError(Exception):
    """Base class for all pipeline errors."""

    error_code: str = "internal_error"
    client_error: bool = False


class ImageDecodeError(BoxInspectorError):
    """The uploaded bytes are not a decodable image."""

    error_code = "image_decode_error"
    client_error = True


class ImageDimensionError(BoxInspectorError):
    """The decoded image has a zero width or height."""

    error_code = "image_dimension_error"
    client_error = True


class ImageTooLargeError(BoxInspectorError):
    """The decoded image exceeds the configured pixel budget."""

    error_code = "image_too_large"
    client_error = True


class ModelLoadError(BoxInspectorError):
    """The model artifacts could not be fetched or parsed."""

    error_code = "model_load_error"


class InferenceError(BoxInspectorError):
    """The model invocation failed or returned an unusable output."""

    error_code = "inference_error"


class NoPredictionsError(BoxInspectorError):
    """The classifier produced no prediction entries."""

    error_code = "no_predictions"
