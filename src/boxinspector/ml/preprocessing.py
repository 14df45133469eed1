"""Image preprocessing pipeline.

Decodes uploaded bytes, applies EXIF orientation, converts to RGB, then
center-crops the largest square and resizes it to the model's input edge
length. Cropping before resizing keeps the aspect ratio the model was trained
on; a direct resize of a non-square image would distort it.
"""

from __future__ import annotations

import io
from collections.abc import Callable
from dataclasses import dataclass
from functools import partial

import numpy as np
from numpy.typing import NDArray
from PIL import Image, ImageOps, UnidentifiedImageError

from boxinspector.ml.errors import ImageDecodeError, ImageDimensionError, ImageTooLargeError

RESAMPLE = Image.Resampling.BILINEAR

ImageDecoder = Callable[[bytes], Image.Image]


@dataclass(frozen=True)
class PreprocessedFrame:
    """A square RGB frame ready for the classifier."""

    pixels: NDArray[np.uint8]

    @property
    def size(self) -> int:
        return int(self.pixels.shape[0])


def _check_pixel_budget(width: int, height: int, max_image_pixels: int | None) -> None:
    if max_image_pixels is not None and width * height > max_image_pixels:
        raise ImageTooLargeError(f"Image is {width}x{height}, exceeding {max_image_pixels} pixels")


def decode_image(image_bytes: bytes, max_image_pixels: int | None = None) -> Image.Image:
    """Decode raw image bytes into an RGB Pillow image.

    The pixel budget is checked against the header size before any pixel
    data is decoded.

    Raises:
        ImageDecodeError: If the bytes are not a supported image format.
        ImageTooLargeError: If the image exceeds ``max_image_pixels`` or
            trips Pillow's decompression bomb guard.
    """
    try:
        with Image.open(io.BytesIO(image_bytes)) as img:
            _check_pixel_budget(*img.size, max_image_pixels)
            img.load()
            oriented = ImageOps.exif_transpose(img)
            return oriented.convert("RGB")
    except Image.DecompressionBombError as exc:
        raise ImageTooLargeError("Image exceeds the decompression bomb limit") from exc
    except (UnidentifiedImageError, OSError, ValueError) as exc:
        raise ImageDecodeError("Uploaded file is not a supported image") from exc


def center_crop_box(width: int, height: int) -> tuple[int, int, int, int]:
    """Return the (left, upper, right, lower) box of the centered square."""
    min_size = min(width, height)
    start_x = (width - min_size) // 2
    start_y = (height - min_size) // 2
    return start_x, start_y, start_x + min_size, start_y + min_size


class ImagePreprocessor:
    """Turns uploaded bytes into fixed-size square frames."""

    def __init__(self, max_image_pixels: int, decoder: ImageDecoder | None = None) -> None:
        self._max_image_pixels = max_image_pixels
        self._decoder = decoder or partial(decode_image, max_image_pixels=max_image_pixels)

    def preprocess(self, image_bytes: bytes, size: int) -> PreprocessedFrame:
        """Decode, center-crop and resize an image to ``size`` x ``size``.

        Raises:
            ImageDecodeError: If the bytes cannot be decoded.
            ImageDimensionError: If the decoded width or height is zero.
            ImageTooLargeError: If the image has more pixels than allowed.
        """
        image = self._decoder(image_bytes)
        width, height = image.size
        if width <= 0 or height <= 0:
            raise ImageDimensionError(f"Image has an empty dimension ({width}x{height})")
        _check_pixel_budget(width, height, self._max_image_pixels)

        if image.mode != "RGB":
            image = image.convert("RGB")
        square = image.crop(center_crop_box(width, height))
        resized = square.resize((size, size), resample=RESAMPLE)
        return PreprocessedFrame(pixels=np.asarray(resized, dtype=np.uint8))
