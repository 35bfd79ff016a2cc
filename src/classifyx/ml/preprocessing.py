"""Image preprocessing: decode, resize, center-crop, and normalize.

Pipeline for the ImageNet classifier input:

    encoded bytes -> PIL image (RGB/RGBA) -> shorter side scaled to 224
        -> 224x224 center crop -> ImageNet-normalized float32 NCHW tensor

The output tensor has shape ``(1, 3, 224, 224)``; value ``(c, y, x)`` sits at
flat index ``c * 224 * 224 + y * 224 + x``.
"""

from __future__ import annotations

import io
import logging
from typing import TYPE_CHECKING

import numpy as np
from PIL import Image, UnidentifiedImageError

from classifyx.errors import DecodeError

if TYPE_CHECKING:
    from numpy.typing import NDArray

logger = logging.getLogger(__name__)

IMAGE_SIZE: int = 224
NUM_CHANNELS: int = 3

IMAGENET_MEAN: tuple[float, float, float] = (0.485, 0.456, 0.406)
IMAGENET_STD: tuple[float, float, float] = (0.229, 0.224, 0.225)

_SUPPORTED_MODES = {"RGB", "RGBA"}


def decode_image(data: bytes, max_pixels: int | None = None) -> Image.Image:
    """Decode raw image bytes into an RGB or RGBA Pillow image.

    Args:
        data: Encoded image bytes (PNG, JPEG, ...).
        max_pixels: Reject images with more pixels than this.

    Raises:
        DecodeError: If the bytes are not a decodable image or exceed the limit.
    """
    try:
        image = Image.open(io.BytesIO(data))
        width, height = image.size
        if max_pixels is not None and width * height > max_pixels:
            raise DecodeError(f"Image is {width}x{height}, exceeding the {max_pixels} pixel limit")
        image.load()
        if image.mode.startswith("I"):
            # 16/32-bit greyscale: keep the top 8 bits of the 16-bit range.
            wide = np.clip(np.asarray(image, dtype=np.int64), 0, 65535)
            image = Image.fromarray((wide >> 8).astype(np.uint8))
        # Greyscale, palette and CMYK images are expanded so there are always
        # at least three colour channels; an alpha channel is left in place.
        if image.mode not in _SUPPORTED_MODES:
            has_alpha = "A" in image.getbands() or "transparency" in image.info
            image = image.convert("RGBA" if has_alpha else "RGB")
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, SyntaxError, ValueError) as exc:
        raise DecodeError(f"Cannot decode image: {exc}") from exc
    return image


def scaled_size(width: int, height: int, size: int = IMAGE_SIZE) -> tuple[int, int]:
    """Return the dimensions after scaling the shorter side to ``size``."""
    ratio = size / min(width, height)
    # The shorter side is pinned to ``size`` so float rounding can't leave it a pixel short.
    scaled_w = size if width <= height else int(width * ratio)
    scaled_h = size if height <= width else int(height * ratio)
    return scaled_w, scaled_h


def crop_box(width: int, height: int, size: int = IMAGE_SIZE) -> tuple[int, int, int, int]:
    """Return the (left, top, right, bottom) box of a centered ``size`` crop."""
    left = max(0, width - size) // 2
    top = max(0, height - size) // 2
    return left, top, left + size, top + size


def resize_and_crop(image: Image.Image, size: int = IMAGE_SIZE) -> Image.Image:
    """Scale the shorter side to ``size`` and take the centered square.

    Images that already are ``size x size`` are returned untouched.
    """
    if image.size == (size, size):
        return image

    width, height = image.size
    scaled = image.resize(scaled_size(width, height, size), Image.Resampling.BILINEAR)
    return scaled.crop(crop_box(scaled.width, scaled.height, size))


def normalize(pixels: NDArray[np.uint8]) -> NDArray[np.float32]:
    """Convert an HxWxC uint8 array into a normalized (1, 3, H, W) tensor.

    Channels beyond the third (alpha) are ignored.
    """
    if pixels.ndim != 3 or pixels.shape[2] < NUM_CHANNELS:
        raise DecodeError(f"Expected an HxWxC array with at least 3 channels, got shape {pixels.shape}")

    rgb = pixels[:, :, :NUM_CHANNELS].astype(np.float32) / 255.0
    mean = np.asarray(IMAGENET_MEAN, dtype=np.float32)
    std = np.asarray(IMAGENET_STD, dtype=np.float32)
    chw = ((rgb - mean) / std).transpose(2, 0, 1)
    return np.ascontiguousarray(chw[np.newaxis, ...], dtype=np.float32)


def preprocess(data: bytes, max_pixels: int | None = None) -> NDArray[np.float32]:
    """Turn encoded image bytes into the classifier input tensor.

    Raises:
        DecodeError: If the bytes are not a valid raster image.
    """
    image = decode_image(data, max_pixels=max_pixels)
    cropped = resize_and_crop(image)
    logger.debug("Preprocessed %dx%d %s image", image.width, image.height, image.mode)
    return normalize(np.asarray(cropped, dtype=np.uint8))
