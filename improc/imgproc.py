"""Image pre-processing helpers.

Colour conversion, smoothing and resizing used ahead of detection and
description. All functions take an ImageBuffer and return a new one with
the same dtype.
"""

from __future__ import annotations

import logging

import cv2
import numpy as np
from scipy import ndimage

from .config import ResampleConfig
from .errors import InvalidDimensions
from .geometry import AffineTransform
from .image import ImageBuffer, cast_samples
from .resample import resample

logger = logging.getLogger(__name__)

_GRAY_CODES = {
    ("rgb", 3): cv2.COLOR_RGB2GRAY,
    ("bgr", 3): cv2.COLOR_BGR2GRAY,
    ("rgb", 4): cv2.COLOR_RGBA2GRAY,
    ("bgr", 4): cv2.COLOR_BGRA2GRAY,
}

# Sample types cv2.cvtColor accepts directly
_CV_COLOR_DTYPES = (np.uint8, np.uint16, np.float32)


def to_gray(buffer: ImageBuffer, order: str = "rgb") -> ImageBuffer:
    """Convert to a single-channel luma image (Rec.601 weights, via OpenCV).

    Args:
        buffer: 1, 3 or 4 channel image (alpha is ignored)
        order: Channel order of colour input, "rgb" or "bgr"

    Returns:
        Single-channel buffer
    """
    if buffer.channels == 1:
        return buffer.copy()
    if buffer.channels not in (3, 4):
        raise InvalidDimensions(f"Cannot convert {buffer.channels}-channel image to gray")
    if order not in ("rgb", "bgr"):
        raise ValueError(f"Unknown channel order: {order}")

    code = _GRAY_CODES[(order, buffer.channels)]
    src = np.ascontiguousarray(buffer.to_array())
    if src.dtype in _CV_COLOR_DTYPES:
        return ImageBuffer.from_array(cv2.cvtColor(src, code))

    gray = cv2.cvtColor(src.astype(np.float32), code)
    return ImageBuffer.from_array(cast_samples(gray.astype(np.float64), buffer.dtype))


def gaussian_kernel(size: int, sigma: float) -> np.ndarray:
    """Normalised size x size Gaussian kernel."""
    if size < 1 or size % 2 == 0:
        raise ValueError(f"Kernel size must be a positive odd number, got {size}")
    half = size // 2
    coords = np.arange(-half, half + 1, dtype=np.float64)
    xx, yy = np.meshgrid(coords, coords)
    kernel = np.exp(-(xx**2 + yy**2) / (2.0 * sigma * sigma))
    return kernel / kernel.sum()


def gaussian_blur(buffer: ImageBuffer, size: int = 9, sigma: float = 2.0) -> ImageBuffer:
    """Gaussian smoothing with edge replication at the borders."""
    kernel = gaussian_kernel(size, sigma)
    src = buffer.to_array().astype(np.float64)
    blurred = ndimage.convolve(src, kernel[:, :, np.newaxis], mode="nearest")
    return ImageBuffer.from_array(cast_samples(blurred, buffer.dtype))


def box_filter(buffer: ImageBuffer, size: int = 5) -> ImageBuffer:
    """Mean over a size x size window with edge replication at the borders."""
    if size < 1 or size % 2 == 0:
        raise ValueError(f"Window size must be a positive odd number, got {size}")
    src = buffer.to_array().astype(np.float64)
    planes = [
        cv2.boxFilter(
            np.ascontiguousarray(src[:, :, c]), -1, (size, size),
            normalize=True, borderType=cv2.BORDER_REPLICATE
        )
        for c in range(buffer.channels)
    ]
    return ImageBuffer.from_array(cast_samples(np.dstack(planes), buffer.dtype))


def resize(buffer: ImageBuffer, width: int, height: int) -> ImageBuffer:
    """Bilinear resize so that the corner pixels stay aligned at (0, 0)."""
    if width <= 0 or height <= 0:
        raise InvalidDimensions(f"Target size must be positive, got {width}x{height}")
    scale = AffineTransform(np.array([
        [width / buffer.width, 0.0, 0.0],
        [0.0, height / buffer.height, 0.0]
    ]))
    config = ResampleConfig(interpolation="bilinear", edge_policy="clamp")
    logger.debug(f"Resizing {buffer.width}x{buffer.height} -> {width}x{height}")
    return resample(buffer, scale, (width, height), config)
