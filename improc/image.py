"""Typed, addressable 2D pixel storage.

ImageBuffer keeps its samples in one contiguous 1-D numpy array laid out row
by row, `stride` samples per row, `channels` interleaved samples per pixel.
Two access tiers are exposed:

- get/set/row validate (x, y, c) and raise OutOfBounds.
- get_unchecked/set_unchecked index straight into the store. Callers must
  validate the coordinates once (check_bounds) before entering a hot loop;
  an invalid index there reads or writes an unrelated sample or raises a
  bare IndexError from numpy.

Vectorised code should use to_array(), which returns an (h, w, c) view of
the live store.
"""

from __future__ import annotations

import logging
from typing import Optional, Tuple

import numpy as np

from .errors import InvalidDimensions, OutOfBounds

logger = logging.getLogger(__name__)


def cast_samples(values: np.ndarray, dtype: np.dtype) -> np.ndarray:
    """Convert computed float samples to a buffer dtype.

    Integer dtypes are rounded half up and saturated to the dtype range.
    """
    if np.issubdtype(dtype, np.integer):
        info = np.iinfo(dtype)
        return np.clip(np.floor(values + 0.5), info.min, info.max).astype(dtype)
    return values.astype(dtype)


class ImageBuffer:
    """Row-major pixel buffer with explicit stride."""

    def __init__(
        self,
        width: int,
        height: int,
        channels: int = 1,
        dtype: Optional[np.dtype] = None,
        stride: Optional[int] = None,
        data: Optional[np.ndarray] = None,
    ):
        """Create a buffer, zero-filled unless `data` is given.

        Args:
            width: Number of pixels per row
            height: Number of rows
            channels: Samples per pixel
            dtype: Sample type (defaults to uint8, or to data's dtype)
            stride: Samples per row including padding (defaults to width * channels)
            data: Optional flat array of exactly stride * height samples (copied)

        Raises:
            InvalidDimensions: If any extent is zero, the stride is too small
                or data has the wrong size
        """
        width, height, channels = int(width), int(height), int(channels)
        if width <= 0 or height <= 0 or channels <= 0:
            raise InvalidDimensions(
                f"Buffer extents must be positive, got {width}x{height}x{channels}"
            )
        row_len = width * channels
        stride = row_len if stride is None else int(stride)
        if stride < row_len:
            raise InvalidDimensions(
                f"Stride {stride} smaller than width * channels = {row_len}"
            )

        if data is None:
            store = np.zeros(stride * height, dtype=np.uint8 if dtype is None else dtype)
        else:
            store = np.array(data, dtype=dtype).reshape(-1)
            if store.size != stride * height:
                raise InvalidDimensions(
                    f"Data has {store.size} samples, expected stride * height = {stride * height}"
                )

        self._width = width
        self._height = height
        self._channels = channels
        self._stride = stride
        self._store = store

    @classmethod
    def from_array(cls, array: np.ndarray, stride: Optional[int] = None) -> "ImageBuffer":
        """Copy an (h, w) or (h, w, c) array into a new buffer."""
        arr = np.asarray(array)
        if arr.ndim == 2:
            arr = arr[:, :, np.newaxis]
        if arr.ndim != 3:
            raise InvalidDimensions(f"Expected a 2D or 3D array, got shape {arr.shape}")
        height, width, channels = arr.shape
        buf = cls(width, height, channels, dtype=arr.dtype, stride=stride)
        buf.to_array()[...] = arr
        return buf

    @property
    def width(self) -> int:
        return self._width

    @property
    def height(self) -> int:
        return self._height

    @property
    def channels(self) -> int:
        return self._channels

    @property
    def stride(self) -> int:
        return self._stride

    @property
    def dtype(self) -> np.dtype:
        return self._store.dtype

    @property
    def shape(self) -> Tuple[int, int, int]:
        """(height, width, channels), matching to_array()."""
        return (self._height, self._width, self._channels)

    @property
    def data(self) -> np.ndarray:
        """The flat backing store (stride * height samples)."""
        return self._store

    def check_bounds(self, x: int, y: int, c: int = 0) -> None:
        if not (0 <= x < self._width and 0 <= y < self._height and 0 <= c < self._channels):
            raise OutOfBounds(x, y, c, self._width, self._height, self._channels)

    def get(self, x: int, y: int, c: int = 0):
        self.check_bounds(x, y, c)
        return self._store[y * self._stride + x * self._channels + c]

    def set(self, x: int, y: int, c: int, value) -> None:
        self.check_bounds(x, y, c)
        self._store[y * self._stride + x * self._channels + c] = value

    def get_unchecked(self, x: int, y: int, c: int = 0):
        # Bounds are the caller's responsibility (see module docstring).
        return self._store[y * self._stride + x * self._channels + c]

    def set_unchecked(self, x: int, y: int, c: int, value) -> None:
        self._store[y * self._stride + x * self._channels + c] = value

    def row(self, y: int) -> np.ndarray:
        """View of the width * channels samples of row y (padding excluded)."""
        if not 0 <= y < self._height:
            raise OutOfBounds(0, y, 0, self._width, self._height, self._channels)
        start = y * self._stride
        return self._store[start:start + self._width * self._channels]

    def to_array(self) -> np.ndarray:
        """(h, w, c) view sharing memory with the buffer."""
        rows = self._store.reshape(self._height, self._stride)
        return rows[:, :self._width * self._channels].reshape(
            self._height, self._width, self._channels
        )

    def plane(self, c: int = 0) -> np.ndarray:
        """(h, w) view of a single channel."""
        if not 0 <= c < self._channels:
            raise OutOfBounds(0, 0, c, self._width, self._height, self._channels)
        return self.to_array()[:, :, c]

    def copy(self) -> "ImageBuffer":
        return ImageBuffer(
            self._width, self._height, self._channels,
            stride=self._stride, data=self._store,
        )

    def __repr__(self) -> str:
        return (
            f"ImageBuffer(width={self._width}, height={self._height}, "
            f"channels={self._channels}, stride={self._stride}, dtype={self.dtype})"
        )
