"""Exception types raised by the image-processing core.

All errors derive from ImprocError so callers can catch the whole family,
while also inheriting the closest built-in type (IndexError / ValueError)
so generic handlers keep working.
"""

from __future__ import annotations


class ImprocError(Exception):
    """Base class for all improc errors."""


class OutOfBounds(ImprocError, IndexError):
    """Pixel access past the declared extents of a buffer."""

    def __init__(self, x: int, y: int, c: int, width: int, height: int, channels: int):
        self.x, self.y, self.c = x, y, c
        super().__init__(
            f"Pixel ({x}, {y}, {c}) outside buffer of size "
            f"{width}x{height}x{channels}"
        )


class InvalidDimensions(ImprocError, ValueError):
    """Zero or inconsistent width, height, channel count or stride."""


class EmptyInput(ImprocError, ValueError):
    """A descriptor set handed to the matcher was empty."""


class UnderdeterminedFit(ImprocError, ValueError):
    """Too few points to determine the requested model."""


class DegenerateInput(ImprocError, ValueError):
    """Points are collinear, coincident or otherwise rank-deficient."""
