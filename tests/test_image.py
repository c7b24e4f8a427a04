"""Tests for the image buffer module.

This module tests construction, checked and unchecked pixel access, and
strided storage of ImageBuffer.
"""

import sys
import unittest
from pathlib import Path

import numpy as np

# Add parent directory to path
sys.path.append(str(Path(__file__).resolve().parent.parent))

from improc.errors import ImprocError, InvalidDimensions, OutOfBounds
from improc.image import ImageBuffer, cast_samples


class TestImageBuffer(unittest.TestCase):
    """Test ImageBuffer."""

    def test_zero_filled(self):
        buf = ImageBuffer(4, 3, 2)
        self.assertEqual(buf.shape, (3, 4, 2))
        self.assertEqual(buf.stride, 8)
        self.assertEqual(buf.dtype, np.uint8)
        self.assertTrue(np.all(buf.data == 0))

    def test_invalid_dimensions(self):
        with self.assertRaises(InvalidDimensions):
            ImageBuffer(0, 3)
        with self.assertRaises(InvalidDimensions):
            ImageBuffer(3, 3, 0)
        with self.assertRaises(InvalidDimensions):
            ImageBuffer(4, 2, 3, stride=11)
        with self.assertRaises(InvalidDimensions):
            ImageBuffer(2, 2, data=np.zeros(5))

    def test_get_set(self):
        buf = ImageBuffer(5, 4, 3, dtype=np.float32)
        buf.set(2, 1, 0, 0.5)
        buf.set(4, 3, 2, 7.0)
        self.assertEqual(buf.get(2, 1, 0), 0.5)
        self.assertEqual(buf.get(4, 3, 2), 7.0)
        self.assertEqual(buf.get(2, 1, 1), 0.0)

    def test_out_of_bounds(self):
        buf = ImageBuffer(5, 4)
        for x, y, c in [(5, 0, 0), (0, 4, 0), (-1, 0, 0), (0, 0, 1)]:
            with self.assertRaises(OutOfBounds):
                buf.get(x, y, c)
        with self.assertRaises(OutOfBounds):
            buf.set(0, -1, 0, 1)

        # OutOfBounds is both an ImprocError and an IndexError
        with self.assertRaises(IndexError):
            buf.get(10, 10)
        with self.assertRaises(ImprocError):
            buf.get(10, 10)

    def test_unchecked_matches_checked(self):
        buf = ImageBuffer(6, 5, 2, stride=16)
        buf.check_bounds(3, 4, 1)
        buf.set_unchecked(3, 4, 1, 200)
        self.assertEqual(buf.get(3, 4, 1), 200)
        self.assertEqual(buf.get_unchecked(3, 4, 1), 200)

    def test_stride_padding(self):
        arr = np.arange(12, dtype=np.uint8).reshape(3, 4)
        buf = ImageBuffer.from_array(arr, stride=6)

        self.assertEqual(buf.data.size, 18)
        np.testing.assert_array_equal(buf.plane(0), arr)
        np.testing.assert_array_equal(buf.row(1), arr[1])
        # Padding samples are never touched
        self.assertTrue(np.all(buf.data.reshape(3, 6)[:, 4:] == 0))

    def test_to_array_is_view(self):
        buf = ImageBuffer(3, 2, 3)
        buf.to_array()[1, 2, 0] = 9
        self.assertEqual(buf.get(2, 1, 0), 9)

    def test_copy_is_independent(self):
        buf = ImageBuffer.from_array(np.ones((2, 2), dtype=np.uint8))
        dup = buf.copy()
        dup.set(0, 0, 0, 5)
        self.assertEqual(buf.get(0, 0), 1)
        self.assertEqual(dup.stride, buf.stride)

    def test_from_array_rejects_bad_shape(self):
        with self.assertRaises(InvalidDimensions):
            ImageBuffer.from_array(np.zeros(4))

    def test_cast_samples(self):
        values = np.array([-3.2, 0.5, 1.49, 254.5, 300.0])
        np.testing.assert_array_equal(
            cast_samples(values, np.dtype(np.uint8)), [0, 1, 1, 255, 255]
        )
        np.testing.assert_allclose(cast_samples(values, np.dtype(np.float32)), values, rtol=1e-6)


if __name__ == "__main__":
    unittest.main()
