"""Tests for image pre-processing helpers."""

import sys
import unittest
from pathlib import Path

import cv2
import numpy as np

# Add parent directory to path
sys.path.append(str(Path(__file__).resolve().parent.parent))

from improc import imgproc
from improc.errors import InvalidDimensions
from improc.image import ImageBuffer


class TestImgproc(unittest.TestCase):

    def setUp(self):
        rng = np.random.default_rng(11)
        self.bgr = rng.integers(0, 256, size=(20, 30, 3)).astype(np.uint8)

    def test_to_gray_matches_opencv(self):
        gray = imgproc.to_gray(ImageBuffer.from_array(self.bgr), order="bgr")
        expected = cv2.cvtColor(self.bgr, cv2.COLOR_BGR2GRAY)
        self.assertEqual(gray.channels, 1)
        self.assertEqual(gray.dtype, np.uint8)
        np.testing.assert_array_equal(gray.plane(0), expected)

        rgb = imgproc.to_gray(ImageBuffer.from_array(self.bgr[:, :, ::-1].copy()))
        np.testing.assert_array_equal(rgb.plane(0), expected)

    def test_to_gray_orders(self):
        buf = ImageBuffer.from_array(self.bgr)
        rgb = ImageBuffer.from_array(self.bgr[:, :, ::-1])
        diff = (
            imgproc.to_gray(buf, order="bgr").plane(0).astype(int)
            - imgproc.to_gray(rgb).plane(0).astype(int)
        )
        np.testing.assert_array_equal(diff, 0)

    def test_to_gray_channel_counts(self):
        single = ImageBuffer.from_array(self.bgr[:, :, 0])
        np.testing.assert_array_equal(imgproc.to_gray(single).plane(0), self.bgr[:, :, 0])

        alpha = np.dstack((self.bgr, np.zeros((20, 30), dtype=np.uint8)))
        diff = (
            imgproc.to_gray(ImageBuffer.from_array(alpha)).plane(0).astype(int)
            - imgproc.to_gray(ImageBuffer.from_array(self.bgr)).plane(0).astype(int)
        )
        np.testing.assert_array_equal(diff, 0)

        with self.assertRaises(InvalidDimensions):
            imgproc.to_gray(ImageBuffer(4, 4, 2))
        with self.assertRaises(ValueError):
            imgproc.to_gray(ImageBuffer.from_array(self.bgr), order="hsv")

    def test_to_gray_float64(self):
        rgb = self.bgr[:, :, ::-1] / 255.0
        gray = imgproc.to_gray(ImageBuffer.from_array(rgb))
        self.assertEqual(gray.dtype, np.float64)
        expected = rgb @ np.array([0.299, 0.587, 0.114])
        np.testing.assert_allclose(gray.plane(0), expected, atol=1e-5)

    def test_gaussian_kernel(self):
        kernel = imgproc.gaussian_kernel(9, 2.0)
        self.assertEqual(kernel.shape, (9, 9))
        self.assertAlmostEqual(kernel.sum(), 1.0, delta=1e-12)
        np.testing.assert_allclose(kernel, kernel.T)
        self.assertEqual(np.unravel_index(np.argmax(kernel), kernel.shape), (4, 4))
        with self.assertRaises(ValueError):
            imgproc.gaussian_kernel(4, 1.0)

    def test_blur_preserves_constant(self):
        flat = ImageBuffer.from_array(np.full((15, 15), 80, dtype=np.uint8))
        np.testing.assert_array_equal(imgproc.gaussian_blur(flat).plane(0), 80)
        np.testing.assert_array_equal(imgproc.box_filter(flat, 3).plane(0), 80)

    def test_blur_smooths(self):
        img = np.zeros((21, 21))
        img[10, 10] = 100.0
        blurred = imgproc.gaussian_blur(ImageBuffer.from_array(img), 9, 2.0).plane(0)
        self.assertAlmostEqual(blurred.sum(), 100.0, delta=1e-9)
        self.assertLess(blurred.max(), 100.0)

    def test_box_filter_mean(self):
        img = np.arange(25, dtype=np.float64).reshape(5, 5)
        out = imgproc.box_filter(ImageBuffer.from_array(img), 3).plane(0)
        self.assertAlmostEqual(out[2, 2], img[1:4, 1:4].mean())
        self.assertAlmostEqual(out[1, 3], img[0:3, 2:5].mean())

    def test_box_filter_matches_opencv(self):
        out = imgproc.box_filter(ImageBuffer.from_array(self.bgr), 3).to_array()
        expected = cv2.blur(self.bgr, (3, 3), borderType=cv2.BORDER_REPLICATE)
        self.assertEqual(out.dtype, np.uint8)
        # Rounding of the mean may differ by one grey level
        self.assertLessEqual(np.abs(out.astype(int) - expected.astype(int)).max(), 1)
        with self.assertRaises(ValueError):
            imgproc.box_filter(ImageBuffer.from_array(self.bgr), 4)

    def test_resize(self):
        img = np.arange(64, dtype=np.float64).reshape(8, 8)
        half = imgproc.resize(ImageBuffer.from_array(img), 4, 4)
        self.assertEqual(half.shape, (4, 4, 1))
        np.testing.assert_allclose(half.plane(0), img[::2, ::2])

        with self.assertRaises(InvalidDimensions):
            imgproc.resize(ImageBuffer.from_array(img), 0, 4)


if __name__ == "__main__":
    unittest.main()
