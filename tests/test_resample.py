"""Tests for the resampling module.

This module tests affine warping with both interpolation rules and all edge
policies, and that tiled row ranges reproduce a single full warp.
"""

import sys
import unittest
from pathlib import Path

import numpy as np

# Add parent directory to path
sys.path.append(str(Path(__file__).resolve().parent.parent))

from improc.config import ResampleConfig
from improc.errors import DegenerateInput, InvalidDimensions
from improc.geometry import AffineTransform, rotation_affine
from improc.image import ImageBuffer
from improc.resample import resample, resample_rows


class TestResample(unittest.TestCase):
    """Test affine resampling."""

    def setUp(self):
        rng = np.random.default_rng(5)
        self.arr = rng.integers(0, 256, size=(24, 32, 3)).astype(np.uint8)
        self.buf = ImageBuffer.from_array(self.arr)

    def test_identity(self):
        for interpolation in ("nearest", "bilinear"):
            out = resample(
                self.buf, AffineTransform.identity(), (32, 24),
                ResampleConfig(interpolation=interpolation)
            )
            np.testing.assert_array_equal(out.to_array(), self.arr)

    def test_integer_translation(self):
        shift = AffineTransform(np.array([[1.0, 0.0, 3.0], [0.0, 1.0, 2.0]]))
        config = ResampleConfig(interpolation="nearest", edge_policy="constant", fill_value=7)
        out = resample(self.buf, shift, (32, 24), config).to_array()

        np.testing.assert_array_equal(out[2:, 3:], self.arr[:-2, :-3])
        self.assertTrue(np.all(out[:2] == 7))
        self.assertTrue(np.all(out[:, :3] == 7))

    def test_nearest_translation_round_trip(self):
        """An integer shift and its inverse give back every pixel that stayed inside."""
        shift = AffineTransform(np.array([[1.0, 0.0, 3.0], [0.0, 1.0, 2.0]]))
        config = ResampleConfig(interpolation="nearest", edge_policy="constant")

        moved = resample(self.buf, shift, (32, 24), config)
        restored = resample(moved, shift.inverse(), (32, 24), config).to_array()

        np.testing.assert_array_equal(restored[:-2, :-3], self.arr[:-2, :-3])
        self.assertTrue(np.all(restored[-2:] == 0))
        self.assertTrue(np.all(restored[:, -3:] == 0))

    def test_nearest_quarter_turn_round_trip(self):
        """A quarter turn about the centre pixel maps the grid onto itself."""
        rng = np.random.default_rng(9)
        square = rng.integers(0, 256, size=(41, 41)).astype(np.uint8)
        buf = ImageBuffer.from_array(square)
        turn = rotation_affine(90.0, center=(20.0, 20.0))
        config = ResampleConfig(interpolation="nearest", edge_policy="constant", fill_value=1)

        turned = resample(buf, turn, (41, 41), config)
        np.testing.assert_array_equal(turned.plane(0), np.rot90(square))

        restored = resample(turned, turn.inverse(), (41, 41), config)
        np.testing.assert_array_equal(restored.plane(0), square)

    def test_rotation_round_trip(self):
        """Rotating forward and back recovers the interior of the image."""
        ys, xs = np.mgrid[0:24, 0:32].astype(np.float64)
        ramp = ImageBuffer.from_array(3.0 * xs + 2.0 * ys)
        rotation = rotation_affine(30.0, center=(15.5, 11.5))
        config = ResampleConfig(interpolation="bilinear", edge_policy="clamp")

        rotated = resample(ramp, rotation, (32, 24), config)
        restored = resample(rotated, rotation.inverse(), (32, 24), config)

        # Bilinear interpolation reproduces linear intensity exactly
        centre = (slice(8, 16), slice(12, 20))
        np.testing.assert_allclose(
            restored.plane(0)[centre], ramp.plane(0)[centre], atol=1e-9
        )

    def test_bilinear_midpoint(self):
        src = ImageBuffer.from_array(np.array([[0.0, 10.0], [20.0, 30.0]]))
        half = AffineTransform(np.array([[2.0, 0.0, 0.0], [0.0, 2.0, 0.0]]))
        out = resample(src, half, (3, 3), ResampleConfig(interpolation="bilinear"))
        self.assertAlmostEqual(out.get(1, 1), 15.0)
        self.assertAlmostEqual(out.get(1, 0), 5.0)
        self.assertAlmostEqual(out.get(2, 2), 30.0)

    def test_nearest_rounds_half_up(self):
        src = ImageBuffer.from_array(np.array([[1, 2, 3]], dtype=np.uint8))
        shift = AffineTransform(np.array([[1.0, 0.0, -0.5], [0.0, 1.0, 0.0]]))
        out = resample(src, shift, (3, 1), ResampleConfig(interpolation="nearest"))
        # Destination x samples source x + 0.5, which rounds up
        np.testing.assert_array_equal(out.plane(0), [[2, 3, 3]])

    def test_skip_policy_keeps_existing(self):
        shift = AffineTransform(np.array([[1.0, 0.0, 5.0], [0.0, 1.0, 0.0]]))
        out = ImageBuffer.from_array(np.full((24, 32, 3), 99, dtype=np.uint8))
        config = ResampleConfig(interpolation="nearest", edge_policy="skip")
        resample(self.buf, shift, (32, 24), config, out=out)

        arr = out.to_array()
        self.assertTrue(np.all(arr[:, :5] == 99))
        np.testing.assert_array_equal(arr[:, 5:], self.arr[:, :-5])

    def test_clamp_policy(self):
        shift = AffineTransform(np.array([[1.0, 0.0, 4.0], [0.0, 1.0, 0.0]]))
        config = ResampleConfig(interpolation="nearest", edge_policy="clamp")
        out = resample(self.buf, shift, (32, 24), config).to_array()
        for x in range(4):
            np.testing.assert_array_equal(out[:, x], self.arr[:, 0])

    def test_tiles_match_full_warp(self):
        transform = rotation_affine(12.0, center=(16.0, 12.0), scale=1.1)
        config = ResampleConfig(interpolation="bilinear", edge_policy="constant")
        full = resample(self.buf, transform, (40, 30), config)

        tiled = ImageBuffer(40, 30, 3)
        for y0 in range(0, 30, 7):
            resample_rows(self.buf, transform, tiled, y0, min(y0 + 7, 30), config)

        np.testing.assert_array_equal(tiled.to_array(), full.to_array())

    def test_preserves_dtype_and_channels(self):
        out = resample(self.buf, rotation_affine(5.0), (10, 8))
        self.assertEqual(out.dtype, np.uint8)
        self.assertEqual(out.shape, (8, 10, 3))

    def test_invalid_arguments(self):
        with self.assertRaises(InvalidDimensions):
            resample(self.buf, AffineTransform.identity(), (0, 10))
        with self.assertRaises(InvalidDimensions):
            resample(self.buf, AffineTransform.identity(), (32, 24), out=ImageBuffer(32, 24, 1))
        with self.assertRaises(DegenerateInput):
            resample(self.buf, AffineTransform(np.zeros((2, 3))), (32, 24))
        with self.assertRaises(ValueError):
            resample_rows(self.buf, AffineTransform.identity(), ImageBuffer(32, 24, 3), 10, 30)


if __name__ == "__main__":
    unittest.main()
