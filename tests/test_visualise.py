"""Tests for visualization utilities."""

import os
import sys
import tempfile
import unittest
from pathlib import Path

import numpy as np

# Add parent directory to path
sys.path.append(str(Path(__file__).resolve().parent.parent))

from improc import visualise
from improc.feature import Keypoint
from improc.geometry import Ellipse
from improc.image import ImageBuffer


class TestVisualise(unittest.TestCase):

    def setUp(self):
        self.img1 = np.zeros((60, 80), dtype=np.uint8)
        self.img2 = np.zeros((50, 90, 3), dtype=np.uint8)
        rng = np.random.default_rng(0)
        self.pairs = np.column_stack((
            rng.uniform(0, 79, 100), rng.uniform(0, 59, 100),
            rng.uniform(0, 89, 100), rng.uniform(0, 49, 100),
        ))

    def test_draw_matches(self):
        """Test visualization of matches."""
        vis = visualise.draw_matches(self.img1, self.img2, self.pairs, n_matches=20)

        # Check the visualization has the right shape
        self.assertEqual(vis.shape, (60, 170, 3), "Visualization has incorrect dimensions")
        self.assertGreater(vis.sum(), 0)

        # Same seed, same picture
        again = visualise.draw_matches(self.img1, self.img2, self.pairs, n_matches=20)
        np.testing.assert_array_equal(vis, again)

    def test_draw_matches_empty(self):
        vis = visualise.draw_matches(self.img1, self.img2, np.zeros((0, 4)))
        self.assertEqual(vis.shape, (60, 170, 3))
        self.assertEqual(vis.sum(), 0)

    def test_draw_keypoints(self):
        buf = ImageBuffer.from_array(self.img1)
        vis = visualise.draw_keypoints(buf, [Keypoint(40, 30, 100.0)])
        self.assertEqual(vis.shape, (60, 80, 3))
        # Circle of radius 3 around the keypoint, centre untouched
        self.assertTrue(np.any(vis[30, 43] > 0))
        self.assertTrue(np.all(vis[30, 40] == 0))

    def test_plot_ellipse_fit(self):
        ellipse = Ellipse((5.0, 5.0), (3.0, 2.0), 0.2)
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "fit.png")
            visualise.plot_ellipse_fit(ellipse.points(12), ellipse, path)
            self.assertTrue(os.path.exists(path))


if __name__ == "__main__":
    unittest.main()
