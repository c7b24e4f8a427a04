"""Tests for configuration loading."""

import os
import sys
import tempfile
import unittest
from pathlib import Path

import yaml

# Add parent directory to path
sys.path.append(str(Path(__file__).resolve().parent.parent))

from improc.config import (
    DescriptorConfig,
    DetectorConfig,
    MatcherConfig,
    PipelineConfig,
    RansacConfig,
    ResampleConfig,
    config_from_dict,
    load_config,
)


class TestConfig(unittest.TestCase):

    def test_defaults(self):
        config = PipelineConfig()
        self.assertEqual(config.detector.min_arc_length, 9)
        self.assertEqual(config.descriptor.n_bits, 256)
        self.assertEqual(config.matcher.ambiguity_ratio, 0.8)
        self.assertFalse(config.matcher.unique)
        self.assertEqual(config.resample.interpolation, "bilinear")
        self.assertEqual(config.detector.orientation_radius, 7)
        self.assertFalse(config.descriptor.steered)
        self.assertEqual(config.ransac, RansacConfig())

    def test_repository_config(self):
        config = load_config()
        self.assertIsInstance(config, PipelineConfig)
        self.assertEqual(config.resample.edge_policy, "constant")

    def test_load_partial_file(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "config.yaml")
            with open(path, "w") as f:
                yaml.safe_dump({"detector": {"intensity_threshold": 35.0}}, f)

            config = load_config(path)

        self.assertEqual(config.detector.intensity_threshold, 35.0)
        self.assertEqual(config.matcher, MatcherConfig())

    def test_round_trip(self):
        config = config_from_dict({"matcher": {"unique": True, "max_distance": 40.0}})
        self.assertEqual(config_from_dict(config.to_dict()), config)

    def test_ransac_section(self):
        config = config_from_dict({"ransac": {"threshold": 1.5, "max_iterations": 500}})
        self.assertEqual(config.ransac.threshold, 1.5)
        self.assertEqual(config.ransac.max_iterations, 500)
        self.assertEqual(config.ransac.confidence, 0.99)
        self.assertEqual(config_from_dict(config.to_dict()), config)

    def test_unknown_keys(self):
        with self.assertRaises(ValueError):
            config_from_dict({"detector": {"threshold": 10}})
        with self.assertRaises(ValueError):
            config_from_dict({"sfm": {}})

    def test_validation(self):
        with self.assertRaises(ValueError):
            DetectorConfig(intensity_threshold=-1)
        with self.assertRaises(ValueError):
            DetectorConfig(pyramid_levels=0)
        with self.assertRaises(ValueError):
            MatcherConfig(ambiguity_ratio=1.5)
        with self.assertRaises(ValueError):
            ResampleConfig(interpolation="bicubic")
        with self.assertRaises(ValueError):
            ResampleConfig(edge_policy="wrap")
        with self.assertRaises(ValueError):
            DetectorConfig(orientation_radius=0)
        with self.assertRaises(ValueError):
            DescriptorConfig(n_orientations=0)
        with self.assertRaises(ValueError):
            RansacConfig(threshold=0.0)
        with self.assertRaises(ValueError):
            RansacConfig(confidence=1.0)
        with self.assertRaises(ValueError):
            RansacConfig(max_iterations=0)


if __name__ == "__main__":
    unittest.main()
