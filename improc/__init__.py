"""Image Registration with Corners and Linear Least Squares.

A Python project that detects FAST corners, matches BRIEF descriptors,
fits affine transforms (optionally with RANSAC) and conics by least
squares, and warps images with explicit interpolation and edge policies.
"""

from __future__ import annotations

from .config import (
    DescriptorConfig,
    DetectorConfig,
    MatcherConfig,
    PipelineConfig,
    RansacConfig,
    ResampleConfig,
    load_config,
)
from .errors import (
    DegenerateInput,
    EmptyInput,
    ImprocError,
    InvalidDimensions,
    OutOfBounds,
    UnderdeterminedFit,
)
from .feature import Correspondence, Descriptor, Keypoint, describe, detect, match
from .geometry import (
    AffineTransform,
    Conic,
    Ellipse,
    fit_affine,
    fit_affine_robust,
    fit_conic,
    fit_ellipse,
)
from .image import ImageBuffer
from .resample import resample

__version__ = "0.1.0"
