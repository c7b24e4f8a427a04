"""Evaluation metrics for image registration.

This module implements quality metrics for fitted models, including affine
transfer error and conic algebraic residuals, plus timing utilities.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Dict, Optional, Union

import numpy as np

from .geometry import AffineTransform, Conic

logger = logging.getLogger(__name__)


def affine_residuals(transform: AffineTransform, xy_pairs: np.ndarray) -> np.ndarray:
    """Per-correspondence transfer error.

    Args:
        transform: Source-to-destination affine transform
        xy_pairs: Nx4 array of correspondences [x1,y1,x2,y2]

    Returns:
        Length-N array of Euclidean distances between transform(x1,y1)
        and (x2,y2)
    """
    xy_pairs = np.asarray(xy_pairs, dtype=np.float64).reshape(-1, 4)
    mapped = transform.apply(xy_pairs[:, :2])
    return np.linalg.norm(mapped - xy_pairs[:, 2:], axis=1)


def affine_rmse(transform: AffineTransform, xy_pairs: np.ndarray) -> float:
    """Root mean square transfer error in pixels."""
    residuals = affine_residuals(transform, xy_pairs)
    if residuals.size == 0:
        logger.warning("No correspondences provided for affine RMSE calculation")
        return float('inf')
    return float(np.sqrt(np.mean(residuals ** 2)))


def conic_rmse(conic: Conic, points: np.ndarray) -> float:
    """Root mean square algebraic residual of points against a conic.

    The coefficients are unit-norm, so the value is comparable between
    fits of the same point set.
    """
    points = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    if points.shape[0] == 0:
        logger.warning("No points provided for conic RMSE calculation")
        return float('inf')
    return float(np.sqrt(np.mean(conic.evaluate(points) ** 2)))


class Timer:
    """Utility class for timing operations with context manager support."""

    def __init__(self, name: str = "Timer", logger: Optional[logging.Logger] = None):
        """Initialize timer.

        Args:
            name: Timer name for logging
            logger: Logger to use (if None, uses module logger)
        """
        self.name = name
        self.logger = logger or logging.getLogger(__name__)
        self.start_time = None
        self.end_time = None
        self._laps = {}
        self._last_lap = None

    def start(self) -> None:
        self.start_time = time.perf_counter()
        self.end_time = None
        self._last_lap = self.start_time

    def stop(self) -> float:
        """Stop the timer and return elapsed seconds."""
        if self.start_time is None:
            self.logger.warning(f"{self.name}: Timer stopped without being started")
            return 0.0

        self.end_time = time.perf_counter()
        elapsed = self.end_time - self.start_time
        self.logger.debug(f"{self.name}: {elapsed:.4f}s")
        return elapsed

    def __enter__(self) -> "Timer":
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.stop()

    def timeit(self, func: Callable) -> Callable:
        """Decorator that times every call of func."""
        def wrapper(*args, **kwargs):
            with self:
                return func(*args, **kwargs)

        return wrapper

    def lap(self, name: str) -> float:
        """Record the time since the previous lap (or start) under name.

        Returns:
            Lap time in seconds
        """
        if self.start_time is None:
            self.start()
        now = time.perf_counter()
        lap_time = now - self._last_lap
        self._last_lap = now
        self._laps[name] = lap_time

        self.logger.debug(f"{self.name} - {name}: {lap_time:.4f}s")
        return lap_time

    @property
    def timings(self) -> Dict[str, float]:
        return dict(self._laps)

    @property
    def elapsed(self) -> float:
        """Elapsed time so far, without stopping the timer."""
        if self.start_time is None:
            return 0.0
        if self.end_time is not None:
            return self.end_time - self.start_time
        return time.perf_counter() - self.start_time


class RegistrationMetrics:
    """Class for collecting and reporting registration metrics."""

    def __init__(self):
        self.metrics = {
            "n_images": 0,
            "pairs": {},
            "runtime_s": 0.0,
            "stage_timings": {},
        }

    def update(self, metric_name: str, value: Union[int, float, Dict]) -> None:
        self.metrics[metric_name] = value

    def update_stage_timing(self, stage_name: str, time_s: float) -> None:
        self.metrics["stage_timings"][stage_name] = time_s

    def record_pair(
        self,
        pair_name: str,
        n_matches: int,
        transform: Optional[AffineTransform] = None,
        xy_pairs: Optional[np.ndarray] = None,
        n_inliers: Optional[int] = None,
    ) -> None:
        """Record match statistics for one registered pair.

        Args:
            pair_name: Label of the pair, e.g. "a.png->b.png"
            n_matches: Number of correspondences after matching
            transform: Fitted transform, None if the fit failed
            xy_pairs: Correspondences the transform was fitted to
            n_inliers: Number of RANSAC inliers, if a robust fit was used
        """
        entry = {
            "n_matches": n_matches, "n_inliers": n_inliers,
            "rmse_px": None, "transform": None,
        }
        if transform is not None:
            entry["transform"] = transform.to_dict()["matrix"]
            if xy_pairs is not None:
                entry["rmse_px"] = affine_rmse(transform, xy_pairs)
        self.metrics["pairs"][pair_name] = entry

    def to_dict(self) -> Dict:
        return {
            **self.metrics,
            "pairs": {k: dict(v) for k, v in self.metrics["pairs"].items()},
            "stage_timings": dict(self.metrics["stage_timings"]),
        }

    def summary(self) -> str:
        """Generate a human-readable summary of metrics."""
        lines = [
            "Registration Metrics:",
            f"  Images: {self.metrics['n_images']}",
        ]

        for name, entry in self.metrics["pairs"].items():
            if entry["rmse_px"] is None:
                lines.append(f"  {name}: {entry['n_matches']} matches, not registered")
            else:
                inliers = (
                    f", {entry['n_inliers']} inliers" if entry["n_inliers"] is not None else ""
                )
                lines.append(
                    f"  {name}: {entry['n_matches']} matches{inliers}, "
                    f"RMSE {entry['rmse_px']:.4f} px"
                )

        lines.append(f"  Total runtime: {self.metrics['runtime_s']:.2f}s")

        if self.metrics["stage_timings"]:
            lines.append("  Stage timings:")
            for stage, time_s in self.metrics["stage_timings"].items():
                lines.append(f"    {stage}: {time_s:.2f}s")

        return "\n".join(lines)
