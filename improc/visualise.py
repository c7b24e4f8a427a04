"""Visualization utilities for registration results.

This module draws keypoints and correspondences with OpenCV and plots conic
fits with Matplotlib.
"""

from __future__ import annotations

import logging
from typing import Optional, Sequence, Tuple, Union

import cv2
import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
import numpy as np

from .feature import Keypoint
from .geometry import Ellipse
from .image import ImageBuffer

logger = logging.getLogger(__name__)

ImageLike = Union[np.ndarray, ImageBuffer]


def _to_bgr(image: ImageLike) -> np.ndarray:
    """Return a uint8 BGR copy of an image for drawing."""
    if isinstance(image, ImageBuffer):
        image = image.to_array()
    img = np.asarray(image)
    if img.dtype != np.uint8:
        img = np.clip(img, 0, 255).astype(np.uint8)
    if img.ndim == 3 and img.shape[2] == 1:
        img = img[:, :, 0]
    if img.ndim == 2:
        return cv2.cvtColor(img, cv2.COLOR_GRAY2BGR)
    if img.shape[2] == 4:
        return cv2.cvtColor(img, cv2.COLOR_BGRA2BGR)
    return img.copy()


def _colours(n: int, seed: int = 0) -> np.ndarray:
    rng = np.random.default_rng(seed)
    return rng.integers(0, 255, size=(n, 3))


def draw_keypoints(
    image: ImageLike,
    keypoints: Sequence[Keypoint],
    color: Tuple[int, int, int] = (0, 255, 0),
) -> np.ndarray:
    """Draw keypoints as circles of their detection radius.

    Args:
        image: Image the keypoints were detected in
        keypoints: Keypoints to draw
        color: BGR colour

    Returns:
        BGR visualization image
    """
    vis = _to_bgr(image)
    for kp in keypoints:
        cv2.circle(vis, (int(kp.x), int(kp.y)), max(1, int(round(kp.radius))), color, 1)
    return vis


def draw_matches(
    img1: ImageLike,
    img2: ImageLike,
    match_points: np.ndarray,
    n_matches: int = 50,
    seed: int = 0,
) -> np.ndarray:
    """Display matched features between two images.

    Args:
        img1: First image
        img2: Second image
        match_points: Nx4 array of point correspondences [x1,y1,x2,y2]
        n_matches: Maximum number of matches to display
        seed: Seed for the displayed subset and line colours

    Returns:
        Visualization image with both images side by side and matches
        joined by lines
    """
    img1_display = _to_bgr(img1)
    img2_display = _to_bgr(img2)

    h1, w1 = img1_display.shape[:2]
    h2, w2 = img2_display.shape[:2]
    vis = np.zeros((max(h1, h2), w1 + w2, 3), dtype=np.uint8)
    vis[:h1, :w1] = img1_display
    vis[:h2, w1:w1 + w2] = img2_display

    match_points = np.asarray(match_points).reshape(-1, 4)
    n_total = match_points.shape[0]
    if n_total > n_matches:
        rng = np.random.default_rng(seed)
        indices = np.sort(rng.choice(n_total, n_matches, replace=False))
        subset = match_points[indices]
    else:
        subset = match_points

    for (x1, y1, x2, y2), color in zip(subset, _colours(len(subset), seed)):
        pt1 = (int(round(x1)), int(round(y1)))
        pt2 = (int(round(x2)) + w1, int(round(y2)))
        color = color.tolist()
        cv2.line(vis, pt1, pt2, color, 1)
        cv2.circle(vis, pt1, 3, color, -1)
        cv2.circle(vis, pt2, 3, color, -1)

    return vis


def plot_ellipse_fit(
    points: np.ndarray,
    ellipse: Ellipse,
    save_path: str,
    title: Optional[str] = None,
) -> None:
    """Plot sample points together with the fitted ellipse and save it.

    Args:
        points: Nx2 array of fitted points
        ellipse: Fitted ellipse
        save_path: Path to save the figure
        title: Optional plot title
    """
    points = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    curve = ellipse.points(200)

    fig, ax = plt.subplots(figsize=(8, 8))
    ax.plot(points[:, 0], points[:, 1], 'o', color='tab:blue', markersize=4, label='Points')
    ax.plot(
        np.append(curve[:, 0], curve[0, 0]),
        np.append(curve[:, 1], curve[0, 1]),
        '-', color='tab:red', linewidth=1.5, label='Fitted ellipse'
    )
    ax.plot(*ellipse.center, '+', color='tab:red', markersize=10)

    ax.set_aspect('equal')
    ax.invert_yaxis()
    ax.legend()
    ax.set_title(title or (
        f"center=({ellipse.center[0]:.2f}, {ellipse.center[1]:.2f}) "
        f"axes=({ellipse.axes[0]:.2f}, {ellipse.axes[1]:.2f}) "
        f"angle={np.degrees(ellipse.angle):.1f} deg"
    ))

    plt.tight_layout()
    plt.savefig(save_path, dpi=150, bbox_inches='tight')
    plt.close(fig)

    logger.info(f"Ellipse fit visualization saved to {save_path}")
