"""Feature detection and matching module.

This module implements FAST corner detection with non-maximum suppression,
BRIEF binary descriptors, and brute-force descriptor matching with a
max-distance gate and Lowe's ratio test for filtering ambiguous matches.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
from scipy import ndimage
from scipy.spatial import distance as spdist
from tqdm import tqdm

from .config import DescriptorConfig, DetectorConfig, MatcherConfig, PipelineConfig
from .errors import EmptyInput
from .image import ImageBuffer
from .imgproc import gaussian_blur, resize, to_gray

logger = logging.getLogger(__name__)

# Interior rows scanned per block by the corner test
_ROW_BLOCK = 128

_POPCOUNT = np.array([bin(i).count("1") for i in range(256)], dtype=np.uint16)

DESCRIPTOR_KINDS = ("binary", "float")


@dataclass(frozen=True)
class Keypoint:
    """Corner location in full-resolution pixel coordinates."""

    x: int
    y: int
    score: float
    radius: float = 3.0
    level: int = 0
    # Radians, image coordinates (y down)
    orientation: float = 0.0

    @property
    def pt(self) -> Tuple[float, float]:
        return (float(self.x), float(self.y))

    def to_dict(self) -> Dict[str, float]:
        return {
            "x": self.x, "y": self.y, "score": self.score,
            "radius": self.radius, "level": self.level,
            "orientation": self.orientation,
        }


@dataclass(frozen=True, eq=False)
class Descriptor:
    """Fixed-length signature of one keypoint.

    Binary descriptors hold packed bits (uint8, n_bits meaningful bits) and
    compare by Hamming distance; float descriptors compare by L2 distance.
    """

    values: np.ndarray
    kind: str = "binary"
    n_bits: Optional[int] = None

    def __post_init__(self):
        if self.kind not in DESCRIPTOR_KINDS:
            raise ValueError(f"Unknown descriptor kind: {self.kind}")
        dtype = np.uint8 if self.kind == "binary" else np.float64
        values = np.array(self.values, dtype=dtype).reshape(-1)
        values.setflags(write=False)
        object.__setattr__(self, "values", values)
        if self.kind == "binary" and self.n_bits is None:
            object.__setattr__(self, "n_bits", values.size * 8)

    def distance(self, other: "Descriptor") -> float:
        if self.kind != other.kind:
            raise ValueError(f"Cannot compare {self.kind} and {other.kind} descriptors")
        if self.values.shape != other.values.shape:
            raise ValueError(
                f"Descriptor lengths differ: {self.values.size} vs {other.values.size}"
            )
        if self.kind == "binary":
            return float(hamming_distance(self.values, other.values))
        return float(np.linalg.norm(self.values - other.values))


@dataclass(frozen=True)
class Correspondence:
    """Keypoint index_a in image A paired with index_b in image B."""

    index_a: int
    index_b: int
    distance: float

    def to_dict(self) -> Dict[str, float]:
        return {"index_a": self.index_a, "index_b": self.index_b, "distance": self.distance}


def hamming_distance(a: np.ndarray, b: np.ndarray) -> int:
    """Number of differing bits between two packed uint8 bit vectors."""
    return int(_POPCOUNT[np.bitwise_xor(a, b)].sum())


def circle_offsets(radius: int) -> np.ndarray:
    """Integer (dx, dy) offsets of a discrete circle, in ring order.

    The first quadrant is traced from (radius, 0) by always stepping to the
    neighbour closest to the true circle, then rotated three times. Radius 3
    yields the classic 16-pixel FAST ring.
    """
    sq_rad = radius * radius
    quarter = [(radius, 0)]
    while True:
        px, py = quarter[-1]
        diff_left = abs((px - 1) ** 2 + py ** 2 - sq_rad)
        diff_diag = abs((px - 1) ** 2 + (py + 1) ** 2 - sq_rad)
        diff_up = abs(px ** 2 + (py + 1) ** 2 - sq_rad)
        if diff_diag <= diff_left and diff_diag <= diff_up:
            nxt = (px - 1, py + 1)
        elif diff_left <= diff_diag and diff_left <= diff_up:
            nxt = (px - 1, py)
        else:
            nxt = (px, py + 1)
        if nxt == (0, radius):
            break
        quarter.append(nxt)

    points = list(quarter)
    for _ in range(3):
        points.extend((-py, px) for px, py in points[-len(quarter):])

    # y grows downwards in images
    return np.array([(px, -py) for px, py in points], dtype=np.int64)


def fast_score_map(image: np.ndarray, config: DetectorConfig) -> np.ndarray:
    """Corner score for every pixel of a single-channel image.

    A pixel is a corner if some contiguous arc of min_arc_length ring
    samples is entirely brighter than centre + t or entirely darker than
    centre - t. Its score is the largest, over such arcs, of the smallest
    absolute difference along the arc. Non-corners and border pixels
    (closer than the ring radius to an edge) score 0.

    Args:
        image: (h, w) intensity array
        config: Detector configuration

    Returns:
        (h, w) float array of scores
    """
    radius = config.ring_radius
    offsets = circle_offsets(radius)
    n_ring = len(offsets)
    arc = config.min_arc_length
    if arc > n_ring:
        raise ValueError(f"min_arc_length {arc} exceeds ring size {n_ring}")

    img = np.asarray(image, dtype=np.float64)
    height, width = img.shape
    scores = np.zeros((height, width))
    if height <= 2 * radius or width <= 2 * radius:
        return scores

    t = config.intensity_threshold
    for y_start in range(radius, height - radius, _ROW_BLOCK):
        y_stop = min(y_start + _ROW_BLOCK, height - radius)
        center = img[y_start:y_stop, radius:width - radius]
        diffs = np.stack([
            img[y_start + dy:y_stop + dy, radius + dx:width - radius + dx] - center
            for dx, dy in offsets
        ])
        # Wrap the ring so every start index has a full arc after it
        ext = np.concatenate((diffs, diffs[:arc - 1]), axis=0)
        arc_min = ext[:n_ring].copy()
        arc_max = ext[:n_ring].copy()
        for j in range(1, arc):
            np.minimum(arc_min, ext[j:j + n_ring], out=arc_min)
            np.maximum(arc_max, ext[j:j + n_ring], out=arc_max)

        bright = np.where(arc_min > t, arc_min, 0.0).max(axis=0)
        dark = np.where(-arc_max > t, -arc_max, 0.0).max(axis=0)
        scores[y_start:y_stop, radius:width - radius] = np.maximum(bright, dark)

    return scores


def non_max_suppression(score_map: np.ndarray, window_radius: int) -> List[Tuple[int, int]]:
    """Keep candidates that strictly dominate their square neighbourhood.

    A candidate (score > 0) survives if no other candidate within Chebyshev
    distance window_radius has a higher score, and no equal-scoring one
    comes earlier in raster order.

    Args:
        score_map: (h, w) scores, 0 for non-candidates
        window_radius: Half-size of the suppression window

    Returns:
        Surviving (y, x) positions in raster order
    """
    candidates = score_map > 0
    if window_radius == 0:
        return [(int(y), int(x)) for y, x in zip(*np.nonzero(candidates))]

    size = 2 * window_radius + 1
    local_max = ndimage.maximum_filter(score_map, size=size, mode="constant", cval=0.0)
    peaks = candidates & (score_map >= local_max)

    kept = []
    for y, x in zip(*np.nonzero(peaks)):
        y0, x0 = max(0, y - window_radius), max(0, x - window_radius)
        window = score_map[y0:y + window_radius + 1, x0:x + window_radius + 1]
        first_y, first_x = np.argwhere(window == score_map[y, x])[0]
        if (y0 + first_y, x0 + first_x) == (y, x):
            kept.append((int(y), int(x)))
    return kept


def intensity_centroid_angle(
    image: np.ndarray, xs: np.ndarray, ys: np.ndarray, radius: int
) -> np.ndarray:
    """Direction from each point to the intensity centroid of a disc around it.

    Args:
        image: (h, w) intensity array
        xs: Point x coordinates
        ys: Point y coordinates
        radius: Disc radius; samples beyond the border are clamped to the edge

    Returns:
        atan2(m01, m10) per point, in radians, y pointing down
    """
    img = np.asarray(image, dtype=np.float64)
    height, width = img.shape
    dy, dx = np.mgrid[-radius:radius + 1, -radius:radius + 1]
    disc = dx * dx + dy * dy <= radius * radius
    dx, dy = dx[disc], dy[disc]

    xs = np.asarray(xs, dtype=np.int64)[:, np.newaxis]
    ys = np.asarray(ys, dtype=np.int64)[:, np.newaxis]
    values = img[np.clip(ys + dy, 0, height - 1), np.clip(xs + dx, 0, width - 1)]
    m10 = values @ dx.astype(np.float64)
    m01 = values @ dy.astype(np.float64)
    return np.arctan2(m01, m10)


def _suppress_across_levels(
    keypoints: List[Keypoint], window_radius: int, width: int, height: int
) -> List[Keypoint]:
    """Greedy suppression of pyramid keypoints in base-level coordinates.

    Visits keypoints by descending score, then lower level, then raster
    order, and drops any that lies within the Chebyshev window of one
    already kept.
    """
    order = sorted(keypoints, key=lambda kp: (-kp.score, kp.level, kp.y, kp.x))
    occupied = np.zeros((height, width), dtype=bool)
    kept = []
    for kp in order:
        y0, x0 = max(0, kp.y - window_radius), max(0, kp.x - window_radius)
        if occupied[y0:kp.y + window_radius + 1, x0:kp.x + window_radius + 1].any():
            continue
        occupied[kp.y, kp.x] = True
        kept.append(kp)
    return kept


def detect(
    buffer: ImageBuffer,
    config: Optional[DetectorConfig] = None,
    order: str = "rgb",
) -> List[Keypoint]:
    """Detect FAST corners.

    Colour buffers are converted to gray first, reading channels in the
    given order. Each keypoint gets the intensity-centroid orientation of a
    disc of config.orientation_radius around it. With pyramid_levels > 1
    the image is repeatedly halved and scanned again; keypoints from
    coarser levels are reported in full-resolution coordinates with radius
    ring_radius * 2**level, and a final suppression pass over all levels
    keeps the stronger (then finer) of any two keypoints sharing a window.

    Args:
        buffer: Input image
        config: Detector configuration
        order: Channel order of colour input, "rgb" or "bgr"

    Returns:
        Keypoints sorted by descending score, ties in raster order
        (possibly empty)
    """
    start_time = time.perf_counter()
    config = config or DetectorConfig()
    gray = to_gray(buffer, order=order) if buffer.channels > 1 else buffer

    keypoints: List[Keypoint] = []
    level_img = gray
    for level in range(config.pyramid_levels):
        if level > 0:
            w, h = level_img.width // 2, level_img.height // 2
            if w <= 2 * config.ring_radius or h <= 2 * config.ring_radius:
                logger.debug(f"Stopping pyramid at level {level}: image too small")
                break
            level_img = resize(level_img, w, h)

        plane = level_img.plane(0)
        scores = fast_score_map(plane, config)
        n_candidates = int(np.count_nonzero(scores))
        kept = non_max_suppression(scores, config.suppression_window_radius)
        if not kept:
            continue

        ys, xs = np.array(kept, dtype=np.int64).T
        angles = intensity_centroid_angle(plane, xs, ys, config.orientation_radius)

        scale_x = gray.width / level_img.width
        scale_y = gray.height / level_img.height
        for x, y, angle in zip(xs, ys, angles):
            keypoints.append(Keypoint(
                x=min(int(round(x * scale_x)), gray.width - 1),
                y=min(int(round(y * scale_y)), gray.height - 1),
                score=float(scores[y, x]),
                radius=float(config.ring_radius * 2 ** level),
                level=level,
                orientation=float(angle),
            ))
        logger.debug(
            f"Level {level} ({level_img.width}x{level_img.height}): "
            f"{n_candidates} candidates, {len(kept)} after NMS"
        )

    if config.pyramid_levels > 1:
        n_merged = len(keypoints)
        keypoints = _suppress_across_levels(
            keypoints, config.suppression_window_radius, gray.width, gray.height
        )
        logger.debug(f"Cross-level suppression: {n_merged} -> {len(keypoints)} keypoints")

    keypoints.sort(key=lambda kp: (-kp.score, kp.level, kp.y, kp.x))

    elapsed_time = time.perf_counter() - start_time
    logger.info(f"Detected {len(keypoints)} keypoints (elapsed time: {elapsed_time:.3f}s)")
    return keypoints


def brief_pattern(patch_size: int, n_bits: int, seed: int = 0) -> np.ndarray:
    """Pixel-pair test pattern for BRIEF.

    Offsets are drawn from N(0, patch_size / 5), clipped to the patch and
    rounded; the two points of a pair never coincide. The same seed always
    yields the same pattern.

    Returns:
        (n_bits, 4) integer array of [dx0, dy0, dx1, dy1]
    """
    rng = np.random.default_rng(seed)
    half = patch_size // 2
    sigma = patch_size / 5.0

    def draw() -> np.ndarray:
        return np.round(np.clip(rng.normal(0.0, sigma, 2), -half, half))

    pairs = np.empty((n_bits, 4), dtype=np.int64)
    for i in range(n_bits):
        p0, p1 = draw(), draw()
        while np.array_equal(p0, p1):
            p1 = draw()
        pairs[i] = np.concatenate((p0, p1))
    return pairs


def steered_patterns(pattern: np.ndarray, n_orientations: int) -> np.ndarray:
    """Copies of a BRIEF pattern rotated by multiples of 2*pi / n_orientations.

    Returns:
        (n_orientations, n_bits, 4) integer array; entry 0 is the pattern itself
    """
    angles = 2.0 * np.pi * np.arange(n_orientations) / n_orientations
    cos_a = np.cos(angles)[:, np.newaxis]
    sin_a = np.sin(angles)[:, np.newaxis]
    rotated = np.empty((n_orientations,) + pattern.shape, dtype=np.int64)
    for k in (0, 2):
        x, y = pattern[:, k], pattern[:, k + 1]
        rotated[:, :, k] = np.round(cos_a * x - sin_a * y)
        rotated[:, :, k + 1] = np.round(sin_a * x + cos_a * y)
    rotated[0] = pattern
    return rotated


def orientation_bins(orientations: np.ndarray, n_orientations: int) -> np.ndarray:
    """Index of the nearest discrete pattern rotation for each angle."""
    step = 2.0 * np.pi / n_orientations
    return np.round(np.asarray(orientations) / step).astype(np.int64) % n_orientations


def describe(
    buffer: ImageBuffer,
    keypoints: Sequence[Keypoint],
    config: Optional[DescriptorConfig] = None,
    order: str = "rgb",
) -> List[Descriptor]:
    """Compute BRIEF descriptors.

    The gray image is Gaussian-smoothed, then bit i of a keypoint's
    descriptor is set when the smoothed intensity at the first point of
    pair i exceeds the one at the second point. With config.steered the
    pattern is first rotated to the keypoint orientation, quantised to
    n_orientations steps. Samples beyond the image border are clamped to
    the edge, so every keypoint gets a descriptor.

    Args:
        buffer: Image the keypoints were detected in
        keypoints: Keypoints to describe
        config: Descriptor configuration
        order: Channel order of colour input, "rgb" or "bgr"

    Returns:
        Descriptors aligned index-for-index with keypoints
    """
    config = config or DescriptorConfig()
    if not keypoints:
        return []

    gray = to_gray(buffer, order=order) if buffer.channels > 1 else buffer
    smoothed = gaussian_blur(gray, config.blur_size, config.blur_sigma).plane(0)
    height, width = smoothed.shape
    pattern = brief_pattern(config.patch_size, config.n_bits, config.seed)

    if config.steered:
        bins = orientation_bins([kp.orientation for kp in keypoints], config.n_orientations)
        offsets = steered_patterns(pattern, config.n_orientations)[bins]
    else:
        offsets = pattern[np.newaxis]

    xs = np.array([kp.x for kp in keypoints], dtype=np.int64)[:, np.newaxis]
    ys = np.array([kp.y for kp in keypoints], dtype=np.int64)[:, np.newaxis]
    xa = np.clip(xs + offsets[:, :, 0], 0, width - 1)
    ya = np.clip(ys + offsets[:, :, 1], 0, height - 1)
    xb = np.clip(xs + offsets[:, :, 2], 0, width - 1)
    yb = np.clip(ys + offsets[:, :, 3], 0, height - 1)

    bits = smoothed[ya, xa] > smoothed[yb, xb]
    packed = np.packbits(bits, axis=1)

    logger.debug(
        f"Computed {len(keypoints)} {'steered ' if config.steered else ''}"
        f"BRIEF descriptors ({config.n_bits} bits)"
    )
    return [Descriptor(row, kind="binary", n_bits=config.n_bits) for row in packed]


def _distance_matrix(
    descriptors_a: Sequence[Descriptor], descriptors_b: Sequence[Descriptor]
) -> np.ndarray:
    if len(descriptors_a) == 0 or len(descriptors_b) == 0:
        raise EmptyInput(
            f"Descriptor sets of size {len(descriptors_a)} and {len(descriptors_b)}"
        )
    kinds = {d.kind for d in descriptors_a} | {d.kind for d in descriptors_b}
    if len(kinds) != 1:
        raise ValueError(f"Cannot match mixed descriptor kinds: {sorted(kinds)}")
    lengths = {d.values.size for d in descriptors_a} | {d.values.size for d in descriptors_b}
    if len(lengths) != 1:
        raise ValueError(f"Descriptor lengths differ: {sorted(lengths)}")

    A = np.stack([d.values for d in descriptors_a])
    B = np.stack([d.values for d in descriptors_b])
    if kinds == {"float"}:
        return spdist.cdist(A, B, metric="euclidean")

    dists = np.empty((A.shape[0], B.shape[0]))
    for i, row in enumerate(A):
        dists[i] = _POPCOUNT[np.bitwise_xor(row, B)].sum(axis=1)
    return dists


def _unique_assignment(matches: List[Correspondence]) -> List[Correspondence]:
    """Greedy one-to-one assignment by ascending distance."""
    taken = set()
    unique = []
    for m in sorted(matches, key=lambda m: (m.distance, m.index_a, m.index_b)):
        if m.index_b not in taken:
            taken.add(m.index_b)
            unique.append(m)
    return sorted(unique, key=lambda m: m.index_a)


def match(
    descriptors_a: Sequence[Descriptor],
    descriptors_b: Sequence[Descriptor],
    config: Optional[MatcherConfig] = None,
) -> List[Correspondence]:
    """Match descriptors from image A to image B.

    Every descriptor in A is compared with every descriptor in B. The
    nearest B is kept when its distance is below max_distance and, if B has
    at least two entries, below ambiguity_ratio times the second-nearest
    distance. Matching is one-directional: several A entries may claim the
    same B entry unless config.unique is set.

    Args:
        descriptors_a: Descriptors of image A
        descriptors_b: Descriptors of image B
        config: Matcher configuration

    Returns:
        Correspondences sorted by index_a; empty if either input is empty or
        nothing passes the tests
    """
    start_time = time.perf_counter()
    config = config or MatcherConfig()
    try:
        dists = _distance_matrix(descriptors_a, descriptors_b)
    except EmptyInput as e:
        logger.warning(f"Nothing to match: {e}")
        return []

    n_a, n_b = dists.shape
    rows = np.arange(n_a)
    order = np.argsort(dists, axis=1, kind="stable")
    best_idx = order[:, 0]
    best = dists[rows, best_idx]

    accepted = best < config.max_distance
    if n_b >= 2:
        second = dists[rows, order[:, 1]]
        # Equivalent to best / second < ratio; a zero second-best is a tie and rejects
        accepted &= best < config.ambiguity_ratio * second

    matches = [
        Correspondence(int(i), int(best_idx[i]), float(best[i]))
        for i in np.nonzero(accepted)[0]
    ]
    if config.unique:
        matches = _unique_assignment(matches)

    elapsed_time = time.perf_counter() - start_time
    logger.info(
        f"Matched {len(matches)}/{n_a} descriptors against {n_b} "
        f"(elapsed time: {elapsed_time:.3f}s)"
    )
    return matches


def correspondences_to_pairs(
    keypoints_a: Sequence[Keypoint],
    keypoints_b: Sequence[Keypoint],
    matches: Sequence[Correspondence],
) -> np.ndarray:
    """Nx4 array [x1,y1,x2,y2] of matched keypoint coordinates."""
    if not matches:
        return np.zeros((0, 4))
    return np.array([
        [keypoints_a[m.index_a].x, keypoints_a[m.index_a].y,
         keypoints_b[m.index_b].x, keypoints_b[m.index_b].y]
        for m in matches
    ], dtype=np.float64)


def detect_and_match(
    images: List[ImageBuffer],
    config: Optional[PipelineConfig] = None,
    reference: Optional[int] = None,
    min_matches: int = 3,
    order: str = "rgb",
) -> Dict[Tuple[int, int], np.ndarray]:
    """Detect features and match across multiple images.

    Args:
        images: Input images
        config: Pipeline configuration (detector, descriptor and matcher sections)
        reference: If given, only pairs (reference, j) are matched;
            otherwise every pair i < j
        min_matches: Pairs with fewer matches are dropped
        order: Channel order of colour images, "rgb" or "bgr"

    Returns:
        Dictionary mapping image pairs (i,j) to Nx4 arrays of point
        correspondences [x1,y1,x2,y2]
    """
    start_time = time.perf_counter()
    config = config or PipelineConfig()
    n_images = len(images)
    logger.info(f"Detecting features on {n_images} images")

    keypoints = []
    descriptors = []
    for i, img in enumerate(tqdm(images, desc="Detecting features")):
        kps = detect(img, config.detector, order=order)
        keypoints.append(kps)
        descriptors.append(describe(img, kps, config.descriptor, order=order))
        logger.debug(f"Image {i}: detected {len(kps)} keypoints")

    if reference is None:
        pairs = [(i, j) for i in range(n_images) for j in range(i + 1, n_images)]
    else:
        pairs = [(reference, j) for j in range(n_images) if j != reference]

    matches_dict = {}
    for i, j in tqdm(pairs, desc="Matching features"):
        matches = match(descriptors[i], descriptors[j], config.matcher)
        if len(matches) < min_matches:
            logger.warning(
                f"Image pair ({i},{j}): only {len(matches)} matches, skipping"
            )
            continue
        matches_dict[(i, j)] = correspondences_to_pairs(keypoints[i], keypoints[j], matches)
        logger.debug(f"Image pair ({i},{j}): {len(matches)} matches after ratio test")

    elapsed_time = time.perf_counter() - start_time
    logger.info(
        f"Feature matching complete: {len(matches_dict)} image pairs with matches"
        f" (elapsed time: {elapsed_time:.2f}s)"
    )
    return matches_dict
