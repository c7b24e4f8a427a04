#!/usr/bin/env python3
"""
Image Registration Pipeline

This script registers every image in a folder onto the first one: FAST
corners and BRIEF descriptors are matched against the reference image, an
affine transform is fitted to the correspondences with RANSAC and each image
is warped into the reference frame.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import List, Optional, Tuple

import cv2
import numpy as np
from tqdm import tqdm

# Add parent directory to path
sys.path.append(str(Path(__file__).resolve().parent.parent))

from improc import evaluate, feature, geometry, visualise
from improc.config import load_config
from improc.errors import ImprocError
from improc.image import ImageBuffer
from improc.imgproc import to_gray
from improc.resample import resample


# Set up logging
logging.basicConfig(
    level=logging.INFO,
    format="[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s",
    handlers=[
        logging.StreamHandler(),
    ],
)
logger = logging.getLogger("pipeline")


def read_images(image_dir: str) -> Tuple[List[str], List[np.ndarray]]:
    """Read images from directory.

    Args:
        image_dir: Path to directory containing images

    Returns:
        Tuple of (file stems, images as BGR numpy arrays), sorted by file name
    """
    logger.info(f"Reading images from {image_dir}")

    image_files = set()
    for ext in ["*.jpg", "*.jpeg", "*.png", "*.bmp"]:
        image_files.update(Path(image_dir).glob(ext))
        image_files.update(Path(image_dir).glob(ext.upper()))
    image_files = sorted(image_files)

    if not image_files:
        raise FileNotFoundError(f"No images found in {image_dir}")

    names = []
    images = []
    for image_file in tqdm(image_files, desc="Reading images"):
        image = cv2.imread(str(image_file), cv2.IMREAD_COLOR)
        if image is None:
            logger.warning(f"Failed to read {image_file}")
            continue
        names.append(image_file.stem)
        images.append(image)

    logger.info(f"Read {len(images)} images")
    if images:
        logger.info(f"Reference image: {names[0]} {images[0].shape}")

    return names, images


def run_pipeline(
    image_dir: str,
    output_dir: str,
    visualise_results: bool = False,
    config_path: Optional[str] = None
) -> dict:
    """Run the complete registration pipeline.

    Args:
        image_dir: Path to directory containing images
        output_dir: Path to output directory
        visualise_results: Whether to save keypoint and match visualizations
        config_path: Path to configuration file

    Returns:
        Dictionary of registration metrics
    """
    pipeline_timer = evaluate.Timer("Pipeline")
    pipeline_timer.start()

    os.makedirs(output_dir, exist_ok=True)

    # Set up file logging
    file_handler = logging.FileHandler(os.path.join(output_dir, "log.txt"))
    file_handler.setFormatter(logging.Formatter("[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s"))
    logging.getLogger().addHandler(file_handler)

    try:
        return register_images(image_dir, output_dir, visualise_results, config_path, pipeline_timer)
    finally:
        logging.getLogger().removeHandler(file_handler)
        file_handler.close()


def register_images(
    image_dir: str,
    output_dir: str,
    visualise_results: bool,
    config_path: Optional[str],
    pipeline_timer: evaluate.Timer
) -> dict:
    """Register every image onto the first one and write the results."""
    config = load_config(config_path)
    logger.info(f"Configuration: {config.to_dict()}")

    metrics = evaluate.RegistrationMetrics()

    # === Stage 1: Read Images ===
    with evaluate.Timer("Read Images") as timer:
        names, images = read_images(image_dir)
        buffers = [ImageBuffer.from_array(img) for img in images]
        grays = [to_gray(buf, order="bgr") for buf in buffers]
        metrics.update_stage_timing("read_images", timer.elapsed)
    metrics.update("n_images", len(images))

    if not images:
        raise FileNotFoundError(f"No readable images in {image_dir}")
    if len(images) < 2:
        logger.warning("Need at least two images to register")

    # === Stage 2: Detect Features and Match ===
    with evaluate.Timer("Feature Detection and Matching") as timer:
        matches = feature.detect_and_match(grays, config, reference=0)
        metrics.update_stage_timing("detect_and_match", timer.elapsed)

    # === Stage 3: Fit and Warp ===
    reference = buffers[0]
    with evaluate.Timer("Registration") as timer:
        for j in tqdm(range(1, len(buffers)), desc="Registering images"):
            pair_name = f"{names[j]}->{names[0]}"
            match_points = matches.get((0, j))
            if match_points is None:
                metrics.record_pair(pair_name, 0)
                continue

            # Correspondences are (reference, j); the warp maps j onto the reference
            xy_pairs = match_points[:, [2, 3, 0, 1]]
            try:
                transform, inliers = geometry.fit_affine_robust(xy_pairs, config.ransac)
            except ImprocError as e:
                logger.warning(f"Could not register {pair_name}: {e}")
                metrics.record_pair(pair_name, len(xy_pairs))
                continue

            metrics.record_pair(
                pair_name, len(xy_pairs), transform, xy_pairs[inliers],
                n_inliers=int(inliers.sum())
            )
            logger.info(f"{pair_name}: affine\n{transform.matrix}")

            warped = resample(
                buffers[j], transform, (reference.width, reference.height), config.resample
            )
            cv2.imwrite(os.path.join(output_dir, f"warped_{names[j]}.png"), warped.to_array())
            np.save(os.path.join(output_dir, f"affine_{names[j]}.npy"), transform.matrix)

            if visualise_results:
                vis = visualise.draw_matches(images[0], images[j], match_points[inliers])
                cv2.imwrite(os.path.join(output_dir, f"matches_{names[j]}.png"), vis)

        metrics.update_stage_timing("registration", timer.elapsed)

    if visualise_results:
        keypoints = feature.detect(grays[0], config.detector)
        vis = visualise.draw_keypoints(images[0], keypoints)
        cv2.imwrite(os.path.join(output_dir, f"keypoints_{names[0]}.png"), vis)

    metrics.update("runtime_s", pipeline_timer.stop())

    report = metrics.to_dict()
    report["config"] = config.to_dict()
    with open(os.path.join(output_dir, "report.json"), "w") as f:
        json.dump(report, f, indent=2)

    logger.info(metrics.summary())
    logger.info(f"Results saved to {output_dir}")
    return report


def main():
    """Main function to parse arguments and run the pipeline."""
    parser = argparse.ArgumentParser(description="Image Registration Pipeline")
    parser.add_argument(
        "--images", "-i", dest="image_dir", required=True,
        help="Path to directory containing images"
    )
    parser.add_argument(
        "--output", "-o", dest="output_dir", default="results/run1",
        help="Path to output directory"
    )
    parser.add_argument(
        "--visualise", "-v", dest="visualise", action="store_true",
        help="Save keypoint and match visualizations"
    )
    parser.add_argument(
        "--config", "-c", dest="config_path", default=None,
        help="Path to configuration file"
    )

    args = parser.parse_args()

    try:
        run_pipeline(
            args.image_dir,
            args.output_dir,
            args.visualise,
            args.config_path
        )
    except Exception as e:
        logger.exception(f"Error running pipeline: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
