#!/usr/bin/env python3
"""
Ellipse Fitting

Fits a conic to 2D points read from a CSV file (one "x,y" pair per line)
and prints the conic coefficients and the ellipse parameters as JSON.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

import numpy as np

# Add parent directory to path
sys.path.append(str(Path(__file__).resolve().parent.parent))

from improc import evaluate, geometry, visualise
from improc.errors import DegenerateInput


logging.basicConfig(
    level=logging.INFO,
    format="[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s",
)
logger = logging.getLogger("fit_ellipse")


def main():
    parser = argparse.ArgumentParser(description="Fit an ellipse to 2D points")
    parser.add_argument("points", help="CSV file with one x,y pair per line")
    parser.add_argument(
        "--method", "-m", default="lsq", choices=geometry.CONIC_METHODS,
        help="Conic fitting method"
    )
    parser.add_argument(
        "--plot", "-p", dest="plot_path", default=None,
        help="Save a plot of the fit to this path"
    )
    args = parser.parse_args()

    try:
        points = np.loadtxt(args.points, delimiter=",", ndmin=2)
        conic = geometry.fit_conic(points, method=args.method)
        result = {"conic": conic.to_dict(), "rmse": evaluate.conic_rmse(conic, points)}

        try:
            ellipse = conic.to_ellipse()
        except DegenerateInput as e:
            logger.warning(f"Fitted conic is not an ellipse: {e}")
            ellipse = None

        if ellipse is not None:
            result["ellipse"] = ellipse.to_dict()
            if args.plot_path:
                visualise.plot_ellipse_fit(points, ellipse, args.plot_path)

        print(json.dumps(result, indent=2))
    except Exception as e:
        logger.exception(f"Error fitting ellipse: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
