"""
Scan-to-scan LiDAR odometry by point-to-point ICP.

Consecutive scans of one LiDAR are registered to give relative poses
T_{Lk <- Lk+1}. The LiDAR stage of the solver compares them with the relative
poses predicted by the trajectory and the LiDAR extrinsic.

ICP alternates:
    - correspondences: nearest target point (cKDTree), gated by distance
    - update: closed-form rigid fit of matched pairs (Arun/Kabsch)

References:
    - Besl & McKay (1992) for ICP algorithm
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional

import numpy as np
from scipy.spatial import cKDTree

from ctcalib.common import constants
from ctcalib.common.transforms.se3 import make_transform, transform_points, umeyama_alignment
from ctcalib.sensors.frames import LiDARFrame

_logger = logging.getLogger(__name__)


@dataclass
class ICPResult:
    transform: np.ndarray  # 4x4, maps source points into the target frame
    mse: float
    iterations: int
    inliers: int
    converged: bool


@dataclass
class RelativeScanPose:
    t_a: float  # timestamp of scan k
    t_b: float  # timestamp of scan k + 1
    T_a_b: np.ndarray  # pose of scan k+1 in scan k
    mse: float


def _subsample(points: np.ndarray, max_points: int, rng: np.random.Generator) -> np.ndarray:
    if points.shape[0] <= max_points:
        return points
    idx = rng.choice(points.shape[0], size=max_points, replace=False)
    return points[idx]


def icp_3d(
    source: np.ndarray,
    target: np.ndarray,
    init: Optional[np.ndarray] = None,
    max_iter: int = constants.ICP_MAX_ITER_DEFAULT,
    tol: float = constants.ICP_TOLERANCE_DEFAULT,
    max_corr_dist: float = constants.ICP_MAX_CORRESPONDENCE_DIST,
) -> ICPResult:
    """
    Point-to-point ICP.

    Args:
        source: (N, 3) points to move
        target: (M, 3) reference points
        init: initial 4x4 guess, identity if None
        max_iter: iteration cap
        tol: convergence tolerance on MSE change
        max_corr_dist: correspondences farther than this are ignored

    Returns:
        ICPResult; converged is False when too few correspondences survive
    """
    source = np.asarray(source, dtype=float).reshape(-1, 3)
    target = np.asarray(target, dtype=float).reshape(-1, 3)
    T = np.eye(4) if init is None else np.asarray(init, dtype=float).copy()
    tree = cKDTree(target)

    prev_mse = None
    mse = float("inf")
    inliers = 0
    iters = 0
    for i in range(max_iter):
        iters = i + 1
        src_tf = transform_points(T, source)
        dist, nn_idx = tree.query(src_tf, k=1, distance_upper_bound=max_corr_dist)
        valid = np.isfinite(dist)
        inliers = int(valid.sum())
        if inliers < 6:
            return ICPResult(T, mse, iters, inliers, False)

        _, R, t = umeyama_alignment(src_tf[valid], target[nn_idx[valid]], with_scale=False)
        T = make_transform(R, t) @ T
        mse = float(np.mean(dist[valid] ** 2))
        if prev_mse is not None and abs(prev_mse - mse) < tol:
            return ICPResult(T, mse, iters, inliers, True)
        prev_mse = mse
    return ICPResult(T, mse, iters, inliers, False)


def scan_to_scan_odometry(
    scans: List[LiDARFrame],
    max_points: int = constants.ICP_MAX_POINTS,
    seed: int = 0,
) -> List[RelativeScanPose]:
    """Register every scan to its predecessor; unconverged pairs are dropped."""
    rng = np.random.default_rng(seed)
    out: List[RelativeScanPose] = []
    guess = np.eye(4)
    for a, b in zip(scans[:-1], scans[1:]):
        src = _subsample(b.points, max_points, rng)
        tgt = _subsample(a.points, max_points, rng)
        res = icp_3d(src, tgt, init=guess)
        if not res.converged:
            _logger.debug("ICP between scans at %.3f and %.3f did not converge (%d inliers)",
                          a.timestamp, b.timestamp, res.inliers)
            guess = np.eye(4)
            continue
        # constant-velocity guess for the next pair
        guess = res.transform
        out.append(RelativeScanPose(a.timestamp, b.timestamp, res.transform, res.mse))
    _logger.info("lidar odometry: %d of %d scan pairs registered", len(out), max(len(scans) - 1, 0))
    return out
