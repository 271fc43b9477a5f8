"""
SO(3)/SE(3) helpers on numpy arrays.

Conventions:
- Rotation vectors (axis-angle) for tangent-space quantities
- Quaternions as (x, y, z, w), scipy's order; COLMAP writes (w, x, y, z)
- Rigid transforms as 4x4 homogeneous matrices, T_AtoB @ [p_A; 1] = [p_B; 1]

Numerical Policy:
    ROTATION_EPSILON guards the small-angle branch of exp/log. It is a
    stability choice and affects only the computational path.

References:
- Sola et al. (2018): A micro Lie theory for state estimation
- Umeyama (1991): Least-squares estimation of transformation parameters
"""

from __future__ import annotations

import math
from typing import Tuple

import numpy as np
from scipy.spatial.transform import Rotation

from ctcalib.common.constants import ROTATION_EPSILON


# =============================================================================
# so(3) <-> SO(3)
# =============================================================================


def skew(v: np.ndarray) -> np.ndarray:
    """Skew-symmetric matrix from 3-vector (hat operator)."""
    v = np.asarray(v, dtype=float).reshape(-1)
    return np.array([
        [0.0, -v[2], v[1]],
        [v[2], 0.0, -v[0]],
        [-v[1], v[0], 0.0],
    ], dtype=float)


def so3_exp(rotvec: np.ndarray) -> np.ndarray:
    """Rodrigues' formula, exp: so(3) -> SO(3)."""
    rotvec = np.asarray(rotvec, dtype=float).reshape(3)
    theta = float(np.linalg.norm(rotvec))
    if theta < ROTATION_EPSILON:
        return np.eye(3) + skew(rotvec)
    K = skew(rotvec / theta)
    return np.eye(3) + math.sin(theta) * K + (1.0 - math.cos(theta)) * (K @ K)


def so3_log(R: np.ndarray) -> np.ndarray:
    """log: SO(3) -> so(3), via scipy for the near-pi branch."""
    return Rotation.from_matrix(np.asarray(R, dtype=float)).as_rotvec()


def rotation_between(v_from: np.ndarray, v_to: np.ndarray) -> np.ndarray:
    """
    Minimal rotation matrix R with R @ v_from parallel to v_to.

    Anti-parallel inputs rotate by pi about an axis orthogonal to v_from.
    """
    a = np.asarray(v_from, dtype=float).reshape(3)
    b = np.asarray(v_to, dtype=float).reshape(3)
    a = a / (np.linalg.norm(a) + 1e-12)
    b = b / (np.linalg.norm(b) + 1e-12)

    axis = np.cross(a, b)
    s = float(np.linalg.norm(axis))
    c = float(np.dot(a, b))
    if s < 1e-12:
        if c > 0.0:
            return np.eye(3)
        # pick the coordinate axis least aligned with a
        helper = np.eye(3)[int(np.argmin(np.abs(a)))]
        ortho = np.cross(a, helper)
        ortho /= np.linalg.norm(ortho)
        return so3_exp(ortho * math.pi)
    return so3_exp(axis / s * math.atan2(s, c))


# =============================================================================
# Quaternions
# =============================================================================


def quat_to_rotmat(q_xyzw: np.ndarray) -> np.ndarray:
    return Rotation.from_quat(np.asarray(q_xyzw, dtype=float)).as_matrix()


def rotmat_to_quat(R: np.ndarray) -> np.ndarray:
    """Rotation matrix to unit quaternion (x, y, z, w) with w >= 0."""
    q = Rotation.from_matrix(np.asarray(R, dtype=float)).as_quat()
    return q if q[3] >= 0.0 else -q


def quat_wxyz_to_xyzw(qw: float, qx: float, qy: float, qz: float) -> np.ndarray:
    return np.array([qx, qy, qz, qw], dtype=float)


# =============================================================================
# SE(3) as 4x4 matrices
# =============================================================================


def make_transform(R: np.ndarray, t: np.ndarray) -> np.ndarray:
    T = np.eye(4, dtype=float)
    T[:3, :3] = np.asarray(R, dtype=float)
    T[:3, 3] = np.asarray(t, dtype=float).reshape(3)
    return T


def transform_inverse(T: np.ndarray) -> np.ndarray:
    """Closed-form inverse of a rigid transform."""
    R = T[:3, :3]
    t = T[:3, 3]
    return make_transform(R.T, -R.T @ t)


def transform_points(T: np.ndarray, points: np.ndarray) -> np.ndarray:
    """Apply T to (N, 3) points."""
    pts = np.asarray(points, dtype=float).reshape(-1, 3)
    return pts @ T[:3, :3].T + T[:3, 3]


def transform_to_quat_pos(T: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    return rotmat_to_quat(T[:3, :3]), T[:3, 3].copy()


# =============================================================================
# Registration
# =============================================================================


def umeyama_alignment(
    src: np.ndarray,
    dst: np.ndarray,
    with_scale: bool = True,
) -> Tuple[float, np.ndarray, np.ndarray]:
    """
    Closed-form similarity s, R, t minimising ||dst - (s R src + t)||^2.

    With with_scale=False this is the Arun/Kabsch rigid fit (s = 1).

    Args:
        src: (N, 3) source points
        dst: (N, 3) target points

    Returns:
        (scale, R (3, 3), t (3,))
    """
    src = np.asarray(src, dtype=float).reshape(-1, 3)
    dst = np.asarray(dst, dtype=float).reshape(-1, 3)
    if src.shape[0] != dst.shape[0] or src.shape[0] < 3:
        raise ValueError(f"umeyama_alignment needs >= 3 paired points, got {src.shape[0]} / {dst.shape[0]}")

    mu_src = src.mean(axis=0)
    mu_dst = dst.mean(axis=0)
    src_c = src - mu_src
    dst_c = dst - mu_dst

    cov = dst_c.T @ src_c / src.shape[0]
    U, D, Vt = np.linalg.svd(cov)
    S = np.eye(3)
    if np.linalg.det(U) * np.linalg.det(Vt) < 0.0:
        S[2, 2] = -1.0
    R = U @ S @ Vt

    if with_scale:
        var_src = float(np.mean(np.sum(src_c * src_c, axis=1)))
        scale = float(np.trace(np.diag(D) @ S) / var_src) if var_src > 0.0 else 1.0
    else:
        scale = 1.0
    t = mu_dst - scale * R @ mu_src
    return scale, R, t


def rotation_from_vector_pairs(src: np.ndarray, dst: np.ndarray) -> np.ndarray:
    """
    Rotation R minimising sum ||dst_i - R src_i||^2 without centering.

    Used for hand-eye rotation from paired rotation vectors,
    log(R_body_rel) = R_ext @ log(R_sensor_rel).
    """
    src = np.asarray(src, dtype=float).reshape(-1, 3)
    dst = np.asarray(dst, dtype=float).reshape(-1, 3)
    U, _, Vt = np.linalg.svd(dst.T @ src)
    S = np.eye(3)
    if np.linalg.det(U) * np.linalg.det(Vt) < 0.0:
        S[2, 2] = -1.0
    return U @ S @ Vt
