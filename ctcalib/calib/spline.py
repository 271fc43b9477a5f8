"""
Continuous-time trajectory model: uniform cubic B-splines on SO(3) and R^3.

Two splines share one time axis:
    so3   : orientation of the body frame in the world, R_BrToW(t)
    scale : R^3 knots meaning position, velocity or acceleration of the body
            origin in the world, chosen once by sensor-suite observability

Both use the cumulative form of the uniform cubic B-spline. For a query time
t in segment i with normalized time u in [0, 1]:

    p(t) = sum_j B_j(u) c_{i+j}                                  (R^3)
    R(t) = R_i * prod_{j=1..3} Exp(Bc_j(u) * Log(R_{i+j-1}^-1 R_{i+j}))   (SO(3))

where Bc_j(u) = sum_{k>=j} B_k(u) are the cumulative basis functions.

Evaluation strictly outside [min_time, max_time] returns None; there is no
extrapolation. Callers check availability before using a sample.

References:
- Sommer et al. (2020): Efficient derivative computation for cumulative B-splines on Lie groups
"""

from __future__ import annotations

import copy
import enum
import math
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
from scipy.spatial.transform import Rotation

from ctcalib.common.constants import SPLINE_ORDER, TIME_RANGE_EPSILON

# Uniform cubic B-spline blending matrix: weights = [1, u, u^2, u^3] @ BLENDING
BLENDING = np.array([
    [1.0, 4.0, 1.0, 0.0],
    [-3.0, 0.0, 3.0, 0.0],
    [3.0, -6.0, 3.0, 0.0],
    [-1.0, 3.0, -3.0, 1.0],
]) / 6.0


class TimeDerivType(enum.Enum):
    """Physical meaning of the scale spline."""

    LIN_POS = 0
    LIN_VEL = 1
    LIN_ACCE = 2


def _power_basis(u: float, derivative: int) -> np.ndarray:
    if derivative == 0:
        return np.array([1.0, u, u * u, u * u * u])
    if derivative == 1:
        return np.array([0.0, 1.0, 2.0 * u, 3.0 * u * u])
    if derivative == 2:
        return np.array([0.0, 0.0, 2.0, 6.0 * u])
    raise ValueError(f"derivative order {derivative} not supported")


def basis_weights(u: float, derivative: int = 0) -> np.ndarray:
    """Weights of the 4 control points of a segment (derivatives w.r.t. u)."""
    return _power_basis(u, derivative) @ BLENDING


def cumulative_weights(u: float, derivative: int = 0) -> np.ndarray:
    w = basis_weights(u, derivative)
    return np.cumsum(w[::-1])[::-1]


class _UniformSpline:
    """Knot bookkeeping shared by both splines."""

    def __init__(self, start_time: float, dt: float, knots: np.ndarray):
        if dt <= 0.0:
            raise ValueError(f"knot spacing must be positive, got {dt}")
        if knots.shape[0] < SPLINE_ORDER:
            raise ValueError(f"a cubic spline needs >= {SPLINE_ORDER} knots, got {knots.shape[0]}")
        self.start_time = float(start_time)
        self.dt = float(dt)
        self.knots = knots

    @property
    def num_knots(self) -> int:
        return int(self.knots.shape[0])

    @property
    def min_time(self) -> float:
        return self.start_time

    @property
    def max_time(self) -> float:
        return self.start_time + (self.num_knots - SPLINE_ORDER + 1) * self.dt

    def time_in_range(self, t: float) -> bool:
        return self.min_time - TIME_RANGE_EPSILON <= t <= self.max_time + TIME_RANGE_EPSILON

    def segment(self, t: float) -> Tuple[int, float]:
        """(first control point index, normalized time u) for t; caller checks range."""
        s = (t - self.start_time) / self.dt
        idx = int(math.floor(s))
        idx = min(max(idx, 0), self.num_knots - SPLINE_ORDER)
        return idx, s - idx

    def knot_time(self, k: int) -> float:
        return self.start_time + k * self.dt


class RdSpline(_UniformSpline):
    """Uniform cubic B-spline in R^3."""

    def evaluate(self, t: float, derivative: int = 0) -> Optional[np.ndarray]:
        if not self.time_in_range(t):
            return None
        idx, u = self.segment(t)
        w = basis_weights(u, derivative) / (self.dt ** derivative)
        return w @ self.knots[idx: idx + SPLINE_ORDER]

    def velocity(self, t: float) -> Optional[np.ndarray]:
        return self.evaluate(t, 1)

    def acceleration(self, t: float) -> Optional[np.ndarray]:
        return self.evaluate(t, 2)


class So3Spline(_UniformSpline):
    """Uniform cumulative cubic B-spline on SO(3); knots are (x, y, z, w) quaternions."""

    def _deltas(self, idx: int) -> np.ndarray:
        rots = Rotation.from_quat(self.knots[idx: idx + SPLINE_ORDER])
        return np.stack([(rots[j - 1].inv() * rots[j]).as_rotvec() for j in range(1, SPLINE_ORDER)])

    def evaluate(self, t: float) -> Optional[Rotation]:
        if not self.time_in_range(t):
            return None
        idx, u = self.segment(t)
        cw = cumulative_weights(u)
        d = self._deltas(idx)
        R = Rotation.from_quat(self.knots[idx])
        for j in range(1, SPLINE_ORDER):
            R = R * Rotation.from_rotvec(cw[j] * d[j - 1])
        return R

    def velocity(self, t: float) -> Optional[np.ndarray]:
        """Angular velocity in the body frame (rad/s)."""
        if not self.time_in_range(t):
            return None
        idx, u = self.segment(t)
        cw = cumulative_weights(u)
        dcw = cumulative_weights(u, 1) / self.dt
        d = self._deltas(idx)
        omega = np.zeros(3)
        for j in range(1, SPLINE_ORDER):
            A = Rotation.from_rotvec(cw[j] * d[j - 1])
            omega = A.inv().apply(omega) + dcw[j] * d[j - 1]
        return omega


@dataclass
class SplineBundle:
    so3: So3Spline
    scale: RdSpline
    scale_type: TimeDerivType

    def snapshot(self) -> "SplineBundle":
        """Deep copy, safe to hand to another thread."""
        return copy.deepcopy(self)

    @property
    def min_time(self) -> float:
        return max(self.so3.min_time, self.scale.min_time)

    @property
    def max_time(self) -> float:
        return min(self.so3.max_time, self.scale.max_time)

    def time_in_range(self, t: float) -> bool:
        return self.so3.time_in_range(t) and self.scale.time_in_range(t)


def knot_count(st: float, et: float, dt: float) -> int:
    return int(math.floor((et - st) / dt)) + SPLINE_ORDER


def create_spline_bundle(
    st: float,
    et: float,
    so3_dt: float,
    scale_dt: float,
    scale_type: TimeDerivType,
) -> SplineBundle:
    """Identity orientation knots and zero scale knots covering [st, et]."""
    if et <= st:
        raise ValueError(f"invalid spline time range [{st}, {et}]")
    n_so3 = knot_count(st, et, so3_dt)
    n_scale = knot_count(st, et, scale_dt)
    so3_knots = np.tile(np.array([0.0, 0.0, 0.0, 1.0]), (n_so3, 1))
    scale_knots = np.zeros((n_scale, 3))
    return SplineBundle(
        so3=So3Spline(st, so3_dt, so3_knots),
        scale=RdSpline(st, scale_dt, scale_knots),
        scale_type=scale_type,
    )
