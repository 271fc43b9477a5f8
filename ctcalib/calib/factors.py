"""
Residual functions for the batch estimator (JAX).

Every factor has the signature fn(x, d) -> residual where
    x : flat vector of LOCAL perturbations (all zeros at the linearization point)
    d : dict of per-measurement constants, including the current values of
        every parameter the factor touches

Perturbations are applied on the right for rotations, q <- q * Exp(dx), and
additively for vectors and time offsets. The estimator vmaps fn over
measurements and takes jacfwd w.r.t. x at zero, so the Jacobian is always in
the same local coordinates as the update the estimator applies.

Spline windows: a measurement at body time tau touches 4 consecutive knots.
d["so3_t0"] / d["scale_t0"] hold the time of the window's first knot, so the
normalized segment time is u = (tau - t0) / dt and stays differentiable in
the time offset.

Quaternions are (x, y, z, w).
"""

from __future__ import annotations

from typing import Callable, Dict, Tuple

from ctcalib.common.jax_init import jax, jnp
from ctcalib.calib.spline import BLENDING, TimeDerivType

_BLEND = jnp.asarray(BLENDING)
_SMALL_SQ = 1e-16

# local layout sizes
SO3_WIN = 12
SCALE_WIN = 12


# =============================================================================
# Quaternion algebra
# =============================================================================


def quat_mul(a, b):
    ax, ay, az, aw = a[0], a[1], a[2], a[3]
    bx, by, bz, bw = b[0], b[1], b[2], b[3]
    return jnp.stack([
        aw * bx + ax * bw + ay * bz - az * by,
        aw * by - ax * bz + ay * bw + az * bx,
        aw * bz + ax * by - ay * bx + az * bw,
        aw * bw - ax * bx - ay * by - az * bz,
    ])


def quat_conj(q):
    return jnp.concatenate([-q[:3], q[3:]])


def quat_exp(phi):
    """Rotation vector -> unit quaternion, smooth through phi = 0."""
    theta_sq = jnp.dot(phi, phi)
    small = theta_sq < _SMALL_SQ
    theta = jnp.sqrt(jnp.where(small, 1.0, theta_sq))
    half = 0.5 * theta
    k = jnp.where(small, 0.5 - theta_sq / 48.0, jnp.sin(half) / theta)
    w = jnp.where(small, 1.0 - theta_sq / 8.0, jnp.cos(half))
    return jnp.concatenate([k * phi, w[None]])


def quat_log(q):
    """Unit quaternion -> rotation vector (shortest arc), smooth through identity."""
    sign = jnp.where(q[3] < 0.0, -1.0, 1.0)
    v = sign * q[:3]
    w = sign * q[3]
    n_sq = jnp.dot(v, v)
    small = n_sq < _SMALL_SQ
    n = jnp.sqrt(jnp.where(small, 1.0, n_sq))
    scale = jnp.where(small, 2.0 / w - (2.0 / 3.0) * n_sq / (w * w * w), 2.0 * jnp.arctan2(n, w) / n)
    return scale * v


def quat_to_rotmat(q):
    x, y, z, w = q[0], q[1], q[2], q[3]
    return jnp.array([
        [1.0 - 2.0 * (y * y + z * z), 2.0 * (x * y - w * z), 2.0 * (x * z + w * y)],
        [2.0 * (x * y + w * z), 1.0 - 2.0 * (x * x + z * z), 2.0 * (y * z - w * x)],
        [2.0 * (x * z - w * y), 2.0 * (y * z + w * x), 1.0 - 2.0 * (x * x + y * y)],
    ])


def boxplus(q, dphi):
    return quat_mul(q, quat_exp(dphi))


# =============================================================================
# Spline evaluation on a 4-knot window
# =============================================================================


def _powers(u):
    return jnp.stack([jnp.ones_like(u), u, u * u, u * u * u])


def _cum_weights(u):
    w = _powers(u) @ _BLEND
    return jnp.cumsum(w[::-1])[::-1]


def so3_window_quat(knots, u):
    """Orientation on a window of 4 quaternion knots at normalized time u."""
    cw = _cum_weights(u)
    q = knots[0]
    for j in range(1, 4):
        d = quat_log(quat_mul(quat_conj(knots[j - 1]), knots[j]))
        q = quat_mul(q, quat_exp(cw[j] * d))
    return q


def so3_window_kinematics(knots, u, dt):
    """(q, omega_body, alpha_body) on a window; derivatives are w.r.t. time."""

    def omega_of(uu):
        q, dq = jax.jvp(lambda s: so3_window_quat(knots, s), (uu,), (jnp.ones_like(uu),))
        return 2.0 * quat_mul(quat_conj(q), dq)[:3] / dt

    q = so3_window_quat(knots, u)
    omega, domega = jax.jvp(omega_of, (u,), (jnp.ones_like(u),))
    return q, omega, domega / dt


def rd_window_value(knots, u, dt, derivative: int):
    """Value or time derivative of an R^3 spline window."""
    f = lambda s: _powers(s) @ _BLEND @ knots  # noqa: E731
    if derivative == 0:
        return f(u)
    one = jnp.ones_like(u)
    if derivative == 1:
        return jax.jvp(f, (u,), (one,))[1] / dt
    df = lambda s: jax.jvp(f, (s,), (one,))[1]  # noqa: E731
    return jax.jvp(df, (u,), (one,))[1] / (dt * dt)


def _so3_knots(x, off, d, key="so3"):
    deltas = x[off: off + SO3_WIN].reshape(4, 3)
    base = d[key]
    return jnp.stack([boxplus(base[j], deltas[j]) for j in range(4)])


def _scale_knots(x, off, d, key="scale"):
    return d[key] + x[off: off + SCALE_WIN].reshape(4, 3)


def _body_state(x, d, tau, scale_type: TimeDerivType, want: str, so3_key="so3", scale_key="scale",
                so3_t0="so3_t0", scale_t0="scale_t0", so3_off=0, scale_off=SO3_WIN):
    """Body kinematics at body time tau from the perturbed spline windows."""
    so3 = _so3_knots(x, so3_off, d, so3_key)
    scale = _scale_knots(x, scale_off, d, scale_key)
    u_r = (tau - d[so3_t0]) / d["so3_dt"]
    u_s = (tau - d[scale_t0]) / d["scale_dt"]
    q, omega, alpha = so3_window_kinematics(so3, u_r, d["so3_dt"])

    order = {TimeDerivType.LIN_POS: 0, TimeDerivType.LIN_VEL: 1, TimeDerivType.LIN_ACCE: 2}[scale_type]
    target = {"pos": 0, "vel": 1, "acce": 2}[want]
    if target < order:
        raise ValueError(f"cannot recover '{want}' from a {scale_type.name} scale spline")
    lin = rd_window_value(scale, u_s, d["scale_dt"], target - order)
    return q, omega, alpha, lin


# =============================================================================
# Factors
# =============================================================================
# Local layouts (offsets into x) are listed in LAYOUTS and shared with the
# solver, which builds the matching column index arrays.

LAYOUTS: Dict[str, Tuple[Tuple[str, int], ...]] = {
    "gyro": (("so3", SO3_WIN), ("q_ext", 3), ("bg", 3), ("to", 1)),
    "acce": (("so3", SO3_WIN), ("scale", SCALE_WIN), ("q_ext", 3), ("p_ext", 3), ("ba", 3), ("gravity", 3), ("to", 1)),
    "radar": (("so3", SO3_WIN), ("scale", SCALE_WIN), ("q_ext", 3), ("p_ext", 3), ("to", 1)),
    "cam_pose": (("so3", SO3_WIN), ("scale", SCALE_WIN), ("q_ext", 3), ("p_ext", 3), ("to", 1)),
    "reproj": (("so3", SO3_WIN), ("scale", SCALE_WIN), ("q_ext", 3), ("p_ext", 3), ("to", 1), ("landmark", 3)),
    "lidar_rel": (
        ("so3", SO3_WIN), ("scale", SCALE_WIN), ("so3_b", SO3_WIN), ("scale_b", SCALE_WIN),
        ("q_ext", 3), ("p_ext", 3), ("to", 1),
    ),
    "gravity_norm": (("gravity", 3),),
}


def layout_offsets(name: str) -> Dict[str, int]:
    offsets, off = {}, 0
    for key, size in LAYOUTS[name]:
        offsets[key] = off
        off += size
    return offsets


def layout_size(name: str) -> int:
    return sum(size for _, size in LAYOUTS[name])


def gyro_factor(x, d):
    o = layout_offsets("gyro")
    to = d["to"] + x[o["to"]]
    so3 = _so3_knots(x, o["so3"], d)
    u = (d["t"] + to - d["so3_t0"]) / d["so3_dt"]
    _, omega, _ = so3_window_kinematics(so3, u, d["so3_dt"])
    R_ext = quat_to_rotmat(boxplus(d["q_ext"], x[o["q_ext"]: o["q_ext"] + 3]))
    bg = d["bg"] + x[o["bg"]: o["bg"] + 3]
    return d["weight"] * (R_ext.T @ omega + bg - d["gyro"])


def make_acce_factor(scale_type: TimeDerivType) -> Callable:
    o = layout_offsets("acce")

    def acce_factor(x, d):
        to = d["to"] + x[o["to"]]
        q, omega, alpha, a_w = _body_state(x, d, d["t"] + to, scale_type, "acce")
        R = quat_to_rotmat(q)
        R_ext = quat_to_rotmat(boxplus(d["q_ext"], x[o["q_ext"]: o["q_ext"] + 3]))
        p_ext = d["p_ext"] + x[o["p_ext"]: o["p_ext"] + 3]
        ba = d["ba"] + x[o["ba"]: o["ba"] + 3]
        g = d["gravity"] + x[o["gravity"]: o["gravity"] + 3]
        lever = jnp.cross(alpha, p_ext) + jnp.cross(omega, jnp.cross(omega, p_ext))
        a_imu_w = a_w + R @ lever
        f_imu = R_ext.T @ (R.T @ (a_imu_w - g))
        return d["weight"] * (f_imu + ba - d["acce"])

    return acce_factor


def make_radar_factor(scale_type: TimeDerivType) -> Callable:
    o = layout_offsets("radar")

    def radar_factor(x, d):
        to = d["to"] + x[o["to"]]
        q, omega, _, v_w = _body_state(x, d, d["t"] + to, scale_type, "vel")
        R = quat_to_rotmat(q)
        R_ext = quat_to_rotmat(boxplus(d["q_ext"], x[o["q_ext"]: o["q_ext"] + 3]))
        p_ext = d["p_ext"] + x[o["p_ext"]: o["p_ext"] + 3]
        v_radar_w = v_w + R @ jnp.cross(omega, p_ext)
        v_radar = R_ext.T @ (R.T @ v_radar_w)
        pred = -jnp.dot(d["direction"], v_radar)
        return d["weight"] * jnp.atleast_1d(pred - d["radial_velocity"])

    return radar_factor


def _sensor_pose(x, d, o, tau, so3_key="so3", scale_key="scale", so3_t0="so3_t0", scale_t0="scale_t0",
                 so3_off_key="so3", scale_off_key="scale"):
    q, _, _, p_w = _body_state(
        x, d, tau, TimeDerivType.LIN_POS, "pos",
        so3_key=so3_key, scale_key=scale_key, so3_t0=so3_t0, scale_t0=scale_t0,
        so3_off=o[so3_off_key], scale_off=o[scale_off_key],
    )
    q_ext = boxplus(d["q_ext"], x[o["q_ext"]: o["q_ext"] + 3])
    p_ext = d["p_ext"] + x[o["p_ext"]: o["p_ext"] + 3]
    q_sen_w = quat_mul(q, q_ext)
    p_sen_w = quat_to_rotmat(q) @ p_ext + p_w
    return q_sen_w, p_sen_w


def cam_pose_factor(x, d):
    o = layout_offsets("cam_pose")
    to = d["to"] + x[o["to"]]
    q_pred, p_pred = _sensor_pose(x, d, o, d["t"] + to)
    r_rot = quat_log(quat_mul(quat_conj(d["q_meas"]), q_pred))
    return jnp.concatenate([d["weight_rot"] * r_rot, d["weight_pos"] * (p_pred - d["p_meas"])])


def reproj_factor(x, d):
    o = layout_offsets("reproj")
    to = d["to"] + x[o["to"]]
    q_cw, p_cw = _sensor_pose(x, d, o, d["t"] + to)
    lm = d["landmark"] + x[o["landmark"]: o["landmark"] + 3]
    p_c = quat_to_rotmat(q_cw).T @ (lm - p_cw)
    z = p_c[2]
    uv = jnp.stack([d["fx"] * p_c[0] / z + d["cx"], d["fy"] * p_c[1] / z + d["cy"]])
    return d["weight"] * (uv - d["uv"])


def lidar_rel_factor(x, d):
    o = layout_offsets("lidar_rel")
    to = d["to"] + x[o["to"]]
    q_a, p_a = _sensor_pose(x, d, o, d["t"] + to)
    q_b, p_b = _sensor_pose(
        x, d, o, d["t_b"] + to, so3_key="so3_b", scale_key="scale_b", so3_t0="so3_t0_b",
        scale_t0="scale_t0_b", so3_off_key="so3_b", scale_off_key="scale_b",
    )
    q_rel = quat_mul(quat_conj(q_a), q_b)
    p_rel = quat_to_rotmat(q_a).T @ (p_b - p_a)
    r_rot = quat_log(quat_mul(quat_conj(d["q_meas"]), q_rel))
    return jnp.concatenate([d["weight_rot"] * r_rot, d["weight_pos"] * (p_rel - d["p_meas"])])


def gravity_norm_factor(x, d):
    g = d["gravity"] + x[0:3]
    return d["weight"] * jnp.atleast_1d(jnp.linalg.norm(g) - d["norm"])
