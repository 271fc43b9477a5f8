"""
Staged calibration solver.

One continuous-time trajectory (SplineBundle) is fitted to every sensor
stream together with the per-sensor extrinsics and time offsets held by the
CalibParamManager. Stages, each a sparse LM solve over a subset of the
parameters:

    so3_spline    gyroscope residuals         -> orientation knots, IMU rotations, gyro biases
    (gravity init from the mean rotated specific force)
    scale_spline  accelerometer residuals     -> scale knots, gravity, accel biases, IMU lever arms
    (align states to gravity)
    radar         Doppler residuals           -> radar extrinsics / time offsets
    lidar         scan-to-scan ICP residuals  -> LiDAR extrinsics / time offsets
    camera        SfM pose + reprojection     -> camera extrinsics / time offsets / landmarks
    joint         everything
    (align states to gravity)

Gauge: the first orientation knot and, for a position spline, the first
scale knot are held fixed. The reference IMU defines the body frame, so its
extrinsic and time offset are never estimated.

Parameters are addressed by block keys:
    ("so3", k), ("scale", k), ("gravity",),
    (field, topic) with field in q_ext, p_ext, to, bg, ba,
    ("lm", topic, landmark id)
"""

from __future__ import annotations

import logging
import os
import shutil
from typing import Callable, Dict, Iterable, List, Optional, Tuple

import numpy as np
from scipy.spatial.transform import Rotation

from ctcalib.calib import factors
from ctcalib.calib.data_manager import CalibDataManager
from ctcalib.calib.estimator import (
    FactorBatch,
    IterationSummary,
    LevenbergMarquardt,
    SolverOptions,
    SolverSummary,
)
from ctcalib.calib.lidar_odometry import RelativeScanPose, scan_to_scan_odometry
from ctcalib.calib.param_manager import CalibParamManager
from ctcalib.calib.spline import SplineBundle, TimeDerivType, create_spline_bundle
from ctcalib.common import constants
from ctcalib.common.param_models import CalibConfig
from ctcalib.common.status import CalibUsageError, FailureCategory, Status
from ctcalib.common.transforms.se3 import (
    make_transform,
    rotation_between,
    rotation_from_vector_pairs,
    rotmat_to_quat,
    umeyama_alignment,
)
from ctcalib.reconstruction.bridge import (
    downsample,
    find_covisible_pairs,
    perform_transform,
    store_images_for_sfm,
    try_load_sfm_data,
)
from ctcalib.reconstruction.structures import Reconstruction
from ctcalib.viewer import CalibViewer, ViewerSnapshot

_logger = logging.getLogger(__name__)

BlockKey = Tuple


def scale_type_for(config: CalibConfig) -> TimeDerivType:
    """Position if LiDAR or camera is present, else velocity if radar, else acceleration."""
    if config.is_lidar_integrated() or config.is_camera_integrated():
        return TimeDerivType.LIN_POS
    if config.is_radar_integrated():
        return TimeDerivType.LIN_VEL
    return TimeDerivType.LIN_ACCE


def _boxplus(q: np.ndarray, dphi: np.ndarray) -> np.ndarray:
    return (Rotation.from_quat(q) * Rotation.from_rotvec(dphi)).as_quat()


class ParamIndex:
    """Column layout of the free parameters of one stage."""

    def __init__(self):
        self._start: Dict[BlockKey, int] = {}
        self._size: Dict[BlockKey, int] = {}
        self.size = 0

    def add(self, key: BlockKey, size: int) -> None:
        if key in self._start:
            return
        self._start[key] = self.size
        self._size[key] = size
        self.size += size

    def __contains__(self, key: BlockKey) -> bool:
        return key in self._start

    def cols(self, key: BlockKey, size: int) -> np.ndarray:
        start = self._start.get(key)
        if start is None:
            return np.full(size, -1, dtype=np.int64)
        return np.arange(start, start + size, dtype=np.int64)

    def blocks(self) -> Iterable[Tuple[BlockKey, int, int]]:
        for key, start in self._start.items():
            yield key, start, self._size[key]


class _BatchRows:
    """Row accumulator for one FactorBatch."""

    def __init__(self, name: str, fn: Callable):
        self.name = name
        self.fn = fn
        self._data: Dict[str, list] = {}
        self._cols: List[np.ndarray] = []

    def add(self, cols: np.ndarray, **values) -> None:
        for k, v in values.items():
            self._data.setdefault(k, []).append(v)
        self._cols.append(cols)

    def finish(self) -> Optional[FactorBatch]:
        if not self._cols:
            return None
        data = {k: np.asarray(v, dtype=float) for k, v in self._data.items()}
        return FactorBatch(self.name, self.fn, data, np.stack(self._cols))


class _StageProblem:
    """Adapter between the solver state and the estimator."""

    def __init__(self, solver: "CalibSolver", index: ParamIndex, builders: List[Callable[[], Optional[FactorBatch]]]):
        self._solver = solver
        self._index = index
        self._builders = builders

    def num_params(self) -> int:
        return self._index.size

    def build_batches(self) -> List[FactorBatch]:
        batches = []
        for build in self._builders:
            batch = build()
            if batch is not None:
                batches.append(batch)
        return batches

    def apply_update(self, dx: np.ndarray) -> None:
        self._solver._apply_update(self._index, dx)

    def backup(self):
        return self._solver._backup_state()

    def restore(self, token) -> None:
        self._solver._restore_state(token)


class CalibSolver:
    """
    Calibration solver over the aligned data of a CalibDataManager.

    Args:
        config: run configuration
        data_mgr: initialized data manager (loaded, trimmed, aligned)
        param_mgr: parameters to estimate; updated in place
        viewer: optional viewer; created from preference.visualization if None
    """

    def __init__(
        self,
        config: CalibConfig,
        data_mgr: CalibDataManager,
        param_mgr: CalibParamManager,
        viewer: Optional[CalibViewer] = None,
    ):
        self._config = config
        self._data = data_mgr
        self._params = param_mgr
        self._scale_type = scale_type_for(config)
        self._rng = np.random.default_rng(config.preference.random_seed)
        self._ref_imu = config.reference_imu
        self._recs: Dict[str, Reconstruction] = {}
        self._lidar_odom: Dict[str, List[RelativeScanPose]] = {}
        self._iteration = 0

        kd = config.prior.knot_time_dist
        self._splines: SplineBundle = create_spline_bundle(
            data_mgr.calib_start_timestamp(),
            data_mgr.calib_end_timestamp(),
            kd.so3_spline,
            kd.scale_spline,
            self._scale_type,
        )
        _logger.info(
            "spline bundle over [%.3f, %.3f] s: %d so3 knot(s), %d %s knot(s)",
            self._splines.min_time, self._splines.max_time, self._splines.so3.num_knots,
            self._splines.scale.num_knots, self._scale_type.name,
        )

        self._acce_fn = factors.make_acce_factor(self._scale_type)
        self._radar_fn = factors.make_radar_factor(self._scale_type)

        self._callbacks: List[Callable[[IterationSummary], None]] = []
        self._viewer = viewer
        if self._viewer is None and config.preference.visualization:
            self._viewer = CalibViewer()
        if self._viewer is not None:
            self._viewer.start()
            self._callbacks.append(self._push_viewer_snapshot)
        if config.outputs_enabled(constants.OUTPUT_PARAM_IN_EACH_ITER):
            if self._init_epoch_output():
                self._callbacks.append(self._save_epoch_param)

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def splines(self) -> SplineBundle:
        return self._splines

    @property
    def scale_type(self) -> TimeDerivType:
        return self._scale_type

    @property
    def params(self) -> CalibParamManager:
        return self._params

    def reconstruction(self, topic: str) -> Optional[Reconstruction]:
        return self._recs.get(topic)

    # ------------------------------------------------------------------
    # Callbacks
    # ------------------------------------------------------------------

    def _epoch_info_file(self) -> str:
        return os.path.join(self._config.epoch_dir(), constants.EPOCH_INFO_FILE)

    def _init_epoch_output(self) -> bool:
        epoch_dir = self._config.epoch_dir()
        try:
            if os.path.exists(epoch_dir):
                shutil.rmtree(epoch_dir)
            os.makedirs(epoch_dir)
        except OSError as e:
            _logger.warning("create directory failed: '%s' (%s)", epoch_dir, e)
            return False
        with open(self._epoch_info_file(), "w") as f:
            f.write(constants.EPOCH_INFO_HEADER + "\n")
        return True

    def _save_epoch_param(self, summary: IterationSummary) -> None:
        filename = os.path.join(
            self._config.epoch_dir(),
            f"{constants.EPOCH_PARAM_PREFIX}{self._iteration}{self._config.format_extension()}",
        )
        self._params.save(filename, self._config.preference.output_data_format)
        with open(self._epoch_info_file(), "a") as f:
            f.write(f"{summary.cost},{summary.gradient_max_norm},{summary.trust_region_radius}\n")

    def _push_viewer_snapshot(self, summary: IterationSummary) -> None:
        landmarks = {
            topic: np.array([lm.X for lm in rec.structure.values()]).reshape(-1, 3)
            for topic, rec in self._recs.items()
        }
        self._viewer.update(ViewerSnapshot(self._iteration, self._splines.snapshot(), self._params.snapshot(), landmarks))

    def _on_iteration(self, summary: IterationSummary) -> None:
        for cb in self._callbacks:
            cb(summary)
        self._iteration += 1

    # ------------------------------------------------------------------
    # Pose queries
    # ------------------------------------------------------------------

    def cur_body_to_world(self, t: float) -> Optional[np.ndarray]:
        """T_BrToW at body time t, or None outside the spline range."""
        if self._scale_type is not TimeDerivType.LIN_POS:
            raise CalibUsageError(
                f"body pose queried while the scale spline is {self._scale_type.name}, not LIN_POS"
            )
        R = self._splines.so3.evaluate(t)
        p = self._splines.scale.evaluate(t)
        if R is None or p is None:
            return None
        return make_transform(R.as_matrix(), p)

    def cur_sensor_to_world(self, t: float, topic: str) -> Optional[np.ndarray]:
        """T_SenToW at sensor time t."""
        p = self._params.sensor(topic)
        T_body = self.cur_body_to_world(t + p.time_offset)
        if T_body is None:
            return None
        return T_body @ p.transform()

    # ------------------------------------------------------------------
    # Gravity alignment
    # ------------------------------------------------------------------

    def align_states_to_gravity(self) -> None:
        """Rotate the world frame so that gravity points along the canonical down axis."""
        g = self._params.gravity
        R = rotation_between(np.asarray(constants.GRAVITY_DOWN_DIR), g).T
        rot = Rotation.from_matrix(R)
        so3 = self._splines.so3
        so3.knots[:] = (rot * Rotation.from_quat(so3.knots)).as_quat()
        self._splines.scale.knots[:] = self._splines.scale.knots @ R.T
        with self._params.locked():
            self._params.gravity = R @ g
        for rec in self._recs.values():
            perform_transform(rec, make_transform(R, np.zeros(3)), 1.0)
        _logger.info(
            "states aligned to gravity: correction %.6f deg, gravity %s",
            np.degrees(np.linalg.norm(rot.as_rotvec())), np.round(self._params.gravity, 5).tolist(),
        )

    # ------------------------------------------------------------------
    # Checkpoints
    # ------------------------------------------------------------------

    def save_stage_calib_param(self, desc: str) -> None:
        stage_dir = self._config.stage_dir()
        try:
            os.makedirs(stage_dir, exist_ok=True)
        except OSError as e:
            _logger.warning("create directory failed: '%s' (%s)", stage_dir, e)
            return
        path = os.path.join(stage_dir, desc + self._config.format_extension())
        self._params.save(path, self._config.preference.output_data_format)

    # ------------------------------------------------------------------
    # State updates for the estimator
    # ------------------------------------------------------------------

    def _apply_update(self, index: ParamIndex, dx: np.ndarray) -> None:
        so3 = self._splines.so3.knots
        scale = self._splines.scale.knots
        with self._params.locked():
            for key, start, size in index.blocks():
                d = dx[start: start + size]
                kind = key[0]
                if kind == "so3":
                    so3[key[1]] = _boxplus(so3[key[1]], d)
                elif kind == "scale":
                    scale[key[1]] += d
                elif kind == "gravity":
                    self._params.gravity = self._params.gravity + d
                elif kind == "lm":
                    lm = self._recs[key[1]].structure[key[2]]
                    lm.X = lm.X + d
                else:
                    p = self._params.sensor(key[1])
                    if kind == "q_ext":
                        p.so3_sen_to_br = _boxplus(p.so3_sen_to_br, d)
                    elif kind == "p_ext":
                        p.pos_sen_in_br = p.pos_sen_in_br + d
                    elif kind == "to":
                        pad = self._config.prior.time_offset_padding
                        p.time_offset = float(np.clip(p.time_offset + d[0], -pad, pad))
                    elif kind == "bg":
                        p.gyro_bias = p.gyro_bias + d
                    elif kind == "ba":
                        p.acce_bias = p.acce_bias + d
                    else:
                        raise KeyError(f"unknown parameter block {key}")

    def _backup_state(self):
        landmarks = {
            topic: {lm_id: lm.X.copy() for lm_id, lm in rec.structure.items()}
            for topic, rec in self._recs.items()
        }
        return self._splines.so3.knots.copy(), self._splines.scale.knots.copy(), self._params.snapshot(), landmarks

    def _restore_state(self, token) -> None:
        so3, scale, params, landmarks = token
        self._splines.so3.knots[:] = so3
        self._splines.scale.knots[:] = scale
        self._params.assign(params)
        for topic, xs in landmarks.items():
            for lm_id, X in xs.items():
                self._recs[topic].structure[lm_id].X = X

    # ------------------------------------------------------------------
    # Parameter layouts
    # ------------------------------------------------------------------

    def _build_index(
        self,
        so3: bool = False,
        scale: bool = False,
        gravity: bool = False,
        sensors: Optional[Dict[str, Tuple[str, ...]]] = None,
        landmarks: Iterable[str] = (),
    ) -> ParamIndex:
        index = ParamIndex()
        if so3:
            for k in range(1, self._splines.so3.num_knots):
                index.add(("so3", k), 3)
        if scale:
            first = 1 if self._scale_type is TimeDerivType.LIN_POS else 0
            for k in range(first, self._splines.scale.num_knots):
                index.add(("scale", k), 3)
        if gravity:
            index.add(("gravity",), 3)
        for topic, fields in (sensors or {}).items():
            for name in fields:
                if topic == self._ref_imu and name in ("q_ext", "p_ext", "to"):
                    continue
                index.add((name, topic), 1 if name == "to" else 3)
        for topic in landmarks:
            for lm_id in self._recs[topic].structure:
                index.add(("lm", topic, lm_id), 3)
        return index

    def _so3_window(self, index: ParamIndex, tau: float):
        so3 = self._splines.so3
        idx, _ = so3.segment(tau)
        cols = np.concatenate([index.cols(("so3", idx + j), 3) for j in range(4)])
        return so3.knots[idx: idx + 4].copy(), so3.knot_time(idx), cols

    def _scale_window(self, index: ParamIndex, tau: float):
        scale = self._splines.scale
        idx, _ = scale.segment(tau)
        cols = np.concatenate([index.cols(("scale", idx + j), 3) for j in range(4)])
        return scale.knots[idx: idx + 4].copy(), scale.knot_time(idx), cols

    def _sample_usable(self, topic: str, t: float) -> bool:
        """
        Whether a sample at sensor time t is evaluated in the current stage.

        Estimated offsets move within [-pad, pad], so a sample is kept only if
        the spline covers it for every admissible offset. The residual set of
        a stage then does not depend on the offsets being estimated.
        """
        if topic == self._ref_imu:
            return self._splines.time_in_range(t + self._params.sensor(topic).time_offset)
        pad = self._config.prior.time_offset_padding
        return self._splines.time_in_range(t - pad) and self._splines.time_in_range(t + pad)

    def _ext_cols(self, index: ParamIndex, topic: str, *names: str) -> List[np.ndarray]:
        return [index.cols((name, topic), 1 if name == "to" else 3) for name in names]

    # ------------------------------------------------------------------
    # Factor batches
    # ------------------------------------------------------------------

    def _gyro_batch(self, index: ParamIndex, topic: str) -> Optional[FactorBatch]:
        p = self._params.imu[topic]
        weight = self._config.data_stream.imu_topics[topic].gyro_weight
        rows = _BatchRows("gyro", factors.gyro_factor)
        ext_cols = np.concatenate(self._ext_cols(index, topic, "q_ext", "bg", "to"))
        for frame in self._data.imu_measurements()[topic]:
            if not self._sample_usable(topic, frame.timestamp):
                continue
            tau = frame.timestamp + p.time_offset
            knots, t0, cols = self._so3_window(index, tau)
            rows.add(
                np.concatenate([cols, ext_cols]),
                so3=knots, so3_t0=t0, so3_dt=self._splines.so3.dt,
                q_ext=p.so3_sen_to_br, bg=p.gyro_bias, to=p.time_offset,
                t=frame.timestamp, gyro=frame.gyro, weight=weight,
            )
        return rows.finish()

    def _acce_batch(self, index: ParamIndex, topic: str) -> Optional[FactorBatch]:
        p = self._params.imu[topic]
        weight = self._config.data_stream.imu_topics[topic].acce_weight
        rows = _BatchRows("acce", self._acce_fn)
        ext_cols = np.concatenate(
            self._ext_cols(index, topic, "q_ext", "p_ext", "ba") + [index.cols(("gravity",), 3)]
            + self._ext_cols(index, topic, "to")
        )
        gravity = self._params.gravity
        for frame in self._data.imu_measurements()[topic]:
            if not self._sample_usable(topic, frame.timestamp):
                continue
            tau = frame.timestamp + p.time_offset
            so3_knots, so3_t0, so3_cols = self._so3_window(index, tau)
            scale_knots, scale_t0, scale_cols = self._scale_window(index, tau)
            rows.add(
                np.concatenate([so3_cols, scale_cols, ext_cols]),
                so3=so3_knots, so3_t0=so3_t0, so3_dt=self._splines.so3.dt,
                scale=scale_knots, scale_t0=scale_t0, scale_dt=self._splines.scale.dt,
                q_ext=p.so3_sen_to_br, p_ext=p.pos_sen_in_br, ba=p.acce_bias, gravity=gravity,
                to=p.time_offset, t=frame.timestamp, acce=frame.acce, weight=weight,
            )
        return rows.finish()

    def _gravity_norm_batch(self, index: ParamIndex) -> FactorBatch:
        rows = _BatchRows("gravity_norm", factors.gravity_norm_factor)
        rows.add(
            index.cols(("gravity",), 3),
            gravity=self._params.gravity, norm=self._config.prior.gravity_norm,
            weight=constants.GRAVITY_NORM_PRIOR_WEIGHT,
        )
        return rows.finish()

    def _radar_batch(self, index: ParamIndex, topic: str) -> Optional[FactorBatch]:
        p = self._params.radar[topic]
        weight = self._config.data_stream.radar_topics[topic].weight
        rows = _BatchRows("radar", self._radar_fn)
        ext_cols = np.concatenate(self._ext_cols(index, topic, "q_ext", "p_ext", "to"))
        for array in self._data.radar_measurements()[topic]:
            for target in array.targets:
                if not self._sample_usable(topic, target.timestamp):
                    continue
                tau = target.timestamp + p.time_offset
                so3_knots, so3_t0, so3_cols = self._so3_window(index, tau)
                scale_knots, scale_t0, scale_cols = self._scale_window(index, tau)
                rows.add(
                    np.concatenate([so3_cols, scale_cols, ext_cols]),
                    so3=so3_knots, so3_t0=so3_t0, so3_dt=self._splines.so3.dt,
                    scale=scale_knots, scale_t0=scale_t0, scale_dt=self._splines.scale.dt,
                    q_ext=p.so3_sen_to_br, p_ext=p.pos_sen_in_br, to=p.time_offset,
                    t=target.timestamp, direction=target.direction,
                    radial_velocity=target.radial_velocity, weight=weight,
                )
        return rows.finish()

    def _pose_window(self, index: ParamIndex, tau: float, suffix: str = ""):
        so3_knots, so3_t0, so3_cols = self._so3_window(index, tau)
        scale_knots, scale_t0, scale_cols = self._scale_window(index, tau)
        values = {
            "so3" + suffix: so3_knots, "so3_t0" + suffix: so3_t0,
            "scale" + suffix: scale_knots, "scale_t0" + suffix: scale_t0,
        }
        return values, np.concatenate([so3_cols, scale_cols])

    def _lidar_batch(self, index: ParamIndex, topic: str) -> Optional[FactorBatch]:
        p = self._params.lidar[topic]
        weight = self._config.data_stream.lidar_topics[topic].weight
        rows = _BatchRows("lidar_rel", factors.lidar_rel_factor)
        ext_cols = np.concatenate(self._ext_cols(index, topic, "q_ext", "p_ext", "to"))
        for rel in self._lidar_odom.get(topic, []):
            if not (self._sample_usable(topic, rel.t_a) and self._sample_usable(topic, rel.t_b)):
                continue
            tau_a, tau_b = rel.t_a + p.time_offset, rel.t_b + p.time_offset
            win_a, cols_a = self._pose_window(index, tau_a)
            win_b, cols_b = self._pose_window(index, tau_b, "_b")
            q_meas = rotmat_to_quat(rel.T_a_b[:3, :3])
            rows.add(
                np.concatenate([cols_a, cols_b, ext_cols]),
                so3_dt=self._splines.so3.dt, scale_dt=self._splines.scale.dt,
                q_ext=p.so3_sen_to_br, p_ext=p.pos_sen_in_br, to=p.time_offset,
                t=rel.t_a, t_b=rel.t_b, q_meas=q_meas, p_meas=rel.T_a_b[:3, 3],
                weight_rot=weight, weight_pos=weight, **win_a, **win_b,
            )
        return rows.finish()

    def _cam_pose_batch(self, index: ParamIndex, topic: str) -> Optional[FactorBatch]:
        p = self._params.camera[topic]
        weight = self._config.data_stream.camera_topics[topic].weight
        rec = self._recs[topic]
        rows = _BatchRows("cam_pose", factors.cam_pose_factor)
        ext_cols = np.concatenate(self._ext_cols(index, topic, "q_ext", "p_ext", "to"))
        for view_id, view in rec.views.items():
            if not self._sample_usable(topic, view.timestamp):
                continue
            tau = view.timestamp + p.time_offset
            T = rec.poses[view.pose_id]
            win, cols = self._pose_window(index, tau)
            rows.add(
                np.concatenate([cols, ext_cols]),
                so3_dt=self._splines.so3.dt, scale_dt=self._splines.scale.dt,
                q_ext=p.so3_sen_to_br, p_ext=p.pos_sen_in_br, to=p.time_offset,
                t=view.timestamp, q_meas=rotmat_to_quat(T[:3, :3]), p_meas=T[:3, 3],
                weight_rot=weight, weight_pos=weight, **win,
            )
        return rows.finish()

    def _reproj_observations(self, topic: str) -> List[Tuple[int, int]]:
        """(landmark id, view id) pairs in front of the camera, fixed for one stage."""
        rec = self._recs[topic]
        T_cam_cache: Dict[int, Optional[np.ndarray]] = {}
        pairs = []
        for lm_id, lm in rec.structure.items():
            for view_id in lm.obs:
                view = rec.views.get(view_id)
                if view is None or not self._sample_usable(topic, view.timestamp):
                    continue
                if view_id not in T_cam_cache:
                    T_cam_cache[view_id] = self.cur_sensor_to_world(view.timestamp, topic)
                T_cw = T_cam_cache[view_id]
                if T_cw is None:
                    continue
                depth = (T_cw[:3, :3].T @ (lm.X - T_cw[:3, 3]))[2]
                if depth >= constants.MIN_PROJECTION_DEPTH:
                    pairs.append((lm_id, view_id))
        return pairs

    def _reproj_batch(self, index: ParamIndex, topic: str, observations: List[Tuple[int, int]]) -> Optional[FactorBatch]:
        p = self._params.camera[topic]
        intri = p.intrinsics
        weight = self._config.data_stream.camera_topics[topic].weight
        rec = self._recs[topic]
        rows = _BatchRows("reproj", factors.reproj_factor)
        ext_cols = np.concatenate(self._ext_cols(index, topic, "q_ext", "p_ext", "to"))
        for lm_id, view_id in observations:
            lm = rec.structure[lm_id]
            view = rec.views[view_id]
            win, cols = self._pose_window(index, view.timestamp + p.time_offset)
            rows.add(
                np.concatenate([cols, ext_cols, index.cols(("lm", topic, lm_id), 3)]),
                so3_dt=self._splines.so3.dt, scale_dt=self._splines.scale.dt,
                q_ext=p.so3_sen_to_br, p_ext=p.pos_sen_in_br, to=p.time_offset,
                t=view.timestamp, landmark=lm.X, uv=lm.obs[view_id].x,
                fx=intri.fx, fy=intri.fy, cx=intri.cx, cy=intri.cy, weight=weight, **win,
            )
        return rows.finish()

    # ------------------------------------------------------------------
    # Optimization
    # ------------------------------------------------------------------

    def _optimize(self, desc: str, index: ParamIndex, builders) -> SolverSummary:
        _logger.info("optimization stage '%s': %d free parameter(s)", desc, index.size)
        lm = LevenbergMarquardt(SolverOptions(max_iterations=self._config.preference.max_iterations))
        lm.add_callback(self._on_iteration)
        summary = lm.solve(_StageProblem(self, index, builders))
        self._params.show_param_status()
        return summary

    def _imu_builders(self, index: ParamIndex, gyro: bool = True, acce: bool = True) -> List[Callable]:
        builders = []
        for topic in self._config.data_stream.imu_topics:
            if gyro:
                builders.append(lambda t=topic: self._gyro_batch(index, t))
            if acce:
                builders.append(lambda t=topic: self._acce_batch(index, t))
        if acce and ("gravity",) in index:
            builders.append(lambda: self._gravity_norm_batch(index))
        return builders

    def _camera_builders(self, index: ParamIndex, topics: List[str]) -> List[Callable]:
        builders = []
        for topic in topics:
            observations = self._reproj_observations(topic)
            builders.append(lambda t=topic: self._cam_pose_batch(index, t))
            builders.append(lambda t=topic, obs=observations: self._reproj_batch(index, t, obs))
        return builders

    # ------------------------------------------------------------------
    # Initialization helpers
    # ------------------------------------------------------------------

    def _init_so3_from_gyro(self) -> bool:
        frames = self._data.imu_measurements()[self._ref_imu]
        if len(frames) < 2:
            return False
        ts = np.array([f.timestamp for f in frames])
        rots = [Rotation.identity()]
        for i in range(len(frames) - 1):
            rots.append(rots[-1] * Rotation.from_rotvec(frames[i].gyro * (ts[i + 1] - ts[i])))
        so3 = self._splines.so3
        knot_times = so3.start_time + (np.arange(so3.num_knots) - 1) * so3.dt
        idx = np.clip(np.searchsorted(ts, knot_times), 0, len(ts) - 1)
        base_inv = rots[idx[0]].inv()
        so3.knots[:] = np.stack([(base_inv * rots[i]).as_quat() for i in idx])
        return True

    def _init_gravity(self) -> None:
        p = self._params.imu[self._ref_imu]
        forces = []
        for frame in self._data.imu_measurements()[self._ref_imu]:
            R = self._splines.so3.evaluate(frame.timestamp + p.time_offset)
            if R is not None:
                forces.append(R.apply(frame.acce - p.acce_bias))
        if not forces:
            return
        g = -np.mean(forces, axis=0)
        n = np.linalg.norm(g)
        if n > 0.0:
            g = g / n * self._config.prior.gravity_norm
        with self._params.locked():
            self._params.gravity = g
        _logger.info("initialized gravity: %s", np.round(g, 5).tolist())

    def _hand_eye_rotation(self, topic: str, relative: List[Tuple[float, float, np.ndarray]]) -> None:
        """Initialize a sensor rotation from paired relative rotations."""
        body_vecs, sensor_vecs = [], []
        for t_a, t_b, R_rel in relative:
            Ra = self._splines.so3.evaluate(t_a)
            Rb = self._splines.so3.evaluate(t_b)
            if Ra is None or Rb is None:
                continue
            a = (Ra.inv() * Rb).as_rotvec()
            b = Rotation.from_matrix(R_rel).as_rotvec()
            if min(np.linalg.norm(a), np.linalg.norm(b)) < constants.HAND_EYE_MIN_ROTATION_RAD:
                continue
            body_vecs.append(a)
            sensor_vecs.append(b)
        if len(body_vecs) < constants.HAND_EYE_MIN_PAIRS:
            _logger.warning("too few rotational motions to initialize the rotation of '%s'", topic)
            return
        R = rotation_from_vector_pairs(np.array(sensor_vecs), np.array(body_vecs))
        with self._params.locked():
            self._params.sensor(topic).so3_sen_to_br = rotmat_to_quat(R)

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _all_imu_fields(self, *names: str) -> Dict[str, Tuple[str, ...]]:
        return {topic: names for topic in self._config.data_stream.imu_topics}

    def _stage_so3(self) -> Status:
        if not self._init_so3_from_gyro():
            return Status.fatal(f"too few samples of reference IMU '{self._ref_imu}'", FailureCategory.DATA)
        index = self._build_index(so3=True, sensors=self._all_imu_fields("q_ext", "bg", "to"))
        self._optimize("so3_spline", index, self._imu_builders(index, gyro=True, acce=False))
        return Status.ok()

    def _stage_scale(self) -> Status:
        self._init_gravity()
        index = self._build_index(scale=True, gravity=True, sensors=self._all_imu_fields("p_ext", "ba"))
        self._optimize("scale_spline", index, self._imu_builders(index, gyro=False, acce=True))
        return Status.ok()

    def _stage_radar(self) -> Status:
        topics = list(self._config.data_stream.radar_topics)
        index = self._build_index(sensors={t: ("q_ext", "p_ext", "to") for t in topics})
        builders = [lambda t=t: self._radar_batch(index, t) for t in topics]
        self._optimize("radar", index, builders)
        return Status.ok()

    def _stage_lidar(self) -> Status:
        topics = list(self._config.data_stream.lidar_topics)
        for topic in topics:
            self._lidar_odom[topic] = scan_to_scan_odometry(
                self._data.lidar_measurements()[topic], seed=self._config.preference.random_seed
            )
            self._hand_eye_rotation(topic, [(r.t_a, r.t_b, r.T_a_b[:3, :3]) for r in self._lidar_odom[topic]])
        index = self._build_index(sensors={t: ("q_ext", "p_ext", "to") for t in topics})
        builders = [lambda t=t: self._lidar_batch(index, t) for t in topics]
        self._optimize("lidar", index, builders)
        return Status.ok()

    def _align_reconstruction(self, topic: str, rec: Reconstruction) -> bool:
        """Similarity-align a reconstruction to the trajectory and seed the camera extrinsic."""
        p = self._params.camera[topic]
        src, dst = [], []
        for view in rec.views.values():
            T_body = self.cur_body_to_world(view.timestamp + p.time_offset)
            if T_body is None:
                continue
            src.append(rec.poses[view.pose_id][:3, 3])
            dst.append(T_body[:3, 3])
        if len(src) < 3:
            _logger.warning("too few reconstructed views of '%s' inside the trajectory", topic)
            return False
        s, R, t = umeyama_alignment(np.array(src), np.array(dst), with_scale=True)
        perform_transform(rec, make_transform(R, t), s)
        _logger.info("SfM of '%s' aligned to the trajectory with scale %.6f", topic, s)

        rots, lever = [], []
        for view in rec.views.values():
            T_body = self.cur_body_to_world(view.timestamp + p.time_offset)
            if T_body is None:
                continue
            T_cam = rec.poses[view.pose_id]
            rots.append(T_body[:3, :3].T @ T_cam[:3, :3])
            lever.append(T_body[:3, :3].T @ (T_cam[:3, 3] - T_body[:3, 3]))
        with self._params.locked():
            p.so3_sen_to_br = rotmat_to_quat(Rotation.from_matrix(np.array(rots)).mean().as_matrix())
            p.pos_sen_in_br = np.mean(lever, axis=0)
        return True

    def _stage_camera(self) -> Status:
        prior = self._config.prior
        solved = []
        for topic in self._config.data_stream.camera_topics:
            frames = self._data.camera_measurements()[topic]
            intri = self._params.camera[topic].intrinsics
            rec = try_load_sfm_data(
                self._config, topic, frames, intri, prior.sfm_reproj_error_thd, prior.sfm_track_len_thd
            )
            if rec is None:
                pairs = find_covisible_pairs(frames, intri)
                store_images_for_sfm(self._config, topic, frames, intri, pairs)
                _logger.warning(
                    "no SfM reconstruction for camera '%s'; run the commands in '%s' and calibrate again",
                    topic, os.path.join(self._config.sfm_workspace(topic), constants.SFM_COMMAND_FILE),
                )
                continue
            downsample(rec, prior.landmark_num_thd, prior.observation_num_thd, self._rng)
            self._recs[topic] = rec
            if not self._align_reconstruction(topic, rec):
                del self._recs[topic]
                continue
            solved.append(topic)

        if not solved:
            return Status.warning("no camera could be included in the calibration")
        index = self._build_index(
            so3=True, scale=True,
            sensors={t: ("q_ext", "p_ext", "to") for t in solved},
            landmarks=solved,
        )
        builders = self._imu_builders(index, gyro=True, acce=True) + self._camera_builders(index, solved)
        self._optimize("camera", index, builders)
        return Status.ok()

    def _stage_joint(self) -> Status:
        ds = self._config.data_stream
        sensors = self._all_imu_fields("q_ext", "p_ext", "to", "bg", "ba")
        for topic in ds.radar_topics:
            sensors[topic] = ("q_ext", "p_ext", "to")
        for topic in ds.lidar_topics:
            sensors[topic] = ("q_ext", "p_ext", "to")
        for topic in self._recs:
            sensors[topic] = ("q_ext", "p_ext", "to")
        index = self._build_index(so3=True, scale=True, gravity=True, sensors=sensors, landmarks=list(self._recs))

        builders = self._imu_builders(index, gyro=True, acce=True)
        for topic in ds.radar_topics:
            builders.append(lambda t=topic: self._radar_batch(index, t))
        for topic in ds.lidar_topics:
            builders.append(lambda t=topic: self._lidar_batch(index, t))
        builders += self._camera_builders(index, list(self._recs))
        self._optimize("joint", index, builders)
        return Status.ok()

    def process(self) -> Status:
        """Run every stage in order; stops at the first fatal status."""
        stages = [("so3_spline", self._stage_so3), ("scale_spline", self._stage_scale)]
        if self._config.is_radar_integrated():
            stages.append(("radar", self._stage_radar))
        if self._config.is_lidar_integrated():
            stages.append(("lidar", self._stage_lidar))
        if self._config.is_camera_integrated():
            stages.append(("camera", self._stage_camera))
        stages.append(("joint", self._stage_joint))

        result = Status.ok()
        for desc, stage in stages:
            status = stage()
            if status.is_fatal:
                return status
            if not status.is_ok:
                _logger.warning("stage '%s': %s", desc, status.what)
                result = status
            if desc in ("scale_spline", "joint"):
                self.align_states_to_gravity()
            self.save_stage_calib_param(desc)
        return result

    def close(self) -> None:
        """Stop the viewer and wait until it is inactive."""
        if self._viewer is None:
            return
        self._viewer.quit()
        while self._viewer.is_active():
            self._viewer.join(timeout=0.1)
        self._viewer = None
