"""
Rerun viewer for a running calibration.

The solver never touches rerun directly. After every iteration it hands an
immutable ViewerSnapshot to CalibViewer.update(); a daemon thread drains the
(bounded) queue and logs:

    ctcalib/trajectory         spline positions as LineStrips3D
    ctcalib/body               current body pose as Transform3D
    ctcalib/body/<topic>       sensor extrinsics as Transform3D
    ctcalib/landmarks/<topic>  SfM landmarks as Points3D

Only the newest snapshot matters, so a full queue drops the stale one.
"""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass, field
from typing import Dict, Optional

import numpy as np

from ctcalib.calib.param_manager import CalibParamManager
from ctcalib.calib.spline import SplineBundle, TimeDerivType

_logger = logging.getLogger(__name__)

_TRAJECTORY_SAMPLE_DT = 0.05


def _ensure_rerun():
    """Lazy import so a headless run never loads the viewer stack."""
    try:
        import rerun as rr
        return rr
    except ImportError:
        _logger.warning("rerun is not importable; visualization disabled")
        return None


def _set_rerun_time(rr, iteration: int) -> None:
    """Set the 'iteration' timeline across rerun API versions."""
    if hasattr(rr, "set_time_sequence"):
        rr.set_time_sequence("iteration", iteration)
    else:
        rr.set_time("iteration", sequence=iteration)


@dataclass
class ViewerSnapshot:
    iteration: int
    splines: SplineBundle
    params: CalibParamManager
    landmarks: Dict[str, np.ndarray] = field(default_factory=dict)  # topic -> (N, 3)


_QUIT = object()


class CalibViewer:
    """Background rerun logger fed by message passing."""

    def __init__(self, application_id: str = "ctcalib", spawn: bool = True, recording_path: Optional[str] = None):
        self._application_id = application_id
        self._spawn = spawn
        self._recording_path = recording_path
        self._queue: "queue.Queue" = queue.Queue(maxsize=1)
        self._thread: Optional[threading.Thread] = None
        self._rr = None

    def start(self) -> bool:
        """Initialize rerun and start the logging thread. Returns True if active."""
        if self._thread is not None:
            return self.is_active()
        rr = _ensure_rerun()
        if rr is None:
            return False
        self._rr = rr
        rr.init(application_id=self._application_id, spawn=self._spawn)
        if self._recording_path and not self._spawn:
            rr.save(self._recording_path)
        self._thread = threading.Thread(target=self._run, name="ctcalib-viewer", daemon=True)
        self._thread.start()
        return True

    def update(self, snapshot: ViewerSnapshot) -> None:
        if not self.is_active():
            return
        try:
            self._queue.put_nowait(snapshot)
        except queue.Full:
            try:
                self._queue.get_nowait()
            except queue.Empty:
                pass
            self._queue.put_nowait(snapshot)

    def quit(self) -> None:
        if self._thread is None:
            return
        while True:
            try:
                self._queue.put_nowait(_QUIT)
                return
            except queue.Full:
                try:
                    self._queue.get_nowait()
                except queue.Empty:
                    pass

    def is_active(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    # ------------------------------------------------------------------
    # Viewer thread
    # ------------------------------------------------------------------

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            if item is _QUIT:
                break
            self._log_snapshot(item)

    def _log_snapshot(self, snap: ViewerSnapshot) -> None:
        rr = self._rr
        _set_rerun_time(rr, snap.iteration)
        splines = snap.splines

        if splines.scale_type is TimeDerivType.LIN_POS:
            times = np.arange(splines.min_time, splines.max_time, _TRAJECTORY_SAMPLE_DT)
            positions = [splines.scale.evaluate(t) for t in times]
            positions = np.array([p for p in positions if p is not None], dtype=np.float32).reshape(-1, 3)
            rr.log("ctcalib/trajectory", rr.LineStrips3D([positions]))
            R_end = splines.so3.evaluate(splines.max_time)
            p_end = splines.scale.evaluate(splines.max_time)
            if R_end is not None and p_end is not None:
                rr.log("ctcalib/body", rr.Transform3D(translation=p_end, mat3x3=R_end.as_matrix()))

        for group in (snap.params.imu, snap.params.lidar, snap.params.camera, snap.params.radar):
            for topic, p in group.items():
                T = p.transform()
                rr.log(f"ctcalib/body/{topic.strip('/')}", rr.Transform3D(translation=T[:3, 3], mat3x3=T[:3, :3]))

        for topic, pts in snap.landmarks.items():
            rr.log(f"ctcalib/landmarks/{topic.strip('/')}", rr.Points3D(positions=np.asarray(pts, dtype=np.float32)))
