"""
Tests for point-to-point ICP and scan-to-scan LiDAR odometry.
"""

import numpy as np
from scipy.spatial.transform import Rotation

from ctcalib.calib.lidar_odometry import icp_3d, scan_to_scan_odometry
from ctcalib.common.transforms.se3 import make_transform, transform_inverse, transform_points
from ctcalib.sensors.frames import LiDARFrame


def _small_motion(yaw_deg=2.0, t=(0.1, -0.05, 0.02)):
    R = Rotation.from_euler("z", yaw_deg, degrees=True).as_matrix()
    return make_transform(R, np.asarray(t))


def _scan(t, points):
    return LiDARFrame(timestamp=t, points=points, point_times=np.full(len(points), t))


class TestICP:
    """ICP on a synthetic cloud with exact correspondences."""

    def test_recovers_known_transform(self, small_pointcloud):
        T_true = _small_motion()
        target = transform_points(T_true, small_pointcloud)
        res = icp_3d(small_pointcloud, target)

        assert res.converged
        assert np.allclose(res.transform, T_true, atol=1e-6)
        assert res.mse < 1e-10
        assert res.inliers == len(small_pointcloud)

    def test_initial_guess_used(self, small_pointcloud):
        T_true = _small_motion(yaw_deg=1.0)
        target = transform_points(T_true, small_pointcloud)
        res = icp_3d(small_pointcloud, target, init=T_true)
        assert res.converged
        assert res.iterations <= 3

    def test_disjoint_clouds_do_not_converge(self, small_pointcloud):
        target = small_pointcloud + np.array([100.0, 0.0, 0.0])
        res = icp_3d(small_pointcloud, target)
        assert not res.converged
        assert res.inliers < 6


class TestScanToScan:
    """Relative poses between consecutive scans."""

    def test_relative_poses(self, small_pointcloud):
        T = _small_motion()
        scans = [_scan(0.0, small_pointcloud)]
        for k in range(1, 3):
            # scan k seen from a sensor that moved by T since scan k-1
            scans.append(_scan(0.1 * k, transform_points(transform_inverse(T), scans[-1].points)))

        rel = scan_to_scan_odometry(scans, max_points=len(small_pointcloud))
        assert len(rel) == 2
        for k, pose in enumerate(rel):
            assert pose.t_a == scans[k].timestamp
            assert pose.t_b == scans[k + 1].timestamp
            assert np.allclose(pose.T_a_b, T, atol=1e-6)

    def test_unregistered_pairs_dropped(self, small_pointcloud):
        scans = [_scan(0.0, small_pointcloud), _scan(0.1, small_pointcloud + 100.0)]
        assert scan_to_scan_odometry(scans) == []
