"""
COLMAP text model I/O (cameras.txt, images.txt, points3D.txt).

Format (https://colmap.github.io/format.html):

    cameras.txt   CAMERA_ID MODEL WIDTH HEIGHT PARAMS[]
    images.txt    IMAGE_ID QW QX QY QZ TX TY TZ CAMERA_ID NAME
                  POINTS2D[] as (X, Y, POINT3D_ID)        <- second line, may be empty
    points3D.txt  POINT3D_ID X Y Z R G B ERROR TRACK[] as (IMAGE_ID, POINT2D_IDX)

Lines starting with '#' are comments. Image poses are world-to-camera with a
(w, x, y, z) quaternion.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Tuple

import numpy as np

from ctcalib.common.transforms.se3 import make_transform, quat_to_rotmat, quat_wxyz_to_xyzw, rotmat_to_quat

INVALID_POINT3D_ID = -1


@dataclass
class ColmapCamera:
    camera_id: int
    model: str
    width: int
    height: int
    params: np.ndarray


@dataclass
class ColmapPoint2D:
    xy: np.ndarray
    point3d_id: int


@dataclass
class ColmapImage:
    image_id: int
    qvec: np.ndarray  # (w, x, y, z), world to camera
    tvec: np.ndarray
    camera_id: int
    name: str
    points2d: List[ColmapPoint2D] = field(default_factory=list)

    def world_to_cam(self) -> np.ndarray:
        q = quat_wxyz_to_xyzw(*self.qvec)
        return make_transform(quat_to_rotmat(q), self.tvec)


@dataclass
class ColmapPoint3D:
    point3d_id: int
    xyz: np.ndarray
    color: np.ndarray
    error: float
    track: List[Tuple[int, int]] = field(default_factory=list)  # (image_id, point2d_idx)


def _content_lines(path: str) -> List[str]:
    with open(path) as f:
        return [line.strip() for line in f.read().splitlines() if not line.lstrip().startswith("#")]


def read_cameras_text(path: str) -> Dict[int, ColmapCamera]:
    cameras = {}
    for line in _content_lines(path):
        if not line:
            continue
        elems = line.split()
        cam = ColmapCamera(
            camera_id=int(elems[0]),
            model=elems[1],
            width=int(elems[2]),
            height=int(elems[3]),
            params=np.array([float(v) for v in elems[4:]]),
        )
        cameras[cam.camera_id] = cam
    return cameras


def read_images_text(path: str) -> Dict[int, ColmapImage]:
    lines = _content_lines(path)
    # drop blank lines that precede the first header
    while lines and not lines[0]:
        lines.pop(0)
    images = {}
    i = 0
    while i < len(lines):
        header = lines[i].split()
        if not header:
            i += 1
            continue
        points_line = lines[i + 1] if i + 1 < len(lines) else ""
        i += 2
        elems = points_line.split()
        points2d = [
            ColmapPoint2D(np.array([float(elems[j]), float(elems[j + 1])]), int(elems[j + 2]))
            for j in range(0, len(elems) - 2, 3)
        ]
        img = ColmapImage(
            image_id=int(header[0]),
            qvec=np.array([float(v) for v in header[1:5]]),
            tvec=np.array([float(v) for v in header[5:8]]),
            camera_id=int(header[8]),
            name=" ".join(header[9:]),
            points2d=points2d,
        )
        images[img.image_id] = img
    return images


def read_points3d_text(path: str) -> Dict[int, ColmapPoint3D]:
    points = {}
    for line in _content_lines(path):
        if not line:
            continue
        elems = line.split()
        track_elems = elems[8:]
        pt = ColmapPoint3D(
            point3d_id=int(elems[0]),
            xyz=np.array([float(v) for v in elems[1:4]]),
            color=np.array([int(v) for v in elems[4:7]], dtype=np.uint8),
            error=float(elems[7]),
            track=[(int(track_elems[j]), int(track_elems[j + 1])) for j in range(0, len(track_elems) - 1, 2)],
        )
        points[pt.point3d_id] = pt
    return points


def write_cameras_text(path: str, cameras: Dict[int, ColmapCamera]) -> None:
    with open(path, "w") as f:
        f.write("# Camera list with one line of data per camera:\n")
        f.write("#   CAMERA_ID, MODEL, WIDTH, HEIGHT, PARAMS[]\n")
        f.write(f"# Number of cameras: {len(cameras)}\n")
        for cam in cameras.values():
            params = " ".join(repr(float(p)) for p in cam.params)
            f.write(f"{cam.camera_id} {cam.model} {cam.width} {cam.height} {params}\n")


def write_images_text(path: str, images: Dict[int, ColmapImage]) -> None:
    with open(path, "w") as f:
        f.write("# Image list with two lines of data per image:\n")
        f.write("#   IMAGE_ID, QW, QX, QY, QZ, TX, TY, TZ, CAMERA_ID, NAME\n")
        f.write("#   POINTS2D[] as (X, Y, POINT3D_ID)\n")
        for img in images.values():
            q = " ".join(repr(float(v)) for v in img.qvec)
            t = " ".join(repr(float(v)) for v in img.tvec)
            f.write(f"{img.image_id} {q} {t} {img.camera_id} {img.name}\n")
            f.write(" ".join(f"{float(p.xy[0])!r} {float(p.xy[1])!r} {p.point3d_id}" for p in img.points2d) + "\n")


def write_points3d_text(path: str, points: Dict[int, ColmapPoint3D]) -> None:
    with open(path, "w") as f:
        f.write("# 3D point list with one line of data per point:\n")
        f.write("#   POINT3D_ID, X, Y, Z, R, G, B, ERROR, TRACK[] as (IMAGE_ID, POINT2D_IDX)\n")
        for pt in points.values():
            xyz = " ".join(repr(float(v)) for v in pt.xyz)
            rgb = " ".join(str(int(v)) for v in pt.color)
            track = " ".join(f"{i} {j}" for i, j in pt.track)
            f.write(f"{pt.point3d_id} {xyz} {rgb} {float(pt.error)!r} {track}\n")


def image_from_cam_to_world(image_id: int, T_cam_to_world: np.ndarray, camera_id: int, name: str) -> ColmapImage:
    """Build an images.txt entry from a camera-to-world pose."""
    R_wc = T_cam_to_world[:3, :3].T
    t_wc = -R_wc @ T_cam_to_world[:3, 3]
    q = rotmat_to_quat(R_wc)
    return ColmapImage(image_id, np.array([q[3], q[0], q[1], q[2]]), t_wc, camera_id, name)
