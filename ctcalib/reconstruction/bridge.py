"""
Bridge between the calibration pipeline and an external SfM tool (COLMAP).

Export (store_images_for_sfm):
    <output>/images/<topic>/<frame id>.jpg     undistorted frames
    <output>/images/<topic>/info.<ext>         frame id <-> file name index
    <output>/sfm_ws/<topic>/matches.txt        candidate image pairs
    <output>/sfm_ws/<topic>/sfm-command-line.txt

The user runs COLMAP from the command file; model_converter leaves
cameras.txt / images.txt / points3D.txt in the workspace, which
try_load_sfm_data turns into a Reconstruction keyed by our frame ids.
A missing file is not an error: it means no prior reconstruction yet.
"""

from __future__ import annotations

import logging
import os
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, Iterable, List, Optional, Set, Tuple

import cv2
import numpy as np
from tqdm import tqdm

from ctcalib.calib.param_manager import PinholeIntrinsics
from ctcalib.common import constants
from ctcalib.common.param_models import CalibConfig
from ctcalib.reconstruction import colmap_io
from ctcalib.reconstruction.structures import ImagesInfo, Landmark, Observation, Reconstruction, View
from ctcalib.sensors.frames import CameraFrame
from ctcalib.sensors.loaders import is_rs_camera

_logger = logging.getLogger(__name__)

IndexPair = Tuple[int, int]


def _ensure_dir(path: str) -> bool:
    try:
        os.makedirs(path, exist_ok=True)
    except OSError as e:
        _logger.warning("create directory failed: '%s' (%s)", path, e)
        return False
    return True


def undistort_image(intri: PinholeIntrinsics, image: np.ndarray) -> np.ndarray:
    if not np.any(intri.distortion):
        return image
    return cv2.undistort(image, intri.K(), intri.distortion)


# =============================================================================
# Covisibility
# =============================================================================


def _orb_features(orb, frame: CameraFrame):
    kp, des = orb.detectAndCompute(frame.gray(), None)
    return kp, des


def _ratio_matches(matcher, des0, des1, ratio: float):
    good = []
    for pair in matcher.knnMatch(des0, des1, k=2):
        if len(pair) < 2:
            continue
        m, n = pair
        if m.distance < ratio * n.distance:
            good.append(m)
    return good


def find_covisible_pairs(
    frames: List[CameraFrame],
    intri: PinholeIntrinsics,
    neighbor_count: int = constants.COVIS_NEIGHBOR_COUNT,
    min_inliers: int = constants.COVIS_MIN_INLIERS,
    nfeatures: int = constants.ORB_FEATURES_DEFAULT,
    ratio: float = constants.ORB_RATIO_TEST,
) -> Set[IndexPair]:
    """
    Candidate image pairs for matching.

    Each frame is tested against its next neighbor_count frames: ORB matches
    with Lowe's ratio test, then essential-matrix RANSAC. A pair is kept when
    at least min_inliers correspondences survive.
    """
    orb = cv2.ORB_create(nfeatures=nfeatures)
    matcher = cv2.BFMatcher(cv2.NORM_HAMMING, crossCheck=False)
    K = intri.K()
    feats = [_orb_features(orb, f) for f in frames]

    pairs: Set[IndexPair] = set()
    for i in range(len(frames)):
        kp0, des0 = feats[i]
        if des0 is None or len(des0) < 2:
            continue
        for j in range(i + 1, min(i + 1 + neighbor_count, len(frames))):
            kp1, des1 = feats[j]
            if des1 is None or len(des1) < 2:
                continue
            good = _ratio_matches(matcher, des0, des1, ratio)
            if len(good) < min_inliers:
                continue
            p0 = np.array([kp0[m.queryIdx].pt for m in good], dtype=np.float64)
            p1 = np.array([kp1[m.trainIdx].pt for m in good], dtype=np.float64)
            E, mask = cv2.findEssentialMat(p0, p1, cameraMatrix=K, method=cv2.RANSAC, prob=0.999, threshold=1.0)
            if E is None or mask is None:
                continue
            if int(mask.reshape(-1).astype(bool).sum()) >= min_inliers:
                pairs.add((frames[i].frame_id, frames[j].frame_id))
    _logger.info("covisibility: %d verified image pairs among %d frames", len(pairs), len(frames))
    return pairs


# =============================================================================
# Export
# =============================================================================


def _command_logger(path: str, topic: str) -> Tuple[logging.Logger, logging.Handler]:
    logger = logging.getLogger(f"{__name__}.sfm_cmd.{topic.strip('/').replace('/', '.')}")
    logger.setLevel(logging.INFO)
    logger.propagate = False
    handler = logging.FileHandler(path, mode="w")
    handler.setFormatter(logging.Formatter("%(message)s"))
    logger.addHandler(handler)
    return logger, handler


def _write_command_file(
    path: str,
    topic: str,
    intri: PinholeIntrinsics,
    image_path: str,
    workspace: str,
    match_list_path: str,
    rolling_shutter: bool,
) -> None:
    database_path = os.path.join(workspace, "database.db")
    init_max_error = constants.SFM_INIT_MAX_ERROR_RS if rolling_shutter else constants.SFM_INIT_MAX_ERROR_GS
    logger, handler = _command_logger(path, topic)
    try:
        logger.info(
            "command line for 'feature_extractor' in colmap for topic '%s':\n"
            "colmap feature_extractor --database_path %s --image_path %s "
            "--ImageReader.camera_model PINHOLE --ImageReader.single_camera 1 "
            "--ImageReader.camera_params %.3f,%.3f,%.3f,%.3f\n",
            topic, database_path, image_path, intri.fx, intri.fy, intri.cx, intri.cy,
        )
        logger.info(
            "command line for 'matches_importer' in colmap for topic '%s':\n"
            "colmap matches_importer --database_path %s --match_list_path %s --match_type pairs\n",
            topic, database_path, match_list_path,
        )
        logger.info("-" * 78)
        logger.info("-  SfM Reconstruction in COLMAP [colmap gui] (recommend) or [colmap mapper]  -")
        logger.info("-" * 78)
        logger.info(
            "performing SfM using [colmap gui] is suggested, rather than the command line, "
            "which is very strict in initialization (finding initial image pair)"
        )
        logger.info(
            "command line for 'colmap gui' for topic '%s':\ncolmap gui --database_path %s --image_path %s",
            topic, database_path, image_path,
        )
        logger.info("-" * 78)
        logger.info(
            "command line for 'colmap mapper' for topic '%s':\n"
            "colmap mapper --database_path %s --image_path %s --output_path %s "
            "--Mapper.init_min_tri_angle %d --Mapper.init_max_error %g --Mapper.tri_min_angle %d "
            "--Mapper.ba_refine_focal_length 0 --Mapper.ba_refine_principal_point 0",
            topic, database_path, image_path, workspace,
            constants.SFM_INIT_MIN_TRI_ANGLE, init_max_error, constants.SFM_TRI_MIN_ANGLE,
        )
        logger.info("-" * 78 + "\n")
        logger.info(
            "command line for 'model_converter' in colmap for topic '%s':\n"
            "colmap model_converter --input_path %s --output_path %s --output_type TXT\n",
            topic, os.path.join(workspace, constants.SFM_MODEL_SUBDIR), workspace,
        )
    finally:
        logger.removeHandler(handler)
        handler.close()


def store_images_for_sfm(
    config: CalibConfig,
    topic: str,
    frames: List[CameraFrame],
    intri: PinholeIntrinsics,
    match_pairs: Iterable[IndexPair],
) -> ImagesInfo:
    """
    Export one camera's frames and the COLMAP workspace.

    Raises:
        OSError: when the image folder or the workspace cannot be created
    """
    image_dir = config.image_store_dir(topic)
    workspace = config.sfm_workspace(topic)
    for path in (image_dir, workspace):
        if not _ensure_dir(path):
            raise OSError(f"can not create '{path}' for SfM export of topic '{topic}'")

    info = ImagesInfo(topic, image_dir, {})
    for frame in frames:
        info.images[frame.frame_id] = f"{frame.frame_id}.jpg"

    def _write(frame: CameraFrame) -> bool:
        return bool(cv2.imwrite(info.image_path(frame.frame_id), undistort_image(intri, frame.image)))

    with ThreadPoolExecutor(max_workers=config.preference.available_threads) as pool:
        written = list(tqdm(pool.map(_write, frames), total=len(frames), desc=f"export {topic}", leave=False))
    failed = written.count(False)
    if failed:
        _logger.warning("%d image(s) of topic '%s' could not be written", failed, topic)

    match_list_path = os.path.join(workspace, constants.SFM_MATCHES_FILE)
    with open(match_list_path, "w") as f:
        for a, b in sorted(match_pairs):
            f.write(f"{a}.jpg {b}.jpg\n")

    _write_command_file(
        os.path.join(workspace, constants.SFM_COMMAND_FILE),
        topic, intri, image_dir, workspace, match_list_path,
        rolling_shutter=is_rs_camera(config.sensor_type(topic)),
    )
    info.save(config.image_store_info_file(topic), config.preference.output_data_format)
    _logger.info("exported %d image(s) of '%s' to '%s'", len(frames), topic, image_dir)
    return info


# =============================================================================
# Import
# =============================================================================


def try_load_sfm_data(
    config: CalibConfig,
    topic: str,
    frames: List[CameraFrame],
    intri: PinholeIntrinsics,
    error_thd: float,
    track_len_thd: int,
) -> Optional[Reconstruction]:
    """Read a finished COLMAP text model for one camera, or None if there is none."""
    info_file = config.image_store_info_file(topic)
    workspace = config.sfm_workspace(topic)
    cameras_file = os.path.join(workspace, constants.SFM_CAMERAS_FILE)
    images_file = os.path.join(workspace, constants.SFM_IMAGES_FILE)
    points_file = os.path.join(workspace, constants.SFM_POINTS_FILE)
    for label, path in (
        ("info file", info_file), ("sfm workspace", workspace), ("cameras file", cameras_file),
        ("images file", images_file), ("points 3D file", points_file),
    ):
        if not os.path.exists(path):
            _logger.warning("the %s, i.e., '%s', does not exist", label, path)
            return None

    info = ImagesInfo.load(info_file, config.preference.output_data_format)
    cameras = colmap_io.read_cameras_text(cameras_file)
    images = colmap_io.read_images_text(images_file)
    points = colmap_io.read_points3d_text(points_file)

    if len(cameras) != 1:
        _logger.error("expected exactly one camera in '%s', found %d", cameras_file, len(cameras))
        return None
    intri_id = next(iter(cameras))

    rec = Reconstruction()
    rec.intrinsics[intri_id] = intri

    frame_by_id: Dict[int, CameraFrame] = {f.frame_id: f for f in frames}
    name_to_id = info.name_to_id()
    image_to_view: Dict[int, int] = {}
    for image_id, image in images.items():
        view_id = name_to_id.get(image.name)
        if view_id is None or view_id not in frame_by_id:
            continue
        image_to_view[image_id] = view_id
        rec.views[view_id] = View(view_id, intri_id, view_id, intri.width, intri.height, frame_by_id[view_id].timestamp)
        rec.poses[view_id] = np.linalg.inv(image.world_to_cam())

    for frame in frames:
        if frame.frame_id not in rec.views:
            _logger.warning(
                "frame indexed as '%d' of camera '%s' is involved in solving but not reconstructed in SfM",
                frame.frame_id, topic,
            )

    for pt_id, pt in points.items():
        if pt.error > error_thd or len(pt.track) < track_len_thd:
            continue
        lm = Landmark(X=pt.xyz.copy(), color=pt.color.copy())
        for image_id, p2d_idx in pt.track:
            image = images.get(image_id)
            if image is None or p2d_idx >= len(image.points2d):
                _logger.warning("track of point3D '%d' refers to a missing feature", pt_id)
                continue
            p2d = image.points2d[p2d_idx]
            if p2d.point3d_id != pt_id:
                _logger.warning("'point3D_id' of point3D and of the connected feature are in conflict")
                continue
            view_id = image_to_view.get(image_id)
            if view_id is None:
                continue
            lm.obs[view_id] = Observation(p2d.xy.copy(), p2d_idx)
        if len(lm.obs) >= track_len_thd:
            rec.structure[pt_id] = lm

    _logger.info(
        "SfM data of '%s': %d view(s), %d landmark(s), %d observation(s)",
        topic, len(rec.views), len(rec.structure), rec.observation_count(),
    )
    return rec


# =============================================================================
# Editing
# =============================================================================


def perform_transform(rec: Reconstruction, cur_to_new: np.ndarray, scale: float) -> None:
    """Scale, then rigidly move, every pose and landmark in place."""
    R = cur_to_new[:3, :3]
    t = cur_to_new[:3, 3]
    for pose_id, pose in rec.poses.items():
        scaled = pose.copy()
        scaled[:3, 3] *= scale
        rec.poses[pose_id] = cur_to_new @ scaled
    for lm in rec.structure.values():
        lm.X = R @ (lm.X * scale) + t


def downsample(rec: Reconstruction, lm_num_thd: int, obv_num_thd: int, rng: np.random.Generator) -> None:
    """Randomly cap the landmark count and each landmark's observation count."""
    if len(rec.structure) > lm_num_thd:
        ids = np.array(list(rec.structure))
        drop = rng.choice(ids, size=len(ids) - lm_num_thd, replace=False)
        for lm_id in drop.tolist():
            del rec.structure[lm_id]
    for lm in rec.structure.values():
        if len(lm.obs) <= obv_num_thd:
            continue
        view_ids = np.array(list(lm.obs))
        drop = rng.choice(view_ids, size=len(view_ids) - obv_num_thd, replace=False)
        for view_id in drop.tolist():
            del lm.obs[view_id]
