"""
ctcalib constants.

=============================================================================
CONVENTION QUICK REFERENCE
=============================================================================

FRAMES:
  Br   : body frame = reference IMU frame
  W    : world frame, fixed at the start of the calibration window
  Sen  : any sensor frame (IMU Bi, LiDAR Lk, camera Cm, radar Rj)
  Extrinsic (SO3_SenToBr, POS_SenInBr): p_Br = R_SenToBr @ p_Sen + POS_SenInBr

TIME:
  t_body = t_sensor + TO_SenToBr
  Timestamps are float seconds; after alignment the inertial window starts at 0.0

QUATERNIONS:
  Stored as (x, y, z, w), matching scipy.spatial.transform.Rotation

GRAVITY:
  World: Z-UP after gravity alignment, gravity points DOWN = [0, 0, -g]
  Accelerometer measures specific force f = R^T (a - g)

SE(3) POSES:
  4x4 homogeneous matrices, T_AtoB maps points from A to B
=============================================================================
"""

# =============================================================================
# DATA MANAGER
# =============================================================================

# Single-target radar readings within this window of the group's first reading
# are merged into one target array (seconds)
RADAR_MERGE_WINDOW_SEC = 0.1

# Camera frame id = int(raw timestamp * CAMERA_FRAME_ID_SCALE), i.e. milliseconds
CAMERA_FRAME_ID_SCALE = 1e3

# Non-inertial streams are inset by this multiple of the time-offset padding
NON_INERTIAL_PADDING_FACTOR = 2.0

# =============================================================================
# TRAJECTORY
# =============================================================================

SPLINE_ORDER = 4  # cubic uniform B-spline

# Canonical "down" direction in the gravity-aligned world frame
GRAVITY_DOWN_DIR = (0.0, 0.0, -1.0)
GRAVITY_NORM_DEFAULT = 9.797

# =============================================================================
# NUMERICS
# =============================================================================

ROTATION_EPSILON = 1e-10  # small-angle branch in exp/log
TIME_RANGE_EPSILON = 1e-9  # spline validity interval tolerance (s)

# =============================================================================
# OUTPUT LAYOUT (relative to data_stream.output_path)
# =============================================================================

ITERATION_DIR = "iteration"
STAGE_DIR = "stage"
EPOCH_DIR = "epoch"
EPOCH_INFO_FILE = "epoch_info.csv"
EPOCH_INFO_HEADER = "cost,gradient,tr_radius(1/lambda)"
EPOCH_PARAM_PREFIX = "ikalibr_param_"
IMAGES_DIR = "images"
SFM_WS_DIR = "sfm_ws"
IMAGES_INFO_STEM = "info"
SFM_MATCHES_FILE = "matches.txt"
SFM_COMMAND_FILE = "sfm-command-line.txt"
SFM_CAMERAS_FILE = "cameras.txt"
SFM_IMAGES_FILE = "images.txt"
SFM_POINTS_FILE = "points3D.txt"
SFM_MODEL_SUBDIR = "0"

# Outputs selectable in preference.outputs
OUTPUT_PARAM_IN_EACH_ITER = "ParamInEachIter"

# =============================================================================
# RECONSTRUCTION
# =============================================================================

# COLMAP mapper settings written into the command template
SFM_INIT_MIN_TRI_ANGLE = 25
SFM_INIT_MAX_ERROR_GS = 1.0
SFM_INIT_MAX_ERROR_RS = 2.0
SFM_TRI_MIN_ANGLE = 3

# Covisibility verification (ORB + essential matrix)
COVIS_NEIGHBOR_COUNT = 5
COVIS_MIN_INLIERS = 50
ORB_FEATURES_DEFAULT = 1000
ORB_RATIO_TEST = 0.8

# =============================================================================
# LIDAR ODOMETRY
# =============================================================================

ICP_MAX_ITER_DEFAULT = 20
ICP_TOLERANCE_DEFAULT = 1e-5
ICP_MAX_POINTS = 2000  # random subsample per scan before nearest-neighbour search
ICP_MAX_CORRESPONDENCE_DIST = 1.0  # metres

# =============================================================================
# SOLVER
# =============================================================================

GRAVITY_NORM_PRIOR_WEIGHT = 100.0
# Reprojection residuals are dropped for points closer than this in front of the camera (m)
MIN_PROJECTION_DEPTH = 1e-2
# Hand-eye rotation needs this many relative motions with enough rotation
HAND_EYE_MIN_PAIRS = 3
HAND_EYE_MIN_ROTATION_RAD = 0.01
