"""
Reprojection error cost function

Camera model:
    X_cam = R(r) (X - C)
    (x, y) = distort(X_cam[0] / X_cam[2], X_cam[1] / X_cam[2])
    u = f * x + skew * y + ppx
    v = (f / aspect) * y + ppy

Intrinsics parameter layout:
    [focal, ppx, ppy, aspect, skew, d_0 ... d_{D-1}]
Extrinsics parameter layout:
    [r_x, r_y, r_z, c_x, c_y, c_z]  (angle-axis world-to-camera, center)
"""

from dataclasses import dataclass

import numpy as np
from scipy.spatial.transform import Rotation

from .distortion import LensDistortionType, distort_points, num_distortion_params

NUM_BASE_INTRINSICS = 5
NUM_EXTRINSICS = 6
NUM_LANDMARK_PARAMS = 3


def project_points(
    points: np.ndarray,
    extrinsics: np.ndarray,
    intrinsics: np.ndarray,
    distortion_type: LensDistortionType,
) -> np.ndarray:
    """
    Project world points through per-point camera parameters

    Args:
        points: World points, shape (N, 3)
        extrinsics: Extrinsic parameters per point, shape (N, 6)
        intrinsics: Intrinsic parameters per point, shape (N, 5 + D)
        distortion_type: Lens distortion model

    Returns:
        Pixel coordinates, shape (N, 2)
    """
    points = np.atleast_2d(np.asarray(points, dtype=np.float64))
    extrinsics = np.atleast_2d(np.asarray(extrinsics, dtype=np.float64))
    intrinsics = np.atleast_2d(np.asarray(intrinsics, dtype=np.float64))

    if len(points) == 0:
        return np.zeros((0, 2))

    rotation = Rotation.from_rotvec(extrinsics[:, :3])
    points_cam = rotation.apply(points - extrinsics[:, 3:6])

    normalized = points_cam[:, :2] / points_cam[:, 2:3]

    num_dist = num_distortion_params(distortion_type)
    dist = intrinsics[:, NUM_BASE_INTRINSICS:NUM_BASE_INTRINSICS + num_dist]
    distorted = distort_points(normalized, dist, distortion_type)

    focal = intrinsics[:, 0]
    ppx = intrinsics[:, 1]
    ppy = intrinsics[:, 2]
    aspect = intrinsics[:, 3]
    skew = intrinsics[:, 4]

    u = focal * distorted[:, 0] + skew * distorted[:, 1] + ppx
    v = (focal / aspect) * distorted[:, 1] + ppy
    return np.stack([u, v], axis=1)


def reprojection_residuals(
    distortion_type: LensDistortionType,
    intrinsics: np.ndarray,
    extrinsics: np.ndarray,
    points: np.ndarray,
    observed: np.ndarray,
) -> np.ndarray:
    """Signed pixel error (predicted - observed), shape (N, 2)"""
    return project_points(points, extrinsics, intrinsics, distortion_type) - observed


@dataclass(frozen=True)
class ReprojectionError:
    """Cost of one observation: 2 residuals over (intrinsics, extrinsics, landmark)"""

    distortion_type: LensDistortionType
    observed: tuple  # (x, y) feature location in pixels

    num_residuals: int = 2

    def parameter_block_sizes(self):
        """Sizes of the intrinsics, extrinsics and landmark blocks"""
        num_intrinsics = NUM_BASE_INTRINSICS + num_distortion_params(self.distortion_type)
        return (num_intrinsics, NUM_EXTRINSICS, NUM_LANDMARK_PARAMS)

    def __call__(self, intrinsics, extrinsics, point) -> np.ndarray:
        residuals = reprojection_residuals(
            self.distortion_type,
            np.asarray(intrinsics)[None, :],
            np.asarray(extrinsics)[None, :],
            np.asarray(point)[None, :],
            np.asarray(self.observed, dtype=np.float64)[None, :],
        )
        return residuals[0]


def create_cost_func(distortion_type: LensDistortionType, x: float, y: float) -> ReprojectionError:
    """Create the reprojection cost for an observation at pixel (x, y)"""
    return ReprojectionError(LensDistortionType(distortion_type), (float(x), float(y)))
