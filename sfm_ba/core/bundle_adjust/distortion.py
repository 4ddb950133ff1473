"""
Lens distortion models

Each model maps normalized image coordinates (x, y) = (X/Z, Y/Z) to
distorted normalized coordinates. Coefficient order follows OpenCV:
    k1, k2, p1, p2, k3, k4, k5, k6
"""

from enum import Enum

import numpy as np


class LensDistortionType(Enum):
    """Supported lens distortion models"""
    NO_DISTORTION = "none"
    POLYNOMIAL_RADIAL_DISTORTION = "polynomial_radial"
    POLYNOMIAL_RADIAL_TANGENTIAL_DISTORTION = "polynomial_radial_tangential"
    RATIONAL_RADIAL_TANGENTIAL_DISTORTION = "rational_radial_tangential"


_NUM_PARAMS = {
    LensDistortionType.NO_DISTORTION: 0,
    LensDistortionType.POLYNOMIAL_RADIAL_DISTORTION: 2,
    LensDistortionType.POLYNOMIAL_RADIAL_TANGENTIAL_DISTORTION: 5,
    LensDistortionType.RATIONAL_RADIAL_TANGENTIAL_DISTORTION: 8,
}


def num_distortion_params(distortion_type: LensDistortionType) -> int:
    """Number of distortion coefficients used by a model"""
    return _NUM_PARAMS[LensDistortionType(distortion_type)]


def distort_points(
    points: np.ndarray,
    dist: np.ndarray,
    distortion_type: LensDistortionType,
) -> np.ndarray:
    """
    Apply lens distortion to normalized image points

    Args:
        points: Normalized coordinates, shape (N, 2)
        dist: Distortion coefficients per point, shape (N, D) with
            D = num_distortion_params(distortion_type)
        distortion_type: Distortion model

    Returns:
        Distorted normalized coordinates, shape (N, 2)
    """
    distortion_type = LensDistortionType(distortion_type)
    if distortion_type == LensDistortionType.NO_DISTORTION:
        return points

    x = points[:, 0]
    y = points[:, 1]
    r2 = x * x + y * y
    r4 = r2 * r2

    k1 = dist[:, 0]
    k2 = dist[:, 1]

    if distortion_type == LensDistortionType.POLYNOMIAL_RADIAL_DISTORTION:
        radial = 1.0 + k1 * r2 + k2 * r4
        return points * radial[:, None]

    p1 = dist[:, 2]
    p2 = dist[:, 3]
    k3 = dist[:, 4]
    r6 = r4 * r2

    radial = 1.0 + k1 * r2 + k2 * r4 + k3 * r6
    if distortion_type == LensDistortionType.RATIONAL_RADIAL_TANGENTIAL_DISTORTION:
        k4, k5, k6 = dist[:, 5], dist[:, 6], dist[:, 7]
        radial = radial / (1.0 + k4 * r2 + k5 * r4 + k6 * r6)

    x_dist = x * radial + 2.0 * p1 * x * y + p2 * (r2 + 2.0 * x * x)
    y_dist = y * radial + p1 * (r2 + 2.0 * y * y) + 2.0 * p2 * x * y
    return np.stack([x_dist, y_dist], axis=1)
