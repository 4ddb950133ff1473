"""
Unit tests for projection, lens distortion and the reprojection cost
"""

import pytest
import numpy as np
from pathlib import Path
import sys
from scipy.spatial.transform import Rotation

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from sfm_ba.core.bundle_adjust.distortion import (
    LensDistortionType,
    distort_points,
    num_distortion_params,
)
from sfm_ba.core.bundle_adjust.reprojection import (
    create_cost_func,
    project_points,
)
from sfm_ba.core.types import Camera, CameraIntrinsics


class TestDistortion:
    """Test lens distortion models"""

    def test_num_distortion_params(self):
        """Test coefficient counts per model"""
        assert num_distortion_params(LensDistortionType.NO_DISTORTION) == 0
        assert num_distortion_params(LensDistortionType.POLYNOMIAL_RADIAL_DISTORTION) == 2
        assert num_distortion_params(LensDistortionType.POLYNOMIAL_RADIAL_TANGENTIAL_DISTORTION) == 5
        assert num_distortion_params(LensDistortionType.RATIONAL_RADIAL_TANGENTIAL_DISTORTION) == 8
        assert num_distortion_params("polynomial_radial") == 2

    def test_radial_distortion(self):
        """Test radial scaling 1 + k1 r^2 + k2 r^4"""
        points = np.array([[0.1, 0.2]])
        dist = np.array([[0.5, 0.25]])
        r2 = 0.05
        expected = points * (1.0 + 0.5 * r2 + 0.25 * r2 ** 2)

        result = distort_points(points, dist, LensDistortionType.POLYNOMIAL_RADIAL_DISTORTION)

        np.testing.assert_allclose(result, expected)

    def test_tangential_distortion(self):
        """Test tangential terms with zero radial coefficients"""
        points = np.array([[0.1, 0.2]])
        dist = np.array([[0.0, 0.0, 0.01, 0.02, 0.0]])
        x, y, r2 = 0.1, 0.2, 0.05
        expected = np.array([[
            x + 2 * 0.01 * x * y + 0.02 * (r2 + 2 * x * x),
            y + 0.01 * (r2 + 2 * y * y) + 2 * 0.02 * x * y,
        ]])

        result = distort_points(
            points, dist, LensDistortionType.POLYNOMIAL_RADIAL_TANGENTIAL_DISTORTION
        )

        np.testing.assert_allclose(result, expected)

    def test_rational_matches_polynomial_without_denominator(self):
        """Test rational model equals radial-tangential when k4..k6 are zero"""
        points = np.array([[0.1, -0.3], [0.05, 0.02]])
        coeffs = np.array([0.1, -0.05, 0.001, 0.002, 0.01])
        dist5 = np.tile(coeffs, (2, 1))
        dist8 = np.tile(np.concatenate([coeffs, np.zeros(3)]), (2, 1))

        poly = distort_points(points, dist5, LensDistortionType.POLYNOMIAL_RADIAL_TANGENTIAL_DISTORTION)
        rational = distort_points(points, dist8, LensDistortionType.RATIONAL_RADIAL_TANGENTIAL_DISTORTION)

        np.testing.assert_allclose(poly, rational)

    def test_no_distortion(self):
        """Test identity model"""
        points = np.array([[0.1, 0.2]])
        result = distort_points(points, np.zeros((1, 0)), LensDistortionType.NO_DISTORTION)
        np.testing.assert_array_equal(result, points)


class TestProjection:
    """Test the pinhole projection"""

    def test_identity_camera(self):
        """Test projection through an identity pose"""
        intrinsics = np.array([[1000.0, 640.0, 480.0, 1.0, 0.0]])
        extrinsics = np.zeros((1, 6))
        points = np.array([[0.5, 0.2, 5.0]])

        uv = project_points(points, extrinsics, intrinsics, LensDistortionType.NO_DISTORTION)

        np.testing.assert_allclose(uv, [[740.0, 520.0]])

    def test_aspect_ratio_and_skew(self):
        """Test v uses focal / aspect and u includes skew"""
        intrinsics = np.array([[1000.0, 0.0, 0.0, 2.0, 10.0]])
        extrinsics = np.zeros((1, 6))
        points = np.array([[1.0, 1.0, 10.0]])

        uv = project_points(points, extrinsics, intrinsics, LensDistortionType.NO_DISTORTION)

        np.testing.assert_allclose(uv, [[100.0 + 1.0, 50.0]])

    def test_camera_center_and_rotation(self):
        """Test point is translated by the center before rotating"""
        # -90 degrees about y: world +x maps to camera +z
        rotvec = np.array([0.0, -np.pi / 2, 0.0])
        center = np.array([0.0, 0.0, 0.0])
        extrinsics = np.concatenate([rotvec, center])[None, :]
        intrinsics = np.array([[1.0, 0.0, 0.0, 1.0, 0.0]])

        rotation = Rotation.from_rotvec(rotvec)
        point = np.array([[2.0, 1.0, 4.0]])
        cam = rotation.apply(point[0])

        uv = project_points(point, extrinsics, intrinsics, LensDistortionType.NO_DISTORTION)

        np.testing.assert_allclose(uv, [[cam[0] / cam[2], cam[1] / cam[2]]])

    def test_camera_project_matches_project_points(self):
        """Test Camera.project agrees with the vectorized projection"""
        K = CameraIntrinsics(focal_length=800.0, principal_point=[320.0, 240.0], dist_coeffs=[0.05, -0.01])
        camera = Camera(center=[0.1, -0.2, -1.0], rotation=Rotation.from_rotvec([0.01, 0.02, -0.03]), intrinsics=K)
        points = np.array([[0.0, 0.0, 4.0], [0.5, -0.5, 6.0]])

        expected = project_points(
            points,
            np.tile(camera.extrinsic_params(), (2, 1)),
            np.tile(K.to_params(2), (2, 1)),
            LensDistortionType.POLYNOMIAL_RADIAL_DISTORTION,
        )

        np.testing.assert_allclose(camera.project(points), expected)

    def test_empty_points(self):
        """Test projection of no points"""
        uv = project_points(
            np.zeros((0, 3)), np.zeros((0, 6)), np.zeros((0, 5)), LensDistortionType.NO_DISTORTION
        )
        assert uv.shape == (0, 2)


class TestReprojectionError:
    """Test the per-observation cost function"""

    def test_residual_sign(self):
        """Test residual is predicted minus observed"""
        cost = create_cost_func(LensDistortionType.POLYNOMIAL_RADIAL_DISTORTION, 735.0, 525.0)
        intrinsics = np.array([1000.0, 640.0, 480.0, 1.0, 0.0, 0.0, 0.0])
        extrinsics = np.zeros(6)
        point = np.array([0.5, 0.2, 5.0])

        residuals = cost(intrinsics, extrinsics, point)

        np.testing.assert_allclose(residuals, [5.0, -5.0])

    def test_parameter_block_sizes(self):
        """Test block sizes follow the distortion model"""
        cost = create_cost_func(LensDistortionType.RATIONAL_RADIAL_TANGENTIAL_DISTORTION, 0.0, 0.0)
        assert cost.parameter_block_sizes() == (13, 6, 3)
        assert cost.num_residuals == 2

    def test_factory_accepts_model_names(self):
        """Test the factory converts string model names"""
        cost = create_cost_func("none", 1.0, 2.0)
        assert cost.distortion_type == LensDistortionType.NO_DISTORTION
        assert cost.observed == (1.0, 2.0)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
