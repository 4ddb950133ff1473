"""
Bundle Adjustment module

Jointly refines camera poses, camera intrinsics and landmark positions by
minimizing the reprojection error of feature track observations.

Key Features:
- Intrinsics shared between cameras are optimized as one parameter block
- Intrinsics can be held fully or partially constant
- Robust loss functions against outlier observations
- Tracks and observations outside the camera/landmark sets are skipped

Usage:
    from sfm_ba.core.bundle_adjust import BundleAdjuster

    ba = BundleAdjuster(config)
    cameras, landmarks = ba.optimize(cameras, landmarks, tracks)
"""

from .config import BundleAdjustConfig, CameraOptions, SolverOptions
from .distortion import LensDistortionType, num_distortion_params
from .exceptions import (
    BundleAdjustError,
    InvalidConfigurationError,
    MissingInputError,
    MissingIntrinsicsError,
)
from .loss import LossFunction, LossFunctionType, loss_function_factory
from .optimizer import BundleAdjuster
from .problem import Problem, build_problem
from .solver import SolverSummary, TerminationType, solve

__all__ = [
    # Configuration
    "BundleAdjustConfig",
    "CameraOptions",
    "SolverOptions",
    "LensDistortionType",
    "LossFunctionType",

    # Errors
    "BundleAdjustError",
    "MissingInputError",
    "InvalidConfigurationError",
    "MissingIntrinsicsError",

    # Building blocks
    "LossFunction",
    "loss_function_factory",
    "num_distortion_params",
    "Problem",
    "build_problem",
    "SolverSummary",
    "TerminationType",
    "solve",

    # Main optimizer
    "BundleAdjuster",
]
