"""
Configuration management for bundle adjustment

Uses dataclasses for type safety and validation. Solver options and camera
options are independent groups, composed into BundleAdjustConfig.
"""

import json
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import numpy as np

from .distortion import LensDistortionType, num_distortion_params
from .loss import LossFunctionType


@dataclass
class SolverOptions:
    """Options for the nonlinear least squares solver"""

    # Trust region method: "trf", "dogbox" or "lm"
    method: str = "trf"

    # Maximum solver iterations (0 skips the solve)
    max_iterations: int = 100

    # Convergence tolerances
    function_tolerance: float = 1e-6
    gradient_tolerance: float = 1e-10
    parameter_tolerance: float = 1e-8

    # Variable scaling: "jac" or a positive float
    x_scale: Union[str, float] = 1.0

    # Finite difference scheme: "2-point" or "3-point"
    jacobian: str = "2-point"

    # Trust region subproblem solver: "lsmr" or None (chosen by scipy)
    tr_solver: Optional[str] = "lsmr"

    def is_valid(self, loss_type: LossFunctionType = LossFunctionType.TRIVIAL_LOSS) -> Tuple[bool, str]:
        """
        Check whether these options can be handed to the solver

        Returns:
            (valid, message) where message explains the first problem found
        """
        if self.method not in ("trf", "dogbox", "lm"):
            return False, f"Unknown solver method: {self.method}"
        if self.jacobian not in ("2-point", "3-point"):
            return False, f"Unknown jacobian scheme: {self.jacobian}"
        if self.tr_solver not in (None, "lsmr"):
            return False, f"tr_solver must be 'lsmr' or None for sparse problems, got {self.tr_solver}"
        if self.max_iterations < 0:
            return False, f"max_iterations must be >= 0, got {self.max_iterations}"

        tolerances = (self.function_tolerance, self.gradient_tolerance, self.parameter_tolerance)
        if any(tol < 0.0 for tol in tolerances):
            return False, f"Solver tolerances must be non-negative, got {tolerances}"
        if all(tol < np.finfo(float).eps for tol in tolerances):
            return False, "At least one solver tolerance must exceed machine epsilon"

        if isinstance(self.x_scale, str):
            if self.x_scale != "jac":
                return False, f"x_scale must be 'jac' or a positive number, got {self.x_scale}"
        elif not self.x_scale > 0:
            return False, f"x_scale must be 'jac' or a positive number, got {self.x_scale}"

        if self.method == "lm" and LossFunctionType(loss_type) != LossFunctionType.TRIVIAL_LOSS:
            return False, "Method 'lm' supports only the trivial loss function"

        return True, ""

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass
class CameraOptions:
    """Which camera intrinsics to optimize and the lens distortion model"""

    optimize_focal_length: bool = True
    optimize_aspect_ratio: bool = False
    optimize_principal_point: bool = False
    optimize_skew: bool = False

    lens_distortion_type: LensDistortionType = LensDistortionType.POLYNOMIAL_RADIAL_DISTORTION

    optimize_dist_k1: bool = True
    optimize_dist_k2: bool = False
    optimize_dist_k3: bool = False
    optimize_dist_p1_p2: bool = False
    optimize_dist_k4_k5_k6: bool = False

    def __post_init__(self):
        """Accept distortion model names as strings"""
        try:
            self.lens_distortion_type = LensDistortionType(self.lens_distortion_type)
        except ValueError:
            raise ValueError(f"Invalid lens_distortion_type: {self.lens_distortion_type}")

    @property
    def num_distortion_params(self) -> int:
        return num_distortion_params(self.lens_distortion_type)

    @property
    def num_intrinsics(self) -> int:
        """Length of an intrinsics parameter block"""
        return 5 + self.num_distortion_params

    def enumerate_constant_intrinsics(self) -> List[int]:
        """
        Indices of intrinsic parameters held constant

        Layout: 0 focal, 1-2 principal point, 3 aspect ratio, 4 skew,
        5.. distortion coefficients (k1, k2, p1, p2, k3, k4, k5, k6)
        """
        ndp = self.num_distortion_params
        constant = []

        if not self.optimize_focal_length:
            constant.append(0)
        if not self.optimize_principal_point:
            constant.extend([1, 2])
        if not self.optimize_aspect_ratio:
            constant.append(3)
        if not self.optimize_skew:
            constant.append(4)
        if not self.optimize_dist_k1 and ndp > 0:
            constant.append(5)
        if not self.optimize_dist_k2 and ndp > 1:
            constant.append(6)
        if not self.optimize_dist_p1_p2 and ndp > 3:
            constant.extend([7, 8])
        if not self.optimize_dist_k3 and ndp > 4:
            constant.append(9)
        if not self.optimize_dist_k4_k5_k6 and ndp > 7:
            constant.extend([10, 11, 12])

        return constant

    def to_dict(self) -> Dict[str, Any]:
        values = {f.name: getattr(self, f.name) for f in fields(self)}
        values["lens_distortion_type"] = self.lens_distortion_type.value
        return values


@dataclass
class BundleAdjustConfig:
    """Main configuration for bundle adjustment"""

    # Log solver progress and raise solver verbosity
    verbose: bool = False

    # Robust loss applied to every reprojection residual
    loss_function_type: LossFunctionType = LossFunctionType.TRIVIAL_LOSS
    loss_function_scale: float = 1.0

    # Sub-configurations
    solver: SolverOptions = field(default_factory=SolverOptions)
    camera: CameraOptions = field(default_factory=CameraOptions)

    # Logging level: "DEBUG", "INFO", "WARNING", "ERROR"
    log_level: str = "INFO"

    def __post_init__(self):
        """Validate configuration"""
        try:
            self.loss_function_type = LossFunctionType(self.loss_function_type)
        except ValueError:
            raise ValueError(f"Invalid loss_function_type: {self.loss_function_type}")

        if not self.loss_function_scale > 0.0:
            raise ValueError(f"loss_function_scale must be positive, got {self.loss_function_scale}")

        if self.log_level not in ("DEBUG", "INFO", "WARNING", "ERROR"):
            raise ValueError(f"Invalid log_level: {self.log_level}")

    @classmethod
    def from_dict(cls, config_dict: Dict[str, Any]) -> "BundleAdjustConfig":
        """Create config from dictionary (for CLI/JSON loading)"""
        config_dict = dict(config_dict)

        solver = SolverOptions(**config_dict.pop("solver", {}))
        camera = CameraOptions(**config_dict.pop("camera", {}))

        return cls(solver=solver, camera=camera, **config_dict)

    @classmethod
    def from_json(cls, path: Path) -> "BundleAdjustConfig":
        """Load config from a JSON file"""
        with open(path, "r") as f:
            return cls.from_dict(json.load(f))

    def to_dict(self) -> Dict[str, Any]:
        """Export config to dictionary"""
        return {
            "verbose": self.verbose,
            "loss_function_type": self.loss_function_type.value,
            "loss_function_scale": self.loss_function_scale,
            "solver": self.solver.to_dict(),
            "camera": self.camera.to_dict(),
            "log_level": self.log_level,
        }

    def merged(self, overrides: Dict[str, Any]) -> "BundleAdjustConfig":
        """Return a new config with overrides applied on top of this one"""
        merged = self.to_dict()
        for key, value in overrides.items():
            if key in ("solver", "camera"):
                merged[key].update(value)
            else:
                merged[key] = value
        return BundleAdjustConfig.from_dict(merged)
