"""
Bundle adjustment optimizer

Jointly refines camera poses, shared camera intrinsics and landmark
positions to minimize the robustified reprojection error of all track
observations:

    minimize  Σ  ρ( ||π(K_g(i), P_i, X_j) - x_ij||² )
             i,j

where:
    K_g(i) = intrinsics group of frame i
    P_i    = pose of frame i (angle-axis rotation, center)
    X_j    = position of landmark j
    x_ij   = observed feature of track j in frame i
    π()    = projection with lens distortion
    ρ()    = robust loss (trivial/Huber/soft L1/Cauchy/arctan/Tukey)

Inputs are never modified; new camera and landmark maps are returned.
"""

import logging
from typing import Any, Dict, Iterable, Optional, Sequence, Tuple

from .config import BundleAdjustConfig
from .exceptions import InvalidConfigurationError, MissingInputError
from .loss import loss_function_factory
from .parameters import (
    extract_camera_parameters,
    extract_landmark_parameters,
    update_cameras,
    update_landmarks,
)
from .problem import build_problem
from .solver import SolverSummary, is_valid, solve


class BundleAdjuster:
    """
    Sparse bundle adjustment over cameras, landmarks and tracks
    """

    def __init__(
        self,
        config: Optional[BundleAdjustConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        """
        Args:
            config: BundleAdjustConfig or None (uses defaults)
            logger: Logger receiving progress and reports
                (defaults to this module's logger)
        """
        self.config = config or BundleAdjustConfig()
        self.logger = logger or logging.getLogger(__name__)

        # Configure logging
        logging.basicConfig(level=getattr(logging, self.config.log_level))

        # Summary of the most recent solve
        self.summary: Optional[SolverSummary] = None

    def get_configuration(self) -> Dict[str, Any]:
        """Current configuration as a dictionary"""
        return self.config.to_dict()

    def set_configuration(self, config: Dict[str, Any]) -> None:
        """Merge configuration values over the current configuration"""
        self.config = self.config.merged(config)

    def check_configuration(self, config: Optional[BundleAdjustConfig] = None) -> bool:
        """Validate solver options; problems are logged as errors"""
        config = config or self.config
        valid, message = is_valid(config.solver, config.loss_function_type)
        if not valid:
            self.logger.error(message)
        return valid

    def optimize(
        self,
        cameras: Optional[Dict[int, Any]],
        landmarks: Optional[Dict[int, Any]],
        tracks: Optional[Sequence[Any]],
        fixed_frames: Optional[Iterable[int]] = None,
        fixed_landmarks: Optional[Iterable[int]] = None,
    ) -> Tuple[Dict[int, Any], Dict[int, Any]]:
        """
        Run bundle adjustment

        Args:
            cameras: {frame_id: Camera}
            landmarks: {track_id: Landmark}
            tracks: Sequence of Track
            fixed_frames: Frames whose pose is held constant
            fixed_landmarks: Tracks whose landmark is held constant

        Returns:
            Tuple of (cameras, landmarks), new maps with the same keys

        Raises:
            MissingInputError: an input is None, or cameras or landmarks is empty
            InvalidConfigurationError: solver options are invalid for this problem
            MissingIntrinsicsError: a camera has no intrinsics
        """
        missing = [
            name for name, value in
            (("cameras", cameras), ("landmarks", landmarks), ("tracks", tracks))
            if value is None
        ]
        if missing:
            raise MissingInputError(f"Bundle adjustment requires {', '.join(missing)}")

        empty = [name for name, value in (("cameras", cameras), ("landmarks", landmarks)) if not value]
        if empty:
            raise MissingInputError(f"Bundle adjustment requires non-empty {', '.join(empty)}")

        if not self.check_configuration():
            raise InvalidConfigurationError("Invalid solver configuration")

        camera_options = self.config.camera

        # Step 1: Extract flat parameter blocks
        camera_params = extract_camera_parameters(cameras, camera_options.num_distortion_params)
        landmark_params = extract_landmark_parameters(landmarks)

        # Step 2: Build the problem
        loss = loss_function_factory(
            self.config.loss_function_type, self.config.loss_function_scale
        )
        problem = build_problem(
            camera_params,
            landmark_params,
            tracks,
            camera_options,
            loss,
            fixed_frames=fixed_frames or (),
            fixed_landmarks=fixed_landmarks or (),
        )

        if problem.num_residual_blocks == 0:
            self.logger.warning("No valid observations for bundle adjustment")
        else:
            self.logger.info(
                f"Bundle adjustment: {len(camera_params.extrinsics)} cameras, "
                f"{camera_params.num_groups()} intrinsics groups, "
                f"{len(landmark_params)} landmarks, "
                f"{problem.num_residual_blocks} observations"
            )

        # Step 3: Solve
        try:
            self.summary = solve(problem, self.config.solver, self.config.verbose, self.logger)
        except InvalidConfigurationError as e:
            self.logger.error(str(e))
            raise
        self.logger.info(self.summary.brief_report())
        self.logger.debug(f"Full Report:\n{self.summary.full_report()}")

        # Step 4: Copy results into new entity maps
        landmarks_opt = update_landmarks(landmarks, landmark_params, problem)
        cameras_opt = update_cameras(cameras, camera_params, problem)

        return cameras_opt, landmarks_opt
