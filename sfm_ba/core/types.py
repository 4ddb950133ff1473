"""
Reconstruction entities: cameras, landmarks and feature tracks

Collections are plain dictionaries:
    cameras:   {frame_id: Camera}
    landmarks: {track_id: Landmark}
    tracks:    [Track, ...]
"""

from dataclasses import dataclass, field, replace
from typing import List, Optional, Sequence

import numpy as np
from scipy.spatial.transform import Rotation

from .bundle_adjust.distortion import LensDistortionType, num_distortion_params
from .bundle_adjust.reprojection import project_points


@dataclass(eq=False)
class CameraIntrinsics:
    """
    Internal camera parameters

    Several cameras may reference the same instance (e.g. one physical
    device or a rigid rig). Bundle adjustment keeps that sharing: cameras
    referencing one instance are optimized with one intrinsics block.
    """

    focal_length: float
    principal_point: np.ndarray  # (2,) pixel coordinates
    aspect_ratio: float = 1.0
    skew: float = 0.0
    dist_coeffs: np.ndarray = field(default_factory=lambda: np.zeros(0))

    def __post_init__(self):
        self.principal_point = np.asarray(self.principal_point, dtype=np.float64).reshape(2)
        self.dist_coeffs = np.asarray(self.dist_coeffs, dtype=np.float64).ravel()

    def as_matrix(self) -> np.ndarray:
        """3x3 calibration matrix K"""
        return np.array([
            [self.focal_length, self.skew, self.principal_point[0]],
            [0.0, self.focal_length / self.aspect_ratio, self.principal_point[1]],
            [0.0, 0.0, 1.0],
        ])

    def to_params(self, num_dist: int) -> np.ndarray:
        """
        Flatten to [focal, ppx, ppy, aspect, skew, d_0 .. d_{num_dist-1}]

        Coefficients beyond num_dist are dropped; missing ones are zero.
        """
        params = np.zeros(5 + num_dist)
        params[0] = self.focal_length
        params[1:3] = self.principal_point
        params[3] = self.aspect_ratio
        params[4] = self.skew
        n = min(num_dist, self.dist_coeffs.size)
        params[5:5 + n] = self.dist_coeffs[:n]
        return params

    def with_params(self, params: np.ndarray, num_dist: int) -> "CameraIntrinsics":
        """
        New intrinsics from a flattened parameter vector

        The first num_dist distortion coefficients are replaced; any extra
        coefficients of this instance are kept.
        """
        dist = self.dist_coeffs.copy()
        if dist.size < num_dist:
            dist = np.concatenate([dist, np.zeros(num_dist - dist.size)])
        dist[:num_dist] = params[5:5 + num_dist]

        return CameraIntrinsics(
            focal_length=float(params[0]),
            principal_point=np.array(params[1:3], dtype=np.float64),
            aspect_ratio=float(params[3]),
            skew=float(params[4]),
            dist_coeffs=dist,
        )


@dataclass(eq=False)
class Camera:
    """Camera pose (world-to-camera rotation and center) with intrinsics"""

    center: np.ndarray  # (3,) camera center in world coordinates
    rotation: Rotation  # world-to-camera rotation
    intrinsics: Optional[CameraIntrinsics] = None

    def __post_init__(self):
        self.center = np.asarray(self.center, dtype=np.float64).reshape(3)

    @property
    def translation(self) -> np.ndarray:
        """t = -R C"""
        return -self.rotation.apply(self.center)

    def extrinsic_params(self) -> np.ndarray:
        """[angle-axis rotation (3), center (3)]"""
        return np.concatenate([self.rotation.as_rotvec(), self.center])

    def with_extrinsic_params(
        self,
        params: np.ndarray,
        intrinsics: Optional[CameraIntrinsics] = None,
    ) -> "Camera":
        """New camera from extrinsic parameters, optionally with new intrinsics"""
        return Camera(
            center=np.array(params[3:6], dtype=np.float64),
            rotation=Rotation.from_rotvec(params[:3]),
            intrinsics=intrinsics if intrinsics is not None else self.intrinsics,
        )

    def project(
        self,
        points: np.ndarray,
        distortion_type: LensDistortionType = LensDistortionType.RATIONAL_RADIAL_TANGENTIAL_DISTORTION,
    ) -> np.ndarray:
        """
        Project world points (N, 3) to pixels (N, 2)

        The default model covers up to 8 distortion coefficients, so any
        coefficients stored on the intrinsics are honored.
        """
        points = np.atleast_2d(np.asarray(points, dtype=np.float64))
        intrinsics = self.intrinsics.to_params(num_distortion_params(distortion_type))
        n = len(points)
        return project_points(
            points,
            np.tile(self.extrinsic_params(), (n, 1)),
            np.tile(intrinsics, (n, 1)),
            distortion_type,
        )


@dataclass(frozen=True, eq=False)
class Landmark:
    """3D point with attributes carried through optimization"""

    loc: np.ndarray  # (3,) world position
    scale: float = 1.0
    normal: Optional[np.ndarray] = None
    covar: Optional[np.ndarray] = None
    color: tuple = (0, 0, 0)
    observations: int = 0

    def __post_init__(self):
        object.__setattr__(self, "loc", np.asarray(self.loc, dtype=np.float64).reshape(3))

    def with_loc(self, loc: np.ndarray) -> "Landmark":
        """Copy with a new position; all other attributes are preserved"""
        return replace(self, loc=np.array(loc, dtype=np.float64))


@dataclass
class TrackState:
    """Observation of a track in one frame"""

    frame_id: int
    loc: np.ndarray  # (2,) feature location in pixels

    def __post_init__(self):
        self.loc = np.asarray(self.loc, dtype=np.float64).reshape(2)


@dataclass
class Track:
    """Feature observations across frames of one physical point"""

    id: int
    history: List[TrackState] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.history)

    def __iter__(self):
        return iter(self.history)

    def append(self, state: TrackState) -> None:
        self.history.append(state)

    def frame_ids(self) -> Sequence[int]:
        return [state.frame_id for state in self.history]
