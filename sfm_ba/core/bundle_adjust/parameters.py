"""
Conversion between reconstruction entities and flat parameter blocks

Extraction produces fresh numpy buffers for one optimize call. The solver
writes into those buffers in place, and the update functions copy the
results back into new entity collections.
"""

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, List

import numpy as np

from .exceptions import MissingIntrinsicsError
from .problem import Problem, extrinsics_key, intrinsics_key, landmark_key

if TYPE_CHECKING:
    from ..types import Camera, CameraIntrinsics, Landmark

logger = logging.getLogger(__name__)


@dataclass
class CameraParameters:
    """
    Flat camera parameters with an explicit intrinsics group table

    Cameras referencing the same CameraIntrinsics instance share one group.
    """

    # {frame_id: [rx, ry, rz, cx, cy, cz]}
    extrinsics: Dict[int, np.ndarray] = field(default_factory=dict)

    # One [focal, ppx, ppy, aspect, skew, d...] block per group
    intrinsics: List[np.ndarray] = field(default_factory=list)

    # {frame_id: group index into intrinsics}
    frame_to_intrinsics: Dict[int, int] = field(default_factory=dict)

    # Source intrinsics object of each group
    intrinsics_sources: List["CameraIntrinsics"] = field(default_factory=list)

    num_distortion_params: int = 0

    def num_groups(self) -> int:
        return len(self.intrinsics)

    def frames_in_group(self, group: int) -> List[int]:
        return [fid for fid, idx in self.frame_to_intrinsics.items() if idx == group]


def extract_camera_parameters(
    cameras: Dict[int, "Camera"],
    num_distortion_params: int,
) -> CameraParameters:
    """
    Extract extrinsics per frame and deduplicated intrinsics groups

    Args:
        cameras: {frame_id: Camera}
        num_distortion_params: Distortion coefficients per intrinsics block

    Returns:
        CameraParameters

    Raises:
        MissingIntrinsicsError: if a camera has no intrinsics
    """
    params = CameraParameters(num_distortion_params=num_distortion_params)
    group_of_instance: Dict[int, int] = {}

    for frame_id, camera in cameras.items():
        intrinsics = camera.intrinsics
        if intrinsics is None:
            raise MissingIntrinsicsError(f"Camera for frame {frame_id} has no intrinsics")

        params.extrinsics[frame_id] = camera.extrinsic_params()

        group = group_of_instance.get(id(intrinsics))
        if group is None:
            group = len(params.intrinsics)
            group_of_instance[id(intrinsics)] = group
            params.intrinsics.append(intrinsics.to_params(num_distortion_params))
            params.intrinsics_sources.append(intrinsics)

        params.frame_to_intrinsics[frame_id] = group

    logger.debug(
        f"Extracted {len(params.extrinsics)} cameras sharing "
        f"{len(params.intrinsics)} intrinsics groups"
    )
    return params


def extract_landmark_parameters(landmarks: Dict[int, "Landmark"]) -> Dict[int, np.ndarray]:
    """Copy landmark positions into mutable buffers: {track_id: xyz}"""
    return {
        track_id: np.array(landmark.loc, dtype=np.float64)
        for track_id, landmark in landmarks.items()
    }


def update_landmarks(
    landmarks: Dict[int, "Landmark"],
    landmark_params: Dict[int, np.ndarray],
    problem: Problem,
) -> Dict[int, "Landmark"]:
    """
    Build a new landmark map from optimized positions

    Landmarks whose block was not optimized are passed through unchanged.
    """
    updated = {}
    for track_id, landmark in landmarks.items():
        if problem.is_parameter_block_varying(landmark_key(track_id)):
            updated[track_id] = landmark.with_loc(landmark_params[track_id])
        else:
            updated[track_id] = landmark
    return updated


def update_cameras(
    cameras: Dict[int, "Camera"],
    camera_params: CameraParameters,
    problem: Problem,
) -> Dict[int, "Camera"]:
    """
    Build a new camera map from optimized parameters

    One new intrinsics object is created per optimized group and shared by
    every camera of that group.
    """
    ndp = camera_params.num_distortion_params

    group_intrinsics = []
    group_changed = []
    for group, (block, source) in enumerate(
        zip(camera_params.intrinsics, camera_params.intrinsics_sources)
    ):
        changed = problem.is_parameter_block_varying(intrinsics_key(group))
        group_changed.append(changed)
        group_intrinsics.append(source.with_params(block, ndp) if changed else source)

    updated = {}
    for frame_id, camera in cameras.items():
        group = camera_params.frame_to_intrinsics[frame_id]
        pose_changed = problem.is_parameter_block_varying(extrinsics_key(frame_id))

        if not pose_changed and not group_changed[group]:
            updated[frame_id] = camera
            continue

        extrinsics = camera_params.extrinsics[frame_id] if pose_changed else camera.extrinsic_params()
        updated[frame_id] = camera.with_extrinsic_params(extrinsics, group_intrinsics[group])

    return updated
