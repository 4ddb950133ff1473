"""
Core bundle adjustment components
"""

from .types import Camera, CameraIntrinsics, Landmark, Track, TrackState
from .bundle_adjust import BundleAdjustConfig, BundleAdjuster

__all__ = [
    # Entities
    "Camera",
    "CameraIntrinsics",
    "Landmark",
    "Track",
    "TrackState",
    # Optimization
    "BundleAdjustConfig",
    "BundleAdjuster",
]
