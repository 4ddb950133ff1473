"""
Sparse bundle adjustment for Structure-from-Motion
Refines cameras, shared intrinsics and landmarks from feature tracks
"""

__version__ = "0.1.0"


# Lazy imports so that importing the package stays cheap
def __getattr__(name):
    """Lazy import for module attributes"""

    if name == "BundleAdjuster":
        from .core.bundle_adjust import BundleAdjuster
        return BundleAdjuster
    elif name == "BundleAdjustConfig":
        from .core.bundle_adjust import BundleAdjustConfig
        return BundleAdjustConfig
    elif name in ("Camera", "CameraIntrinsics", "Landmark", "Track", "TrackState"):
        from .core import types
        return getattr(types, name)

    raise AttributeError(f"module '{__name__}' has no attribute '{name}'")


__all__ = [
    # Main optimizer
    "BundleAdjuster",
    "BundleAdjustConfig",

    # Entities
    "Camera",
    "CameraIntrinsics",
    "Landmark",
    "Track",
    "TrackState",
]
