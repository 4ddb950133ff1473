"""
Errors raised by bundle adjustment

Structural problems abort the whole optimize call before any result is
produced. Filtered tracks and observations are not errors.
"""


class BundleAdjustError(Exception):
    """Base class for bundle adjustment failures"""


class MissingInputError(BundleAdjustError, ValueError):
    """Camera, landmark or track collection was not provided"""


class InvalidConfigurationError(BundleAdjustError, ValueError):
    """Solver configuration failed validation"""


class MissingIntrinsicsError(BundleAdjustError, ValueError):
    """A camera has no intrinsics to optimize"""
