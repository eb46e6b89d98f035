"""
Error taxonomy for the liveness pipeline.

Only camera acquisition and detector loading fail hard; everything that can go
wrong once a session is running degrades toward finishing the session.
"""


class LivenessError(Exception):
    """Base class for all liveness errors."""


class CameraError(LivenessError):
    """Camera could not be acquired."""

    kind = "camera_error"


class CameraPermissionDeniedError(CameraError):
    """The operating system or user refused access to the camera."""

    kind = "permission_denied"


class CameraNotFoundError(CameraError):
    """No capture device is available."""

    kind = "no_camera"


class DetectorLoadError(LivenessError):
    """No face detector could be loaded."""

    kind = "detector_unavailable"


class SessionNotInitializedError(LivenessError):
    """start() or start_preview() was called before initialize()."""

    kind = "not_initialized"


class SessionCancelledError(LivenessError):
    """The session was stopped before it reached its terminal state."""

    kind = "cancelled"


USER_MESSAGES = {
    "permission_denied": "Camera permission denied. Please allow camera access and try again.",
    "no_camera": "No camera found. Please connect a camera and try again.",
    "camera_error": "Failed to access camera.",
    "detector_unavailable": "Face detection could not be loaded. Please reload and try again.",
    "not_initialized": "Liveness check is not ready yet.",
    "cancelled": "Liveness check was cancelled.",
}


def user_message(error: Exception) -> str:
    """Return the user-facing message for an error."""
    kind = getattr(error, "kind", None)
    return USER_MESSAGES.get(kind, "Something went wrong during the liveness check.")
