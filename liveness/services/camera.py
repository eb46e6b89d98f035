"""
Camera acquisition for liveness sessions.

Owns all cv2.VideoCapture interaction. A stream exposes its tracks the way a
browser MediaStream does; stopping the stream stops every track and releases
the device. Release is idempotent and guaranteed by the context managers.
"""
import asyncio
import logging
import os
import sys
from dataclasses import dataclass
from typing import List, Optional, Protocol

import cv2
import numpy as np

from ..config import config
from ..exceptions import CameraError, CameraNotFoundError, CameraPermissionDeniedError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VideoConstraints:
    """Requested capture settings"""
    facing_mode: str = "user"
    width: int = 640
    height: int = 480

    @classmethod
    def desktop(cls) -> "VideoConstraints":
        return cls(width=640, height=480)

    @classmethod
    def mobile(cls) -> "VideoConstraints":
        return cls(width=480, height=640)


class CameraStream(Protocol):
    """Frame source owned by exactly one session at a time"""

    @property
    def active(self) -> bool:
        ...

    async def read_frame(self) -> Optional[np.ndarray]:
        ...

    def get_tracks(self) -> list:
        ...

    def stop(self) -> None:
        ...


class CaptureTrack:
    """The single video track of an OpenCV capture"""

    kind = "video"

    def __init__(self, capture: cv2.VideoCapture, label: str):
        self._capture = capture
        self.label = label
        self.ready_state = "live"

    def stop(self) -> None:
        if self.ready_state == "ended":
            return
        self._capture.release()
        self.ready_state = "ended"


class OpenCVCameraStream:
    """Camera stream backed by cv2.VideoCapture"""

    def __init__(self, capture: cv2.VideoCapture, constraints: VideoConstraints, device_index: int = 0):
        self._capture = capture
        self.constraints = constraints
        self.device_index = device_index
        self._tracks: List[CaptureTrack] = [CaptureTrack(capture, f"camera{device_index}")]
        self.frames_read = 0
        self.frames_dropped = 0

    @property
    def active(self) -> bool:
        return any(track.ready_state == "live" for track in self._tracks)

    def get_tracks(self) -> List[CaptureTrack]:
        return list(self._tracks)

    async def read_frame(self) -> Optional[np.ndarray]:
        """Read one BGR frame off the event loop; None when unavailable."""
        if not self.active:
            return None
        ret, frame = await asyncio.to_thread(self._capture.read)
        self.frames_read += 1
        if not ret or frame is None:
            self.frames_dropped += 1
            return None
        return frame

    def stop(self) -> None:
        """Stop every track and release the device."""
        was_active = self.active
        for track in self._tracks:
            track.stop()
        if was_active:
            logger.info(
                f"Camera {self.device_index} released "
                f"(frames={self.frames_read}, dropped={self.frames_dropped})"
            )

    def __enter__(self) -> "OpenCVCameraStream":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.stop()


def _check_device_access(device_index: int) -> None:
    """
    Distinguish a missing device from a denied one where the OS allows it.

    On Linux the capture device is a /dev/video node; elsewhere nothing can be
    checked before opening.
    """
    if not sys.platform.startswith('linux'):
        return
    device_path = f"/dev/video{device_index}"
    if not os.path.exists(device_path):
        raise CameraNotFoundError(f"No camera found at {device_path}")
    if not os.access(device_path, os.R_OK | os.W_OK):
        raise CameraPermissionDeniedError(f"Permission denied for {device_path}")


def acquire_camera(
    constraints: Optional[VideoConstraints] = None,
    device_index: Optional[int] = None,
    backend: int = cv2.CAP_ANY
) -> OpenCVCameraStream:
    """
    Open the camera with the requested constraints.

    Args:
        constraints: Capture settings, desktop defaults when omitted
        device_index: System camera index
        backend: OpenCV capture backend

    Returns:
        OpenCVCameraStream: An active stream

    Raises:
        CameraNotFoundError: No capture device exists
        CameraPermissionDeniedError: Access to the device was refused
        CameraError: The device exists but could not be opened
    """
    constraints = constraints or VideoConstraints(width=config.CAMERA_WIDTH, height=config.CAMERA_HEIGHT)
    device_index = config.CAMERA_DEVICE_INDEX if device_index is None else device_index

    _check_device_access(device_index)

    capture = cv2.VideoCapture(device_index, backend)
    if not capture.isOpened():
        capture.release()
        raise CameraError(f"Failed to open camera {device_index}")

    capture.set(cv2.CAP_PROP_FRAME_WIDTH, constraints.width)
    capture.set(cv2.CAP_PROP_FRAME_HEIGHT, constraints.height)
    # One-frame buffer so the loop never evaluates stale frames
    capture.set(cv2.CAP_PROP_BUFFERSIZE, 1)

    logger.info(
        f"Camera {device_index} opened "
        f"({int(capture.get(cv2.CAP_PROP_FRAME_WIDTH))}x{int(capture.get(cv2.CAP_PROP_FRAME_HEIGHT))}, "
        f"facing={constraints.facing_mode})"
    )
    return OpenCVCameraStream(capture, constraints, device_index)
