"""
Geometry evaluators for liveness challenges.

Pure functions over 2D landmark points. Nothing here keeps state, so the same
input always produces the same output.
"""
from typing import Dict, Optional

import numpy as np

from ..models.data_models import BoundingBox, EyeState, FaceLandmarks

EAR_CLOSED_THRESHOLD = 0.27
SMILE_THRESHOLD = 0.7

# Returned for a degenerate eye contour (zero horizontal span)
NEUTRAL_EAR = 0.3

# Acceptable face-centre window as fractions of the frame
CENTER_X_RANGE = (0.3, 0.7)
CENTER_Y_RANGE = (0.2, 0.8)


def eye_center(eye: np.ndarray) -> np.ndarray:
    """Mean of an eye contour's points."""
    return np.asarray(eye, dtype=float).mean(axis=0)


def calculate_yaw(landmarks: FaceLandmarks) -> float:
    """
    Horizontal head-rotation proxy.

    The nose tip's x offset from the midpoint between the two eye centres.
    Positive when the nose sits right of the eyes in image space. This is not a
    calibrated angle and is only meaningful relative to a baseline.

    Args:
        landmarks: Landmarks of a single face

    Returns:
        float: nose_tip.x - eye_midpoint.x in pixels
    """
    left = eye_center(landmarks.left_eye)
    right = eye_center(landmarks.right_eye)
    midpoint_x = (left[0] + right[0]) / 2.0
    return float(landmarks.nose_tip[0] - midpoint_x)


def eye_aspect_ratio(eye: np.ndarray) -> float:
    """
    Eye aspect ratio for a six point eye contour p0..p5.

    EAR = (|p1 - p5| + |p2 - p4|) / (2 * |p0 - p3|)
    """
    points = np.asarray(eye, dtype=float)
    if points.shape[0] < 6:
        return NEUTRAL_EAR

    vertical_1 = np.linalg.norm(points[1] - points[5])
    vertical_2 = np.linalg.norm(points[2] - points[4])
    horizontal = np.linalg.norm(points[0] - points[3])

    if horizontal == 0:
        return NEUTRAL_EAR
    return float((vertical_1 + vertical_2) / (2.0 * horizontal))


def average_eye_aspect_ratio(landmarks: FaceLandmarks) -> float:
    """Mean EAR of the left and right eye."""
    left_ear = eye_aspect_ratio(landmarks.left_eye)
    right_ear = eye_aspect_ratio(landmarks.right_eye)
    return (left_ear + right_ear) / 2.0


def classify_eye_state(ear: float, threshold: float = EAR_CLOSED_THRESHOLD) -> EyeState:
    """Closed when the EAR drops below the threshold."""
    return EyeState.CLOSED if ear < threshold else EyeState.OPEN


def is_blink_edge(last_state: EyeState, current_state: EyeState) -> bool:
    """A blink is counted on the open -> closed transition only."""
    return last_state == EyeState.OPEN and current_state == EyeState.CLOSED


def smile_score(expressions: Optional[Dict[str, float]]) -> float:
    """The detector's `happy` probability, 0.0 when unavailable."""
    if not expressions:
        return 0.0
    return float(expressions.get("happy", 0.0))


def is_smiling(expressions: Optional[Dict[str, float]], threshold: float = SMILE_THRESHOLD) -> bool:
    return smile_score(expressions) > threshold


def is_centered(box: BoundingBox, frame_width: float, frame_height: float) -> bool:
    """Whether the face centre lies inside the central window of the frame."""
    center_x, center_y = box.center
    return (
        frame_width * CENTER_X_RANGE[0] < center_x < frame_width * CENTER_X_RANGE[1]
        and frame_height * CENTER_Y_RANGE[0] < center_y < frame_height * CENTER_Y_RANGE[1]
    )
