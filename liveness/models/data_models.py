"""
Data models for the liveness verification pipeline
"""
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

import numpy as np


class ChallengeType(Enum):
    """Challenge kinds, in the order a session visits them"""
    CENTER = "center"
    TURN_LEFT = "turn_left"
    TURN_RIGHT = "turn_right"
    BLINK = "blink"
    SMILE = "smile"


class EyeState(Enum):
    OPEN = "open"
    CLOSED = "closed"


@dataclass
class Challenge:
    """A single step of the liveness protocol"""
    type: ChallengeType
    instruction: str
    icon: str
    completed: bool = False

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "instruction": self.instruction,
            "icon": self.icon,
            "completed": self.completed,
        }


@dataclass(frozen=True)
class BoundingBox:
    """Face bounding box in pixel coordinates of the source frame"""
    x: float
    y: float
    width: float
    height: float

    @property
    def center(self) -> Tuple[float, float]:
        return self.x + self.width / 2.0, self.y + self.height / 2.0


@dataclass
class FaceLandmarks:
    """
    Landmark groups consumed by the geometry evaluators.

    Every group is an (N, 2) array of pixel (x, y) points. The eye contours
    hold exactly six points ordered p0..p5 as used by the eye aspect ratio:
    p0/p3 are the horizontal corners, p1/p2 the upper lid, p4/p5 the lower lid.
    """
    right_eye: np.ndarray
    left_eye: np.ndarray
    nose: np.ndarray
    mouth: np.ndarray
    right_ear: Optional[np.ndarray] = None
    left_ear: Optional[np.ndarray] = None

    @property
    def nose_tip(self) -> np.ndarray:
        # Nose group runs bridge top to tip; index 3 is the tip.
        index = 3 if len(self.nose) > 3 else len(self.nose) - 1
        return self.nose[index]


@dataclass
class Detection:
    """Output of a landmark detector for one frame"""
    confidence: float
    box: BoundingBox
    landmarks: Optional[FaceLandmarks] = None
    expressions: Optional[Dict[str, float]] = None
    source: str = "unknown"


@dataclass
class DetectionFrameResult:
    """Transient per-tick view of a detection, never stored"""
    face_detected: bool
    box: Optional[BoundingBox] = None
    landmarks: Optional[FaceLandmarks] = None
    expressions: Optional[Dict[str, float]] = None

    @classmethod
    def from_detection(cls, detection: Optional[Detection]) -> "DetectionFrameResult":
        if detection is None:
            return cls(face_detected=False)
        return cls(
            face_detected=True,
            box=detection.box,
            landmarks=detection.landmarks,
            expressions=detection.expressions,
        )


@dataclass
class SessionState:
    """Mutable state of one verification attempt"""
    challenges: List[Challenge] = field(default_factory=list)
    current_index: int = 0
    baseline_yaw: Optional[float] = None
    blink_count: int = 0
    last_eye_state: EyeState = EyeState.OPEN
    challenge_hold_time_ms: float = 0.0
    challenge_start_timestamp: float = 0.0
    screenshots: List[str] = field(default_factory=list)
    running: bool = False
    # Previous qualifying frame; None right after a reset or a face-less frame
    last_hold_frame_at: Optional[float] = None

    @property
    def active_challenge(self) -> Optional[Challenge]:
        if 0 <= self.current_index < len(self.challenges):
            return self.challenges[self.current_index]
        return None


@dataclass(frozen=True)
class LivenessResult:
    """Final, immutable outcome of a session"""
    passed: bool
    score: int
    completed_challenges: int
    total_challenges: int
    screenshots: Tuple[str, ...] = ()
    timestamp: int = 0

    @classmethod
    def from_challenges(
        cls,
        challenges: List[Challenge],
        screenshots: Optional[List[str]] = None,
        timestamp: Optional[int] = None
    ) -> "LivenessResult":
        completed = sum(1 for c in challenges if c.completed)
        total = len(challenges)
        score = int(round(completed / total * 100)) if total else 0
        return cls(
            passed=total > 0 and completed >= total - 1,
            score=score,
            completed_challenges=completed,
            total_challenges=total,
            screenshots=tuple(screenshots or ()),
            timestamp=timestamp if timestamp is not None else int(time.time() * 1000),
        )

    def to_dict(self, include_screenshots: bool = True) -> dict:
        data = {
            "passed": self.passed,
            "score": self.score,
            "completedChallenges": self.completed_challenges,
            "totalChallenges": self.total_challenges,
            "timestamp": self.timestamp,
        }
        if include_screenshots:
            data["screenshots"] = list(self.screenshots)
        return data


@dataclass(frozen=True)
class ReportAck:
    """Outcome of posting a result to the report endpoint"""
    ok: bool
    status_code: Optional[int] = None
    error: Optional[str] = None
