"""
Challenge Engine: the fixed liveness challenge sequence and the state machine
that walks a session through it one detection frame at a time.
"""
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from ..config import config
from ..models.data_models import (
    Challenge,
    ChallengeType,
    Detection,
    EyeState,
    LivenessResult,
    SessionState,
)
from . import geometry
from .session_events import (
    ChallengeCompleted,
    ChallengeStarted,
    ChallengeTimedOut,
    ProgressUpdated,
    SessionEvent,
)

logger = logging.getLogger(__name__)


class ChallengeEngine:
    """
    Builds the challenge sequence for a verification attempt.

    The order is fixed and is never reshuffled or reconfigured mid-session.
    """

    CHALLENGE_ORDER = [
        ChallengeType.CENTER,
        ChallengeType.TURN_LEFT,
        ChallengeType.TURN_RIGHT,
        ChallengeType.BLINK,
        ChallengeType.SMILE,
    ]

    # Human-readable instructions for each challenge
    CHALLENGE_INSTRUCTIONS = {
        ChallengeType.CENTER: "Look straight at the camera",
        ChallengeType.TURN_LEFT: "Slowly turn your head LEFT",
        ChallengeType.TURN_RIGHT: "Slowly turn your head RIGHT",
        ChallengeType.BLINK: "Blink your eyes twice",
        ChallengeType.SMILE: "Give us a big smile!",
    }

    CHALLENGE_ICONS = {
        ChallengeType.CENTER: "👤",
        ChallengeType.TURN_LEFT: "👈",
        ChallengeType.TURN_RIGHT: "👉",
        ChallengeType.BLINK: "😑",
        ChallengeType.SMILE: "😊",
    }

    def create_challenges(self) -> List[Challenge]:
        """
        Create a fresh, uncompleted challenge sequence.

        Returns:
            List[Challenge]: One challenge per type, in CHALLENGE_ORDER
        """
        return [
            Challenge(
                type=challenge_type,
                instruction=self.CHALLENGE_INSTRUCTIONS[challenge_type],
                icon=self.CHALLENGE_ICONS[challenge_type],
            )
            for challenge_type in self.CHALLENGE_ORDER
        ]


@dataclass
class TickResult:
    """What happened during one state-machine tick"""
    events: List[SessionEvent] = field(default_factory=list)
    screenshot_requested: bool = False
    finished: bool = False


class ChallengeStateMachine:
    """
    Evaluates the active challenge against each detection and advances the
    session.

    Gesture challenges (center, turns, smile) must hold their pose for a
    dwell time summed from wall-clock deltas between qualifying frames. A
    failing frame resets the hold; a frame without a face only pauses it.
    Blink is an edge event and completes on a count of open -> closed
    transitions instead. A challenge that is still open after the timeout is
    skipped without being marked completed.
    """

    def __init__(
        self,
        engine: Optional[ChallengeEngine] = None,
        timeout_seconds: float = config.CHALLENGE_TIMEOUT_SECONDS,
        center_dwell_ms: float = config.CENTER_DWELL_MS,
        gesture_dwell_ms: float = config.GESTURE_DWELL_MS,
        yaw_threshold: float = config.YAW_THRESHOLD,
        ear_threshold: float = config.EAR_THRESHOLD,
        blinks_required: int = config.BLINKS_REQUIRED,
        smile_threshold: float = config.SMILE_THRESHOLD,
    ):
        self.engine = engine or ChallengeEngine()
        self.timeout_seconds = timeout_seconds
        self.center_dwell_ms = center_dwell_ms
        self.gesture_dwell_ms = gesture_dwell_ms
        self.yaw_threshold = yaw_threshold
        self.ear_threshold = ear_threshold
        self.blinks_required = blinks_required
        self.smile_threshold = smile_threshold
        self.state = SessionState(challenges=self.engine.create_challenges())

    @property
    def total(self) -> int:
        return len(self.state.challenges)

    @property
    def finished(self) -> bool:
        return self.state.current_index >= self.total

    @property
    def progress(self) -> float:
        return min(self.state.current_index, self.total) / self.total * 100.0

    def begin(self, now: float) -> List[SessionEvent]:
        """Reset all session state and activate the first challenge."""
        self.state = SessionState(
            challenges=self.engine.create_challenges(),
            challenge_start_timestamp=now,
            running=True,
        )
        first = self.state.challenges[0]
        logger.info(f"Liveness session started: first challenge '{first.type.value}'")
        return [ChallengeStarted(challenge=first, index=0, total=self.total)]

    def halt(self) -> None:
        self.state.running = False

    def remaining_seconds(self, now: float) -> float:
        """Seconds left before the active challenge times out."""
        if not self.state.running:
            return 0.0
        elapsed = now - self.state.challenge_start_timestamp
        return max(0.0, self.timeout_seconds - elapsed)

    def add_screenshot(self, screenshot: str) -> None:
        self.state.screenshots.append(screenshot)

    def result(self, timestamp: Optional[int] = None) -> LivenessResult:
        return LivenessResult.from_challenges(
            self.state.challenges,
            screenshots=self.state.screenshots,
            timestamp=timestamp,
        )

    def process_frame(
        self,
        detection: Optional[Detection],
        frame_size: Tuple[int, int],
        now: float
    ) -> TickResult:
        """
        Run one tick for a frame's detection.

        Args:
            detection: Detection for the frame, None when no face was found
            frame_size: (width, height) of the frame the detection came from
            now: Monotonic wall-clock time of the frame, in seconds

        Returns:
            TickResult: Events to publish and whether to capture a screenshot
        """
        tick = TickResult()
        if not self.state.running or self.finished:
            tick.finished = self.finished
            return tick

        challenge = self.state.active_challenge
        if detection is None:
            # Held time is kept but the gap without a face is not counted
            self.state.last_hold_frame_at = None
        elif not challenge.completed and self._evaluate(challenge, detection, frame_size, now):
            challenge.completed = True
            tick.screenshot_requested = True
            index = self.state.current_index
            logger.info(f"Challenge {index + 1}/{self.total} completed: {challenge.type.value}")
            tick.events.append(ChallengeCompleted(challenge=challenge, index=index, total=self.total))
            self._advance(now, tick)
            return tick

        if now - self.state.challenge_start_timestamp > self.timeout_seconds:
            index = self.state.current_index
            logger.info(f"Challenge {index + 1}/{self.total} timed out: {challenge.type.value}")
            tick.events.append(ChallengeTimedOut(challenge=challenge, index=index, total=self.total))
            self._advance(now, tick)

        return tick

    def _advance(self, now: float, tick: TickResult) -> None:
        self.state.current_index += 1
        self._reset_challenge_state()
        self.state.challenge_start_timestamp = now
        tick.events.append(ProgressUpdated(progress=self.progress))

        if self.finished:
            self.state.running = False
            tick.finished = True
            return

        next_challenge = self.state.active_challenge
        tick.events.append(ChallengeStarted(
            challenge=next_challenge,
            index=self.state.current_index,
            total=self.total
        ))

    def _reset_hold(self) -> None:
        self.state.challenge_hold_time_ms = 0.0
        self.state.last_hold_frame_at = None

    def _reset_challenge_state(self) -> None:
        self._reset_hold()
        active = self.state.active_challenge
        if active is not None and active.type == ChallengeType.BLINK:
            self.state.blink_count = 0
            self.state.last_eye_state = EyeState.OPEN

    def _hold(self, qualifies: bool, now: float, dwell_ms: float) -> bool:
        """Accumulate hold time frame to frame; True once it reaches dwell_ms."""
        if not qualifies:
            self._reset_hold()
            return False
        last = self.state.last_hold_frame_at
        if last is not None:
            delta_ms = round((now - last) * 1000.0, 3)
            self.state.challenge_hold_time_ms = round(self.state.challenge_hold_time_ms + delta_ms, 3)
        self.state.last_hold_frame_at = now
        return self.state.challenge_hold_time_ms >= dwell_ms

    def _evaluate(
        self,
        challenge: Challenge,
        detection: Detection,
        frame_size: Tuple[int, int],
        now: float
    ) -> bool:
        landmarks = detection.landmarks
        baseline = self.state.baseline_yaw or 0.0

        if challenge.type == ChallengeType.CENTER:
            width, height = frame_size
            centered = geometry.is_centered(detection.box, width, height)
            if centered and self.state.baseline_yaw is None and landmarks is not None:
                self.state.baseline_yaw = geometry.calculate_yaw(landmarks)
                logger.debug(f"Baseline yaw captured: {self.state.baseline_yaw:.2f}")
            return self._hold(centered, now, self.center_dwell_ms)

        if challenge.type == ChallengeType.TURN_LEFT:
            turned = landmarks is not None and \
                geometry.calculate_yaw(landmarks) < baseline - self.yaw_threshold
            return self._hold(turned, now, self.gesture_dwell_ms)

        if challenge.type == ChallengeType.TURN_RIGHT:
            turned = landmarks is not None and \
                geometry.calculate_yaw(landmarks) > baseline + self.yaw_threshold
            return self._hold(turned, now, self.gesture_dwell_ms)

        if challenge.type == ChallengeType.BLINK:
            if landmarks is None:
                return False
            ear = geometry.average_eye_aspect_ratio(landmarks)
            current_state = geometry.classify_eye_state(ear, self.ear_threshold)
            if geometry.is_blink_edge(self.state.last_eye_state, current_state):
                self.state.blink_count += 1
                logger.info(f"Blink detected: {self.state.blink_count}/{self.blinks_required} (EAR: {ear:.3f})")
            self.state.last_eye_state = current_state
            return self.state.blink_count >= self.blinks_required

        if challenge.type == ChallengeType.SMILE:
            smiling = geometry.is_smiling(detection.expressions, self.smile_threshold)
            return self._hold(smiling, now, self.gesture_dwell_ms)

        logger.warning(f"Unknown challenge type: {challenge.type}")
        return False
