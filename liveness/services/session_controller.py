"""
Capture/Session Controller

Owns the camera stream and the detection loop of one verification attempt.
A session is created per attempt by its caller; nothing here is shared across
sessions except the cached model assets.
"""
import asyncio
import base64
import inspect
import logging
import time
import uuid
from typing import Awaitable, Callable, Optional, Union

import cv2
import numpy as np

from ..config import config
from ..exceptions import (
    CameraError,
    DetectorLoadError,
    SessionCancelledError,
    SessionNotInitializedError,
    user_message,
)
from ..models.data_models import LivenessResult
from .camera import CameraStream, VideoConstraints, acquire_camera
from .challenge_engine import ChallengeStateMachine
from .heuristic_detector import HeuristicFaceDetector
from .landmark_detector import LandmarkDetector, load_detector
from .result_reporter import ResultReporter
from .session_events import FaceDetected, SessionEnded, SessionError, SessionEventBus

logger = logging.getLogger(__name__)

SCREENSHOT_JPEG_QUALITY = 80
# Pause after a dropped frame so a failing camera does not spin the loop
DROPPED_FRAME_DELAY = 0.01

DetectorFactory = Callable[[], Awaitable[LandmarkDetector]]
CameraFactory = Callable[[VideoConstraints], Union[CameraStream, Awaitable[CameraStream]]]


def encode_screenshot(frame: np.ndarray, quality: int = SCREENSHOT_JPEG_QUALITY) -> Optional[str]:
    """Encode a BGR frame as a JPEG data URL."""
    ok, buffer = cv2.imencode('.jpg', frame, [cv2.IMWRITE_JPEG_QUALITY, quality])
    if not ok:
        logger.warning("Failed to encode screenshot")
        return None
    return "data:image/jpeg;base64," + base64.b64encode(buffer.tobytes()).decode('ascii')


class LivenessSession:
    """
    Runs a liveness check against a camera stream.

    Lifecycle: initialize() loads the detector and acquires the camera,
    start_preview() optionally shows face presence, start() runs the timed
    challenge sequence and returns the result, stop()/cleanup() abort at any
    point and release the camera. Preview and the timed session never run at
    the same time.

    Usage:
        async with LivenessSession(reporter=reporter) as session:
            result = await session.start()
    """

    def __init__(
        self,
        session_id: Optional[str] = None,
        detector_factory: Optional[DetectorFactory] = None,
        camera_factory: Optional[CameraFactory] = None,
        constraints: Optional[VideoConstraints] = None,
        reporter: Optional[ResultReporter] = None,
        events: Optional[SessionEventBus] = None,
        state_machine: Optional[ChallengeStateMachine] = None,
        clock: Callable[[], float] = time.monotonic,
        max_detection_failures: int = config.DETECTOR_FAILURE_LIMIT,
        allow_detector_fallback: bool = config.USE_HEURISTIC_FALLBACK
    ):
        self.session_id = session_id or str(uuid.uuid4())
        self.constraints = constraints or VideoConstraints.desktop()
        self.reporter = reporter
        self.events = events or SessionEventBus()
        self.state_machine = state_machine or ChallengeStateMachine()
        self._detector_factory = detector_factory or load_detector
        self._camera_factory = camera_factory or acquire_camera
        self._clock = clock
        self.max_detection_failures = max_detection_failures
        self.allow_detector_fallback = allow_detector_fallback

        self.detector: Optional[LandmarkDetector] = None
        self.stream: Optional[CameraStream] = None
        self.result: Optional[LivenessResult] = None
        self._loop_task: Optional[asyncio.Task] = None
        self._preview_task: Optional[asyncio.Task] = None
        self._stopped = False
        self._detection_failures = 0

    @property
    def initialized(self) -> bool:
        return self.detector is not None and self.stream is not None and self.stream.active

    @property
    def running(self) -> bool:
        return self.state_machine.state.running

    @property
    def previewing(self) -> bool:
        return self._preview_task is not None and not self._preview_task.done()

    def remaining_seconds(self) -> float:
        """Countdown for the active challenge."""
        return self.state_machine.remaining_seconds(self._clock())

    async def initialize(self) -> None:
        """
        Load the detector and acquire the camera.

        Raises:
            DetectorLoadError: No detector could be loaded
            CameraError: The camera is missing, denied, or failed to open
        """
        self._stopped = False
        if self.detector is None:
            try:
                self.detector = await self._detector_factory()
            except DetectorLoadError as e:
                self._publish_error(e)
                raise
            logger.info(f"Session {self.session_id}: using {self.detector.name} detector")

        if self.stream is None or not self.stream.active:
            try:
                stream = self._camera_factory(self.constraints)
                if inspect.isawaitable(stream):
                    stream = await stream
            except CameraError as e:
                logger.error(f"Session {self.session_id}: camera unavailable ({e.kind}): {e}")
                self._publish_error(e)
                raise
            self.stream = stream

    def _publish_error(self, error: Exception) -> None:
        self.events.publish(SessionError(kind=getattr(error, "kind", "error"), message=user_message(error)))

    def _require_ready(self) -> None:
        if not self.initialized:
            raise SessionNotInitializedError("Session must be initialized before starting")

    async def start_preview(self) -> None:
        """Start face-presence-only detection, without evaluating challenges."""
        self._require_ready()
        if self.running:
            logger.warning(f"Session {self.session_id}: preview ignored while a session is running")
            return
        if self.previewing:
            return
        logger.info(f"Session {self.session_id}: starting face detection preview")
        self._preview_task = asyncio.create_task(self._preview_loop())

    async def stop_preview(self) -> None:
        task = self._preview_task
        self._preview_task = None
        if task is None or task.done():
            return
        logger.info(f"Session {self.session_id}: stopping face detection preview")
        task.cancel()
        await asyncio.wait([task])

    async def _preview_loop(self) -> None:
        while not self._stopped and self.stream is not None and self.stream.active:
            frame = await self.stream.read_frame()
            if frame is not None:
                try:
                    detection = await asyncio.to_thread(self.detector.detect, frame)
                except Exception as e:
                    logger.debug(f"Preview detection error: {e}")
                else:
                    self.events.publish(FaceDetected(detected=detection is not None))
            await asyncio.sleep(0)

    async def start(self) -> LivenessResult:
        """
        Run the timed challenge sequence.

        Returns:
            LivenessResult: Final result, also published as SessionEnded and
            reported to the result endpoint when a reporter is configured

        Raises:
            SessionNotInitializedError: initialize() has not succeeded
            SessionCancelledError: stop() or cleanup() was called mid-session
        """
        self._require_ready()
        await self.stop_preview()

        self._stopped = False
        self._detection_failures = 0
        self.result = None
        for event in self.state_machine.begin(self._clock()):
            self.events.publish(event)

        self._loop_task = asyncio.create_task(self._detection_loop())
        try:
            result = await self._loop_task
        except asyncio.CancelledError:
            cancelled_by_stop = self._stopped
            self.stop()
            if cancelled_by_stop:
                logger.info(f"Session {self.session_id}: cancelled")
                raise SessionCancelledError(f"Session {self.session_id} was stopped") from None
            raise
        except BaseException:
            self.stop()
            raise
        finally:
            self._loop_task = None

        self.result = result
        logger.info(
            f"Session {self.session_id} finished: passed={result.passed} score={result.score} "
            f"({result.completed_challenges}/{result.total_challenges})"
        )
        self.events.publish(SessionEnded(result=result))

        if self.reporter is not None:
            ack = await self.reporter.report(self.session_id, result)
            if not ack.ok:
                logger.warning(f"Session {self.session_id}: result not acknowledged ({ack.error})")
        return result

    async def _detection_loop(self) -> LivenessResult:
        machine = self.state_machine
        frame_size = (self.constraints.width, self.constraints.height)

        while True:
            if self._stopped:
                raise asyncio.CancelledError()
            if not machine.state.running:
                break

            frame = await self.stream.read_frame()
            now = self._clock()
            if frame is None:
                if not self.stream.active:
                    raise CameraError("Camera stream ended during the session")
                detection = None
                await asyncio.sleep(DROPPED_FRAME_DELAY)
            else:
                frame_size = (frame.shape[1], frame.shape[0])
                try:
                    detection = await asyncio.to_thread(self.detector.detect, frame)
                except Exception as e:
                    # A failed frame counts as a frame without a face so timeouts still run
                    logger.warning(f"Session {self.session_id}: detection error: {e}")
                    detection = None
                    self._detection_failed()
                else:
                    self._detection_failures = 0
                    self.events.publish(FaceDetected(detected=detection is not None))

            tick = machine.process_frame(detection, frame_size, now)
            if tick.screenshot_requested and frame is not None:
                screenshot = encode_screenshot(frame)
                if screenshot is not None:
                    machine.add_screenshot(screenshot)
            for event in tick.events:
                self.events.publish(event)

            # Yield to the event loop between frames
            await asyncio.sleep(0)

        return machine.result()

    def _detection_failed(self) -> None:
        self._detection_failures += 1
        if self._detection_failures < self.max_detection_failures:
            return
        if not self.allow_detector_fallback or isinstance(self.detector, HeuristicFaceDetector):
            return
        logger.warning(
            f"Session {self.session_id}: {self.detector.name} detector failed "
            f"{self._detection_failures} times in a row, switching to heuristic face detector"
        )
        self.detector.close()
        self.detector = HeuristicFaceDetector()
        self._detection_failures = 0

    def stop(self) -> None:
        """
        Halt detection and release the camera.

        Safe to call at any point, any number of times. No result is produced
        for a session stopped before it finished.
        """
        self._stopped = True
        self.state_machine.halt()
        for task in (self._loop_task, self._preview_task):
            if task is not None and not task.done():
                task.cancel()
        self._preview_task = None
        if self.stream is not None:
            self.stream.stop()
            self.stream = None

    def cleanup(self) -> None:
        """stop() and release the detector."""
        self.stop()
        if self.detector is not None:
            self.detector.close()
            self.detector = None
        self.events.close()

    async def __aenter__(self) -> "LivenessSession":
        try:
            await self.initialize()
        except BaseException:
            self.cleanup()
            raise
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        self.cleanup()
