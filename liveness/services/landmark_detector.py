"""
Landmark detectors for liveness verification.

A detector turns one video frame into zero or one face Detection. The precise
detector wraps the MediaPipe Face Landmarker; when it cannot be loaded the
session falls back to the pixel-statistics HeuristicFaceDetector, which shares
the same interface.
"""
import logging
import time
from typing import List, Optional, Protocol, Tuple

import cv2
import mediapipe as mp
import numpy as np

from ..config import config
from ..exceptions import DetectorLoadError
from ..models.data_models import BoundingBox, Detection, FaceLandmarks
from .expression_analyzer import ExpressionAnalyzer
from .heuristic_detector import HeuristicFaceDetector
from .model_loader import ModelAssetLoader, model_loader

logger = logging.getLogger(__name__)


class LandmarkDetector(Protocol):
    """Capability shared by every detector"""

    name: str

    async def load(self) -> None:
        ...

    def detect(self, frame: np.ndarray) -> Optional[Detection]:
        ...

    def close(self) -> None:
        ...


# MediaPipe FaceMesh indices, eye contours ordered p0..p5 for the EAR:
# p0/p3 corners, p1/p2 upper lid, p4/p5 lower lid (p1 above p5, p2 above p4)
RIGHT_EYE_INDICES = [33, 160, 158, 133, 153, 144]
LEFT_EYE_INDICES = [362, 385, 387, 263, 373, 380]
# Bridge top -> tip (index 3 is the nose tip) -> nostrils
NOSE_INDICES = [168, 6, 197, 1, 98, 97, 2, 326, 327]
# Outer lip ring starting at the right mouth corner
MOUTH_INDICES = [61, 40, 37, 0, 267, 270, 291, 321, 405, 17, 181, 91]
RIGHT_EAR_INDICES = [234]
LEFT_EAR_INDICES = [454]

SMILE_BLENDSHAPES = ("mouthSmileLeft", "mouthSmileRight")


class MediaPipeLandmarkDetector:
    """
    Detects a single face and its landmarks using the MediaPipe Face Landmarker.

    The landmarker runs on a downscaled copy of the frame. When an inference
    exceeds the frame budget, or raises, the detector steps down to the next
    smaller input size instead of stalling the session.
    """

    name = "mediapipe"

    def __init__(
        self,
        model_path: Optional[str] = None,
        input_sizes: Optional[List[Tuple[int, int]]] = None,
        frame_budget_ms: float = config.FRAME_BUDGET_MS,
        expression_analyzer: Optional[ExpressionAnalyzer] = None,
        loader: Optional[ModelAssetLoader] = None
    ):
        """
        Args:
            model_path: Path to the face_landmarker.task asset
            input_sizes: Detector input sizes (width, height), tried high to low
            frame_budget_ms: Inference time above which the input size drops
            expression_analyzer: Expression source used when the model
                returns no blendshapes
            loader: Asset loader, defaults to the process-wide cache
        """
        self.model_path = model_path or config.FACE_LANDMARKER_MODEL_PATH
        self.input_sizes = list(input_sizes or config.DETECTOR_INPUT_SIZES)
        self.frame_budget_ms = frame_budget_ms
        self.expression_analyzer = expression_analyzer
        self.loader = loader or model_loader
        self._size_index = 0
        self._face_landmarker = None

    @property
    def input_size(self) -> Tuple[int, int]:
        return self.input_sizes[self._size_index]

    @property
    def loaded(self) -> bool:
        return self._face_landmarker is not None

    async def load(self) -> None:
        """
        Load the model asset and build the landmarker.

        Raises:
            DetectorLoadError: If the asset is missing or MediaPipe rejects it
        """
        if self._face_landmarker is not None:
            return
        model_bytes = await self.loader.load(self.model_path)
        self._face_landmarker = self._create_landmarker(model_bytes)
        logger.info(f"MediaPipe Face Landmarker ready (input sizes: {self.input_sizes})")

    def _create_landmarker(self, model_bytes: bytes):
        try:
            base_options = mp.tasks.BaseOptions(model_asset_buffer=model_bytes)
            options = mp.tasks.vision.FaceLandmarkerOptions(
                base_options=base_options,
                running_mode=mp.tasks.vision.RunningMode.IMAGE,
                num_faces=1,
                min_face_detection_confidence=0.3,
                min_face_presence_confidence=0.3,
                output_face_blendshapes=True,
                output_facial_transformation_matrixes=False
            )
            return mp.tasks.vision.FaceLandmarker.create_from_options(options)
        except Exception as e:
            raise DetectorLoadError(f"Failed to initialize MediaPipe FaceLandmarker: {e}") from e

    @staticmethod
    def fit_size(frame_shape: tuple, target_size: Tuple[int, int]) -> Tuple[int, int]:
        """Largest (width, height) inside target_size with the frame's aspect ratio."""
        height, width = frame_shape[:2]
        scale = min(target_size[0] / width, target_size[1] / height, 1.0)
        return max(1, int(round(width * scale))), max(1, int(round(height * scale)))

    def preprocess_frame(self, frame: np.ndarray, target_size: tuple = (640, 480)) -> np.ndarray:
        """
        Resize a BGR frame and convert it to RGB for MediaPipe.

        Args:
            frame: Input frame in BGR format (OpenCV default)
            target_size: Target dimensions (width, height)

        Returns:
            np.ndarray: Resized frame in RGB format
        """
        resized = cv2.resize(frame, target_size, interpolation=cv2.INTER_LINEAR)
        return cv2.cvtColor(resized, cv2.COLOR_BGR2RGB)

    def detect(self, frame: np.ndarray) -> Optional[Detection]:
        """
        Detect the face in a frame.

        Args:
            frame: Video frame in BGR format

        Returns:
            Detection in pixel coordinates of the original frame, or None when
            no face is present
        """
        if self._face_landmarker is None:
            raise DetectorLoadError("Face landmarker is not loaded; call load() first")

        frame_height, frame_width = frame.shape[:2]
        while True:
            target = self.fit_size(frame.shape, self.input_size)
            rgb_frame = self.preprocess_frame(frame, target)
            mp_image = mp.Image(image_format=mp.ImageFormat.SRGB, data=rgb_frame)

            started = time.perf_counter()
            try:
                detection_result = self._face_landmarker.detect(mp_image)
            except Exception as e:
                logger.warning(f"Landmark inference failed at {target[0]}x{target[1]}: {e}")
                if self._step_down():
                    continue
                raise
            elapsed_ms = (time.perf_counter() - started) * 1000.0
            if elapsed_ms > self.frame_budget_ms:
                logger.debug(f"Inference took {elapsed_ms:.1f} ms (budget {self.frame_budget_ms:.0f} ms)")
                self._step_down()
            break

        if not detection_result.face_landmarks:
            return None

        points = np.array(
            [[lm.x * frame_width, lm.y * frame_height] for lm in detection_result.face_landmarks[0]]
        )
        expressions = self._expressions(detection_result, frame)
        return self.build_detection(points, frame_width, frame_height, expressions)

    def _step_down(self) -> bool:
        """Move to the next smaller input size; False when already smallest."""
        if self._size_index + 1 >= len(self.input_sizes):
            return False
        self._size_index += 1
        width, height = self.input_size
        logger.info(f"Reducing detector input size to {width}x{height}")
        return True

    def _expressions(self, detection_result, frame: np.ndarray) -> Optional[dict]:
        blendshapes = getattr(detection_result, 'face_blendshapes', None)
        if blendshapes:
            scores = {c.category_name: c.score for c in blendshapes[0]}
            smile = [scores[name] for name in SMILE_BLENDSHAPES if name in scores]
            if smile:
                return {"happy": float(sum(smile) / len(smile))}
        if self.expression_analyzer is not None:
            return self.expression_analyzer.expression_scores(frame)
        return None

    @staticmethod
    def build_detection(
        points: np.ndarray,
        frame_width: int,
        frame_height: int,
        expressions: Optional[dict] = None
    ) -> Detection:
        """
        Build a Detection from a full 478-point mesh in pixel coordinates.

        Args:
            points: (478, 2) pixel landmarks
            frame_width: Width of the source frame
            frame_height: Height of the source frame
            expressions: Expression probabilities, if any

        Returns:
            Detection: Box, grouped landmarks and expressions
        """
        landmarks = FaceLandmarks(
            right_eye=points[RIGHT_EYE_INDICES],
            left_eye=points[LEFT_EYE_INDICES],
            nose=points[NOSE_INDICES],
            mouth=points[MOUTH_INDICES],
            right_ear=points[RIGHT_EAR_INDICES],
            left_ear=points[LEFT_EAR_INDICES],
        )

        x_min, y_min = np.clip(points.min(axis=0), 0, [frame_width, frame_height])
        x_max, y_max = np.clip(points.max(axis=0), 0, [frame_width, frame_height])
        box = BoundingBox(
            x=float(x_min),
            y=float(y_min),
            width=float(x_max - x_min),
            height=float(y_max - y_min)
        )

        # Share of the mesh that falls inside the frame
        inside = (
            (points[:, 0] >= 0) & (points[:, 0] <= frame_width) &
            (points[:, 1] >= 0) & (points[:, 1] <= frame_height)
        )
        return Detection(
            confidence=float(np.mean(inside)),
            box=box,
            landmarks=landmarks,
            expressions=expressions,
            source=MediaPipeLandmarkDetector.name,
        )

    def close(self) -> None:
        """Release MediaPipe resources"""
        if self._face_landmarker is not None:
            self._face_landmarker.close()
            self._face_landmarker = None


async def load_detector(
    model_path: Optional[str] = None,
    allow_fallback: bool = config.USE_HEURISTIC_FALLBACK,
    expression_analyzer: Optional[ExpressionAnalyzer] = None,
    use_deepface: bool = config.USE_DEEPFACE_EXPRESSIONS
) -> LandmarkDetector:
    """
    Load the precise detector, falling back to the heuristic one.

    Args:
        model_path: Face landmarker asset path
        allow_fallback: Whether the heuristic detector may replace a precise
            detector that failed to load
        expression_analyzer: Passed to the precise detector
        use_deepface: Build a DeepFace analyzer when none is given, for
            models that report no smile blendshapes

    Returns:
        LandmarkDetector: A loaded detector, never None

    Raises:
        DetectorLoadError: If the precise detector failed and fallback is off
    """
    if expression_analyzer is None and use_deepface:
        expression_analyzer = ExpressionAnalyzer()
    detector = MediaPipeLandmarkDetector(model_path=model_path, expression_analyzer=expression_analyzer)
    try:
        await detector.load()
        return detector
    except DetectorLoadError as e:
        if not allow_fallback:
            logger.error(f"Landmark detector unavailable: {e}")
            raise
        logger.warning(f"Landmark detector unavailable, using heuristic face detector: {e}")

    fallback = HeuristicFaceDetector()
    await fallback.load()
    return fallback
