"""
Expression Analyzer for scoring facial expressions with DeepFace
"""
import logging
from typing import Dict, Optional

import numpy as np

logger = logging.getLogger(__name__)


class ExpressionAnalyzer:
    """
    Scores facial expressions of a frame using DeepFace.

    Used by the landmark detector to obtain a `happy` probability when the
    landmark model itself provides no blendshapes. DeepFace is imported lazily;
    without it the analyzer reports no expressions and only the smile challenge
    is affected.
    """

    # DeepFace label -> expression key used by the geometry evaluators
    LABELS = {
        "happy": "happy",
        "sad": "sad",
        "angry": "angry",
        "surprise": "surprised",
        "fear": "fearful",
        "disgust": "disgusted",
        "neutral": "neutral",
    }

    def __init__(self):
        self._deepface_available = None
        self._deepface = None

    @property
    def deepface_available(self) -> bool:
        """
        Check if DeepFace is available for expression scoring.

        Returns:
            bool: True if DeepFace can be imported, False otherwise
        """
        if self._deepface_available is None:
            try:
                from deepface import DeepFace
                self._deepface = DeepFace
                self._deepface_available = True
            except ImportError:
                logger.warning("DeepFace is not installed; expression scores are unavailable")
                self._deepface_available = False

        return self._deepface_available

    def expression_scores(self, frame: np.ndarray) -> Optional[Dict[str, float]]:
        """
        Expression probabilities for the first face in a frame.

        Args:
            frame: Video frame in BGR format (OpenCV default)

        Returns:
            Dict mapping expression name to a probability in [0, 1], or None
            when DeepFace is unavailable, the frame is empty, or no face was
            analysed
        """
        if frame is None or frame.size == 0:
            return None

        if not self.deepface_available:
            return None

        try:
            result = self._deepface.analyze(
                img_path=frame,
                actions=['emotion'],
                enforce_detection=False,
                detector_backend='opencv',
                silent=True
            )
        except Exception as e:
            logger.debug(f"DeepFace analysis failed: {e}")
            return None

        # analyze() returns one dict per face in recent releases
        if isinstance(result, list):
            if len(result) == 0:
                return None
            result = result[0]

        emotion_scores = result.get('emotion', {})
        if not emotion_scores:
            return None

        return {
            self.LABELS.get(label, label): float(value) / 100.0
            for label, value in emotion_scores.items()
        }
