"""
Heuristic face presence detector.

Used when no landmark model is available. It inspects the central region of
the frame for skin-tone pixels and a plausible brightness histogram. It yields
a centred box with low confidence, no landmarks and no expressions, so only the
center challenge can be satisfied from its output.
"""
import logging
from typing import Optional

import cv2
import numpy as np

from ..models.data_models import BoundingBox, Detection

logger = logging.getLogger(__name__)


class HeuristicFaceDetector:
    """Skin-tone ratio plus brightness histogram over the frame centre"""

    name = "heuristic"

    # Central region inspected, as fractions of width and height
    REGION_WIDTH = 0.5
    REGION_HEIGHT = 0.6

    # HSV skin range
    LOWER_SKIN = np.array([0, 20, 70], dtype=np.uint8)
    UPPER_SKIN = np.array([20, 255, 255], dtype=np.uint8)

    MIN_SKIN_RATIO = 0.15
    MIN_MEAN_BRIGHTNESS = 40.0
    MAX_MEAN_BRIGHTNESS = 230.0
    # Share of pixels allowed in the darkest or brightest histogram bin
    MAX_CLIPPED_RATIO = 0.6

    MAX_CONFIDENCE = 0.5
    FAILURE_CONFIDENCE = 0.1

    async def load(self) -> None:
        logger.info("Heuristic face detector ready (low confidence, no landmarks)")

    def central_region(self, frame: np.ndarray):
        """Return the central crop and its (x, y, w, h) in frame coordinates."""
        height, width = frame.shape[:2]
        region_w = int(width * self.REGION_WIDTH)
        region_h = int(height * self.REGION_HEIGHT)
        x = (width - region_w) // 2
        y = (height - region_h) // 2
        return frame[y:y + region_h, x:x + region_w], (x, y, region_w, region_h)

    def skin_ratio(self, region: np.ndarray) -> float:
        hsv = cv2.cvtColor(region, cv2.COLOR_BGR2HSV)
        mask = cv2.inRange(hsv, self.LOWER_SKIN, self.UPPER_SKIN)
        return float(np.count_nonzero(mask)) / mask.size

    def brightness_ok(self, region: np.ndarray) -> bool:
        gray = cv2.cvtColor(region, cv2.COLOR_BGR2GRAY)
        mean = float(gray.mean())
        if mean < self.MIN_MEAN_BRIGHTNESS or mean > self.MAX_MEAN_BRIGHTNESS:
            return False
        hist = cv2.calcHist([gray], [0], None, [16], [0, 256]).ravel()
        total = hist.sum()
        if total == 0:
            return False
        clipped = max(hist[0], hist[-1]) / total
        return clipped <= self.MAX_CLIPPED_RATIO

    def detect(self, frame: np.ndarray) -> Optional[Detection]:
        """
        Estimate whether a face is present in the frame centre.

        Never raises: if the analysis itself fails the frame is reported as
        containing a face with minimal confidence.
        """
        try:
            region, (x, y, w, h) = self.central_region(frame)
            ratio = self.skin_ratio(region)
            if ratio < self.MIN_SKIN_RATIO or not self.brightness_ok(region):
                return None
            confidence = min(self.MAX_CONFIDENCE, ratio)
        except Exception as e:
            logger.warning(f"Heuristic face detection failed, assuming face present: {e}")
            height, width = frame.shape[:2] if frame is not None and frame.ndim >= 2 else (480, 640)
            w, h = int(width * self.REGION_WIDTH), int(height * self.REGION_HEIGHT)
            x, y = (width - w) // 2, (height - h) // 2
            confidence = self.FAILURE_CONFIDENCE

        return Detection(
            confidence=float(confidence),
            box=BoundingBox(x=float(x), y=float(y), width=float(w), height=float(h)),
            landmarks=None,
            expressions=None,
            source=self.name,
        )

    def close(self) -> None:
        pass
