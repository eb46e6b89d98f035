"""
Configuration management for the liveness service
"""
import os
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()


def _parse_sizes(raw: str) -> list:
    """Parse "640x480,512x384" into [(640, 480), (512, 384)]."""
    sizes = []
    for item in raw.split(','):
        item = item.strip().lower()
        if not item:
            continue
        width, height = item.split('x')
        sizes.append((int(width), int(height)))
    return sizes


class Config:
    """Application configuration"""

    # Model Configuration
    FACE_LANDMARKER_MODEL_PATH = os.getenv(
        'FACE_LANDMARKER_MODEL_PATH',
        str(Path.home() / '.mediapipe_models' / 'face_landmarker.task')
    )
    DETECTOR_INPUT_SIZES = _parse_sizes(os.getenv('DETECTOR_INPUT_SIZES', '640x480,512x384,320x240'))
    FRAME_BUDGET_MS = float(os.getenv('FRAME_BUDGET_MS', '100'))
    USE_HEURISTIC_FALLBACK = os.getenv('USE_HEURISTIC_FALLBACK', 'true').lower() == 'true'
    # Consecutive failed detections before a session switches to the heuristic detector
    DETECTOR_FAILURE_LIMIT = int(os.getenv('DETECTOR_FAILURE_LIMIT', '10'))
    USE_DEEPFACE_EXPRESSIONS = os.getenv('USE_DEEPFACE_EXPRESSIONS', 'false').lower() == 'true'

    # Camera Configuration
    CAMERA_DEVICE_INDEX = int(os.getenv('CAMERA_DEVICE_INDEX', '0'))
    CAMERA_WIDTH = int(os.getenv('CAMERA_WIDTH', '640'))
    CAMERA_HEIGHT = int(os.getenv('CAMERA_HEIGHT', '480'))

    # Challenge Configuration
    CHALLENGE_TIMEOUT_SECONDS = float(os.getenv('CHALLENGE_TIMEOUT_SECONDS', '30'))
    CENTER_DWELL_MS = float(os.getenv('CENTER_DWELL_MS', '1000'))
    GESTURE_DWELL_MS = float(os.getenv('GESTURE_DWELL_MS', '500'))
    YAW_THRESHOLD = float(os.getenv('YAW_THRESHOLD', '15'))
    EAR_THRESHOLD = float(os.getenv('EAR_THRESHOLD', '0.27'))
    BLINKS_REQUIRED = int(os.getenv('BLINKS_REQUIRED', '2'))
    SMILE_THRESHOLD = float(os.getenv('SMILE_THRESHOLD', '0.7'))

    # Reporting Configuration
    REPORT_BASE_URL = os.getenv('REPORT_BASE_URL', 'http://localhost:8000')
    REPORT_TIMEOUT_SECONDS = float(os.getenv('REPORT_TIMEOUT_SECONDS', '10'))
    MOBILE_CAPTURE_URL = os.getenv('MOBILE_CAPTURE_URL', 'http://localhost:3000/kyc/liveness-mobile')
    SESSION_TTL_SECONDS = int(os.getenv('SESSION_TTL_SECONDS', '900'))

    # Server Configuration
    HOST = os.getenv('HOST', '0.0.0.0')
    PORT = int(os.getenv('PORT', '8000'))
    CORS_ORIGINS = os.getenv('CORS_ORIGINS', 'http://localhost:3000').split(',')
    LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO').upper()


config = Config()
