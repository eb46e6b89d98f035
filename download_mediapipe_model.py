#!/usr/bin/env python3
"""
Download the MediaPipe Face Landmarker model.

The liveness detector loads this asset (with blendshapes) from
FACE_LANDMARKER_MODEL_PATH; without it sessions fall back to the heuristic
detector.
"""

import sys
import urllib.request
from pathlib import Path

from liveness.config import config

MODEL_URL = (
    "https://storage.googleapis.com/mediapipe-models/face_landmarker/"
    "face_landmarker/float16/latest/face_landmarker.task"
)


def download_model(model_path: Path) -> bool:
    """Download the Face Landmarker model to model_path unless it is already there."""
    model_path.parent.mkdir(parents=True, exist_ok=True)

    if model_path.exists():
        print(f"✓ Model already exists at {model_path}")
        print(f"✓ Model size: {model_path.stat().st_size / 1024 / 1024:.2f} MB")
        return True

    print(f"Downloading MediaPipe Face Landmarker from {MODEL_URL}...")
    print(f"Saving to {model_path}")

    def report_progress(block_num, block_size, total_size):
        if total_size > 0:
            percent = min(100, block_num * block_size * 100 / total_size)
            print(f"\rProgress: {percent:.1f}%", end="")

    try:
        urllib.request.urlretrieve(MODEL_URL, model_path, reporthook=report_progress)
    except OSError as e:
        print(f"\n✗ Download failed: {e}")
        if model_path.exists():
            model_path.unlink()
        return False

    print("\n✓ Download complete!")
    print(f"✓ Model size: {model_path.stat().st_size / 1024 / 1024:.2f} MB")
    return True


def main() -> int:
    print("=" * 60)
    print("MediaPipe Face Landmarker Model Downloader")
    print("=" * 60)

    model_path = Path(config.FACE_LANDMARKER_MODEL_PATH).expanduser()
    if not download_model(model_path):
        print("\nPlease check your internet connection and try again.")
        return 1

    print(f"\nModel location: {model_path}")
    print("To use a different location, set:")
    print(f"  FACE_LANDMARKER_MODEL_PATH={model_path}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
