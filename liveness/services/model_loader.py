"""
Model asset loading.

Weights are read from disk once per process and cached. Concurrent requests
for the same asset share a single in-flight load.
"""
import asyncio
import logging
import os
from typing import Dict

from ..exceptions import DetectorLoadError

logger = logging.getLogger(__name__)


class ModelAssetLoader:
    """Caches model asset bytes by path and coalesces concurrent loads"""

    def __init__(self):
        self._cache: Dict[str, bytes] = {}
        self._inflight: Dict[str, asyncio.Task] = {}
        self.load_count = 0

    def is_loaded(self, path: str) -> bool:
        return os.path.abspath(path) in self._cache

    async def load(self, path: str) -> bytes:
        """
        Return the bytes of a model asset.

        Args:
            path: Filesystem path of the asset

        Returns:
            bytes: Asset contents

        Raises:
            DetectorLoadError: If the asset is missing or unreadable
        """
        key = os.path.abspath(path)
        if key in self._cache:
            return self._cache[key]

        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._read(key))
            self._inflight[key] = task
        try:
            return await asyncio.shield(task)
        finally:
            if task.done() and self._inflight.get(key) is task:
                del self._inflight[key]

    async def _read(self, key: str) -> bytes:
        data = await asyncio.to_thread(self._read_file, key)
        self._cache[key] = data
        self.load_count += 1
        return data

    @staticmethod
    def _read_file(key: str) -> bytes:
        if not os.path.exists(key):
            raise DetectorLoadError(
                f"Model asset not found at {key}. "
                "Download it using: python download_mediapipe_model.py"
            )
        try:
            with open(key, 'rb') as f:
                data = f.read()
        except OSError as e:
            raise DetectorLoadError(f"Failed to read model asset {key}: {e}") from e
        logger.info(f"Loaded model asset {key} ({len(data) / 1024 / 1024:.2f} MB)")
        return data


model_loader = ModelAssetLoader()
