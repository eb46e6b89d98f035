"""
Result Reporter

Posts a finished session's outcome to the KYC liveness endpoint. A single
best-effort attempt is made; failures are logged and returned, never raised.
"""
import logging
from typing import Optional

import httpx

from ..config import config
from ..models.data_models import LivenessResult, ReportAck

logger = logging.getLogger(__name__)


class ResultReporter:
    """Reports liveness results keyed by session id"""

    REPORT_PATH = "/liveness/report"

    def __init__(
        self,
        base_url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = config.REPORT_TIMEOUT_SECONDS
    ):
        self.base_url = base_url or config.REPORT_BASE_URL
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)

    @staticmethod
    def build_payload(session_id: str, result: LivenessResult) -> dict:
        return {
            "sessionId": session_id,
            "completed": True,
            "passed": result.passed,
            "score": result.score,
            "completedChallenges": result.completed_challenges,
        }

    async def report(self, session_id: str, result: LivenessResult) -> ReportAck:
        """
        Submit a result once.

        Args:
            session_id: Opaque session identifier
            result: The session's final result

        Returns:
            ReportAck: ok=True on a 2xx response, otherwise the failure details
        """
        payload = self.build_payload(session_id, result)
        try:
            response = await self.client.post(self.REPORT_PATH, json=payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            logger.error(f"Liveness report for session {session_id} rejected: HTTP {status}")
            return ReportAck(ok=False, status_code=status, error=f"HTTP {status}")
        except Exception as e:
            # Includes InvalidURL and other errors outside the HTTPError tree
            logger.error(f"Liveness report for session {session_id} failed: {e}")
            return ReportAck(ok=False, error=str(e) or type(e).__name__)

        logger.info(
            f"Liveness result reported for session {session_id}: "
            f"passed={result.passed} score={result.score}"
        )
        return ReportAck(ok=True, status_code=response.status_code)

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()
