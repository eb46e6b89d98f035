"""
WebSocket transport for remote liveness capture.

A capture page that cannot run detection itself streams its camera frames over
a WebSocket; the server runs the liveness session against those frames and
pushes session events back as JSON feedback.
"""
from fastapi import WebSocket, WebSocketDisconnect
from typing import List, Optional
import logging
import json
import base64
import numpy as np
import cv2

from .session_events import SessionEvent, event_to_dict

logger = logging.getLogger(__name__)


class WebSocketHandler:
    """
    Manages WebSocket communication for remote liveness capture.

    Covers the connection lifecycle, frame reception and decoding, and
    delivery of session events to the page.
    """

    async def handle_connection(self, websocket: WebSocket, session_id: str) -> None:
        """
        Accept a WebSocket connection for a session.

        Args:
            websocket: FastAPI WebSocket connection object
            session_id: Liveness session identifier
        """
        await websocket.accept()
        logger.info(f"WebSocket connection established for session {session_id}")

    async def receive_video_frame(self, websocket: WebSocket) -> Optional[np.ndarray]:
        """
        Receive and decode one video frame from the client.

        Args:
            websocket: FastAPI WebSocket connection object

        Returns:
            Decoded BGR frame, or None if the message is not a frame or cannot
            be decoded

        Raises:
            WebSocketDisconnect: The client went away
        """
        try:
            data = await websocket.receive_text()
            message = json.loads(data)

            if message.get("type") == "video_frame":
                frame_data = message.get("frame")
                if frame_data:
                    return self._decode_frame(frame_data)

            return None

        except WebSocketDisconnect:
            logger.info("WebSocket disconnected while receiving frame")
            raise

        except json.JSONDecodeError as e:
            logger.error(f"Invalid JSON received: {e}")
            return None

    async def send_event(self, websocket: WebSocket, event: SessionEvent) -> None:
        """Send a session event to the client."""
        await self.send_feedback(websocket, event_to_dict(event))
        logger.debug(f"Sent event {event.name}")

    async def send_feedback(self, websocket: WebSocket, feedback: dict) -> None:
        """
        Send a JSON feedback message to the client.

        Args:
            websocket: FastAPI WebSocket connection object
            feedback: JSON-serialisable message
        """
        try:
            await websocket.send_json(feedback)
        except Exception as e:
            logger.error(f"Error sending feedback: {e}")
            raise

    async def close_connection(
        self,
        websocket: WebSocket,
        code: int = 1000,
        reason: str = "Normal closure"
    ) -> None:
        """
        Close the WebSocket connection gracefully.

        Args:
            websocket: FastAPI WebSocket connection object
            code: WebSocket close code (default: 1000 for normal closure)
            reason: Human-readable reason for closure
        """
        try:
            await websocket.close(code=code, reason=reason)
            logger.info(f"WebSocket closed: {reason} (code: {code})")
        except Exception as e:
            logger.error(f"Error closing WebSocket: {e}")

    def _decode_frame(self, frame_data: str) -> Optional[np.ndarray]:
        """
        Decode a base64-encoded image, with or without a data URL prefix.

        Returns:
            Decoded frame as numpy array (BGR format), or None if decoding fails
        """
        try:
            # Remove data URL prefix if present (e.g., "data:image/jpeg;base64,")
            if "," in frame_data:
                frame_data = frame_data.split(",")[1]

            img_bytes = base64.b64decode(frame_data)
            nparr = np.frombuffer(img_bytes, np.uint8)
            frame = cv2.imdecode(nparr, cv2.IMREAD_COLOR)

            if frame is None:
                logger.error("Failed to decode frame: cv2.imdecode returned None")
                return None

            return frame

        except (ValueError, cv2.error) as e:
            logger.error(f"Error decoding frame: {e}")
            return None


class WebSocketTrack:
    """Video track fed by a WebSocket; ends when stopped or disconnected"""

    kind = "video"

    def __init__(self, label: str):
        self.label = label
        self.ready_state = "live"

    def stop(self) -> None:
        self.ready_state = "ended"


class WebSocketFrameStream:
    """Camera stream whose frames arrive over a WebSocket"""

    def __init__(self, websocket: WebSocket, handler: Optional[WebSocketHandler] = None, session_id: str = ""):
        self.websocket = websocket
        self.handler = handler or WebSocketHandler()
        self._tracks: List[WebSocketTrack] = [WebSocketTrack(f"websocket:{session_id}")]

    @property
    def active(self) -> bool:
        return any(track.ready_state == "live" for track in self._tracks)

    def get_tracks(self) -> List[WebSocketTrack]:
        return list(self._tracks)

    async def read_frame(self) -> Optional[np.ndarray]:
        if not self.active:
            return None
        try:
            return await self.handler.receive_video_frame(self.websocket)
        except WebSocketDisconnect:
            self.stop()
            return None

    def stop(self) -> None:
        for track in self._tracks:
            track.stop()
