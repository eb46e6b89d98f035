"""
FastAPI application for the KYC liveness service.

Receives liveness reports, serves session status for the QR-handoff flow and
runs server-side liveness sessions over WebSocket for remote capture pages.
"""
import asyncio
import logging
from typing import Optional
from urllib.parse import urlencode

from fastapi import FastAPI, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.websockets import WebSocketState
from pydantic import BaseModel, Field

from . import __version__
from .config import config
from .exceptions import LivenessError, user_message
from .services.landmark_detector import load_detector
from .services.model_loader import model_loader
from .services.session_controller import LivenessSession
from .services.session_events import SessionError, SessionEventBus
from .services.session_store import SessionStore
from .services.websocket_handler import WebSocketFrameStream, WebSocketHandler

logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL, logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


class LivenessReport(BaseModel):
    """Body of POST /liveness/report"""
    sessionId: Optional[str] = None
    completed: bool = False
    passed: bool = False
    score: int = Field(default=0, ge=0, le=100)
    completedChallenges: int = Field(default=0, ge=0)


async def _forward_events(handler: WebSocketHandler, websocket: WebSocket, events: SessionEventBus) -> None:
    async for event in events.stream():
        try:
            await handler.send_event(websocket, event)
        except Exception:
            logger.warning("Client stopped receiving events; dropping the rest")
            return


def create_app(
    session_store: Optional[SessionStore] = None,
    detector_factory=None
) -> FastAPI:
    """
    Build the application.

    Args:
        session_store: Store for QR-handoff sessions, a fresh one by default
        detector_factory: Async factory for server-side session detectors
    """
    app = FastAPI(title="KYC Liveness API", version=__version__)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.session_store = session_store or SessionStore()
    app.state.detector_factory = detector_factory or load_detector
    app.state.websocket_handler = WebSocketHandler()

    @app.get("/")
    async def root():
        return {
            "message": "KYC Liveness API",
            "status": "running",
            "version": __version__,
        }

    @app.get("/health")
    async def health():
        return {
            "status": "healthy",
            "services": {
                "api": "operational",
                "session_store": "operational",
                "landmark_model": (
                    "loaded" if model_loader.is_loaded(config.FACE_LANDMARKER_MODEL_PATH) else "not_loaded"
                ),
            },
            "sessions": len(app.state.session_store),
        }

    @app.post("/liveness/sessions")
    async def create_session():
        """Create a session for the QR-handoff flow."""
        session = app.state.session_store.create()
        mobile_url = f"{config.MOBILE_CAPTURE_URL}?{urlencode({'session': session.session_id})}"
        return {"sessionId": session.session_id, "mobileUrl": mobile_url}

    @app.post("/liveness/report")
    async def report_result(report: LivenessReport):
        if not report.sessionId:
            return JSONResponse(status_code=400, content={"error": "Session ID required"})
        app.state.session_store.record_result(
            report.sessionId,
            completed=report.completed,
            passed=report.passed,
            score=report.score,
            completed_challenges=report.completedChallenges,
        )
        return {"success": True}

    @app.get("/liveness/sessions/{session_id}")
    async def session_status(session_id: str):
        return app.state.session_store.status(session_id)

    @app.websocket("/ws/liveness/{session_id}")
    async def liveness_websocket(websocket: WebSocket, session_id: str):
        """Run a liveness session against frames streamed by the client."""
        handler: WebSocketHandler = app.state.websocket_handler
        await handler.handle_connection(websocket, session_id)

        stream = WebSocketFrameStream(websocket, handler, session_id)
        events = SessionEventBus()
        session = LivenessSession(
            session_id=session_id,
            detector_factory=app.state.detector_factory,
            camera_factory=lambda constraints: stream,
            events=events,
        )
        forwarder = asyncio.create_task(_forward_events(handler, websocket, events))
        # Let the forwarder subscribe before the first event is published
        await asyncio.sleep(0)

        try:
            await session.initialize()
            result = await session.start()
            app.state.session_store.record_result(
                session_id,
                completed=True,
                passed=result.passed,
                score=result.score,
                completed_challenges=result.completed_challenges,
            )
        except LivenessError as e:
            logger.warning(f"WebSocket liveness session {session_id} ended early: {e}")
            connected = websocket.client_state == WebSocketState.CONNECTED
            if connected and events.last(SessionError) is None:
                events.publish(SessionError(kind=getattr(e, "kind", "error"), message=user_message(e)))
        finally:
            session.cleanup()
            await forwarder

        if websocket.client_state == WebSocketState.CONNECTED:
            await handler.close_connection(websocket)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=config.HOST, port=config.PORT)
