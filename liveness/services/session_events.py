"""
Typed session events and the bus that delivers them to subscribers.

The state machine and session controller only publish events; whatever drives
the UI (a websocket, a terminal runner, a test) subscribes to them.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import AsyncIterator, Callable, List, Optional

from ..models.data_models import Challenge, LivenessResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionEvent:
    """Base class for everything published on the bus"""

    @property
    def name(self) -> str:
        return type(self).__name__


@dataclass(frozen=True)
class ChallengeStarted(SessionEvent):
    challenge: Challenge
    index: int
    total: int


@dataclass(frozen=True)
class ChallengeCompleted(SessionEvent):
    challenge: Challenge
    index: int
    total: int


@dataclass(frozen=True)
class ChallengeTimedOut(SessionEvent):
    challenge: Challenge
    index: int
    total: int


@dataclass(frozen=True)
class FaceDetected(SessionEvent):
    detected: bool


@dataclass(frozen=True)
class ProgressUpdated(SessionEvent):
    progress: float


@dataclass(frozen=True)
class SessionEnded(SessionEvent):
    result: LivenessResult


@dataclass(frozen=True)
class SessionError(SessionEvent):
    kind: str
    message: str


def event_to_dict(event: SessionEvent) -> dict:
    """JSON-friendly form of an event, used for websocket feedback."""
    data = {"type": event.name}
    if isinstance(event, (ChallengeStarted, ChallengeCompleted, ChallengeTimedOut)):
        data.update({
            "challenge": event.challenge.to_dict(),
            "index": event.index,
            "total": event.total,
        })
    elif isinstance(event, FaceDetected):
        data["detected"] = event.detected
    elif isinstance(event, ProgressUpdated):
        data["progress"] = event.progress
    elif isinstance(event, SessionEnded):
        data["result"] = event.result.to_dict(include_screenshots=False)
    elif isinstance(event, SessionError):
        data.update({"kind": event.kind, "message": event.message})
    return data


_CLOSED = object()


class SessionEventBus:
    """
    Fan-out of session events to callbacks and async streams.

    A failing subscriber is logged and skipped; it never interrupts the
    detection loop that published the event.
    """

    def __init__(self):
        self._subscribers: List[Callable[[SessionEvent], None]] = []
        self._queues: List[asyncio.Queue] = []
        self.history: List[SessionEvent] = []

    def subscribe(self, callback: Callable[[SessionEvent], None]) -> Callable[[], None]:
        """Register a callback; returns a function that unregisters it."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, event: SessionEvent) -> None:
        self.history.append(event)
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Session event subscriber failed on {event.name}: {e}")
        for queue in list(self._queues):
            queue.put_nowait(event)

    def close(self) -> None:
        """End every open stream()."""
        for queue in list(self._queues):
            queue.put_nowait(_CLOSED)

    async def stream(self) -> AsyncIterator[SessionEvent]:
        """Yield events as they are published until close() is called."""
        queue: asyncio.Queue = asyncio.Queue()
        self._queues.append(queue)
        try:
            while True:
                event = await queue.get()
                if event is _CLOSED:
                    return
                yield event
        finally:
            self._queues.remove(queue)

    def last(self, event_type: type) -> Optional[SessionEvent]:
        for event in reversed(self.history):
            if isinstance(event, event_type):
                return event
        return None
