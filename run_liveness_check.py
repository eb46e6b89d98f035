#!/usr/bin/env python3
"""
Run one liveness check against the local webcam.

Prints session events as they happen and the final result. With --report-url
the result is also posted to that liveness service.
"""

import argparse
import asyncio
import logging
import sys

from liveness.config import config
from liveness.exceptions import LivenessError, user_message
from liveness.services.result_reporter import ResultReporter
from liveness.services.session_controller import LivenessSession
from liveness.services.session_events import (
    ChallengeCompleted,
    ChallengeStarted,
    ChallengeTimedOut,
    FaceDetected,
    SessionEvent,
    SessionError,
)


def print_event(event: SessionEvent) -> None:
    if isinstance(event, ChallengeStarted):
        print(f"\n[{event.index + 1}/{event.total}] {event.challenge.icon}  {event.challenge.instruction}")
    elif isinstance(event, ChallengeCompleted):
        print(f"✅ {event.challenge.type.value} completed")
    elif isinstance(event, ChallengeTimedOut):
        print(f"⏱  {event.challenge.type.value} timed out")
    elif isinstance(event, SessionError):
        print(f"❌ {event.message}")


async def run(preview_seconds: float, report_url: str = None) -> int:
    reporter = ResultReporter(base_url=report_url) if report_url else None
    session = LivenessSession(reporter=reporter)
    session.events.subscribe(print_event)

    try:
        async with session:
            if preview_seconds > 0:
                print(f"Position your face in the frame ({preview_seconds:.0f}s preview)...")
                last_seen = {}
                unsubscribe = session.events.subscribe(
                    lambda e: last_seen.update(face=e.detected) if isinstance(e, FaceDetected) else None
                )
                await session.start_preview()
                await asyncio.sleep(preview_seconds)
                await session.stop_preview()
                unsubscribe()
                print("Face detected" if last_seen.get("face") else "No face detected yet")

            result = await session.start()
    except LivenessError as e:
        print(f"\nLiveness check could not run: {user_message(e)}")
        return 2
    finally:
        if reporter is not None:
            await reporter.aclose()

    print("\n" + "=" * 60)
    print(f"Passed: {result.passed}")
    print(f"Score: {result.score}")
    print(f"Challenges: {result.completed_challenges}/{result.total_challenges}")
    print(f"Screenshots: {len(result.screenshots)}")
    print("=" * 60)
    return 0 if result.passed else 1


def main() -> int:
    parser = argparse.ArgumentParser(description="Run a liveness check against the local webcam")
    parser.add_argument(
        "--preview-seconds",
        type=float,
        default=3.0,
        help="Face detection preview before the timed challenges start (0 to skip)"
    )
    parser.add_argument(
        "--report-url",
        default=None,
        help="Base URL of a liveness service to report the result to"
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, config.LOG_LEVEL, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    try:
        return asyncio.run(run(args.preview_seconds, args.report_url))
    except KeyboardInterrupt:
        print("\nCancelled")
        return 130


if __name__ == "__main__":
    sys.exit(main())
