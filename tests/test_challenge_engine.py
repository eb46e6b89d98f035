"""
Unit tests for ChallengeEngine and ChallengeStateMachine
"""
import pytest
from hypothesis import HealthCheck, given, settings, strategies as st

from liveness.models.data_models import ChallengeType, EyeState
from liveness.services.challenge_engine import ChallengeEngine, ChallengeStateMachine
from liveness.services.session_events import (
    ChallengeCompleted,
    ChallengeStarted,
    ChallengeTimedOut,
    ProgressUpdated,
)
from tests.factories import OFF_CENTER_BOX, face

FRAME_SIZE = (640, 480)


def engine_for(*challenge_types):
    """Engine whose sequence is only the given challenge types"""
    engine = ChallengeEngine()
    engine.CHALLENGE_ORDER = list(challenge_types)
    return engine


def feed(machine, detection, start, count, step=0.1):
    """Feed `count` frames of the same detection starting at `start`."""
    ticks = []
    for i in range(count):
        ticks.append(machine.process_frame(detection, FRAME_SIZE, start + i * step))
    return ticks


def feed_until_advance(machine, detection, start, step=0.1, max_frames=1000):
    """Feed frames until the active challenge changes; returns the next free time."""
    index = machine.state.current_index
    t = start
    for _ in range(max_frames):
        machine.process_frame(detection, FRAME_SIZE, t)
        t = round(t + step, 6)
        if machine.state.current_index != index:
            return t
    raise AssertionError("challenge never advanced")


def events_of(ticks, event_type):
    return [e for tick in ticks for e in tick.events if isinstance(e, event_type)]


class TestChallengeEngine:
    """Test suite for ChallengeEngine class"""

    def setup_method(self):
        """Set up test fixtures"""
        self.engine = ChallengeEngine()

    def test_fixed_order(self):
        """Test that challenges always come in the fixed order."""
        challenges = self.engine.create_challenges()
        assert [c.type for c in challenges] == [
            ChallengeType.CENTER,
            ChallengeType.TURN_LEFT,
            ChallengeType.TURN_RIGHT,
            ChallengeType.BLINK,
            ChallengeType.SMILE,
        ]

    def test_challenges_start_uncompleted(self):
        """Test that new challenges are not completed."""
        assert not any(c.completed for c in self.engine.create_challenges())

    def test_every_challenge_has_instruction_and_icon(self):
        """Test that each challenge carries an instruction and an icon."""
        for challenge in self.engine.create_challenges():
            assert challenge.instruction
            assert challenge.icon

    def test_instructions(self):
        """Test the human-readable instruction text."""
        instructions = {c.type: c.instruction for c in self.engine.create_challenges()}
        assert instructions[ChallengeType.BLINK] == "Blink your eyes twice"
        assert instructions[ChallengeType.TURN_LEFT] == "Slowly turn your head LEFT"

    def test_each_call_returns_fresh_challenges(self):
        """Test that each sequence is a new set of objects."""
        first = self.engine.create_challenges()
        first[0].completed = True
        assert not self.engine.create_challenges()[0].completed


class TestStateMachineLifecycle:
    """Test suite for begin/advance/halt"""

    def setup_method(self):
        self.machine = ChallengeStateMachine()

    def test_begin_starts_first_challenge(self):
        """Test that begin() activates the first challenge."""
        events = self.machine.begin(0.0)
        assert self.machine.state.running
        assert self.machine.state.current_index == 0
        assert len(events) == 1
        assert isinstance(events[0], ChallengeStarted)
        assert events[0].challenge.type == ChallengeType.CENTER
        assert events[0].total == 5

    def test_not_running_before_begin(self):
        """Test that frames are ignored before begin()."""
        tick = self.machine.process_frame(face(), FRAME_SIZE, 0.0)
        assert tick.events == []
        assert self.machine.state.current_index == 0

    def test_halt_stops_processing(self):
        """Test that halt() stops frame processing."""
        self.machine.begin(0.0)
        self.machine.halt()
        feed(self.machine, face(), 0.0, 20)
        assert self.machine.state.current_index == 0

    def test_begin_resets_previous_state(self):
        """Test that begin() discards the state of a previous run."""
        self.machine.begin(0.0)
        feed_until_advance(self.machine, face(), 0.0)
        self.machine.add_screenshot("data:image/jpeg;base64,AA==")
        self.machine.begin(100.0)
        assert self.machine.state.current_index == 0
        assert self.machine.state.baseline_yaw is None
        assert self.machine.state.screenshots == []
        assert not any(c.completed for c in self.machine.state.challenges)

    def test_remaining_seconds_counts_down(self):
        """Test the countdown of the active challenge."""
        self.machine.begin(10.0)
        assert self.machine.remaining_seconds(10.0) == pytest.approx(30.0)
        assert self.machine.remaining_seconds(25.0) == pytest.approx(15.0)
        assert self.machine.remaining_seconds(50.0) == 0.0


class TestCenterChallenge:
    """Test suite for the center challenge"""

    def setup_method(self):
        self.machine = ChallengeStateMachine()
        self.machine.begin(0.0)

    def test_completes_after_one_second_hold(self):
        """Test that center completes after a one second hold."""
        ticks = feed(self.machine, face(), 0.0, 10)
        assert self.machine.state.current_index == 0
        tick = self.machine.process_frame(face(), FRAME_SIZE, 1.0)
        assert tick.screenshot_requested
        assert self.machine.state.challenges[0].completed
        assert self.machine.state.current_index == 1
        assert events_of(ticks, ChallengeCompleted) == []
        assert isinstance(tick.events[0], ChallengeCompleted)

    def test_single_frame_counts_as_zero_hold(self):
        """Test that one qualifying frame holds for 0 ms."""
        self.machine.process_frame(face(), FRAME_SIZE, 0.5)
        assert self.machine.state.challenge_hold_time_ms == 0.0

    def test_off_center_face_does_not_hold(self):
        """Test that an off-center face never accumulates hold time."""
        feed(self.machine, face(box=OFF_CENTER_BOX), 0.0, 20)
        assert self.machine.state.current_index == 0
        assert self.machine.state.challenge_hold_time_ms == 0.0

    def test_captures_baseline_yaw_on_first_centered_frame(self):
        """Test that the baseline yaw comes from the first centered frame."""
        self.machine.process_frame(face(yaw=4.0), FRAME_SIZE, 0.0)
        self.machine.process_frame(face(yaw=9.0), FRAME_SIZE, 0.1)
        assert self.machine.state.baseline_yaw == pytest.approx(4.0)

    def test_no_baseline_from_off_center_face(self):
        """Test that off-center faces do not set the baseline yaw."""
        self.machine.process_frame(face(yaw=4.0, box=OFF_CENTER_BOX), FRAME_SIZE, 0.0)
        assert self.machine.state.baseline_yaw is None

    def test_heuristic_detection_can_pass_center(self):
        """Detections without landmarks still satisfy centering"""
        feed(self.machine, face(landmarks=False), 0.0, 11)
        assert self.machine.state.challenges[0].completed
        assert self.machine.state.baseline_yaw is None


class TestHoldReset:
    """Test suite for contiguous-hold semantics"""

    def setup_method(self):
        self.machine = ChallengeStateMachine(center_dwell_ms=500)
        self.machine.begin(0.0)

    def test_failing_frame_resets_hold(self):
        """Test that a failing frame resets the hold: 400 ms, fail, 400 ms is not enough."""
        feed(self.machine, face(), 0.0, 5)                    # 0.0 .. 0.4
        self.machine.process_frame(face(box=OFF_CENTER_BOX), FRAME_SIZE, 0.5)
        assert self.machine.state.challenge_hold_time_ms == 0.0
        feed(self.machine, face(), 0.6, 5)                    # 0.6 .. 1.0
        assert self.machine.state.challenge_hold_time_ms == pytest.approx(400.0)
        assert self.machine.state.current_index == 0
        self.machine.process_frame(face(), FRAME_SIZE, 1.1)
        assert self.machine.state.current_index == 1

    def test_missing_face_pauses_hold(self):
        """A frame without a face keeps the held time but the gap is not counted"""
        feed(self.machine, face(), 0.0, 4)                    # 0.0 .. 0.3
        self.machine.process_frame(None, FRAME_SIZE, 0.4)
        assert self.machine.state.challenge_hold_time_ms == pytest.approx(300.0)
        assert self.machine.state.last_hold_frame_at is None

        self.machine.process_frame(face(), FRAME_SIZE, 1.0)
        assert self.machine.state.challenge_hold_time_ms == pytest.approx(300.0)
        self.machine.process_frame(face(), FRAME_SIZE, 1.1)
        assert self.machine.state.current_index == 0
        self.machine.process_frame(face(), FRAME_SIZE, 1.2)
        assert self.machine.state.current_index == 1

    def test_failing_face_after_gap_still_resets(self):
        """Only a present face failing the pose clears the hold"""
        feed(self.machine, face(), 0.0, 4)
        self.machine.process_frame(None, FRAME_SIZE, 0.4)
        self.machine.process_frame(face(box=OFF_CENTER_BOX), FRAME_SIZE, 0.5)
        assert self.machine.state.challenge_hold_time_ms == 0.0


class TestTurnChallenges:
    """Test suite for the head turn challenges"""

    def test_turn_left_relative_to_baseline(self):
        """Test that turn left is measured against the baseline yaw."""
        machine = ChallengeStateMachine(engine=engine_for(ChallengeType.CENTER, ChallengeType.TURN_LEFT))
        machine.begin(0.0)
        t = feed_until_advance(machine, face(yaw=10.0), 0.0)
        assert machine.state.baseline_yaw == pytest.approx(10.0)

        # Threshold is baseline - 15 = -5
        feed(machine, face(yaw=-4.0), t, 10)
        assert machine.state.current_index == 1
        feed_until_advance(machine, face(yaw=-6.0), t + 1.0)
        assert machine.state.challenges[1].completed

    def test_turn_right_needs_half_second_hold(self):
        """Test that turn right completes after a 500 ms hold."""
        machine = ChallengeStateMachine(engine=engine_for(ChallengeType.TURN_RIGHT))
        machine.begin(0.0)
        feed(machine, face(yaw=20.0), 0.0, 5)                 # 0.0 .. 0.4
        assert machine.state.current_index == 0
        machine.process_frame(face(yaw=20.0), FRAME_SIZE, 0.5)
        assert machine.state.challenges[0].completed

    def test_turn_without_baseline_uses_zero(self):
        """Test that a missing baseline defaults to zero yaw."""
        machine = ChallengeStateMachine(engine=engine_for(ChallengeType.TURN_LEFT))
        machine.begin(0.0)
        feed(machine, face(yaw=-16.0), 0.0, 6)
        assert machine.state.challenges[0].completed

    def test_turn_requires_landmarks(self):
        """Test that turns cannot complete without landmarks."""
        machine = ChallengeStateMachine(engine=engine_for(ChallengeType.TURN_LEFT))
        machine.begin(0.0)
        feed(machine, face(landmarks=False), 0.0, 20)
        assert not machine.state.challenges[0].completed

    def test_wrong_direction_does_not_count(self):
        """Test that turning the wrong way never completes the challenge."""
        machine = ChallengeStateMachine(engine=engine_for(ChallengeType.TURN_LEFT))
        machine.begin(0.0)
        feed(machine, face(yaw=30.0), 0.0, 20)
        assert not machine.state.challenges[0].completed


class TestBlinkChallenge:
    """Test suite for blink counting"""

    OPEN = 0.35
    CLOSED = 0.15

    def setup_method(self):
        self.machine = ChallengeStateMachine(engine=engine_for(ChallengeType.BLINK, ChallengeType.SMILE))
        self.machine.begin(0.0)

    def blink_sequence(self, ears, start=0.0):
        return [
            self.machine.process_frame(face(ear=ear), FRAME_SIZE, start + i * 0.1)
            for i, ear in enumerate(ears)
        ]

    def test_two_open_closed_edges_complete(self):
        """Test that two open to closed edges complete the blink challenge."""
        self.blink_sequence([self.OPEN, self.CLOSED, self.OPEN])
        assert self.machine.state.blink_count == 1
        assert self.machine.state.current_index == 0
        self.blink_sequence([self.CLOSED], start=0.3)
        assert self.machine.state.challenges[0].completed

    def test_held_closed_eyes_count_once(self):
        """Test that keeping the eyes closed counts as a single blink."""
        self.blink_sequence([self.OPEN, self.CLOSED, self.CLOSED, self.CLOSED, self.CLOSED])
        assert self.machine.state.blink_count == 1
        assert not self.machine.state.challenges[0].completed

    def test_open_closed_open_closed_open(self):
        """Test a full double blink sequence."""
        ticks = self.blink_sequence([self.OPEN, self.CLOSED, self.OPEN, self.CLOSED, self.OPEN])
        assert self.machine.state.challenges[0].completed
        assert len(events_of(ticks, ChallengeCompleted)) == 1

    def test_no_face_frames_do_not_count(self):
        """Test that frames without a face never count as blinks."""
        self.machine.process_frame(None, FRAME_SIZE, 0.0)
        self.machine.process_frame(None, FRAME_SIZE, 0.1)
        assert self.machine.state.blink_count == 0

    def test_blink_state_reset_when_entering_blink(self):
        """Test that blink counters are reset when the blink challenge starts."""
        machine = ChallengeStateMachine(engine=engine_for(ChallengeType.CENTER, ChallengeType.BLINK))
        machine.begin(0.0)
        machine.state.blink_count = 7
        machine.state.last_eye_state = EyeState.CLOSED
        feed_until_advance(machine, face(), 0.0)
        assert machine.state.blink_count == 0
        assert machine.state.last_eye_state == EyeState.OPEN


class TestSmileChallenge:
    """Test suite for the smile challenge"""

    def setup_method(self):
        self.machine = ChallengeStateMachine(engine=engine_for(ChallengeType.SMILE))
        self.machine.begin(0.0)

    def test_smile_hold_completes(self):
        """Test that a held smile completes the challenge."""
        ticks = feed(self.machine, face(happy=0.9), 0.0, 6)
        assert self.machine.state.challenges[0].completed
        assert ticks[-1].finished
        assert not self.machine.state.running

    def test_weak_smile_never_completes(self):
        """Test that a smile exactly at the threshold never completes."""
        feed(self.machine, face(happy=0.7), 0.0, 20)
        assert not self.machine.state.challenges[0].completed

    def test_missing_expressions_never_complete(self):
        """Test that smile cannot complete without expression scores."""
        detection = face(happy=0.9)
        detection.expressions = None
        feed(self.machine, detection, 0.0, 20)
        assert not self.machine.state.challenges[0].completed


class TestTimeout:
    """Test suite for per-challenge timeouts"""

    def setup_method(self):
        self.machine = ChallengeStateMachine()
        self.machine.begin(0.0)

    def test_not_timed_out_at_exactly_thirty_seconds(self):
        """Test that exactly 30 seconds is not yet a timeout."""
        tick = self.machine.process_frame(None, FRAME_SIZE, 30.0)
        assert events_of([tick], ChallengeTimedOut) == []
        assert self.machine.state.current_index == 0

    def test_times_out_once_past_thirty_seconds(self):
        """Test that a challenge times out once, just past 30 seconds."""
        ticks = [self.machine.process_frame(None, FRAME_SIZE, t) for t in (29.9, 30.001, 30.1, 30.2)]
        timed_out = events_of(ticks, ChallengeTimedOut)
        assert len(timed_out) == 1
        assert timed_out[0].challenge.type == ChallengeType.CENTER
        assert not self.machine.state.challenges[0].completed
        assert self.machine.state.current_index == 1

    def test_timeout_restarts_clock_for_next_challenge(self):
        """Test that the next challenge gets a fresh 30 seconds."""
        self.machine.process_frame(None, FRAME_SIZE, 30.5)
        assert self.machine.state.challenge_start_timestamp == 30.5
        assert self.machine.remaining_seconds(30.5) == pytest.approx(30.0)

    def test_timed_out_challenge_emits_progress_and_next_start(self):
        """Test the events published when a challenge times out."""
        tick = self.machine.process_frame(None, FRAME_SIZE, 31.0)
        names = [e.name for e in tick.events]
        assert names == ["ChallengeTimedOut", "ProgressUpdated", "ChallengeStarted"]
        progress = [e for e in tick.events if isinstance(e, ProgressUpdated)][0]
        assert progress.progress == pytest.approx(20.0)

    def test_every_challenge_timing_out_scores_zero(self):
        """Test that a session with no cooperation ends with score 0."""
        t = 0.0
        while self.machine.state.running:
            t += 31.0
            self.machine.process_frame(None, FRAME_SIZE, t)
        result = self.machine.result()
        assert result.score == 0
        assert result.passed is False
        assert result.total_challenges == 5


class TestFullSession:
    """Scenario tests over the full five-challenge sequence"""

    def setup_method(self):
        self.machine = ChallengeStateMachine()
        self.machine.begin(0.0)

    def run_center_and_turns(self):
        t = feed_until_advance(self.machine, face(yaw=0.0), 0.0)
        t = feed_until_advance(self.machine, face(yaw=-25.0), t)
        t = feed_until_advance(self.machine, face(yaw=25.0), t)
        return t

    def test_perfect_session(self):
        """Test that a cooperative user scores 100."""
        t = self.run_center_and_turns()
        for ear in (0.35, 0.15, 0.35, 0.15):
            self.machine.process_frame(face(ear=ear), FRAME_SIZE, t)
            t += 0.1
        feed_until_advance(self.machine, face(happy=0.95), t)

        assert not self.machine.state.running
        result = self.machine.result()
        assert result.passed is True
        assert result.score == 100
        assert result.completed_challenges == 5

    def test_user_who_never_blinks_still_passes(self):
        """Test that missing only the blink gives 80 and a pass."""
        t = self.run_center_and_turns()
        assert self.machine.state.active_challenge.type == ChallengeType.BLINK
        t = feed_until_advance(self.machine, face(ear=0.35), t, step=1.0)
        assert self.machine.state.active_challenge.type == ChallengeType.SMILE
        feed_until_advance(self.machine, face(happy=0.95), t)

        result = self.machine.result()
        assert result.completed_challenges == 4
        assert result.score == 80
        assert result.passed is True

    def test_events_follow_challenge_order(self):
        """Test that completions follow the challenge order."""
        t = self.run_center_and_turns()
        completed = [c for c in self.machine.state.challenges if c.completed]
        assert [c.type for c in completed] == [
            ChallengeType.CENTER, ChallengeType.TURN_LEFT, ChallengeType.TURN_RIGHT
        ]
        assert self.machine.progress == pytest.approx(60.0)
        assert t > 0


frame_kind = st.sampled_from(["none", "centered", "left", "right", "closed", "smile", "off"])


def detection_for(kind):
    return {
        "none": None,
        "centered": face(),
        "left": face(yaw=-30.0),
        "right": face(yaw=30.0),
        "closed": face(ear=0.1),
        "smile": face(happy=0.95),
        "off": face(box=OFF_CENTER_BOX),
    }[kind]


class TestStateMachineProperties:
    """Property-based tests for the state machine"""

    @given(frames=st.lists(
        st.tuples(frame_kind, st.floats(min_value=0.01, max_value=12.0)),
        min_size=1,
        max_size=120,
    ))
    @settings(max_examples=60, deadline=None, suppress_health_check=[HealthCheck.too_slow])
    def test_index_never_moves_backwards(self, frames):
        """Property: at most one challenge advance per frame, never backwards"""
        machine = ChallengeStateMachine()
        machine.begin(0.0)
        t = 0.0
        for kind, step in frames:
            before = machine.state.current_index
            tick = machine.process_frame(detection_for(kind), FRAME_SIZE, t)
            after = machine.state.current_index
            assert before <= after <= before + 1
            advances = len(events_of([tick], ChallengeCompleted)) + len(events_of([tick], ChallengeTimedOut))
            assert advances == after - before
            t += step

        result = machine.result()
        completed = sum(1 for c in machine.state.challenges if c.completed)
        assert result.completed_challenges == completed
        assert completed <= machine.state.current_index
        assert result.score == round(completed / 5 * 100)
