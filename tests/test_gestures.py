"""Unit tests for head pose classification and gesture tracking."""

import pytest

from ageverify.data_models import ChallengeKind, DetectionResult
from ageverify.gestures import (
    CENTER,
    DOWN,
    LEFT,
    RIGHT,
    UP,
    GestureState,
    GestureTracker,
    read_pose,
    static_pose_holds,
)

from fakes import POSE_LANDMARKS, make_detection, make_landmarks


def _feed(tracker: GestureTracker, poses) -> bool:
    satisfied = False
    for pose in poses:
        satisfied = tracker.observe(make_detection(pose))
    return satisfied


# ===================================================================
# Pose classification
# ===================================================================

class TestReadPose:
    @pytest.mark.parametrize(
        "pose", [CENTER, LEFT, RIGHT, UP, DOWN]
    )
    def test_classifies_reference_poses(self, pose: str) -> None:
        reading = read_pose(POSE_LANDMARKS[pose])
        assert reading is not None
        assert reading.pose == pose

    def test_offsets_scaled_by_eye_distance(self) -> None:
        reading = read_pose(make_landmarks(190, 145))
        assert reading.eye_distance == pytest.approx(100.0)
        assert reading.diff_x == pytest.approx(40.0)
        assert reading.diff_y == pytest.approx(45.0)

    def test_short_landmarks_rejected(self) -> None:
        assert read_pose([1.0] * 17) is None

    def test_missing_landmarks_rejected(self) -> None:
        assert read_pose(None) is None

    def test_degenerate_eyes_rejected(self) -> None:
        landmarks = [100.0, 100.0, 0.0, 100.0, 100.0, 0.0, 150.0, 140.0, 0.0] + [0.0] * 9
        assert read_pose(landmarks) is None

    def test_compound_thresholds_are_looser_for_turns(self) -> None:
        # 27% of the eye distance: below the static threshold, above the gesture one
        landmarks = make_landmarks(177, 145)
        assert read_pose(landmarks).pose == CENTER
        assert read_pose(landmarks, compound=True).pose == LEFT

    def test_horizontal_pose_takes_precedence(self) -> None:
        reading = read_pose(make_landmarks(190, 110))
        assert reading.is_left and reading.is_up
        assert reading.pose == LEFT


class TestStaticPoseHolds:
    def test_turn_left(self) -> None:
        assert static_pose_holds(ChallengeKind.TURN_LEFT, read_pose(POSE_LANDMARKS[LEFT]))

    def test_turn_left_rejects_right(self) -> None:
        assert not static_pose_holds(ChallengeKind.TURN_LEFT, read_pose(POSE_LANDMARKS[RIGHT]))

    def test_look_up_bounded_yaw(self) -> None:
        turned_up = read_pose(make_landmarks(185, 120))
        assert turned_up.is_up
        assert not static_pose_holds(ChallengeKind.LOOK_UP, turned_up)

    def test_look_down(self) -> None:
        assert static_pose_holds(ChallengeKind.LOOK_DOWN, read_pose(POSE_LANDMARKS[DOWN]))

    def test_compound_kind_rejected(self) -> None:
        with pytest.raises(ValueError, match="not a static challenge"):
            static_pose_holds(ChallengeKind.NOD_YES, read_pose(POSE_LANDMARKS[UP]))


# ===================================================================
# Gesture state
# ===================================================================

class TestGestureState:
    def test_observe_reports_new_poses(self) -> None:
        state = GestureState()
        assert state.observe(LEFT) is True
        assert state.observe(LEFT) is False
        assert state.observe(RIGHT) is True
        assert state.transitions == [LEFT, RIGHT]

    def test_transition_log_is_bounded(self) -> None:
        state = GestureState()
        for i in range(120):
            state.observe(LEFT if i % 2 else RIGHT)
        assert len(state.transitions) == 50

    def test_reset_clears_memory(self) -> None:
        state = GestureState()
        state.observe(UP)
        state.reset()
        assert state.transitions == []
        assert state.seen_poses == set()


# ===================================================================
# Tracker
# ===================================================================

class TestStaticTracker:
    def test_requires_consecutive_frames(self) -> None:
        tracker = GestureTracker(ChallengeKind.TURN_LEFT)
        assert _feed(tracker, [LEFT] * 14) is False
        assert tracker.progress == pytest.approx(100.0 * 14 / 15)
        assert _feed(tracker, [LEFT]) is True
        assert tracker.progress == 100.0

    def test_break_resets_progress(self) -> None:
        tracker = GestureTracker(ChallengeKind.TURN_RIGHT)
        _feed(tracker, [RIGHT] * 10 + [CENTER])
        assert tracker.consecutive == 0
        assert tracker.progress == 0.0
        assert _feed(tracker, [RIGHT] * 14) is False

    def test_lost_face_breaks_hold(self) -> None:
        tracker = GestureTracker(ChallengeKind.LOOK_UP)
        _feed(tracker, [UP] * 10)
        tracker.observe(DetectionResult(face_found=False))
        assert tracker.consecutive == 0

    def test_stays_satisfied(self) -> None:
        tracker = GestureTracker(ChallengeKind.LOOK_DOWN, required_consecutive=2)
        _feed(tracker, [DOWN, DOWN])
        assert tracker.observe(make_detection(CENTER)) is True


class TestCompoundTracker:
    def test_shake_completes_in_either_order(self) -> None:
        assert _feed(GestureTracker(ChallengeKind.SHAKE_NO), [LEFT, CENTER, RIGHT]) is True
        assert _feed(GestureTracker(ChallengeKind.SHAKE_NO), [RIGHT, LEFT]) is True

    def test_nod_completes_without_hold(self) -> None:
        tracker = GestureTracker(ChallengeKind.NOD_YES)
        assert _feed(tracker, [UP, DOWN]) is True
        assert tracker.frames == 2

    def test_half_gesture_reports_half_progress(self) -> None:
        tracker = GestureTracker(ChallengeKind.NOD_YES)
        _feed(tracker, [UP, CENTER])
        assert tracker.progress == 50.0
        assert tracker.satisfied is False

    def test_stall_resets_seen_poses(self) -> None:
        tracker = GestureTracker(ChallengeKind.NOD_YES)
        assert _feed(tracker, [UP] + [CENTER] * 70 + [DOWN]) is False
        assert tracker.resets >= 1
        assert UP not in tracker.state.seen_poses

    def test_one_sided_shake_never_completes(self) -> None:
        tracker = GestureTracker(ChallengeKind.SHAKE_NO)
        detection = make_detection(LEFT)
        progress = []
        for _ in range(10_000):
            tracker.observe(detection)
            progress.append(tracker.progress)

        assert tracker.satisfied is False
        assert tracker.resets >= 1
        assert max(progress) == 50.0
        # the frame that resets the stalled half gesture reports no progress
        assert progress.count(0.0) == tracker.resets

    def test_wrong_axis_never_completes(self) -> None:
        tracker = GestureTracker(ChallengeKind.NOD_YES)
        assert _feed(tracker, [LEFT, RIGHT] * 40) is False
