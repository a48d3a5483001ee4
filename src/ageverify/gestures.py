"""
Head pose classification and per-attempt gesture tracking.

Pose is read from three landmarks: the nose position relative to the midpoint
between the eyes, scaled by the inter-eye distance. Static challenges (turns,
looks) require the pose to hold for a number of consecutive frames. Compound
challenges (nod, shake) are satisfied once both constituent poses have been
seen during the attempt, in any order. A compound attempt that adds no new
pose for a bounded number of frames resets, so a stalled half gesture cannot
complete by accident later.

Looking up is tested without a horizontal dominance check: the vertical offset
shrinks towards zero at the extreme of the motion, which makes a ratio test
unreliable there. Only yaw is bounded instead.
"""

import math
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Set

import numpy as np
import structlog

from .constants import (
    DOMINANCE_RATIO,
    DOWN_THRESHOLD,
    GESTURE_STALL_FRAMES,
    LOOK_UP_MAX_YAW,
    MIN_LANDMARK_VALUES,
    REQUIRED_CONSECUTIVE_FRAMES,
    TURN_THRESHOLD,
    TURN_THRESHOLD_GESTURE,
    UP_THRESHOLD,
    UP_THRESHOLD_GESTURE,
)
from .data_models import ChallengeKind, DetectionResult

# Initialize structured logger
logger = structlog.get_logger(__name__)

LEFT = "left"
RIGHT = "right"
UP = "up"
DOWN = "down"
CENTER = "center"

# Transition log bound
MAX_TRANSITIONS = 50

COMPOUND_POSES = {
    ChallengeKind.NOD_YES: (UP, DOWN),
    ChallengeKind.SHAKE_NO: (LEFT, RIGHT),
}


@dataclass(frozen=True)
class PoseReading:
    """Normalized offsets and pose flags for one frame."""

    diff_x: float
    diff_y: float
    eye_distance: float
    is_left: bool
    is_right: bool
    is_up: bool
    is_down: bool

    @property
    def pose(self) -> str:
        """Discrete pose, with horizontal poses taking precedence."""
        if self.is_left:
            return LEFT
        if self.is_right:
            return RIGHT
        if self.is_up:
            return UP
        if self.is_down:
            return DOWN
        return CENTER


@dataclass
class GestureState:
    """
    Per-attempt gesture memory.

    Owned by one attempt; a retry starts from a fresh instance.
    """

    transitions: List[str] = field(default_factory=list)
    seen_poses: Set[str] = field(default_factory=set)

    def observe(self, pose: str) -> bool:
        """
        Record a pose.

        Returns
        -------
        bool
            True if the pose had not been seen before in this state.
        """
        if not self.transitions or self.transitions[-1] != pose:
            self.transitions.append(pose)
            if len(self.transitions) > MAX_TRANSITIONS:
                self.transitions.pop(0)

        is_new = pose not in self.seen_poses
        self.seen_poses.add(pose)
        return is_new

    def reset(self) -> None:
        self.transitions.clear()
        self.seen_poses.clear()


def read_pose(
    landmarks: Optional[Sequence[float]], compound: bool = False
) -> Optional[PoseReading]:
    """
    Classify head pose from a flat landmark array.

    Parameters
    ----------
    landmarks : Sequence[float]
        Flat (x, y, z) triples: right eye, left eye, nose first.
    compound : bool, default=False
        Use the thresholds tuned for nod/shake gestures.

    Returns
    -------
    Optional[PoseReading]
        None if the landmarks are missing, too short or degenerate.
    """
    if landmarks is None or len(landmarks) < MIN_LANDMARK_VALUES:
        return None

    points = np.asarray(landmarks, dtype=np.float64)
    eye_r = points[0:2]
    eye_l = points[3:5]
    nose = points[6:8]

    eye_mid = (eye_r + eye_l) / 2.0
    eye_distance = float(np.linalg.norm(eye_r - eye_l))
    if not math.isfinite(eye_distance) or eye_distance <= 0:
        return None

    diff_x = float(nose[0] - eye_mid[0])
    diff_y = float(nose[1] - eye_mid[1])

    turn_threshold = eye_distance * (TURN_THRESHOLD_GESTURE if compound else TURN_THRESHOLD)
    up_threshold = eye_distance * (UP_THRESHOLD_GESTURE if compound else UP_THRESHOLD)
    down_threshold = eye_distance * DOWN_THRESHOLD

    return PoseReading(
        diff_x=diff_x,
        diff_y=diff_y,
        eye_distance=eye_distance,
        is_left=diff_x > turn_threshold,
        is_right=diff_x < -turn_threshold,
        # Nose close to the eye line
        is_up=diff_y < up_threshold,
        is_down=diff_y > down_threshold,
    )


def static_pose_holds(kind: ChallengeKind, reading: PoseReading) -> bool:
    """Instantaneous test for the held-pose challenges."""
    abs_x = abs(reading.diff_x)
    abs_y = abs(reading.diff_y)

    if kind is ChallengeKind.TURN_LEFT:
        return reading.is_left and abs_x > abs_y * DOMINANCE_RATIO
    if kind is ChallengeKind.TURN_RIGHT:
        return reading.is_right and abs_x > abs_y * DOMINANCE_RATIO
    if kind is ChallengeKind.LOOK_UP:
        return reading.is_up and abs_x < reading.eye_distance * LOOK_UP_MAX_YAW
    if kind is ChallengeKind.LOOK_DOWN:
        return reading.is_down and abs_y > abs_x * DOMINANCE_RATIO
    raise ValueError(f"{kind.value} is not a static challenge")


def compound_satisfied(kind: ChallengeKind, state: GestureState) -> bool:
    """Both constituent poses seen, in either order."""
    first, second = COMPOUND_POSES[kind]
    return first in state.seen_poses and second in state.seen_poses


class GestureTracker:
    """
    Stateful detector for one attempt at one challenge.

    Feed it sensor results with :meth:`observe`; it reports when the
    challenge is satisfied and exposes a progress value in [0, 100] that only
    grows while criteria are being met and drops to 0 on a break or stall.

    Parameters
    ----------
    kind : ChallengeKind
        Challenge being attempted.
    required_consecutive : int, default=15
        Frames a static pose must hold.
    stall_frames : int, default=60
        Frames without a new pose after which a compound gesture resets.

    Examples
    --------
    >>> tracker = GestureTracker(ChallengeKind.NOD_YES)
    >>> tracker.satisfied
    False
    """

    def __init__(
        self,
        kind: ChallengeKind,
        required_consecutive: int = REQUIRED_CONSECUTIVE_FRAMES,
        stall_frames: int = GESTURE_STALL_FRAMES,
    ) -> None:
        self.kind = ChallengeKind(kind)
        self.required_consecutive = required_consecutive
        self.stall_frames = stall_frames

        self.state = GestureState()
        self.frames = 0
        self.consecutive = 0
        self.resets = 0
        self.satisfied = False
        self._last_progress_frame = 0

    @property
    def progress(self) -> float:
        if self.satisfied:
            return 100.0
        if self.kind.is_compound:
            wanted = COMPOUND_POSES[self.kind]
            seen = sum(1 for pose in wanted if pose in self.state.seen_poses)
            return 100.0 * seen / len(wanted)
        return min(100.0, 100.0 * self.consecutive / self.required_consecutive)

    def observe(self, detection: DetectionResult) -> bool:
        """
        Fold one frame into the attempt.

        Returns
        -------
        bool
            True once the challenge is satisfied.
        """
        if self.satisfied:
            return True

        frame_index = self.frames
        self.frames += 1

        if not detection.face_found:
            reading = None
        else:
            reading = read_pose(detection.landmarks, compound=self.kind.is_compound)

        if self.kind.is_compound:
            return self._observe_compound(reading, frame_index)
        return self._observe_static(reading)

    def _observe_static(self, reading: Optional[PoseReading]) -> bool:
        if reading is not None and static_pose_holds(self.kind, reading):
            self.consecutive += 1
            if self.consecutive >= self.required_consecutive:
                self.satisfied = True
        else:
            self.consecutive = 0
        return self.satisfied

    def _observe_compound(self, reading: Optional[PoseReading], frame_index: int) -> bool:
        if reading is not None and self.state.observe(reading.pose):
            self._last_progress_frame = frame_index

        if compound_satisfied(self.kind, self.state):
            self.satisfied = True
            return True

        if frame_index - self._last_progress_frame > self.stall_frames:
            logger.debug(
                "Gesture stalled, resetting",
                challenge=self.kind.value,
                seen_poses=sorted(self.state.seen_poses),
                frame=frame_index,
            )
            self.state.reset()
            self.resets += 1
            self._last_progress_frame = frame_index

        return False
