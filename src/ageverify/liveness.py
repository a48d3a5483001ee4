"""
Liveness session: drives the challenge queue against the sensor.

Each challenge gets up to two attempts of at most 150 frames, the retry
preceded by a one second pause. A failed challenge appends a single penalty
challenge the first time any challenge fails in the session. Between
challenges a short run of frames is captured and inferred without scoring to
keep the models warm. Every scored frame is folded into the session's
evidence accumulator.

The session deadline and the cancel signal are checked before every frame.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional

import structlog

from .challenges import ChallengeQueue
from .config import VerifyConfig
from .constants import (
    ATTEMPTS_PER_CHALLENGE,
    INTER_CHALLENGE_FRAME_DELAY_SECONDS,
    INTER_CHALLENGE_FRAMES,
    MAX_FRAMES_PER_ATTEMPT,
    NON_PASSING_FRAME_DELAY_SECONDS,
    RETRY_PAUSE_SECONDS,
)
from .data_models import ChallengeKind, ChallengeResult, ChallengeSpec, DetectionResult
from .evidence import EvidenceAccumulator
from .exceptions import (
    AgeVerifyError,
    SensorUnavailable,
    SessionTimeout,
    VerificationCancelled,
)
from .gestures import GestureTracker
from .sensor import CaptureSession, Sensor

# Initialize structured logger
logger = structlog.get_logger(__name__)

SleepFn = Callable[[float], Awaitable[Any]]
ProgressFn = Callable[[int, ChallengeKind, float], None]


@dataclass
class LivenessOutcome:
    """Challenge results plus the evidence gathered while producing them."""

    results: List[ChallengeResult] = field(default_factory=list)
    accumulator: EvidenceAccumulator = field(default_factory=EvidenceAccumulator)
    planned_length: int = 0
    penalty_added: bool = False

    @property
    def passed_count(self) -> int:
        return sum(1 for r in self.results if r.passed)


class LivenessSession:
    """
    One pass over a challenge queue.

    Parameters
    ----------
    sensor : Sensor
        Loaded sensor.
    capture : CaptureSession
        Started camera.
    queue : ChallengeQueue
        Challenges to run; may grow by one penalty challenge.
    config : VerifyConfig, optional
        Session timeout.
    cancel_event : asyncio.Event, optional
        Set externally to abort the session.
    on_progress : callable, optional
        Called with ``(index, kind, progress)`` after every scored frame.
    clock : callable
        Monotonic clock in seconds.
    sleep : callable
        Awaitable sleep.
    """

    def __init__(
        self,
        sensor: Sensor,
        capture: CaptureSession,
        queue: ChallengeQueue,
        config: Optional[VerifyConfig] = None,
        cancel_event: Optional[asyncio.Event] = None,
        on_progress: Optional[ProgressFn] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self.sensor = sensor
        self.capture = capture
        self.queue = queue
        self.config = config or VerifyConfig()
        self.cancel_event = cancel_event
        self.on_progress = on_progress
        self.clock = clock
        self.sleep = sleep

        self.outcome = LivenessOutcome(planned_length=queue.planned_length)
        self._deadline: Optional[float] = None

    def _check(self, index: int) -> None:
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise VerificationCancelled("liveness")
        if self._deadline is not None and self.clock() > self._deadline:
            raise SessionTimeout(self.config.timeout_ms, index)

    async def _detect(self) -> DetectionResult:
        frame = self.capture.capture_frame()
        try:
            return await self.sensor.detect(frame)
        except AgeVerifyError:
            raise
        except Exception as e:
            raise SensorUnavailable(f"Frame inference failed: {e}") from e

    async def _attempt(self, index: int, challenge: ChallengeSpec) -> bool:
        tracker = GestureTracker(challenge.kind)

        for _ in range(MAX_FRAMES_PER_ATTEMPT):
            self._check(index)
            detection = await self._detect()
            self.outcome.accumulator.add(detection)

            satisfied = tracker.observe(detection)
            if self.on_progress is not None:
                self.on_progress(index, challenge.kind, tracker.progress)

            if satisfied:
                self.outcome.accumulator.capture_embedding(detection)
                return True

            await self.sleep(NON_PASSING_FRAME_DELAY_SECONDS)

        logger.debug(
            "Attempt exhausted",
            challenge=challenge.kind.value,
            index=index,
            resets=tracker.resets,
        )
        return False

    async def _run_challenge(self, index: int, challenge: ChallengeSpec) -> ChallengeResult:
        for attempt in range(ATTEMPTS_PER_CHALLENGE):
            if attempt > 0:
                await self.sleep(RETRY_PAUSE_SECONDS)
                logger.info(
                    "Retrying challenge",
                    challenge=challenge.kind.value,
                    index=index,
                    attempt=attempt + 1,
                )
            if await self._attempt(index, challenge):
                return ChallengeResult(kind=challenge.kind, passed=True, score=1.0)

        return ChallengeResult(kind=challenge.kind, passed=False, score=0.0)

    async def _pause_between_challenges(self, index: int) -> None:
        # Frames keep flowing through the models; results are discarded
        for _ in range(INTER_CHALLENGE_FRAMES):
            self._check(index)
            await self._detect()
            await self.sleep(INTER_CHALLENGE_FRAME_DELAY_SECONDS)

    async def run(self) -> LivenessOutcome:
        """
        Run every challenge in the queue, penalty included.

        Returns
        -------
        LivenessOutcome
            Results in queue order and the evidence accumulator (not yet
            finalized).

        Raises
        ------
        SessionTimeout
            If the session budget runs out.
        VerificationCancelled
            If the cancel event is set.
        SensorUnavailable
            If frame inference fails.
        """
        self._deadline = self.clock() + self.config.timeout_ms / 1000

        index = 0
        while index < len(self.queue):
            challenge = self.queue[index]
            self._check(index)

            logger.info(
                "Challenge started",
                challenge=challenge.kind.value,
                index=index,
                queue_length=len(self.queue),
            )
            result = await self._run_challenge(index, challenge)
            self.outcome.results.append(result)

            if result.passed:
                logger.info("Challenge passed", challenge=challenge.kind.value, index=index)
            else:
                logger.info("Challenge failed", challenge=challenge.kind.value, index=index)
                self.queue.append_penalty()

            if index < len(self.queue) - 1:
                await self._pause_between_challenges(index)

            index += 1

        self.outcome.penalty_added = self.queue.penalty_added
        logger.info(
            "Liveness session complete",
            passed=self.outcome.passed_count,
            total=len(self.outcome.results),
            penalty_added=self.outcome.penalty_added,
        )
        return self.outcome
