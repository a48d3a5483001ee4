"""
Evidence aggregation across inference frames.

Every frame the sensor analyses during a session is folded into weighted
running sums. The accumulator is created at session start and finalized
exactly once at the end, when the sums are divided into averages and the
liveness score is computed from the challenge results.
"""

from dataclasses import dataclass
from typing import List, Optional, Sequence

import numpy as np
import structlog

from .data_models import ChallengeResult, DetectionResult, Evidence, SurfaceFeatures
from .utils import safe_divide

# Initialize structured logger
logger = structlog.get_logger(__name__)


@dataclass
class RunningMean:
    """Weighted running mean: ``total += value * weight; weight_sum += weight``."""

    total: float = 0.0
    weight_sum: float = 0.0

    def add(self, value: float, weight: float = 1.0) -> None:
        self.total += value * weight
        self.weight_sum += weight

    @property
    def has_samples(self) -> bool:
        return self.weight_sum > 0

    @property
    def mean(self) -> float:
        return safe_divide(self.total, self.weight_sum)

    def mean_or_none(self) -> Optional[float]:
        return self.mean if self.has_samples else None


def _weight(*candidates: Optional[float]) -> float:
    """First positive per-frame confidence, else 1.0."""
    for value in candidates:
        if value is not None and value > 0:
            return float(value)
    return 1.0


class EvidenceAccumulator:
    """
    Per-session evidence totals.

    Examples
    --------
    >>> acc = EvidenceAccumulator()
    >>> acc.add(DetectionResult(face_found=True, age_estimate=30.0, age_confidence=0.9))
    >>> round(acc.finalize([]).age_estimate, 1)
    30.0
    """

    def __init__(self) -> None:
        self.age = RunningMean()
        self.age_enhanced = RunningMean()
        self.age_geometric = RunningMean()
        self.age_confidence = RunningMean()
        self.surface = RunningMean()
        self.last_surface_features: Optional[SurfaceFeatures] = None
        self.embedding: Optional[np.ndarray] = None
        self.age_method = "unknown"
        self.frames = 0
        self._finalized: Optional[Evidence] = None

    def add(self, detection: DetectionResult) -> None:
        """Fold one frame's sensor output into the totals."""
        if self._finalized is not None:
            raise RuntimeError("EvidenceAccumulator already finalized")

        self.frames += 1

        if detection.surface_score is not None:
            self.surface.add(detection.surface_score, _weight(detection.confidence))
            if detection.surface_features is not None:
                self.last_surface_features = detection.surface_features

        if detection.age_estimate is not None and detection.age_estimate > 0:
            self.age.add(
                detection.age_estimate,
                _weight(detection.age_confidence, detection.confidence),
            )
            # Detection confidence stands in on the geometric-only path
            confidence = (
                detection.age_confidence
                if detection.age_confidence is not None
                else detection.confidence
            )
            if confidence is not None:
                self.age_confidence.add(confidence, _weight(detection.confidence))
            if detection.embedding is not None and len(detection.embedding) > 0:
                self.embedding = np.asarray(detection.embedding, dtype=np.float32)

        if detection.age_estimate_geometric is not None and detection.age_estimate_geometric > 0:
            self.age_geometric.add(
                detection.age_estimate_geometric, _weight(detection.confidence)
            )

        if detection.age_estimate_enhanced is not None and detection.age_estimate_enhanced > 0:
            self.age_enhanced.add(
                detection.age_estimate_enhanced, _weight(detection.age_confidence)
            )

        if detection.age_method:
            self.age_method = detection.age_method

    def capture_embedding(self, detection: DetectionResult) -> None:
        """Keep the embedding of the frame that completed a challenge."""
        if detection.embedding is not None and len(detection.embedding) > 0:
            self.embedding = np.asarray(detection.embedding, dtype=np.float32)

    def finalize(self, challenges: Sequence[ChallengeResult]) -> Evidence:
        """
        Divide the totals into averages.

        Parameters
        ----------
        challenges : Sequence[ChallengeResult]
            Results of every challenge in the session, penalty included.

        Returns
        -------
        Evidence
            Finalized evidence. Repeated calls return the same object.
        """
        if self._finalized is not None:
            return self._finalized

        results: List[ChallengeResult] = list(challenges)
        passed = sum(1 for r in results if r.passed)

        self._finalized = Evidence(
            age_estimate=self.age.mean,
            age_confidence=self.age_confidence.mean,
            liveness_score=safe_divide(passed, len(results)),
            surface_score=self.surface.mean_or_none(),
            age_estimate_geometric=self.age_geometric.mean_or_none(),
            age_estimate_enhanced=self.age_enhanced.mean_or_none(),
            surface_features=self.last_surface_features,
            age_method=self.age_method,
            challenges=results,
        )

        logger.info(
            "Evidence finalized",
            frames=self.frames,
            age_estimate=round(self._finalized.age_estimate, 2),
            age_confidence=round(self._finalized.age_confidence, 3),
            liveness_score=round(self._finalized.liveness_score, 3),
            surface_score=self._finalized.surface_score,
            has_embedding=self.embedding is not None,
        )
        return self._finalized
