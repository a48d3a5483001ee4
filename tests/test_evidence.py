"""Unit tests for the evidence accumulator."""

import numpy as np
import pytest

from ageverify.data_models import ChallengeKind, ChallengeResult, DetectionResult, SurfaceFeatures
from ageverify.evidence import EvidenceAccumulator, RunningMean


def _make_result(passed: bool, kind: ChallengeKind = ChallengeKind.TURN_LEFT) -> ChallengeResult:
    return ChallengeResult(kind=kind, passed=passed, score=1.0 if passed else 0.0)


# ===================================================================
# Running mean
# ===================================================================

class TestRunningMean:
    def test_empty_mean_is_zero(self) -> None:
        mean = RunningMean()
        assert mean.mean == 0.0
        assert mean.mean_or_none() is None

    def test_weighted_mean(self) -> None:
        mean = RunningMean()
        mean.add(20.0, 1.0)
        mean.add(40.0, 3.0)
        assert mean.mean == pytest.approx(35.0)


# ===================================================================
# Accumulation
# ===================================================================

class TestEvidenceAccumulator:
    def test_age_weighted_by_age_confidence(self) -> None:
        acc = EvidenceAccumulator()
        acc.add(DetectionResult(face_found=True, age_estimate=20.0, age_confidence=0.25))
        acc.add(DetectionResult(face_found=True, age_estimate=40.0, age_confidence=0.75))
        evidence = acc.finalize([])
        assert evidence.age_estimate == pytest.approx(35.0)

    def test_missing_confidence_weighs_one(self) -> None:
        acc = EvidenceAccumulator()
        acc.add(DetectionResult(face_found=True, age_estimate=20.0))
        acc.add(DetectionResult(face_found=True, age_estimate=30.0))
        assert acc.finalize([]).age_estimate == pytest.approx(25.0)

    def test_non_positive_age_ignored(self) -> None:
        acc = EvidenceAccumulator()
        acc.add(DetectionResult(face_found=True, age_estimate=0.0, age_confidence=0.9))
        acc.add(DetectionResult(face_found=True, age_estimate=25.0, age_confidence=0.9))
        assert acc.finalize([]).age_estimate == pytest.approx(25.0)

    def test_detection_confidence_stands_in_for_age_confidence(self) -> None:
        acc = EvidenceAccumulator()
        acc.add(DetectionResult(face_found=True, age_estimate=25.0, confidence=0.6))
        assert acc.finalize([]).age_confidence == pytest.approx(0.6)

    def test_surface_absent_when_never_analyzed(self) -> None:
        acc = EvidenceAccumulator()
        acc.add(DetectionResult(face_found=True, age_estimate=25.0))
        assert acc.finalize([]).surface_score is None

    def test_surface_keeps_last_features(self) -> None:
        acc = EvidenceAccumulator()
        first = SurfaceFeatures(sh_a_score=0.1)
        last = SurfaceFeatures(sh_a_score=0.9)
        acc.add(DetectionResult(face_found=True, surface_score=0.5, surface_features=first))
        acc.add(DetectionResult(face_found=True, surface_score=0.7, surface_features=last))
        evidence = acc.finalize([])
        assert evidence.surface_score == pytest.approx(0.6)
        assert evidence.surface_features is last

    def test_secondary_estimates_reported(self) -> None:
        acc = EvidenceAccumulator()
        acc.add(
            DetectionResult(
                face_found=True,
                age_estimate=25.0,
                age_estimate_geometric=24.0,
                age_estimate_enhanced=26.0,
                age_method="enhanced",
            )
        )
        evidence = acc.finalize([])
        assert evidence.age_estimate_geometric == pytest.approx(24.0)
        assert evidence.age_estimate_enhanced == pytest.approx(26.0)
        assert evidence.age_method == "enhanced"

    def test_embedding_kept_as_float32(self) -> None:
        acc = EvidenceAccumulator()
        acc.add(DetectionResult(face_found=True, age_estimate=25.0, embedding=[0.5] * 4))
        assert acc.embedding.dtype == np.float32

    def test_capture_embedding_overrides(self) -> None:
        acc = EvidenceAccumulator()
        acc.add(DetectionResult(face_found=True, age_estimate=25.0, embedding=[0.1] * 4))
        acc.capture_embedding(DetectionResult(face_found=True, embedding=[0.9] * 4))
        assert acc.embedding[0] == pytest.approx(0.9)


# ===================================================================
# Finalization
# ===================================================================

class TestFinalize:
    def test_liveness_is_passed_fraction(self) -> None:
        acc = EvidenceAccumulator()
        results = [_make_result(True)] * 4 + [_make_result(False)]
        evidence = acc.finalize(results)
        assert evidence.liveness_score == pytest.approx(0.8)
        assert evidence.challenges == results

    def test_empty_session(self) -> None:
        evidence = EvidenceAccumulator().finalize([])
        assert evidence.age_estimate == 0.0
        assert evidence.age_confidence == 0.0
        assert evidence.liveness_score == 0.0

    def test_finalize_is_idempotent(self) -> None:
        acc = EvidenceAccumulator()
        first = acc.finalize([_make_result(True)])
        assert acc.finalize([]) is first

    def test_add_after_finalize_rejected(self) -> None:
        acc = EvidenceAccumulator()
        acc.finalize([])
        with pytest.raises(RuntimeError, match="already finalized"):
            acc.add(DetectionResult(face_found=True))
