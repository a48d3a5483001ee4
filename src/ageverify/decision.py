"""
Pass/fail decision over finalized session evidence.
"""

from dataclasses import dataclass
from typing import Optional

import structlog

from .config import VerifyConfig
from .data_models import Evidence

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Decision:
    """Verdict plus the individual criteria and the failure reason, if any."""

    over18: bool
    age_valid: bool
    liveness_valid: bool
    confidence_valid: bool
    surface_valid: bool
    reason: str = ""


def decide(evidence: Evidence, config: Optional[VerifyConfig] = None) -> Decision:
    """
    Decide whether the session proves an adult, live subject.

    All four criteria must hold. A session without any surface analysis fails
    the surface criterion. On failure exactly one reason is reported, checked
    in the order age, liveness, surface, confidence.

    Parameters
    ----------
    evidence : Evidence
        Finalized session evidence.
    config : VerifyConfig, optional
        Thresholds; defaults are used when omitted.

    Returns
    -------
    Decision
        The verdict.
    """
    config = config or VerifyConfig()

    age_valid = evidence.age_estimate >= config.min_age_threshold
    liveness_valid = evidence.liveness_score >= config.min_liveness_score
    confidence_valid = evidence.age_confidence >= config.min_age_confidence
    surface_valid = (
        evidence.surface_score is not None
        and evidence.surface_score >= config.min_surface_score
    )

    over18 = age_valid and liveness_valid and confidence_valid and surface_valid

    reason = ""
    if not over18:
        if not age_valid:
            reason = (
                f"Estimated age ({round(evidence.age_estimate)}) is below "
                f"the required {config.min_age_threshold:g}."
            )
        elif not liveness_valid:
            reason = "Liveness check failed."
        elif not surface_valid:
            if evidence.surface_score is None:
                reason = "Surface integrity failed (no surface analysis)."
            else:
                reason = f"Surface integrity failed ({evidence.surface_score * 100:.0f}%)"
        else:
            reason = "Age estimation confidence too low."

        logger.info(
            "Verification criteria not met",
            reason=reason,
            age=evidence.age_estimate,
            liveness=evidence.liveness_score,
            surface=evidence.surface_score,
            confidence=evidence.age_confidence,
        )

    return Decision(
        over18=over18,
        age_valid=age_valid,
        liveness_valid=liveness_valid,
        confidence_valid=confidence_valid,
        surface_valid=surface_valid,
        reason=reason,
    )
