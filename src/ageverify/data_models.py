"""
Data models for the age attestation core.

This module defines the values exchanged between the liveness pipeline, the
record codec and the transaction flow. Sensor output and session results are
plain dataclasses; the on-chain record validates its invariants on creation
so that a malformed record can never be encoded.
"""

import enum
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from .constants import (
    FACEHASH_LENGTH,
    USER_CODE_LENGTH,
)


class ChallengeKind(str, enum.Enum):
    """Prompted liveness gestures."""

    TURN_LEFT = "turn_left"
    TURN_RIGHT = "turn_right"
    LOOK_UP = "look_up"
    LOOK_DOWN = "look_down"
    NOD_YES = "nod_yes"
    SHAKE_NO = "shake_no"

    @property
    def is_compound(self) -> bool:
        """Compound gestures need two opposite poses instead of a held pose."""
        return self in (ChallengeKind.NOD_YES, ChallengeKind.SHAKE_NO)

    @property
    def instruction(self) -> str:
        return _INSTRUCTIONS[self]


_INSTRUCTIONS = {
    ChallengeKind.TURN_LEFT: "Turn your head left slowly until you hear a beep. Hold for a second beep.",
    ChallengeKind.TURN_RIGHT: "Turn your head right slowly until you hear a beep. Hold for a second beep.",
    ChallengeKind.LOOK_UP: "Look up slowly until you hear a beep. Hold for the second beep.",
    ChallengeKind.LOOK_DOWN: "Look down slowly until you hear a beep. Hold for the second beep.",
    ChallengeKind.NOD_YES: "Nod your head 'yes' until you hear two beeps.",
    ChallengeKind.SHAKE_NO: "Shake your head 'no' until you hear two beeps.",
}


@dataclass(frozen=True)
class ChallengeSpec:
    """One prompted gesture; immutable once generated."""

    kind: ChallengeKind

    def __post_init__(self) -> None:
        object.__setattr__(self, "kind", ChallengeKind(self.kind))


@dataclass(frozen=True)
class ChallengeResult:
    """Outcome of the final attempt at one challenge."""

    kind: ChallengeKind
    passed: bool
    score: float


@dataclass
class SurfaceFeatures:
    """Anti-spoof feature snapshot reported by the sensor."""

    sh_a_score: float = 0.0
    ip_c_detected: bool = False
    sv_b_score: float = 0.0
    pr_d_pattern: str = "unknown"


@dataclass
class DetectionResult:
    """
    Per-frame sensor output.

    Parameters
    ----------
    face_found : bool
        Whether a face was detected at all.
    landmarks : Sequence[float], optional
        Flat (x, y, z) landmark array; right eye, left eye and nose come first.
    embedding : Sequence[float], optional
        Biometric embedding used for the identity fingerprint.
    age_estimate : float, optional
        Primary age estimate.
    age_estimate_geometric : float, optional
        Geometry-based age estimate.
    age_estimate_enhanced : float, optional
        Enhanced model age estimate.
    age_confidence : float, optional
        Confidence of the age estimate.
    confidence : float, optional
        Face detection confidence.
    surface_score : float, optional
        Anti-spoof surface score for the frame.
    surface_features : SurfaceFeatures, optional
        Anti-spoof feature snapshot.
    age_method : str, optional
        ``standard``, ``enhanced`` or ``unknown``.
    """

    face_found: bool
    landmarks: Optional[Sequence[float]] = None
    embedding: Optional[Sequence[float]] = None
    age_estimate: Optional[float] = None
    age_estimate_geometric: Optional[float] = None
    age_estimate_enhanced: Optional[float] = None
    age_confidence: Optional[float] = None
    confidence: Optional[float] = None
    surface_score: Optional[float] = None
    surface_features: Optional[SurfaceFeatures] = None
    age_method: Optional[str] = None


@dataclass(frozen=True)
class VerificationRecord:
    """
    On-chain verification record.

    Invariants: ``facehash`` is 32 bytes; ``user_code`` is exactly five
    characters when ``over18`` is true and empty otherwise; ``expires_at`` is
    later than ``verified_at``.
    """

    facehash: bytes
    user_code: str
    over18: bool
    verified_at: int
    expires_at: int
    bump: int
    discriminator: Optional[bytes] = None

    def __post_init__(self) -> None:
        if len(self.facehash) != FACEHASH_LENGTH:
            raise ValueError(
                f"facehash must be {FACEHASH_LENGTH} bytes, got {len(self.facehash)}"
            )
        if self.over18 and len(self.user_code) != USER_CODE_LENGTH:
            raise ValueError(
                f"user_code must be {USER_CODE_LENGTH} characters for adult records"
            )
        if not self.over18 and self.user_code:
            raise ValueError("user_code must be empty when over18 is false")
        if self.expires_at <= self.verified_at:
            raise ValueError("expires_at must be later than verified_at")
        if not 0 <= self.bump <= 255:
            raise ValueError(f"bump must fit in a byte, got {self.bump}")

    @property
    def facehash_hex(self) -> str:
        return self.facehash.hex()

    def is_valid_at(self, unix_seconds: int) -> bool:
        """A record is valid while it has not expired."""
        return self.expires_at > unix_seconds

    @property
    def expires_at_datetime(self) -> datetime:
        return datetime.fromtimestamp(self.expires_at, tz=timezone.utc)


@dataclass
class RetryState:
    """Local per-wallet failure counters."""

    retry_count: int = 0
    cooldown_until: int = 0
    cooldown_round_count: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "RetryState":
        if not data:
            return cls()
        return cls(
            retry_count=int(data.get("retry_count", 0)),
            cooldown_until=int(data.get("cooldown_until", 0)),
            cooldown_round_count=int(data.get("cooldown_round_count", 0)),
        )


@dataclass
class Evidence:
    """Finalized session evidence attached to a result."""

    age_estimate: float = 0.0
    age_confidence: float = 0.0
    liveness_score: float = 0.0
    surface_score: Optional[float] = None
    age_estimate_geometric: Optional[float] = None
    age_estimate_enhanced: Optional[float] = None
    surface_features: Optional[SurfaceFeatures] = None
    age_method: str = "unknown"
    challenges: List[ChallengeResult] = field(default_factory=list)
    model_versions: Dict[str, str] = field(default_factory=lambda: {"core": "v1.0"})
    salt_hex: str = ""
    session_nonce_hex: str = ""


@dataclass
class VerifyResult:
    """
    Final outcome of a verification session.

    Every exit path produces one. A failed session has ``over18`` false, an
    empty ``facehash``, a non-empty ``description`` and, when a specific error
    caused the failure, that exception in ``error``.
    """

    over18: bool
    facehash: str
    description: str
    verified_at: str
    evidence: Evidence = field(default_factory=Evidence)
    verified_at_unix: Optional[int] = None
    protocol_fee_paid: bool = False
    protocol_fee_tx_id: str = ""
    app_fee_paid: bool = False
    user_code: Optional[str] = None
    bump: Optional[int] = None
    error: Optional[Exception] = None

    def __post_init__(self) -> None:
        if not self.over18:
            self.facehash = ""
            if not self.description:
                self.description = "Verification Failed"

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(replace(self, error=None))
        data["error"] = (
            self.error.to_dict()
            if hasattr(self.error, "to_dict")
            else (str(self.error) if self.error else None)
        )
        return data
