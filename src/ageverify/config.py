"""
Configuration management for the age attestation core.

Deployment settings (log level, RPC endpoints, gatekeeper URL, local state
path) are read from environment variables and an optional .env file. The
per-session verification policy is an explicit ``VerifyConfig`` value passed to
the orchestrator; ``VerifyConfig.from_env`` builds one from the same
environment so that deployments can tune thresholds without code changes.
"""

import os
from dataclasses import asdict, dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from dotenv import load_dotenv

from .constants import (
    DEFAULT_CHALLENGE_COUNT,
    LAMPORTS_PER_SOL,
    SEQUENCED_CHALLENGE_KINDS,
    TX_RPC_TAG,
)
from .exceptions import ConfigurationError

# Load environment variables from .env file if it exists
load_dotenv()

# =============================================================================
# Base Paths
# =============================================================================
BASE_DIR: Path = Path(__file__).resolve().parent.parent

PROJECT_ROOT: Path = BASE_DIR.parent

# =============================================================================
# Logging Configuration
# =============================================================================
LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

# Render log events as JSON lines instead of console output
STRUCTURED_LOGGING: bool = os.getenv("STRUCTURED_LOGGING", "false").lower() == "true"

# =============================================================================
# Ledger Configuration
# =============================================================================
# Comma separated list of JSON-RPC endpoints
RPC_URLS: List[str] = [
    url.strip()
    for url in os.getenv("AGEVERIFY_RPC_URLS", "https://api.mainnet-beta.solana.com").split(",")
    if url.strip()
]

# Seconds between endpoint health probes
HEALTH_CHECK_INTERVAL: float = float(os.getenv("AGEVERIFY_HEALTH_CHECK_INTERVAL", "30"))

# Per-request HTTP timeout in seconds
RPC_TIMEOUT: float = float(os.getenv("AGEVERIFY_RPC_TIMEOUT", "15"))

# =============================================================================
# Gatekeeper Configuration
# =============================================================================
GATEKEEPER_URL: str = os.getenv(
    "AGEVERIFY_GATEKEEPER_URL", "https://www.ageverify.live/api/sign-verification"
)

GATEKEEPER_TIMEOUT: float = float(os.getenv("AGEVERIFY_GATEKEEPER_TIMEOUT", "30"))

# Optional overrides of the treasuries (development networks only)
PLATFORM_TREASURY: Optional[str] = os.getenv("AGEVERIFY_PLATFORM_TREASURY") or None
APP_TREASURY: Optional[str] = os.getenv("AGEVERIFY_APP_TREASURY") or None

# =============================================================================
# Local State Configuration
# =============================================================================
RETRY_STATE_PATH: Path = Path(
    os.getenv(
        "AGEVERIFY_RETRY_STATE_PATH",
        str(Path.home() / ".ageverify" / "retry_state.json"),
    )
)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number", name, raw)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer", name, raw)


@dataclass(frozen=True)
class VerifyConfig:
    """
    Policy for one verification session.

    Parameters
    ----------
    min_age_threshold : float, default=18
        Minimum averaged age estimate.
    min_liveness_score : float, default=0.90
        Minimum fraction of passed challenges.
    min_age_confidence : float, default=0.70
        Minimum averaged age confidence.
    min_surface_score : float, default=0.40
        Minimum averaged anti-spoof surface score. A session without any
        surface analysis fails.
    timeout_ms : int, default=90000
        Overall liveness session budget.
    max_retries : int, default=3
        Failed sessions per cooldown round.
    cooldown_minutes : float, default=15
        Length of each cooldown window.
    protocol_fee : float, default=0.0005
        Protocol fee in SOL.
    app_fee : float, default=0.0
        App fee in SOL, paid to the app treasury.
    gas_buffer : float, default=0.0005
        Headroom for network fees in the balance preflight, SOL.
    challenges : tuple of str, default=()
        Explicit challenge queue; empty means a random sequence is generated.
    challenge_count : int, default=5
        Length of generated sequences.
    model_base_path : str, default="/models"
        Passed to ``Sensor.load``.
    model_load_timeout_ms : int, default=15000
        Timeout of each model load attempt.
    model_retry_delay_ms : int, default=10000
        Pause before the single model load retry.
    confirm_timeout_ms : int, default=60000
        Budget for transaction confirmation.
    tx_rpc_tag : str, default="tx"
        Endpoint tag used for transaction traffic.
    """

    min_age_threshold: float = 18
    min_liveness_score: float = 0.90
    min_age_confidence: float = 0.70
    min_surface_score: float = 0.40
    timeout_ms: int = 90_000
    max_retries: int = 3
    cooldown_minutes: float = 15
    protocol_fee: float = 0.0005
    app_fee: float = 0.0
    gas_buffer: float = 0.0005
    challenges: Tuple[str, ...] = field(default_factory=tuple)
    challenge_count: int = DEFAULT_CHALLENGE_COUNT
    model_base_path: str = "/models"
    model_load_timeout_ms: int = 15_000
    model_retry_delay_ms: int = 10_000
    confirm_timeout_ms: int = 60_000
    tx_rpc_tag: str = TX_RPC_TAG

    def __post_init__(self) -> None:
        object.__setattr__(self, "challenges", tuple(self.challenges))

    @property
    def protocol_fee_lamports(self) -> int:
        return round(self.protocol_fee * LAMPORTS_PER_SOL)

    @property
    def app_fee_lamports(self) -> int:
        return round(self.app_fee * LAMPORTS_PER_SOL)

    @property
    def gas_buffer_lamports(self) -> int:
        return round(self.gas_buffer * LAMPORTS_PER_SOL)

    @property
    def required_balance_lamports(self) -> int:
        """Balance needed before an attestation may start."""
        return (
            self.protocol_fee_lamports
            + self.app_fee_lamports
            + self.gas_buffer_lamports
        )

    def with_overrides(self, **overrides: Any) -> "VerifyConfig":
        return replace(self, **overrides)

    def validate(self) -> "VerifyConfig":
        """
        Validate the policy values.

        Returns
        -------
        VerifyConfig
            ``self``, for chaining.

        Raises
        ------
        ConfigurationError
            Listing every invalid value.
        """
        errors = []

        for name in ("min_liveness_score", "min_age_confidence", "min_surface_score"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                errors.append(f"{name} must be within [0, 1], got {value}")

        if self.min_age_threshold <= 0:
            errors.append("min_age_threshold must be positive")

        for name in (
            "timeout_ms",
            "model_load_timeout_ms",
            "confirm_timeout_ms",
            "challenge_count",
            "max_retries",
        ):
            if getattr(self, name) < 1:
                errors.append(f"{name} must be at least 1")

        if self.model_retry_delay_ms < 0:
            errors.append("model_retry_delay_ms cannot be negative")

        if self.cooldown_minutes <= 0:
            errors.append("cooldown_minutes must be positive")

        for name in ("protocol_fee", "app_fee", "gas_buffer"):
            if getattr(self, name) < 0:
                errors.append(f"{name} cannot be negative")

        known = set(SEQUENCED_CHALLENGE_KINDS) | {"look_down"}
        unknown = [c for c in self.challenges if c not in known]
        if unknown:
            errors.append(f"Unknown challenge kinds: {unknown}")

        if errors:
            raise ConfigurationError(
                "Configuration validation failed:\n"
                + "\n".join(f"- {error}" for error in errors)
            )

        return self

    @classmethod
    def from_env(cls, **overrides: Any) -> "VerifyConfig":
        """Build a policy from ``AGEVERIFY_*`` environment variables."""
        defaults = cls()
        challenges = tuple(
            c.strip()
            for c in os.getenv("AGEVERIFY_CHALLENGES", "").split(",")
            if c.strip()
        )
        values: Dict[str, Any] = {
            "min_age_threshold": _env_float(
                "AGEVERIFY_MIN_AGE", defaults.min_age_threshold
            ),
            "min_liveness_score": _env_float(
                "AGEVERIFY_MIN_LIVENESS", defaults.min_liveness_score
            ),
            "min_age_confidence": _env_float(
                "AGEVERIFY_MIN_AGE_CONFIDENCE", defaults.min_age_confidence
            ),
            "min_surface_score": _env_float(
                "AGEVERIFY_MIN_SURFACE", defaults.min_surface_score
            ),
            "timeout_ms": _env_int("AGEVERIFY_TIMEOUT_MS", defaults.timeout_ms),
            "max_retries": _env_int("AGEVERIFY_MAX_RETRIES", defaults.max_retries),
            "cooldown_minutes": _env_float(
                "AGEVERIFY_COOLDOWN_MINUTES", defaults.cooldown_minutes
            ),
            "protocol_fee": _env_float("AGEVERIFY_PROTOCOL_FEE", defaults.protocol_fee),
            "app_fee": _env_float("AGEVERIFY_APP_FEE", defaults.app_fee),
            "gas_buffer": _env_float("AGEVERIFY_GAS_BUFFER", defaults.gas_buffer),
            "challenges": challenges,
            "model_base_path": os.getenv(
                "AGEVERIFY_MODEL_PATH", defaults.model_base_path
            ),
            "tx_rpc_tag": os.getenv("AGEVERIFY_TX_RPC_TAG", defaults.tx_rpc_tag),
        }
        values.update(overrides)
        return cls(**values).validate()

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# =============================================================================
# Configuration Validation
# =============================================================================
def validate_configuration() -> bool:
    """
    Validate the deployment settings.

    Returns
    -------
    bool
        True if configuration is valid.

    Raises
    ------
    ConfigurationError
        If any setting is invalid.
    """
    errors = []

    if not RPC_URLS:
        errors.append("AGEVERIFY_RPC_URLS must list at least one endpoint")

    for url in RPC_URLS:
        if not url.startswith(("http://", "https://")):
            errors.append(f"RPC URL must be http(s): {url}")

    if not GATEKEEPER_URL.startswith(("http://", "https://")):
        errors.append("AGEVERIFY_GATEKEEPER_URL must be http(s)")

    if HEALTH_CHECK_INTERVAL <= 0:
        errors.append("AGEVERIFY_HEALTH_CHECK_INTERVAL must be positive")

    if RPC_TIMEOUT <= 0:
        errors.append("AGEVERIFY_RPC_TIMEOUT must be positive")

    valid_log_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
    if LOG_LEVEL not in valid_log_levels:
        errors.append(f"LOG_LEVEL must be one of {valid_log_levels}")

    if errors:
        raise ConfigurationError(
            "Configuration validation failed:\n"
            + "\n".join(f"- {error}" for error in errors)
        )

    return True


def get_config_summary() -> dict:
    """
    Get a summary of the current configuration.

    Returns
    -------
    dict
        Dictionary containing key configuration parameters.
    """
    return {
        "ledger": {
            "rpc_urls": list(RPC_URLS),
            "health_check_interval": HEALTH_CHECK_INTERVAL,
            "rpc_timeout": RPC_TIMEOUT,
        },
        "gatekeeper": {
            "url": GATEKEEPER_URL,
            "timeout": GATEKEEPER_TIMEOUT,
            "platform_treasury_override": PLATFORM_TREASURY is not None,
        },
        "storage": {
            "retry_state_path": str(RETRY_STATE_PATH),
        },
        "logging": {
            "level": LOG_LEVEL,
            "structured": STRUCTURED_LOGGING,
        },
    }
