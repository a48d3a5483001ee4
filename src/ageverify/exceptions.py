"""
Custom exception classes for the age attestation core.

This module defines the exception hierarchy used across liveness capture,
record decoding, transaction construction and ledger access. Each exception
carries structured context so that failures can be logged and surfaced to the
caller as a human-readable reason without losing machine-readable detail.
"""

import math
from typing import Any, Dict, List, Optional

from .constants import LAMPORTS_PER_SOL


class AgeVerifyError(Exception):
    """
    Base exception class for all age attestation errors.

    Parameters
    ----------
    message : str
        Human-readable error message.
    context : dict, optional
        Additional context information about the error.
    error_code : str, optional
        Unique error code for programmatic handling.
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None,
    ) -> None:
        self.message = message
        self.context = context or {}
        self.error_code = error_code
        super().__init__(self.message)

    def __str__(self) -> str:
        """Return a formatted string representation of the error."""
        parts = [self.message]

        if self.error_code:
            parts.append(f"[Error Code: {self.error_code}]")

        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            parts.append(f"[Context: {context_str}]")

        return " ".join(parts)

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert the exception to a dictionary for structured logging.

        Returns
        -------
        dict
            Dictionary representation of the exception.
        """
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "error_code": self.error_code,
            "context": self.context,
        }


# =============================================================================
# Capture and Liveness
# =============================================================================


class SensorUnavailable(AgeVerifyError):
    """Raised when the sensor cannot be loaded or stops answering."""

    def __init__(self, message: str, model_base_path: Optional[str] = None) -> None:
        context = {}
        if model_base_path:
            context["model_base_path"] = model_base_path
        super().__init__(message, context, "SENSOR_001")


class ModelLoadTimeout(AgeVerifyError):
    """Raised when model loading does not finish within its timeout, retry included."""

    def __init__(self, timeout_seconds: float, attempts: int) -> None:
        message = f"Model loading timed out after {attempts} attempt(s)"
        context = {"timeout_seconds": timeout_seconds, "attempts": attempts}
        super().__init__(message, context, "SENSOR_002")


class SessionTimeout(AgeVerifyError):
    """Raised when the overall liveness session exceeds its time budget."""

    def __init__(self, timeout_ms: int, challenge_index: int) -> None:
        message = "Verification session timed out"
        context = {"timeout_ms": timeout_ms, "challenge_index": challenge_index}
        super().__init__(message, context, "SESSION_001")


class VerificationCancelled(AgeVerifyError):
    """Raised when an external abort signal stops the session."""

    def __init__(self, stage: str) -> None:
        super().__init__("Verification aborted", {"stage": stage}, "SESSION_002")


# =============================================================================
# Records and Fingerprints
# =============================================================================


class MalformedRecord(AgeVerifyError):
    """Raised when an on-chain verification record cannot be decoded."""

    def __init__(self, message: str, buffer_length: int) -> None:
        super().__init__(message, {"buffer_length": buffer_length}, "RECORD_001")


class FingerprintComputationFailed(AgeVerifyError):
    """Raised when the identity fingerprint cannot be derived from an embedding."""

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message, dict(context), "CRYPTO_001")


# =============================================================================
# Transaction Flow
# =============================================================================


class InsufficientBalance(AgeVerifyError):
    """
    Raised when the wallet cannot cover protocol fee, app fee and gas buffer.

    Parameters
    ----------
    balance_lamports : int
        Balance read from the ledger.
    required_lamports : int
        Total needed to run an attestation.
    """

    def __init__(self, balance_lamports: int, required_lamports: int) -> None:
        self.balance_lamports = balance_lamports
        self.required_lamports = required_lamports
        message = (
            f"Insufficient balance. Found {self.balance_sol:.4f} SOL, "
            f"need ~{self.required_sol:.4f} SOL."
        )
        context = {
            "balance_lamports": balance_lamports,
            "required_lamports": required_lamports,
            "shortfall_lamports": self.shortfall_lamports,
        }
        super().__init__(message, context, "TX_001")

    @property
    def shortfall_lamports(self) -> int:
        return max(0, self.required_lamports - self.balance_lamports)

    @property
    def shortfall_sol(self) -> float:
        return self.shortfall_lamports / LAMPORTS_PER_SOL

    @property
    def balance_sol(self) -> float:
        return self.balance_lamports / LAMPORTS_PER_SOL

    @property
    def required_sol(self) -> float:
        return self.required_lamports / LAMPORTS_PER_SOL


class SigningFailed(AgeVerifyError):
    """
    Raised when one of the transaction signers fails.

    The ``signer`` attribute is one of ``gatekeeper``, ``user`` or ``sponsor``.
    """

    SIGNERS = ("gatekeeper", "user", "sponsor")

    def __init__(self, signer: str, message: str) -> None:
        if signer not in self.SIGNERS:
            raise ValueError(f"Unknown signer '{signer}'")
        self.signer = signer
        super().__init__(
            f"{signer.capitalize()} signing failed: {message}",
            {"signer": signer},
            "TX_002",
        )


class BroadcastFailed(AgeVerifyError):
    """Raised when the ledger rejects the transaction; carries its execution logs."""

    def __init__(
        self,
        message: str,
        logs: Optional[List[str]] = None,
        signature: Optional[str] = None,
        program_error: Optional[int] = None,
    ) -> None:
        self.logs = list(logs or [])
        self.signature = signature
        self.program_error = program_error
        context: Dict[str, Any] = {}
        if signature:
            context["signature"] = signature
        if program_error is not None:
            context["program_error"] = program_error
        super().__init__(message, context, "TX_003")

    @property
    def detailed_message(self) -> str:
        if not self.logs:
            return self.message
        return f"{self.message} | Logs: {'; '.join(self.logs[-5:])}"


class ConfirmationTimeout(AgeVerifyError):
    """Raised when a broadcast transaction is not confirmed in time."""

    def __init__(self, signature: str, timeout_seconds: float) -> None:
        self.signature = signature
        super().__init__(
            f"Transaction {signature} was not confirmed within {timeout_seconds:.0f}s",
            {"signature": signature, "timeout_seconds": timeout_seconds},
            "TX_004",
        )


class CooldownActive(AgeVerifyError):
    """
    Raised when a wallet attempts verification during a cooldown window.

    Parameters
    ----------
    cooldown_until_ms : int
        End of the window, unix milliseconds.
    remaining_ms : int
        Time left in the window, milliseconds.
    """

    def __init__(self, cooldown_until_ms: int, remaining_ms: int) -> None:
        self.cooldown_until_ms = cooldown_until_ms
        self.remaining_ms = remaining_ms
        minutes = self.remaining_minutes
        super().__init__(
            f"Cooldown active. Try again in {minutes} minute{'s' if minutes != 1 else ''}.",
            {"cooldown_until_ms": cooldown_until_ms, "remaining_ms": remaining_ms},
            "TX_005",
        )

    @property
    def remaining_minutes(self) -> int:
        return math.ceil(math.ceil(self.remaining_ms / 1000) / 60)


# =============================================================================
# Ledger Access
# =============================================================================


class NoHealthyEndpoint(AgeVerifyError):
    """Raised when no RPC endpoint is configured to serve a request."""

    def __init__(self, tag: str) -> None:
        super().__init__(
            "No RPC endpoints configured. Please provide at least one valid RPC URL.",
            {"tag": tag},
            "RPC_001",
        )


class LedgerRpcError(AgeVerifyError):
    """Raised for JSON-RPC error payloads returned by a ledger node."""

    def __init__(
        self, method: str, code: int, message: str, data: Optional[Any] = None
    ) -> None:
        self.method = method
        self.code = code
        self.data = data
        super().__init__(message, {"method": method, "rpc_code": code}, "RPC_002")

    @property
    def logs(self) -> List[str]:
        if isinstance(self.data, dict):
            return list(self.data.get("logs") or [])
        return []


class ConfigurationError(AgeVerifyError):
    """Raised for invalid configuration values."""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        config_value: Optional[Any] = None,
    ) -> None:
        context = {}
        if config_key:
            context["config_key"] = config_key
        if config_value is not None:
            context["config_value"] = config_value
        super().__init__(message, context, "CONFIG_001")
