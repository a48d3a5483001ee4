"""
End-to-end verification session.

One call to :meth:`VerificationOrchestrator.verify` runs the whole protocol:

1. cooldown check against the local retry state
2. preflight read of the wallet's record (a valid adult record is a cached
   success)
3. balance preflight (protocol fee + app fee + gas buffer)
4. model loading, camera capture and the liveness challenges
5. decision over the finalized evidence
6. for passing sessions (or a final strike with a face embedding) the
   attestation write: fingerprint, priority fee, create/update instruction,
   gatekeeper co-signature, user and sponsor signatures, broadcast,
   confirmation
7. retry state update

Protocol failures never raise: every exit path returns a ``VerifyResult``
with ``over18`` false, no fingerprint and a reason. Ledger and gatekeeper
faults during preflight are logged and ignored; during the write they become
the failure reason.

Used as an async context manager the orchestrator keeps RPC endpoint health
checks running and releases the ledger client it owns on exit.
"""

import asyncio
import random
import time
from datetime import datetime, timezone
from typing import Any, Optional, Tuple

import structlog

from .attestation import AttestationSubmitter, CoSigner, TransactionSigner
from .challenges import ChallengeQueue
from .config import (
    GATEKEEPER_URL,
    HEALTH_CHECK_INTERVAL,
    RETRY_STATE_PATH,
    RPC_TIMEOUT,
    RPC_URLS,
    VerifyConfig,
)
from .data_models import Evidence, VerificationRecord, VerifyResult
from .decision import decide
from .exceptions import (
    AgeVerifyError,
    BroadcastFailed,
    CooldownActive,
    InsufficientBalance,
    MalformedRecord,
    ModelLoadTimeout,
    SensorUnavailable,
    VerificationCancelled,
)
from .fingerprint import compute_facehash, generate_salt
from .gatekeeper import GatekeeperClient
from .ledger import JsonRpcLedger, LedgerService
from .liveness import LivenessSession, ProgressFn
from .record_codec import (
    as_pubkey,
    decode_verification_record,
    derive_user_code,
    derive_verification_address,
)
from .retry_policy import InMemoryRetryStore, JsonFileRetryStore, RetryPolicy
from .rpc_manager import RpcManager, endpoints_from_urls
from .sensor import FrameSource, Sensor, load_sensor, open_capture
from .utils import generate_session_id, now_ms, truncate_hex

# Initialize structured logger
logger = structlog.get_logger(__name__)

SUCCESS_DESCRIPTION = "User is confidently over age 18"


def _iso(unix_ms: int) -> str:
    return datetime.fromtimestamp(unix_ms / 1000, tz=timezone.utc).isoformat()


def _failure(
    reason: str,
    verified_at_ms: int,
    error: Optional[Exception] = None,
    evidence: Optional[Evidence] = None,
) -> VerifyResult:
    return VerifyResult(
        over18=False,
        facehash="",
        description=reason,
        verified_at=_iso(verified_at_ms),
        verified_at_unix=verified_at_ms // 1000,
        evidence=evidence or Evidence(),
        error=error,
    )


def _transaction_failure_reason(error: Exception) -> str:
    detail = error.detailed_message if isinstance(error, BroadcastFailed) else str(error)
    return f"Transaction Broadcast Failure: {detail}"


class VerificationOrchestrator:
    """
    Runs verification sessions for one device.

    Parameters
    ----------
    sensor : Sensor
        Inference models.
    camera : FrameSource
        Camera capture.
    config : VerifyConfig, optional
        Session policy.
    ledger : LedgerService, optional
        Ledger access; without it nothing is read or written on chain.
    gatekeeper : CoSigner, optional
        Gatekeeper co-signer; required for on-chain writes.
    wallet : TransactionSigner, optional
        User wallet; required for on-chain writes.
    sponsor : TransactionSigner, optional
        Pays fees and signs last.
    retry_policy : RetryPolicy, optional
        Local retry accounting; in-memory when omitted.
    fallback_sensor : Sensor, optional
        Reduced-capability sensor used when model loading times out.
    app_treasury : str, optional
        App fee recipient.
    rng : random.Random, optional
        Challenge sequencing randomness.
    on_progress : callable, optional
        Per-frame challenge progress callback.
    clock : callable
        Current unix time in milliseconds.
    monotonic : callable
        Monotonic clock in seconds for the session deadline.
    sleep : callable
        Awaitable sleep.
    rpc_manager : RpcManager, optional
        Endpoint pool whose health checks run while the orchestrator is
        entered as an async context manager.
    owns_ledger : bool
        Close the ledger's HTTP client on :meth:`aclose`.
    """

    def __init__(
        self,
        sensor: Sensor,
        camera: FrameSource,
        config: Optional[VerifyConfig] = None,
        ledger: Optional[LedgerService] = None,
        gatekeeper: Optional[CoSigner] = None,
        wallet: Optional[TransactionSigner] = None,
        sponsor: Optional[TransactionSigner] = None,
        retry_policy: Optional[RetryPolicy] = None,
        fallback_sensor: Optional[Sensor] = None,
        app_treasury: Optional[str] = None,
        rng: Optional[random.Random] = None,
        on_progress: Optional[ProgressFn] = None,
        clock=now_ms,
        monotonic=time.monotonic,
        sleep=asyncio.sleep,
        rpc_manager: Optional[RpcManager] = None,
        owns_ledger: bool = False,
    ) -> None:
        self.sensor = sensor
        self.camera = camera
        self.config = (config or VerifyConfig()).validate()
        self.ledger = ledger
        self.gatekeeper = gatekeeper
        self.wallet = wallet
        self.sponsor = sponsor
        self.retry_policy = retry_policy or RetryPolicy(
            InMemoryRetryStore(),
            self.config.max_retries,
            self.config.cooldown_minutes,
            clock,
        )
        self.fallback_sensor = fallback_sensor
        self.app_treasury = app_treasury
        self.rng = rng or random.Random()
        self.on_progress = on_progress
        self.clock = clock
        self.monotonic = monotonic
        self.sleep = sleep
        self.rpc_manager = rpc_manager
        self.owns_ledger = owns_ledger

    async def __aenter__(self) -> "VerificationOrchestrator":
        if self.rpc_manager is not None:
            self.rpc_manager.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Stop endpoint health checks and release an owned ledger client."""
        if self.rpc_manager is not None:
            await self.rpc_manager.stop()
        if self.owns_ledger and self.ledger is not None:
            await self.ledger.aclose()

    @classmethod
    def from_settings(
        cls,
        sensor: Sensor,
        camera: FrameSource,
        wallet: Optional[TransactionSigner] = None,
        config: Optional[VerifyConfig] = None,
        **kwargs,
    ) -> "VerificationOrchestrator":
        """
        Wire the JSON-RPC ledger, gatekeeper client and file retry store from settings.

        The returned orchestrator owns its ledger; use it as an async context
        manager so endpoint health checks run and the HTTP client is closed.
        """
        config = config or VerifyConfig.from_env()
        manager = RpcManager(endpoints_from_urls(RPC_URLS), HEALTH_CHECK_INTERVAL)
        ledger = JsonRpcLedger(manager, timeout=RPC_TIMEOUT, tx_tag=config.tx_rpc_tag)
        policy = RetryPolicy(
            JsonFileRetryStore(RETRY_STATE_PATH), config.max_retries, config.cooldown_minutes
        )
        return cls(
            sensor,
            camera,
            config=config,
            ledger=ledger,
            gatekeeper=GatekeeperClient(GATEKEEPER_URL),
            wallet=wallet,
            retry_policy=policy,
            rpc_manager=manager,
            owns_ledger=True,
            **kwargs,
        )

    # -------------------------------------------------------------------------
    # Preflight
    # -------------------------------------------------------------------------

    async def _read_record(self, wallet_address: str) -> Tuple[bool, Optional[VerificationRecord]]:
        """
        Read the wallet's record.

        Returns
        -------
        Tuple[bool, Optional[VerificationRecord]]
            Whether the account exists and the decoded record, if decodable.
        """
        address, _ = derive_verification_address(wallet_address)
        data = await self.ledger.get_account_data(address)
        if not data:
            return False, None
        try:
            return True, decode_verification_record(data)
        except MalformedRecord as e:
            logger.warning("Existing record could not be decoded", address=str(address), error=str(e))
            return True, None

    async def _preflight_record(self, wallet_address: str) -> Optional[VerifyResult]:
        try:
            _, record = await self._read_record(wallet_address)
        except Exception as e:
            logger.warning(
                "Preflight record check failed, continuing",
                error=str(e),
                error_type=type(e).__name__,
            )
            return None

        now_ms_ = self.clock()
        if record is None or not record.is_valid_at(now_ms_ // 1000):
            return None

        expires = record.expires_at_datetime.strftime("%Y-%m-%d")
        if not record.over18:
            logger.info("Failed verification still on record", expires_at=record.expires_at)
            return _failure(
                f"A failed verification is on record until {expires}.", now_ms_
            )

        logger.info("Valid verification found", expires_at=record.expires_at)
        return VerifyResult(
            over18=True,
            facehash="",
            description=f"User is already verified until {expires}",
            verified_at=_iso(record.verified_at * 1000),
            verified_at_unix=record.verified_at,
            protocol_fee_paid=True,
            app_fee_paid=True,
            user_code=record.user_code,
            bump=record.bump,
            evidence=Evidence(
                age_estimate=float(self.config.min_age_threshold),
                age_confidence=1.0,
                liveness_score=1.0,
                model_versions={"core": "v1.0-cached"},
            ),
        )

    async def _preflight_balance(self, wallet_address: str) -> None:
        try:
            balance = await self.ledger.get_balance(wallet_address)
        except Exception as e:
            logger.warning(
                "Balance check failed, continuing",
                error=str(e),
                error_type=type(e).__name__,
            )
            return

        required = self.config.required_balance_lamports
        if balance < required:
            raise InsufficientBalance(balance, required)

    # -------------------------------------------------------------------------
    # Session
    # -------------------------------------------------------------------------

    def _challenge_queue(self) -> ChallengeQueue:
        if self.config.challenges:
            return ChallengeQueue.from_kinds(self.config.challenges, self.rng)
        return ChallengeQueue.generate(self.config.challenge_count, self.rng)

    async def _write_attestation(
        self,
        wallet_address: str,
        salt: bytes,
        embedding,
        over18: bool,
        verified_at_unix: int,
    ) -> Tuple[str, Optional[str], int, str]:
        """
        Compute the fingerprint and write the record.

        Returns
        -------
        Tuple[str, Optional[str], int, str]
            Facehash hex, user code, bump and transaction signature.
        """
        facehash = compute_facehash(wallet_address, salt, embedding)

        try:
            exists, existing = await self._read_record(wallet_address)
        except Exception as e:
            logger.warning(
                "Record lookup before write failed, assuming none",
                error=str(e),
                error_type=type(e).__name__,
            )
            exists, existing = False, None

        submitter = AttestationSubmitter(
            self.ledger, self.gatekeeper, self.config, self.app_treasury
        )
        receipt = await submitter.submit(
            self.wallet,
            bytes.fromhex(facehash),
            verified_at_unix,
            over18,
            update=exists and existing is not None,
            sponsor=self.sponsor,
        )

        user_code = None
        if over18:
            user_code = (
                existing.user_code
                if existing is not None and existing.user_code
                else derive_user_code(receipt.record_address)
            )
        return facehash, user_code, receipt.bump, receipt.signature

    async def verify(
        self,
        wallet_address: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> VerifyResult:
        """
        Run one verification session.

        Parameters
        ----------
        wallet_address : str, optional
            Base58 wallet address; defaults to the wallet signer's key.
        cancel_event : asyncio.Event, optional
            Set to abort the session.

        Returns
        -------
        VerifyResult
            The outcome; never raised for protocol failures.
        """
        if wallet_address is None and self.wallet is not None:
            wallet_address = str(self.wallet.pubkey())
        wallet_key = wallet_address or "anonymous"
        session_id = generate_session_id()
        log = logger.bind(session_id=session_id, wallet=wallet_key)
        started_ms = self.clock()

        if wallet_address:
            try:
                as_pubkey(wallet_address)
            except ValueError as e:
                log.warning("Invalid wallet address", error=str(e))
                return _failure(f"Invalid wallet address: {wallet_address}", started_ms, e)

        try:
            retry_state = self.retry_policy.check(wallet_key)
        except CooldownActive as e:
            log.warning("Cooldown active", remaining_minutes=e.remaining_minutes)
            return _failure(e.message, started_ms, e)

        if self.ledger is not None and wallet_address:
            cached = await self._preflight_record(wallet_address)
            if cached is not None:
                return cached

            try:
                await self._preflight_balance(wallet_address)
            except InsufficientBalance as e:
                log.warning(
                    "Insufficient balance",
                    balance_lamports=e.balance_lamports,
                    shortfall_lamports=e.shortfall_lamports,
                )
                return _failure(e.message, started_ms, e)

        if cancel_event is not None and cancel_event.is_set():
            return _failure("Verification aborted", started_ms, VerificationCancelled("preflight"))

        salt = generate_salt()
        session_nonce = generate_salt()

        try:
            sensor = await load_sensor(
                self.sensor, self.config, self.fallback_sensor, self.sleep
            )
        except (ModelLoadTimeout, SensorUnavailable) as e:
            log.error("Sensor unavailable", error=str(e))
            return _failure(e.message, started_ms, e)

        queue = self._challenge_queue()
        try:
            async with open_capture(self.camera) as capture:
                session = LivenessSession(
                    sensor,
                    capture,
                    queue,
                    self.config,
                    cancel_event=cancel_event,
                    on_progress=self.on_progress,
                    clock=self.monotonic,
                    sleep=self.sleep,
                )
                outcome = await session.run()
        except VerificationCancelled as e:
            log.info("Verification cancelled", stage=e.context.get("stage"))
            return _failure(e.message, started_ms, e)
        except SensorUnavailable as e:
            log.error("Sensor failed during capture", error=str(e))
            return _failure(e.message, started_ms, e)
        except AgeVerifyError as e:
            log.error("Liveness session failed", error=str(e))
            self.retry_policy.record_failure(wallet_key)
            return _failure(e.message, started_ms, e)

        evidence = outcome.accumulator.finalize(outcome.results)
        decision = decide(evidence, self.config)

        verified_at_ms = self.clock()
        verified_at_unix = verified_at_ms // 1000
        over18 = decision.over18
        reason = decision.reason
        facehash = ""
        user_code: Optional[str] = None
        bump: Optional[int] = None
        signature = ""
        fee_paid = False
        error: Optional[Exception] = None

        final_strike = self.retry_policy.is_final_strike(retry_state)
        has_embedding = outcome.accumulator.embedding is not None
        if final_strike and not over18 and not has_embedding:
            log.warning("Final strike without a face embedding, nothing recorded on chain")
        should_write = over18 or (final_strike and has_embedding)
        can_write = (
            self.ledger is not None
            and self.gatekeeper is not None
            and self.wallet is not None
            and bool(wallet_address)
        )

        if should_write and can_write:
            if final_strike and not over18:
                log.warning("Final strike, recording failed attempt on chain")
            try:
                facehash, user_code, bump, signature = await self._write_attestation(
                    wallet_address,
                    salt,
                    outcome.accumulator.embedding,
                    over18,
                    verified_at_unix,
                )
                fee_paid = True
            except Exception as e:
                log.error(
                    "Attestation write failed",
                    error=str(e),
                    error_type=type(e).__name__,
                )
                over18 = False
                facehash = ""
                user_code = None
                reason = _transaction_failure_reason(e)
                error = e

        if fee_paid:
            evidence.salt_hex = salt.hex()
            evidence.session_nonce_hex = session_nonce.hex()

        if over18:
            self.retry_policy.record_success(wallet_key)
        else:
            self.retry_policy.record_failure(wallet_key)

        log.info(
            "Verification complete",
            over18=over18,
            fee_paid=fee_paid,
            final_strike=final_strike and not decision.over18,
            facehash=truncate_hex(facehash) if facehash else None,
        )

        return VerifyResult(
            over18=over18,
            facehash=facehash,
            description=SUCCESS_DESCRIPTION if over18 else reason,
            verified_at=_iso(verified_at_ms),
            verified_at_unix=verified_at_unix,
            evidence=evidence,
            protocol_fee_paid=fee_paid,
            protocol_fee_tx_id=signature,
            app_fee_paid=fee_paid and self.config.app_fee > 0,
            user_code=user_code,
            bump=bump if fee_paid else None,
            error=error,
        )
