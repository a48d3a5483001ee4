"""
Attestation transaction construction and submission.

The record is written by a single versioned transaction carrying two compute
budget directives and one age registry instruction. Three parties sign it in
a fixed order: the gatekeeper co-signs the unsigned transaction first, then
the user (record authority), then an optional sponsor paying the fees. The
fully signed transaction is broadcast and polled until confirmed.

Instruction data follows the Anchor convention: an eight byte
``sha256("global:<name>")`` discriminator followed by the little-endian
arguments.
"""

import base64
import struct
from dataclasses import dataclass
from typing import List, Optional, Protocol, Sequence

import httpx
import structlog
from solders.compute_budget import set_compute_unit_limit, set_compute_unit_price
from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.message import MessageV0, to_bytes_versioned
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.system_program import ID as SYSTEM_PROGRAM_ID
from solders.transaction import VersionedTransaction

from .config import APP_TREASURY, PLATFORM_TREASURY, VerifyConfig
from .constants import (
    COMPUTE_UNIT_LIMIT,
    FACEHASH_LENGTH,
    MIN_COMPUTE_UNIT_PRICE,
    PLATFORM_PUBLIC_KEY,
)
from .exceptions import AgeVerifyError, BroadcastFailed, LedgerRpcError, SigningFailed
from .ledger import LedgerService
from .record_codec import PROGRAM_ID, anchor_discriminator, derive_verification_address
from .utils import timer, truncate_hex

# Initialize structured logger
logger = structlog.get_logger(__name__)

PLATFORM_PUBKEY: Pubkey = Pubkey.from_string(PLATFORM_PUBLIC_KEY)

CREATE_VERIFICATION = "create_verification"
UPDATE_VERIFICATION = "update_verification"
CLOSE_VERIFICATION = "close_verification"

CREATE_DISCRIMINATOR: bytes = anchor_discriminator("global", CREATE_VERIFICATION)
UPDATE_DISCRIMINATOR: bytes = anchor_discriminator("global", UPDATE_VERIFICATION)
CLOSE_DISCRIMINATOR: bytes = anchor_discriminator("global", CLOSE_VERIFICATION)

_ARGS = struct.Struct("<qBQ")


# =============================================================================
# Instructions
# =============================================================================


def encode_verification_args(
    instruction: str,
    facehash: bytes,
    verified_at: int,
    over18: bool,
    app_fee_lamports: int,
) -> bytes:
    """
    Encode create/update instruction data.

    Layout: discriminator[8] || facehash[32] || verified_at i64 || over_18 u8
    || app_fee u64.
    """
    if instruction not in (CREATE_VERIFICATION, UPDATE_VERIFICATION):
        raise ValueError(f"Unknown verification instruction '{instruction}'")
    if len(facehash) != FACEHASH_LENGTH:
        raise ValueError(f"facehash must be {FACEHASH_LENGTH} bytes, got {len(facehash)}")
    if app_fee_lamports < 0:
        raise ValueError("app_fee_lamports cannot be negative")

    return (
        anchor_discriminator("global", instruction)
        + bytes(facehash)
        + _ARGS.pack(verified_at, int(over18), app_fee_lamports)
    )


@dataclass(frozen=True)
class VerificationAccounts:
    """
    Accounts referenced by a create/update instruction.

    The record address is derived from ``authority``. ``payer`` defaults to
    the authority, both treasuries and the gatekeeper to the platform key.
    """

    authority: Pubkey
    payer: Optional[Pubkey] = None
    protocol_treasury: Optional[Pubkey] = None
    app_treasury: Optional[Pubkey] = None
    gatekeeper: Pubkey = PLATFORM_PUBKEY
    program_id: Pubkey = PROGRAM_ID

    @classmethod
    def for_wallet(
        cls,
        authority: Pubkey,
        sponsor: Optional[Pubkey] = None,
        app_treasury: Optional[str] = None,
        gatekeeper: Pubkey = PLATFORM_PUBKEY,
    ) -> "VerificationAccounts":
        """Resolve treasuries from deployment settings."""
        protocol_treasury = (
            Pubkey.from_string(PLATFORM_TREASURY) if PLATFORM_TREASURY else PLATFORM_PUBKEY
        )
        app = app_treasury or APP_TREASURY
        return cls(
            authority=authority,
            payer=sponsor,
            protocol_treasury=protocol_treasury,
            app_treasury=Pubkey.from_string(app) if app else protocol_treasury,
            gatekeeper=gatekeeper,
        )

    @property
    def fee_payer(self) -> Pubkey:
        return self.payer or self.authority

    @property
    def record_address(self) -> Pubkey:
        return derive_verification_address(self.authority, self.program_id)[0]

    def metas(self) -> List[AccountMeta]:
        protocol_treasury = self.protocol_treasury or PLATFORM_PUBKEY
        return [
            AccountMeta(self.record_address, is_signer=False, is_writable=True),
            AccountMeta(self.authority, is_signer=True, is_writable=False),
            AccountMeta(self.fee_payer, is_signer=True, is_writable=True),
            AccountMeta(protocol_treasury, is_signer=False, is_writable=True),
            AccountMeta(
                self.app_treasury or protocol_treasury, is_signer=False, is_writable=True
            ),
            AccountMeta(self.gatekeeper, is_signer=True, is_writable=False),
            AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
        ]


def build_verification_instruction(
    accounts: VerificationAccounts,
    facehash: bytes,
    verified_at: int,
    over18: bool,
    app_fee_lamports: int = 0,
    update: bool = False,
) -> Instruction:
    """
    Build a ``create_verification`` or ``update_verification`` instruction.

    Parameters
    ----------
    accounts : VerificationAccounts
        Instruction accounts.
    facehash : bytes
        32 byte identity fingerprint.
    verified_at : int
        Unix seconds of the verification.
    over18 : bool
        Verdict written to the record.
    app_fee_lamports : int, default=0
        Fee transferred to the app treasury.
    update : bool, default=False
        Renew an existing record instead of creating one.
    """
    name = UPDATE_VERIFICATION if update else CREATE_VERIFICATION
    data = encode_verification_args(name, facehash, verified_at, over18, app_fee_lamports)
    return Instruction(accounts.program_id, data, accounts.metas())


def build_close_instruction(
    authority: Pubkey, payer: Optional[Pubkey] = None, program_id: Pubkey = PROGRAM_ID
) -> Instruction:
    """Close the authority's record; rent goes to ``payer``."""
    record, _ = derive_verification_address(authority, program_id)
    metas = [
        AccountMeta(record, is_signer=False, is_writable=True),
        AccountMeta(authority, is_signer=True, is_writable=False),
        AccountMeta(payer or authority, is_signer=True, is_writable=True),
    ]
    return Instruction(program_id, CLOSE_DISCRIMINATOR, metas)


# =============================================================================
# Transactions
# =============================================================================


def compute_unit_price(priority_fee: int) -> int:
    """Compute unit price in micro-lamports, floored at the minimum."""
    return max(int(priority_fee), MIN_COMPUTE_UNIT_PRICE)


def build_message(
    payer: Pubkey,
    instructions: Sequence[Instruction],
    blockhash: Hash,
    priority_fee: int,
) -> MessageV0:
    """Prefix the compute budget directives and compile a v0 message."""
    budget = [
        set_compute_unit_limit(COMPUTE_UNIT_LIMIT),
        set_compute_unit_price(compute_unit_price(priority_fee)),
    ]
    return MessageV0.try_compile(payer, budget + list(instructions), [], blockhash)


def required_signers(message: MessageV0) -> List[Pubkey]:
    return list(message.account_keys[: message.header.num_required_signatures])


def unsigned_transaction(message: MessageV0) -> VersionedTransaction:
    """Transaction with every signature slot empty."""
    slots = message.header.num_required_signatures
    return VersionedTransaction.populate(message, [Signature.default()] * slots)


def partial_sign(tx: VersionedTransaction, keypair: Keypair) -> VersionedTransaction:
    """
    Sign one slot, leaving the other signatures untouched.

    Raises
    ------
    ValueError
        If the keypair is not a required signer of the message.
    """
    message = tx.message
    signers = required_signers(message)
    pubkey = keypair.pubkey()
    if pubkey not in signers:
        raise ValueError(f"{pubkey} is not a required signer")

    signatures = list(tx.signatures)
    signatures[signers.index(pubkey)] = keypair.sign_message(to_bytes_versioned(message))
    return VersionedTransaction.populate(message, signatures)


def has_valid_signature(tx: VersionedTransaction, pubkey: Pubkey) -> bool:
    signers = required_signers(tx.message)
    if pubkey not in signers:
        return False
    signature = tx.signatures[signers.index(pubkey)]
    if signature == Signature.default():
        return False
    return signature.verify(pubkey, to_bytes_versioned(tx.message))


def serialize_transaction(tx: VersionedTransaction) -> str:
    return base64.b64encode(bytes(tx)).decode("ascii")


def deserialize_transaction(encoded: str) -> VersionedTransaction:
    return VersionedTransaction.from_bytes(base64.b64decode(encoded))


# =============================================================================
# Signers
# =============================================================================


class TransactionSigner(Protocol):
    """A wallet able to sign its slot of a versioned transaction."""

    def pubkey(self) -> Pubkey:
        ...

    async def sign_transaction(self, tx: VersionedTransaction) -> VersionedTransaction:
        ...


class CoSigner(Protocol):
    """The gatekeeper side of the signing protocol."""

    @property
    def public_key(self) -> Pubkey:
        ...

    async def cosign(self, tx: VersionedTransaction) -> VersionedTransaction:
        ...


class KeypairSigner:
    """Local keypair wallet."""

    def __init__(self, keypair: Keypair) -> None:
        self.keypair = keypair

    def pubkey(self) -> Pubkey:
        return self.keypair.pubkey()

    async def sign_transaction(self, tx: VersionedTransaction) -> VersionedTransaction:
        return partial_sign(tx, self.keypair)


# =============================================================================
# Submission
# =============================================================================


@dataclass(frozen=True)
class AttestationReceipt:
    """Outcome of a confirmed attestation write."""

    signature: str
    record_address: Pubkey
    bump: int
    update: bool
    priority_fee: int


class AttestationSubmitter:
    """
    Builds, co-signs, signs, broadcasts and confirms attestation writes.

    Parameters
    ----------
    ledger : LedgerService
        Ledger access.
    gatekeeper : CoSigner
        Gatekeeper co-signing service.
    config : VerifyConfig, optional
        Fees and confirmation timeout.
    app_treasury : str, optional
        App treasury address; defaults to the deployment setting.
    """

    def __init__(
        self,
        ledger: LedgerService,
        gatekeeper: CoSigner,
        config: Optional[VerifyConfig] = None,
        app_treasury: Optional[str] = None,
    ) -> None:
        self.ledger = ledger
        self.gatekeeper = gatekeeper
        self.config = config or VerifyConfig()
        self.app_treasury = app_treasury

    async def _priority_fee(self) -> int:
        return await self.ledger.estimate_priority_fee(self.gatekeeper.public_key)

    async def _sign(
        self, role: str, signer: TransactionSigner, tx: VersionedTransaction
    ) -> VersionedTransaction:
        try:
            signed = await signer.sign_transaction(tx)
        except AgeVerifyError:
            raise
        except Exception as e:
            raise SigningFailed(role, str(e)) from e

        if to_bytes_versioned(signed.message) != to_bytes_versioned(tx.message):
            raise SigningFailed(role, "signer altered the transaction message")
        if not has_valid_signature(signed, signer.pubkey()):
            raise SigningFailed(role, "missing or invalid signature")
        return signed

    @timer
    async def submit(
        self,
        user: TransactionSigner,
        facehash: bytes,
        verified_at: int,
        over18: bool,
        update: bool = False,
        sponsor: Optional[TransactionSigner] = None,
    ) -> AttestationReceipt:
        """
        Write the verification record.

        Raises
        ------
        SigningFailed
            If the gatekeeper, user or sponsor signature step fails.
        BroadcastFailed
            If the ledger rejects the transaction.
        ConfirmationTimeout
            If the transaction is not confirmed in time.
        """
        accounts = VerificationAccounts.for_wallet(
            user.pubkey(),
            sponsor.pubkey() if sponsor is not None else None,
            self.app_treasury,
            self.gatekeeper.public_key,
        )
        instruction = build_verification_instruction(
            accounts,
            facehash,
            verified_at,
            over18,
            self.config.app_fee_lamports,
            update=update,
        )

        priority_fee = await self._priority_fee()
        blockhash = await self.ledger.get_latest_blockhash()
        message = build_message(accounts.fee_payer, [instruction], blockhash, priority_fee)
        tx = unsigned_transaction(message)

        logger.info(
            "Attestation transaction assembled",
            instruction=UPDATE_VERIFICATION if update else CREATE_VERIFICATION,
            record=str(accounts.record_address),
            payer=str(accounts.fee_payer),
            priority_fee=compute_unit_price(priority_fee),
            facehash=truncate_hex(facehash.hex()),
        )

        try:
            tx = await self.gatekeeper.cosign(tx)
        except SigningFailed:
            raise
        except (AgeVerifyError, httpx.HTTPError, ValueError) as e:
            raise SigningFailed("gatekeeper", str(e)) from e

        tx = await self._sign("user", user, tx)
        if sponsor is not None:
            tx = await self._sign("sponsor", sponsor, tx)

        try:
            signature = await self.ledger.send_raw_transaction(bytes(tx))
        except BroadcastFailed:
            raise
        except (LedgerRpcError, httpx.HTTPError) as e:
            raise BroadcastFailed(f"Transaction Broadcast Failed: {e}") from e

        logger.info("Attestation broadcast", signature=signature)
        await self.ledger.confirm_transaction(
            signature, self.config.confirm_timeout_ms / 1000
        )

        _, bump = derive_verification_address(accounts.authority, accounts.program_id)
        return AttestationReceipt(
            signature=signature,
            record_address=accounts.record_address,
            bump=bump,
            update=update,
            priority_fee=priority_fee,
        )
