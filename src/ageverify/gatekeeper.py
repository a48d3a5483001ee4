"""
Gatekeeper co-signing.

The client half posts the unsigned transaction to the gatekeeper service and
checks what comes back: the message must be byte-identical to the one sent
and carry a valid gatekeeper signature. The gatekeeper is untrusted but
required; any failure aborts the write.

The server half (:func:`cosign_transaction`) signs only transactions whose
age registry instruction is a create or update naming the gatekeeper as a
signer, and that invoke no programs other than the registry and the compute
budget program.
"""

import json
from typing import Any, Dict, Optional, Union

import httpx
import structlog
from solders.compute_budget import ID as COMPUTE_BUDGET_PROGRAM_ID
from solders.keypair import Keypair
from solders.message import to_bytes_versioned
from solders.pubkey import Pubkey
from solders.transaction import VersionedTransaction

from .attestation import (
    CREATE_DISCRIMINATOR,
    PLATFORM_PUBKEY,
    UPDATE_DISCRIMINATOR,
    deserialize_transaction,
    has_valid_signature,
    partial_sign,
    required_signers,
    serialize_transaction,
)
from .config import GATEKEEPER_TIMEOUT, GATEKEEPER_URL
from .exceptions import SigningFailed
from .record_codec import PROGRAM_ID

# Initialize structured logger
logger = structlog.get_logger(__name__)

# Position of the gatekeeper in the create/update account list
GATEKEEPER_ACCOUNT_INDEX = 5


class GatekeeperRejected(ValueError):
    """Raised server-side when a transaction is not eligible for co-signing."""


def load_keypair(secret: Union[str, bytes]) -> Keypair:
    """
    Decode a keypair from a JSON byte array or a base58 secret.

    Examples
    --------
    >>> kp = Keypair()
    >>> load_keypair(str(kp)).pubkey() == kp.pubkey()
    True
    """
    if isinstance(secret, bytes):
        return Keypair.from_bytes(secret)
    text = secret.strip()
    if text.startswith("["):
        return Keypair.from_bytes(bytes(json.loads(text)))
    return Keypair.from_base58_string(text)


def validate_verification_transaction(
    tx: VersionedTransaction,
    gatekeeper: Pubkey = PLATFORM_PUBKEY,
    program_id: Pubkey = PROGRAM_ID,
) -> None:
    """
    Check a transaction is an authorized age registry write.

    Raises
    ------
    GatekeeperRejected
        Describing the first failed check.
    """
    message = tx.message
    keys = list(message.account_keys)

    if gatekeeper not in required_signers(message):
        raise GatekeeperRejected("Gatekeeper is not a required signer")

    found = False
    for instruction in message.instructions:
        invoked = keys[instruction.program_id_index]
        if invoked == COMPUTE_BUDGET_PROGRAM_ID:
            continue
        if invoked != program_id:
            raise GatekeeperRejected(f"Unexpected program {invoked}")

        prefix = bytes(instruction.data[:8])
        if prefix not in (CREATE_DISCRIMINATOR, UPDATE_DISCRIMINATOR):
            raise GatekeeperRejected("Not a create/update verification instruction")

        accounts = bytes(instruction.accounts)
        if len(accounts) <= GATEKEEPER_ACCOUNT_INDEX:
            raise GatekeeperRejected("Verification instruction is missing accounts")
        if keys[accounts[GATEKEEPER_ACCOUNT_INDEX]] != gatekeeper:
            raise GatekeeperRejected("Gatekeeper account does not match")
        found = True

    if not found:
        raise GatekeeperRejected("Invalid verification instruction")


def cosign_transaction(serialized_tx: str, keypair: Keypair) -> str:
    """
    Validate and co-sign a base64 transaction.

    Parameters
    ----------
    serialized_tx : str
        Base64 v0 transaction.
    keypair : Keypair
        Gatekeeper key.

    Returns
    -------
    str
        Base64 transaction with the gatekeeper slot signed.

    Raises
    ------
    GatekeeperRejected
        If the transaction cannot be decoded or is not eligible.
    """
    try:
        tx = deserialize_transaction(serialized_tx)
    except ValueError as e:
        raise GatekeeperRejected(f"Transaction could not be decoded: {e}") from e

    validate_verification_transaction(tx, keypair.pubkey())
    signed = partial_sign(tx, keypair)
    logger.info("Transaction co-signed", gatekeeper=str(keypair.pubkey()))
    return serialize_transaction(signed)


def handle_sign_request(body: Dict[str, Any], keypair: Keypair) -> Dict[str, Any]:
    """
    Request handler for the co-signing endpoint.

    Returns
    -------
    dict
        ``{"transaction": ...}`` on success, ``{"error": ..., "message": ...}``
        otherwise.
    """
    serialized = body.get("serializedTx") if isinstance(body, dict) else None
    if not serialized:
        return {"error": "Missing transaction data", "message": "serializedTx is required"}

    try:
        return {"transaction": cosign_transaction(serialized, keypair)}
    except GatekeeperRejected as e:
        logger.warning("Co-signing rejected", reason=str(e))
        return {"error": "Security validation failed", "message": str(e)}


class GatekeeperClient:
    """
    HTTP client for the gatekeeper co-signing endpoint.

    Parameters
    ----------
    url : str, optional
        Endpoint URL; defaults to the deployment setting.
    public_key : Pubkey
        Expected gatekeeper key.
    client : httpx.AsyncClient, optional
        HTTP client; created per request when omitted.
    timeout : float, optional
        Request timeout in seconds.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        public_key: Pubkey = PLATFORM_PUBKEY,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = GATEKEEPER_TIMEOUT,
    ) -> None:
        self.url = url or GATEKEEPER_URL
        self._public_key = public_key
        self.client = client
        self.timeout = timeout

    @property
    def public_key(self) -> Pubkey:
        return self._public_key

    async def _post(self, payload: Dict[str, Any]) -> httpx.Response:
        if self.client is not None:
            return await self.client.post(self.url, json=payload, timeout=self.timeout)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.post(self.url, json=payload)

    async def cosign(self, tx: VersionedTransaction) -> VersionedTransaction:
        """
        Obtain the gatekeeper signature.

        Raises
        ------
        SigningFailed
            With ``signer="gatekeeper"`` on transport errors, error payloads,
            or a response that does not match the request.
        """
        payload = {"serializedTx": serialize_transaction(tx), "isV0": True}
        try:
            response = await self._post(payload)
        except httpx.HTTPError as e:
            raise SigningFailed("gatekeeper", f"Server Signing Sequence Failed: {e}") from e

        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.is_error or "transaction" not in body:
            detail = body.get("message") or body.get("error") or response.reason_phrase
            raise SigningFailed("gatekeeper", f"Server API Error: {detail}")

        try:
            signed = deserialize_transaction(body["transaction"])
        except (TypeError, ValueError) as e:
            raise SigningFailed("gatekeeper", f"Malformed transaction returned: {e}") from e

        if to_bytes_versioned(signed.message) != to_bytes_versioned(tx.message):
            raise SigningFailed("gatekeeper", "Returned transaction does not match the request")
        if not has_valid_signature(signed, self.public_key):
            raise SigningFailed("gatekeeper", "Gatekeeper signature missing or invalid")

        logger.info("Gatekeeper signature received")
        return signed


class LocalGatekeeper:
    """In-process co-signer holding the gatekeeper key (development networks, tests)."""

    def __init__(self, keypair: Keypair) -> None:
        self.keypair = keypair

    @property
    def public_key(self) -> Pubkey:
        return self.keypair.pubkey()

    async def cosign(self, tx: VersionedTransaction) -> VersionedTransaction:
        try:
            validate_verification_transaction(tx, self.keypair.pubkey())
        except GatekeeperRejected as e:
            raise SigningFailed("gatekeeper", str(e)) from e
        return partial_sign(tx, self.keypair)
