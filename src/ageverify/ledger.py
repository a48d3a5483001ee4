"""
Ledger service access.

``LedgerService`` is the capability the orchestrator consumes. ``JsonRpcLedger``
implements it over Solana JSON-RPC with ``httpx``, choosing endpoints through
an :class:`~ageverify.rpc_manager.RpcManager`: a transport failure marks the
endpoint unhealthy and the call is retried on the next selection.
"""

import asyncio
import base64
import itertools
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Union

import httpx
import structlog
from solders.hash import Hash
from solders.pubkey import Pubkey

from .constants import (
    CONFIRMATION_POLL_SECONDS,
    DEFAULT_RPC_TAG,
    FALLBACK_PRIORITY_FEE,
    JSON_RPC_PARSE_ERROR,
    PRIORITY_FEE_SAMPLE_BLOCKS,
    PROGRAM_ERROR_MESSAGES,
    RPC_METHOD_NOT_FOUND,
    TX_RPC_TAG,
)
from .exceptions import BroadcastFailed, ConfirmationTimeout, LedgerRpcError
from .rpc_manager import RpcManager

# Initialize structured logger
logger = structlog.get_logger(__name__)

AddressLike = Union[str, Pubkey]

_CONFIRMED = ("confirmed", "finalized")


class LedgerService(Protocol):
    """Ledger primitives used by the attestation flow."""

    async def get_account_data(self, address: AddressLike) -> Optional[bytes]:
        ...

    async def get_balance(self, address: AddressLike) -> int:
        ...

    async def get_latest_blockhash(self) -> Hash:
        ...

    async def estimate_priority_fee(self, account: AddressLike) -> int:
        ...

    async def send_raw_transaction(self, raw: bytes) -> str:
        ...

    async def confirm_transaction(self, signature: str, timeout_seconds: float) -> None:
        ...


def parse_program_error(err: Any) -> Optional[int]:
    """
    Extract a custom program error code from a transaction error.

    Examples
    --------
    >>> parse_program_error({"InstructionError": [2, {"Custom": 6000}]})
    6000
    """
    if not isinstance(err, dict):
        return None
    instruction_error = err.get("InstructionError")
    if not isinstance(instruction_error, (list, tuple)) or len(instruction_error) != 2:
        return None
    detail = instruction_error[1]
    if isinstance(detail, dict) and isinstance(detail.get("Custom"), int):
        return detail["Custom"]
    return None


def describe_transaction_error(err: Any) -> str:
    """Human-readable message for a transaction error, program errors translated."""
    code = parse_program_error(err)
    if code is not None and code in PROGRAM_ERROR_MESSAGES:
        return f"{PROGRAM_ERROR_MESSAGES[code]} (program error {code})"
    return f"Transaction failed: {err}"


class JsonRpcLedger:
    """
    JSON-RPC ledger client with endpoint failover.

    Parameters
    ----------
    manager : RpcManager
        Endpoint selection.
    client : httpx.AsyncClient, optional
        HTTP client; created (and owned) when omitted.
    timeout : float, default=15.0
        Per-request timeout in seconds.
    tx_tag : str, default="tx"
        Endpoint tag for transaction traffic.
    commitment : str, default="confirmed"
        Commitment level for reads and confirmation.
    sleep : callable
        Awaitable sleep used while polling confirmations.
    clock : callable
        Monotonic clock in seconds.
    """

    def __init__(
        self,
        manager: RpcManager,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 15.0,
        tx_tag: str = TX_RPC_TAG,
        commitment: str = "confirmed",
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.manager = manager
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=timeout)
        self.timeout = timeout
        self.tx_tag = tx_tag
        self.commitment = commitment
        self.sleep = sleep
        self.clock = clock
        self._ids = itertools.count(1)

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def __aenter__(self) -> "JsonRpcLedger":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def call(
        self, method: str, params: Optional[List[Any]] = None, tag: str = DEFAULT_RPC_TAG
    ) -> Any:
        """
        Issue one JSON-RPC request and return its ``result``.

        Raises
        ------
        LedgerRpcError
            If the node answers with an error payload, or no endpoint
            returned a JSON-RPC object.
        httpx.HTTPError
            If every endpoint failed at the transport level.
        """
        payload: Dict[str, Any] = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params or [],
        }

        last_error: Optional[Exception] = None
        for _ in range(max(1, len(self.manager.endpoints))):
            url = self.manager.select_url(tag)
            try:
                response = await self.client.post(url, json=payload, timeout=self.timeout)
                response.raise_for_status()
            except httpx.TransportError as e:
                self.manager.mark_unhealthy(url, str(e))
                last_error = e
                continue
            except httpx.HTTPStatusError as e:
                if e.response.status_code < 500 and e.response.status_code != 429:
                    raise
                self.manager.mark_unhealthy(url, str(e))
                last_error = e
                continue

            try:
                body = response.json()
            except ValueError:
                body = None
            if not isinstance(body, dict):
                self.manager.mark_unhealthy(url, "Invalid JSON-RPC response")
                last_error = LedgerRpcError(
                    method, JSON_RPC_PARSE_ERROR, f"Invalid JSON-RPC response from {url}"
                )
                continue

            if body.get("error"):
                error = body["error"]
                raise LedgerRpcError(
                    method,
                    error.get("code", 0),
                    error.get("message", "RPC error"),
                    error.get("data"),
                )
            return body.get("result")

        logger.error("RPC call failed on every endpoint", method=method, error=str(last_error))
        raise last_error  # type: ignore[misc]

    async def get_account_data(self, address: AddressLike) -> Optional[bytes]:
        result = await self.call(
            "getAccountInfo",
            [str(address), {"encoding": "base64", "commitment": self.commitment}],
        )
        value = (result or {}).get("value")
        if not value:
            return None
        data = value.get("data")
        if isinstance(data, list):
            data = data[0]
        return base64.b64decode(data) if data else b""

    async def get_balance(self, address: AddressLike) -> int:
        result = await self.call(
            "getBalance", [str(address), {"commitment": self.commitment}]
        )
        value = result.get("value") if isinstance(result, dict) else None
        if not isinstance(value, int):
            raise LedgerRpcError(
                "getBalance", JSON_RPC_PARSE_ERROR, f"Unexpected balance result: {result}"
            )
        return value

    async def get_latest_blockhash(self) -> Hash:
        result = await self.call(
            "getLatestBlockhash", [{"commitment": self.commitment}], tag=self.tx_tag
        )
        return Hash.from_string(result["value"]["blockhash"])

    async def estimate_priority_fee(self, account: AddressLike) -> int:
        """
        Recommended compute unit price in micro-lamports.

        Uses the QuickNode ``qn_estimatePriorityFees`` extension; any failure,
        including nodes without the extension, yields the fallback fee.
        """
        try:
            result = await self.call(
                "qn_estimatePriorityFees",
                [{"account": str(account), "last_n_blocks": PRIORITY_FEE_SAMPLE_BLOCKS}],
                tag=self.tx_tag,
            )
        except LedgerRpcError as e:
            if e.code != RPC_METHOD_NOT_FOUND:
                logger.warning("Priority fee estimate failed", error=str(e))
            return FALLBACK_PRIORITY_FEE
        except httpx.HTTPError as e:
            logger.warning("Priority fee estimate failed", error=str(e))
            return FALLBACK_PRIORITY_FEE

        recommended = (result or {}).get("recommended") if isinstance(result, dict) else None
        if not recommended:
            logger.warning("Priority fee estimate had no recommendation", result=result)
            return FALLBACK_PRIORITY_FEE
        return int(recommended)

    async def send_raw_transaction(self, raw: bytes) -> str:
        encoded = base64.b64encode(raw).decode("ascii")
        try:
            return await self.call(
                "sendTransaction",
                [
                    encoded,
                    {
                        "encoding": "base64",
                        "skipPreflight": True,
                        "preflightCommitment": self.commitment,
                    },
                ],
                tag=self.tx_tag,
            )
        except LedgerRpcError as e:
            raise BroadcastFailed(f"Transaction Broadcast Failed: {e.message}", e.logs) from e

    async def get_transaction_logs(self, signature: str) -> List[str]:
        try:
            result = await self.call(
                "getTransaction",
                [
                    signature,
                    {
                        "encoding": "json",
                        "commitment": self.commitment,
                        "maxSupportedTransactionVersion": 0,
                    },
                ],
                tag=self.tx_tag,
            )
        except (LedgerRpcError, httpx.HTTPError) as e:
            logger.warning("Could not fetch transaction logs", signature=signature, error=str(e))
            return []
        meta = (result or {}).get("meta") or {}
        return list(meta.get("logMessages") or [])

    async def confirm_transaction(self, signature: str, timeout_seconds: float) -> None:
        """
        Poll the signature status until it is confirmed.

        Raises
        ------
        BroadcastFailed
            If the transaction landed with an error; logs are attached.
        ConfirmationTimeout
            If it is not confirmed within ``timeout_seconds``.
        """
        deadline = self.clock() + timeout_seconds
        while True:
            result = await self.call(
                "getSignatureStatuses",
                [[signature], {"searchTransactionHistory": False}],
                tag=self.tx_tag,
            )
            statuses = (result or {}).get("value") or [None]
            status = statuses[0]

            if status is not None:
                if status.get("err"):
                    logs = await self.get_transaction_logs(signature)
                    raise BroadcastFailed(
                        describe_transaction_error(status["err"]),
                        logs,
                        signature,
                        parse_program_error(status["err"]),
                    )
                if status.get("confirmationStatus") in _CONFIRMED:
                    logger.info("Transaction confirmed", signature=signature)
                    return

            if self.clock() >= deadline:
                raise ConfirmationTimeout(signature, timeout_seconds)
            await self.sleep(CONFIRMATION_POLL_SECONDS)
