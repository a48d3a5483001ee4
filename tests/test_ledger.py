"""Unit tests for the JSON-RPC ledger client."""

import asyncio
import base64
import json

import httpx
import pytest
from solders.hash import Hash

from ageverify.constants import FALLBACK_PRIORITY_FEE
from ageverify.exceptions import BroadcastFailed, ConfirmationTimeout, LedgerRpcError
from ageverify.ledger import JsonRpcLedger, describe_transaction_error, parse_program_error
from ageverify.rpc_manager import RpcEndpoint, RpcManager

from fakes import StepClock, no_sleep

PRIMARY = "https://primary.example"
SECONDARY = "https://secondary.example"


def _rpc_result(request: httpx.Request, result) -> httpx.Response:
    body = json.loads(request.content)
    return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": result})


def _rpc_error(request: httpx.Request, code: int, message: str, data=None) -> httpx.Response:
    body = json.loads(request.content)
    error = {"code": code, "message": message}
    if data is not None:
        error["data"] = data
    return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "error": error})


def _run(handler, scenario, urls=(PRIMARY,), clock=None):
    """Run ``scenario(ledger, manager)`` against a mocked transport."""

    async def main():
        manager = RpcManager([RpcEndpoint(url, weight=len(urls) - i) for i, url in enumerate(urls)])
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        ledger = JsonRpcLedger(manager, client=client, sleep=no_sleep, clock=clock or StepClock(0.0))
        try:
            return await scenario(ledger, manager)
        finally:
            await client.aclose()

    return asyncio.run(main())


# ===================================================================
# Error translation
# ===================================================================

class TestProgramErrors:
    def test_parse_custom_error(self) -> None:
        assert parse_program_error({"InstructionError": [2, {"Custom": 6001}]}) == 6001

    def test_parse_other_errors(self) -> None:
        assert parse_program_error("AccountNotFound") is None
        assert parse_program_error({"InstructionError": [0, "InvalidArgument"]}) is None

    def test_describe_known_error(self) -> None:
        message = describe_transaction_error({"InstructionError": [2, {"Custom": 6000}]})
        assert message.startswith("Verification is still valid.")

    def test_describe_unknown_error(self) -> None:
        assert describe_transaction_error("BlockhashNotFound").startswith("Transaction failed")


# ===================================================================
# Calls and failover
# ===================================================================

class TestCall:
    def test_reads_account_data(self) -> None:
        def handler(request):
            body = json.loads(request.content)
            assert body["method"] == "getAccountInfo"
            assert body["params"][1]["encoding"] == "base64"
            encoded = base64.b64encode(b"record").decode()
            return _rpc_result(request, {"value": {"data": [encoded, "base64"]}})

        async def scenario(ledger, manager):
            return await ledger.get_account_data("11111111111111111111111111111111")

        assert _run(handler, scenario) == b"record"

    def test_missing_account(self) -> None:
        async def scenario(ledger, manager):
            return await ledger.get_account_data("11111111111111111111111111111111")

        assert _run(lambda r: _rpc_result(r, {"value": None}), scenario) is None

    def test_balance(self) -> None:
        async def scenario(ledger, manager):
            return await ledger.get_balance("11111111111111111111111111111111")

        assert _run(lambda r: _rpc_result(r, {"value": 1234}), scenario) == 1234

    def test_blockhash(self) -> None:
        blockhash = str(Hash.default())

        async def scenario(ledger, manager):
            return await ledger.get_latest_blockhash()

        result = _run(
            lambda r: _rpc_result(r, {"value": {"blockhash": blockhash, "lastValidBlockHeight": 1}}),
            scenario,
        )
        assert result == Hash.default()

    def test_rpc_error_raised(self) -> None:
        async def scenario(ledger, manager):
            await ledger.get_balance("11111111111111111111111111111111")

        with pytest.raises(LedgerRpcError, match="Invalid param") as excinfo:
            _run(lambda r: _rpc_error(r, -32602, "Invalid param"), scenario)
        assert excinfo.value.code == -32602

    def test_transport_failure_fails_over(self) -> None:
        def handler(request):
            if request.url.host == "primary.example":
                raise httpx.ConnectError("refused", request=request)
            return _rpc_result(request, {"value": 7})

        async def scenario(ledger, manager):
            balance = await ledger.get_balance("11111111111111111111111111111111")
            return balance, manager.health[PRIMARY].healthy

        assert _run(handler, scenario, urls=(PRIMARY, SECONDARY)) == (7, False)

    def test_server_error_fails_over(self) -> None:
        def handler(request):
            if request.url.host == "primary.example":
                return httpx.Response(503)
            return _rpc_result(request, {"value": 9})

        async def scenario(ledger, manager):
            return await ledger.get_balance("11111111111111111111111111111111")

        assert _run(handler, scenario, urls=(PRIMARY, SECONDARY)) == 9

    def test_client_error_not_retried(self) -> None:
        async def scenario(ledger, manager):
            await ledger.get_balance("11111111111111111111111111111111")

        with pytest.raises(httpx.HTTPStatusError):
            _run(lambda r: httpx.Response(401), scenario, urls=(PRIMARY, SECONDARY))

    def test_every_endpoint_down(self) -> None:
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        async def scenario(ledger, manager):
            await ledger.get_balance("11111111111111111111111111111111")

        with pytest.raises(httpx.ConnectError):
            _run(handler, scenario, urls=(PRIMARY, SECONDARY))

    def test_html_body_fails_over(self) -> None:
        def handler(request):
            if request.url.host == "primary.example":
                return httpx.Response(200, text="<html>bad gateway</html>")
            return _rpc_result(request, {"value": 11})

        async def scenario(ledger, manager):
            balance = await ledger.get_balance("11111111111111111111111111111111")
            return balance, manager.health[PRIMARY].healthy

        assert _run(handler, scenario, urls=(PRIMARY, SECONDARY)) == (11, False)

    @pytest.mark.parametrize("text", ["<html>bad gateway</html>", "[1, 2]", "null"])
    def test_non_json_rpc_body_raises_rpc_error(self, text) -> None:
        async def scenario(ledger, manager):
            await ledger.get_balance("11111111111111111111111111111111")

        with pytest.raises(LedgerRpcError, match="Invalid JSON-RPC response") as excinfo:
            _run(lambda r: httpx.Response(200, text=text), scenario)
        assert excinfo.value.code == -32700

    def test_null_balance_rejected(self) -> None:
        async def scenario(ledger, manager):
            await ledger.get_balance("11111111111111111111111111111111")

        with pytest.raises(LedgerRpcError, match="Unexpected balance result"):
            _run(lambda r: _rpc_result(r, {"value": None}), scenario)


# ===================================================================
# Priority fees
# ===================================================================

class TestPriorityFee:
    def test_recommended_value(self) -> None:
        def handler(request):
            body = json.loads(request.content)
            assert body["method"] == "qn_estimatePriorityFees"
            assert body["params"][0]["last_n_blocks"] == 10
            return _rpc_result(request, {"recommended": 250_000})

        async def scenario(ledger, manager):
            return await ledger.estimate_priority_fee("11111111111111111111111111111111")

        assert _run(handler, scenario) == 250_000

    @pytest.mark.parametrize(
        "response",
        [
            lambda r: _rpc_error(r, -32601, "Method not found"),
            lambda r: _rpc_error(r, -32000, "Internal"),
            lambda r: _rpc_result(r, {"per_compute_unit": {}}),
        ],
    )
    def test_falls_back(self, response) -> None:
        async def scenario(ledger, manager):
            return await ledger.estimate_priority_fee("11111111111111111111111111111111")

        assert _run(response, scenario) == FALLBACK_PRIORITY_FEE


# ===================================================================
# Broadcast and confirmation
# ===================================================================

class TestSendAndConfirm:
    def test_send_skips_preflight(self) -> None:
        def handler(request):
            body = json.loads(request.content)
            assert body["method"] == "sendTransaction"
            assert base64.b64decode(body["params"][0]) == b"raw-tx"
            assert body["params"][1]["skipPreflight"] is True
            return _rpc_result(request, "SIG")

        async def scenario(ledger, manager):
            return await ledger.send_raw_transaction(b"raw-tx")

        assert _run(handler, scenario) == "SIG"

    def test_send_rejection_carries_logs(self) -> None:
        logs = ["Program log: one", "Program log: two"]

        async def scenario(ledger, manager):
            await ledger.send_raw_transaction(b"raw-tx")

        with pytest.raises(BroadcastFailed) as excinfo:
            _run(lambda r: _rpc_error(r, -32002, "simulation failed", {"logs": logs}), scenario)
        assert excinfo.value.logs == logs
        assert "Program log: two" in excinfo.value.detailed_message

    def test_confirmed_after_polling(self) -> None:
        statuses = iter([None, {"confirmationStatus": "processed", "err": None},
                         {"confirmationStatus": "confirmed", "err": None}])

        def handler(request):
            return _rpc_result(request, {"value": [next(statuses)]})

        async def scenario(ledger, manager):
            await ledger.confirm_transaction("SIG", 60)

        _run(handler, scenario)

    def test_failed_transaction_reports_program_error(self) -> None:
        def handler(request):
            body = json.loads(request.content)
            if body["method"] == "getSignatureStatuses":
                status = {"confirmationStatus": "confirmed",
                          "err": {"InstructionError": [2, {"Custom": 6000}]}}
                return _rpc_result(request, {"value": [status]})
            return _rpc_result(request, {"meta": {"logMessages": ["Program log: still valid"]}})

        async def scenario(ledger, manager):
            await ledger.confirm_transaction("SIG", 60)

        with pytest.raises(BroadcastFailed, match="Verification is still valid") as excinfo:
            _run(handler, scenario)
        assert excinfo.value.program_error == 6000
        assert excinfo.value.logs == ["Program log: still valid"]

    def test_confirmation_timeout(self) -> None:
        async def scenario(ledger, manager):
            await ledger.confirm_transaction("SIG", 5)

        with pytest.raises(ConfirmationTimeout, match="SIG"):
            _run(lambda r: _rpc_result(r, {"value": [None]}), scenario, clock=StepClock(1.0))
