"""Unit tests for gatekeeper co-signing, client and reference server."""

import asyncio
import json

import httpx
import pytest
from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.system_program import ID as SYSTEM_PROGRAM_ID

from ageverify.attestation import (
    VerificationAccounts,
    build_close_instruction,
    build_message,
    build_verification_instruction,
    deserialize_transaction,
    has_valid_signature,
    partial_sign,
    serialize_transaction,
    unsigned_transaction,
)
from ageverify.exceptions import SigningFailed
from ageverify.gatekeeper import (
    GatekeeperClient,
    GatekeeperRejected,
    LocalGatekeeper,
    cosign_transaction,
    handle_sign_request,
    load_keypair,
    validate_verification_transaction,
)

FACEHASH = bytes(range(32))
URL = "https://gatekeeper.example/api/sign-verification"


def _make_tx(user: Keypair, gatekeeper: Keypair, extra=None):
    accounts = VerificationAccounts(authority=user.pubkey(), gatekeeper=gatekeeper.pubkey())
    instructions = [build_verification_instruction(accounts, FACEHASH, 1_750_000_000, True)]
    instructions.extend(extra or [])
    return unsigned_transaction(
        build_message(accounts.fee_payer, instructions, Hash.default(), 5_000)
    )


def _run_client(handler, tx, gatekeeper: Keypair):
    async def main():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            client = GatekeeperClient(URL, public_key=gatekeeper.pubkey(), client=http)
            return await client.cosign(tx)

    return asyncio.run(main())


# ===================================================================
# Keys
# ===================================================================

class TestLoadKeypair:
    def test_json_array(self) -> None:
        keypair = Keypair()
        assert load_keypair(json.dumps(list(bytes(keypair)))).pubkey() == keypair.pubkey()

    def test_base58(self) -> None:
        keypair = Keypair()
        assert load_keypair(str(keypair)).pubkey() == keypair.pubkey()

    def test_raw_bytes(self) -> None:
        keypair = Keypair()
        assert load_keypair(bytes(keypair)).pubkey() == keypair.pubkey()


# ===================================================================
# Validation
# ===================================================================

class TestValidateVerificationTransaction:
    def test_accepts_create(self) -> None:
        gatekeeper = Keypair()
        validate_verification_transaction(_make_tx(Keypair(), gatekeeper), gatekeeper.pubkey())

    def test_rejects_foreign_gatekeeper(self) -> None:
        with pytest.raises(GatekeeperRejected, match="not a required signer"):
            validate_verification_transaction(_make_tx(Keypair(), Keypair()), Keypair().pubkey())

    def test_rejects_extra_program(self) -> None:
        gatekeeper = Keypair()
        user = Keypair()
        transfer = Instruction(
            SYSTEM_PROGRAM_ID,
            bytes(12),
            [AccountMeta(user.pubkey(), is_signer=True, is_writable=True)],
        )
        tx = _make_tx(user, gatekeeper, extra=[transfer])
        with pytest.raises(GatekeeperRejected, match="Unexpected program"):
            validate_verification_transaction(tx, gatekeeper.pubkey())

    def test_rejects_close(self) -> None:
        gatekeeper = Keypair()
        user = Keypair()
        close = build_close_instruction(user.pubkey(), gatekeeper.pubkey())
        tx = unsigned_transaction(build_message(user.pubkey(), [close], Hash.default(), 0))
        with pytest.raises(GatekeeperRejected, match="create/update"):
            validate_verification_transaction(tx, gatekeeper.pubkey())


# ===================================================================
# Reference server
# ===================================================================

class TestCosignTransaction:
    def test_signs_gatekeeper_slot(self) -> None:
        gatekeeper, user = Keypair(), Keypair()
        signed = cosign_transaction(serialize_transaction(_make_tx(user, gatekeeper)), gatekeeper)
        tx = deserialize_transaction(signed)
        assert has_valid_signature(tx, gatekeeper.pubkey())
        assert not has_valid_signature(tx, user.pubkey())

    def test_undecodable_payload(self) -> None:
        with pytest.raises(GatekeeperRejected, match="could not be decoded"):
            cosign_transaction("!!not base64!!", Keypair())

    def test_handler_success(self) -> None:
        gatekeeper = Keypair()
        body = {"serializedTx": serialize_transaction(_make_tx(Keypair(), gatekeeper))}
        assert "transaction" in handle_sign_request(body, gatekeeper)

    def test_handler_missing_body(self) -> None:
        response = handle_sign_request({}, Keypair())
        assert response["error"] == "Missing transaction data"

    def test_handler_rejection(self) -> None:
        response = handle_sign_request(
            {"serializedTx": serialize_transaction(_make_tx(Keypair(), Keypair()))}, Keypair()
        )
        assert response["error"] == "Security validation failed"


# ===================================================================
# HTTP client
# ===================================================================

class TestGatekeeperClient:
    def test_round_trip(self) -> None:
        gatekeeper = Keypair()
        tx = _make_tx(Keypair(), gatekeeper)

        def handler(request):
            body = json.loads(request.content)
            assert body["isV0"] is True
            return httpx.Response(200, json=handle_sign_request(body, gatekeeper))

        signed = _run_client(handler, tx, gatekeeper)
        assert has_valid_signature(signed, gatekeeper.pubkey())

    def test_error_payload(self) -> None:
        gatekeeper = Keypair()

        def handler(request):
            return httpx.Response(400, json={"error": "Security validation failed", "message": "nope"})

        with pytest.raises(SigningFailed, match="Server API Error: nope"):
            _run_client(handler, _make_tx(Keypair(), gatekeeper), gatekeeper)

    def test_transport_error(self) -> None:
        gatekeeper = Keypair()

        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(SigningFailed, match="Server Signing Sequence Failed") as excinfo:
            _run_client(handler, _make_tx(Keypair(), gatekeeper), gatekeeper)
        assert excinfo.value.signer == "gatekeeper"

    def test_rejects_altered_message(self) -> None:
        gatekeeper, user = Keypair(), Keypair()
        other = partial_sign(_make_tx(Keypair(), gatekeeper), gatekeeper)

        def handler(request):
            return httpx.Response(200, json={"transaction": serialize_transaction(other)})

        with pytest.raises(SigningFailed, match="does not match"):
            _run_client(handler, _make_tx(user, gatekeeper), gatekeeper)

    def test_rejects_unsigned_response(self) -> None:
        gatekeeper = Keypair()
        tx = _make_tx(Keypair(), gatekeeper)

        def handler(request):
            return httpx.Response(200, json={"transaction": serialize_transaction(tx)})

        with pytest.raises(SigningFailed, match="signature missing"):
            _run_client(handler, tx, gatekeeper)


class TestLocalGatekeeper:
    def test_cosigns(self) -> None:
        gatekeeper = Keypair()
        signed = asyncio.run(LocalGatekeeper(gatekeeper).cosign(_make_tx(Keypair(), gatekeeper)))
        assert has_valid_signature(signed, gatekeeper.pubkey())

    def test_rejection_is_signing_failure(self) -> None:
        with pytest.raises(SigningFailed) as excinfo:
            asyncio.run(LocalGatekeeper(Keypair()).cosign(_make_tx(Keypair(), Keypair())))
        assert excinfo.value.signer == "gatekeeper"
