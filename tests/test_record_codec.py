"""Unit tests for record addresses, account data and user codes."""

import hashlib
import struct

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from ageverify.constants import MIN_RECORD_SIZE, USER_CODE_CHARSET, VERIFICATION_RECORD_SIZE
from ageverify.data_models import VerificationRecord
from ageverify.exceptions import MalformedRecord
from ageverify.record_codec import (
    PROGRAM_ID,
    RECORD_DISCRIMINATOR,
    anchor_discriminator,
    as_pubkey,
    create_program_address,
    decode_verification_record,
    derive_user_code,
    derive_verification_address,
    encode_verification_record,
)

FACEHASH = bytes(range(32))


def _make_record(**overrides) -> VerificationRecord:
    values = dict(
        facehash=FACEHASH,
        user_code="AB2CD",
        over18=True,
        verified_at=1_750_000_000,
        expires_at=1_750_000_000 + 90 * 86400,
        bump=254,
    )
    values.update(overrides)
    return VerificationRecord(**values)


# ===================================================================
# Addresses
# ===================================================================

class TestDeriveVerificationAddress:
    def test_matches_runtime_derivation(self) -> None:
        for _ in range(5):
            wallet = Keypair().pubkey()
            expected = Pubkey.find_program_address([b"verification", bytes(wallet)], PROGRAM_ID)
            assert derive_verification_address(wallet) == expected

    def test_accepts_base58_and_bytes(self) -> None:
        wallet = Keypair().pubkey()
        assert derive_verification_address(str(wallet)) == derive_verification_address(
            bytes(wallet)
        )

    def test_address_is_off_curve(self) -> None:
        address, _ = derive_verification_address(Keypair().pubkey())
        assert not address.is_on_curve()

    def test_long_seed_rejected(self) -> None:
        with pytest.raises(ValueError, match="Seed exceeds"):
            create_program_address([bytes(33)])

    def test_as_pubkey_passthrough(self) -> None:
        key = Keypair().pubkey()
        assert as_pubkey(key) is key


class TestDiscriminators:
    def test_anchor_convention(self) -> None:
        assert anchor_discriminator("global", "create_verification") == (
            hashlib.sha256(b"global:create_verification").digest()[:8]
        )

    def test_record_discriminator(self) -> None:
        assert RECORD_DISCRIMINATOR == hashlib.sha256(b"account:VerificationRecord").digest()[:8]


# ===================================================================
# User codes
# ===================================================================

class TestDeriveUserCode:
    def test_charset_and_length(self) -> None:
        code = derive_user_code(Keypair().pubkey())
        assert len(code) == 5
        assert all(c in USER_CODE_CHARSET for c in code)

    def test_xor_rule(self) -> None:
        raw = bytes([7, 1, 2, 3, 4, 40, 1, 2, 3, 4] + [0] * 22)
        expected = "".join(
            USER_CODE_CHARSET[(raw[i] ^ raw[i + 5]) % len(USER_CODE_CHARSET)] for i in range(5)
        )
        assert derive_user_code(raw) == expected
        assert derive_user_code(raw)[1:] == "AAAA"

    def test_charset_excludes_ambiguous_glyphs(self) -> None:
        assert len(USER_CODE_CHARSET) == 33
        assert not set("O01") & set(USER_CODE_CHARSET)


# ===================================================================
# Account data
# ===================================================================

class TestRecordCodec:
    def test_encoded_size(self) -> None:
        assert len(encode_verification_record(_make_record())) == VERIFICATION_RECORD_SIZE

    def test_layout(self) -> None:
        data = encode_verification_record(_make_record())
        assert data[:8] == RECORD_DISCRIMINATOR
        assert data[8:40] == FACEHASH
        assert struct.unpack_from("<I", data, 40) == (5,)
        assert data[44:49] == b"AB2CD"
        assert data[49] == 1
        assert struct.unpack_from("<qqB", data, 50) == (
            1_750_000_000,
            1_750_000_000 + 90 * 86400,
            254,
        )

    def test_minor_record_round_trip(self) -> None:
        record = _make_record(user_code="", over18=False, expires_at=1_750_000_000 + 30 * 86400)
        data = encode_verification_record(record)
        assert len(data) == MIN_RECORD_SIZE
        decoded = decode_verification_record(data)
        assert decoded.user_code == ""
        assert decoded.over18 is False

    def test_trailing_padding_ignored(self) -> None:
        data = encode_verification_record(_make_record()) + bytes(16)
        assert decode_verification_record(data).user_code == "AB2CD"

    @settings(max_examples=100)
    @given(
        facehash=st.binary(min_size=32, max_size=32),
        code=st.text(alphabet=USER_CODE_CHARSET, min_size=5, max_size=5),
        verified_at=st.integers(min_value=0, max_value=2**40),
        lifetime=st.integers(min_value=1, max_value=2**30),
        bump=st.integers(min_value=0, max_value=255),
    )
    def test_round_trip(self, facehash, code, verified_at, lifetime, bump) -> None:
        record = VerificationRecord(
            facehash=facehash,
            user_code=code,
            over18=True,
            verified_at=verified_at,
            expires_at=verified_at + lifetime,
            bump=bump,
        )
        data = encode_verification_record(record)
        decoded = decode_verification_record(data)
        assert decoded.facehash == facehash
        assert decoded.user_code == code
        assert decoded.expires_at == verified_at + lifetime
        assert decoded.bump == bump
        assert encode_verification_record(decoded) == data


class TestMalformedRecords:
    def test_short_buffer(self) -> None:
        with pytest.raises(MalformedRecord, match="too short"):
            decode_verification_record(bytes(MIN_RECORD_SIZE - 1))

    def test_code_length_overrun(self) -> None:
        data = bytearray(encode_verification_record(_make_record()))
        data[40:44] = struct.pack("<I", 1000)
        with pytest.raises(MalformedRecord, match="overruns"):
            decode_verification_record(bytes(data))

    def test_invalid_utf8(self) -> None:
        data = bytearray(encode_verification_record(_make_record()))
        data[44] = 0xFF
        with pytest.raises(MalformedRecord, match="UTF-8"):
            decode_verification_record(bytes(data))

    def test_invariant_violation(self) -> None:
        data = bytearray(encode_verification_record(_make_record()))
        # expires_at <= verified_at
        data[58:66] = struct.pack("<q", 0)
        with pytest.raises(MalformedRecord, match="invariants"):
            decode_verification_record(bytes(data))

    @pytest.mark.parametrize("flag", [0x02, 0xFF])
    def test_non_boolean_over18_flag(self, flag: int) -> None:
        data = bytearray(encode_verification_record(_make_record()))
        data[49] = flag
        with pytest.raises(MalformedRecord, match="over18 flag must be 0 or 1"):
            decode_verification_record(bytes(data))

    def test_malformed_record_context(self) -> None:
        with pytest.raises(MalformedRecord) as excinfo:
            decode_verification_record(b"\x00" * 10)
        assert excinfo.value.context == {"buffer_length": 10}


class TestVerificationRecord:
    def test_adult_record_requires_code(self) -> None:
        with pytest.raises(ValueError, match="user_code"):
            _make_record(user_code="")

    def test_minor_record_rejects_code(self) -> None:
        with pytest.raises(ValueError, match="empty"):
            _make_record(over18=False)

    def test_facehash_length(self) -> None:
        with pytest.raises(ValueError, match="32 bytes"):
            _make_record(facehash=b"short")

    def test_validity_window(self) -> None:
        record = _make_record()
        assert record.is_valid_at(record.expires_at - 1)
        assert not record.is_valid_at(record.expires_at)
