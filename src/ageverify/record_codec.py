"""
Verification record codec.

Covers the three pieces that must agree byte for byte with the age registry
program: the record account address (a program-derived address keyed by the
wallet), the account data layout, and the fallback user-code derivation.

Account layout (little endian)::

    discriminator  [8]
    facehash       [32]
    user_code      u32 length + UTF-8 bytes
    over_18        u8 (0 or 1)
    verified_at    i64
    expires_at     i64
    bump           u8
"""

import hashlib
import struct
from typing import Iterable, Optional, Tuple, Union

import structlog
from solders.pubkey import Pubkey

from .constants import (
    AGE_REGISTRY_PROGRAM_ID,
    DISCRIMINATOR_LENGTH,
    FACEHASH_LENGTH,
    MIN_RECORD_SIZE,
    PDA_MARKER,
    USER_CODE_CHARSET,
    USER_CODE_LENGTH,
    VERIFICATION_SEED,
)
from .data_models import VerificationRecord
from .exceptions import MalformedRecord

# Initialize structured logger
logger = structlog.get_logger(__name__)

PROGRAM_ID: Pubkey = Pubkey.from_string(AGE_REGISTRY_PROGRAM_ID)

# Largest seed accepted by the runtime
MAX_SEED_LENGTH = 32

_TAIL = struct.Struct("<BqqB")


def anchor_discriminator(namespace: str, name: str) -> bytes:
    """First eight bytes of ``sha256("<namespace>:<name>")``."""
    return hashlib.sha256(f"{namespace}:{name}".encode("utf-8")).digest()[:DISCRIMINATOR_LENGTH]


RECORD_DISCRIMINATOR: bytes = anchor_discriminator("account", "VerificationRecord")


def as_pubkey(value: Union[str, bytes, Pubkey]) -> Pubkey:
    """Accept a base58 string, 32 raw bytes or a Pubkey."""
    if isinstance(value, Pubkey):
        return value
    if isinstance(value, (bytes, bytearray)):
        return Pubkey.from_bytes(bytes(value))
    return Pubkey.from_string(value)


def create_program_address(
    seeds: Iterable[bytes], program_id: Pubkey = PROGRAM_ID
) -> Optional[Pubkey]:
    """
    Hash seeds into a candidate program address.

    Returns
    -------
    Optional[Pubkey]
        The address, or None if it lies on the ed25519 curve (and therefore
        could have a private key).
    """
    digest = hashlib.sha256()
    for seed in seeds:
        if len(seed) > MAX_SEED_LENGTH:
            raise ValueError(f"Seed exceeds {MAX_SEED_LENGTH} bytes")
        digest.update(seed)
    digest.update(bytes(program_id))
    digest.update(PDA_MARKER)

    candidate = Pubkey.from_bytes(digest.digest())
    if candidate.is_on_curve():
        return None
    return candidate


def derive_verification_address(
    wallet: Union[str, bytes, Pubkey], program_id: Pubkey = PROGRAM_ID
) -> Tuple[Pubkey, int]:
    """
    Derive the verification record address of a wallet.

    The bump byte is searched from 255 downward; the first candidate that is
    off-curve wins.

    Parameters
    ----------
    wallet : str, bytes or Pubkey
        Wallet public key.
    program_id : Pubkey
        Owning program.

    Returns
    -------
    Tuple[Pubkey, int]
        The record address and its bump.
    """
    wallet_bytes = bytes(as_pubkey(wallet))
    for bump in range(255, -1, -1):
        address = create_program_address(
            [VERIFICATION_SEED, wallet_bytes, bytes([bump])], program_id
        )
        if address is not None:
            return address, bump

    # Probability of exhausting all 256 bumps is negligible
    raise ValueError("Unable to find a viable program address bump")


def derive_user_code(address: Union[str, bytes, Pubkey]) -> str:
    """
    Derive the five character user code the program assigns to a record.

    Character ``i`` is ``CHARSET[(addr[i] ^ addr[i + 5]) % len(CHARSET)]``.
    """
    data = bytes(as_pubkey(address))
    return "".join(
        USER_CODE_CHARSET[(data[i] ^ data[i + USER_CODE_LENGTH]) % len(USER_CODE_CHARSET)]
        for i in range(USER_CODE_LENGTH)
    )


def decode_verification_record(data: bytes) -> VerificationRecord:
    """
    Decode record account data.

    Parameters
    ----------
    data : bytes
        Raw account data including the discriminator. Trailing bytes beyond
        the record (account padding) are ignored.

    Returns
    -------
    VerificationRecord
        Decoded record.

    Raises
    ------
    MalformedRecord
        If the buffer is too short or the fields violate record invariants.
    """
    data = bytes(data)
    if len(data) < MIN_RECORD_SIZE:
        raise MalformedRecord(
            f"Record buffer too short: {len(data)} < {MIN_RECORD_SIZE} bytes",
            len(data),
        )

    offset = 0
    discriminator = data[offset : offset + DISCRIMINATOR_LENGTH]
    offset += DISCRIMINATOR_LENGTH

    facehash = data[offset : offset + FACEHASH_LENGTH]
    offset += FACEHASH_LENGTH

    (code_length,) = struct.unpack_from("<I", data, offset)
    offset += 4

    if offset + code_length + _TAIL.size > len(data):
        raise MalformedRecord(
            f"user_code length {code_length} overruns the buffer", len(data)
        )

    try:
        user_code = data[offset : offset + code_length].decode("utf-8")
    except UnicodeDecodeError as e:
        raise MalformedRecord(f"user_code is not valid UTF-8: {e}", len(data))
    offset += code_length

    over18, verified_at, expires_at, bump = _TAIL.unpack_from(data, offset)
    if over18 not in (0, 1):
        raise MalformedRecord(f"over18 flag must be 0 or 1, got {over18}", len(data))

    try:
        return VerificationRecord(
            facehash=facehash,
            user_code=user_code,
            over18=bool(over18),
            verified_at=verified_at,
            expires_at=expires_at,
            bump=bump,
            discriminator=discriminator,
        )
    except ValueError as e:
        raise MalformedRecord(f"Record violates invariants: {e}", len(data))


def encode_verification_record(record: VerificationRecord) -> bytes:
    """
    Encode a record as account data.

    The inverse of :func:`decode_verification_record`; the record's own
    discriminator is written when present so decoding and re-encoding
    reproduces the original buffer.
    """
    code = record.user_code.encode("utf-8")
    discriminator = record.discriminator or RECORD_DISCRIMINATOR
    return b"".join(
        [
            discriminator,
            record.facehash,
            struct.pack("<I", len(code)),
            code,
            _TAIL.pack(int(record.over18), record.verified_at, record.expires_at, record.bump),
        ]
    )
