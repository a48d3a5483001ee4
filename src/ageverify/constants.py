"""
Constants and protocol parameters for the age attestation core.

This module centralizes the fixed values shared between the client and the
on-chain age registry program. Values that must match the deployed program
(addresses, seeds, layouts, fee amounts) are binary-compatibility constraints
and must not be tuned; the liveness thresholds below them can be.
"""

from typing import Dict, Final, Tuple

# =============================================================================
# Ledger Addresses
# =============================================================================

# Age registry program id
AGE_REGISTRY_PROGRAM_ID: Final[str] = "AgeVwjVjNpRYkk1TzkLPG7S1bvMoa4J3bwuVbs161k3q"

# Platform key: protocol treasury and gatekeeper co-signer
PLATFORM_PUBLIC_KEY: Final[str] = "vrFYXf63CSksNdhCm183AnX6ogoLV53cT3eMU7TktXi"

# Seed prefix of the per-wallet verification record address
VERIFICATION_SEED: Final[bytes] = b"verification"

# Marker appended when hashing program-derived address candidates
PDA_MARKER: Final[bytes] = b"ProgramDerivedAddress"

# =============================================================================
# Record Layout
# =============================================================================

# Anchor account discriminator length
DISCRIMINATOR_LENGTH: Final[int] = 8

# Facehash length in bytes (SHA-256 digest)
FACEHASH_LENGTH: Final[int] = 32

# User code length when present
USER_CODE_LENGTH: Final[int] = 5

# Alphabet the program draws user codes from (no O, 0 or 1)
USER_CODE_CHARSET: Final[str] = "ABCDEFGHIJKLMNPQRSTUVWXYZ23456789"

# Smallest decodable record: discriminator + facehash + u32 len + bool + 2*i64 + u8
MIN_RECORD_SIZE: Final[int] = DISCRIMINATOR_LENGTH + FACEHASH_LENGTH + 4 + 1 + 8 + 8 + 1

# Space allocated for the account on chain (with a 5 character user code)
VERIFICATION_RECORD_SIZE: Final[int] = MIN_RECORD_SIZE + USER_CODE_LENGTH

# Record lifetime set by the program
ADULT_RECORD_DURATION_SECONDS: Final[int] = 90 * 24 * 60 * 60
MINOR_RECORD_DURATION_SECONDS: Final[int] = 30 * 24 * 60 * 60

# Program error codes (Anchor custom errors start at 6000)
PROGRAM_ERROR_MESSAGES: Final[Dict[int, str]] = {
    6000: "Verification is still valid.",
    6001: "Timestamp overflow.",
}

# =============================================================================
# Identity Fingerprint
# =============================================================================

# Domain separation tag prepended to every fingerprint preimage
FINGERPRINT_DOMAIN_TAG: Final[str] = "solana-verify:v1"

# Embedding dimension produced by the sensor
EMBEDDING_DIM: Final[int] = 128

# Per-session salt and nonce length in bytes
SALT_LENGTH: Final[int] = 16

# =============================================================================
# Fees and Compute Budget
# =============================================================================

LAMPORTS_PER_SOL: Final[int] = 1_000_000_000

# Protocol fee charged by the program (0.0005 SOL)
PROTOCOL_FEE_LAMPORTS: Final[int] = 500_000

# Compute unit limit for the attestation transaction
COMPUTE_UNIT_LIMIT: Final[int] = 150_000

# Floor for the compute unit price in micro-lamports
MIN_COMPUTE_UNIT_PRICE: Final[int] = 1_000

# Used when the priority fee estimate cannot be fetched
FALLBACK_PRIORITY_FEE: Final[int] = 100_000

# Blocks sampled by the priority fee estimate
PRIORITY_FEE_SAMPLE_BLOCKS: Final[int] = 10

# JSON-RPC "method not found"
RPC_METHOD_NOT_FOUND: Final[int] = -32601

# JSON-RPC parse error, also used for bodies that are not JSON-RPC objects
JSON_RPC_PARSE_ERROR: Final[int] = -32700

# =============================================================================
# Challenge Sequencing
# =============================================================================

# Kinds drawn by the sequencer; look_down is only used when requested explicitly
SEQUENCED_CHALLENGE_KINDS: Final[Tuple[str, ...]] = (
    "turn_left",
    "turn_right",
    "look_up",
    "nod_yes",
    "shake_no",
)

DEFAULT_CHALLENGE_COUNT: Final[int] = 5

# No kind may appear more often than this in one sequence
MAX_KIND_OCCURRENCES: Final[int] = 2

# =============================================================================
# Pose Classification (multiples of the inter-eye distance)
# =============================================================================

TURN_THRESHOLD: Final[float] = 0.30
TURN_THRESHOLD_GESTURE: Final[float] = 0.25
UP_THRESHOLD: Final[float] = 0.35
UP_THRESHOLD_GESTURE: Final[float] = 0.38
DOWN_THRESHOLD: Final[float] = 0.55

# Primary axis must exceed this fraction of the secondary axis
DOMINANCE_RATIO: Final[float] = 0.5

# Maximum yaw tolerated while looking up
LOOK_UP_MAX_YAW: Final[float] = 0.30

# Flat landmark array: right eye, left eye, nose... as (x, y, z) triples
MIN_LANDMARK_VALUES: Final[int] = 18

# =============================================================================
# Gesture Loop Timing
# =============================================================================

REQUIRED_CONSECUTIVE_FRAMES: Final[int] = 15
GESTURE_STALL_FRAMES: Final[int] = 60
MAX_FRAMES_PER_ATTEMPT: Final[int] = 150
ATTEMPTS_PER_CHALLENGE: Final[int] = 2
RETRY_PAUSE_SECONDS: Final[float] = 1.0
NON_PASSING_FRAME_DELAY_SECONDS: Final[float] = 0.1
INTER_CHALLENGE_FRAMES: Final[int] = 15
INTER_CHALLENGE_FRAME_DELAY_SECONDS: Final[float] = 0.05

# =============================================================================
# Local Retry State
# =============================================================================

# Bumping this resets every wallet's local retry history
RETRY_STATE_SCHEMA_VERSION: Final[int] = 2

RETRY_STATE_KEY_PREFIX: Final[str] = "ageverify"

# Cooldown rounds completed before a failing attempt is written on chain
FINAL_STRIKE_COOLDOWN_ROUNDS: Final[int] = 2

# =============================================================================
# RPC Endpoints
# =============================================================================

DEFAULT_RPC_TAG: Final[str] = "default"
TX_RPC_TAG: Final[str] = "tx"
HEALTH_CHECK_INTERVAL_SECONDS: Final[float] = 30.0
PREFERRED_ENDPOINT_WEIGHT: Final[int] = 10
DEFAULT_ENDPOINT_WEIGHT: Final[int] = 1
CONFIRMATION_POLL_SECONDS: Final[float] = 0.5
