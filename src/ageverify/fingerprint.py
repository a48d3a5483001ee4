"""
Identity fingerprint derivation.

The fingerprint (facehash) binds a biometric embedding to one wallet and one
session salt:

    SHA-256( UTF-8(tag) || UTF-8(wallet address) || salt || float32-LE(embedding) )

It is deterministic for identical inputs, changes with the wallet or salt,
and cannot be inverted to recover the embedding. The embedding itself is
never logged or stored.
"""

import hashlib
import secrets
from typing import Optional, Sequence, Union

import numpy as np
import structlog

from .constants import EMBEDDING_DIM, FINGERPRINT_DOMAIN_TAG, SALT_LENGTH
from .exceptions import FingerprintComputationFailed
from .utils import truncate_hex

# Initialize structured logger
logger = structlog.get_logger(__name__)

EmbeddingLike = Union[np.ndarray, Sequence[float]]


def generate_salt(length: int = SALT_LENGTH) -> bytes:
    """
    Generate a cryptographically secure random salt.

    Returns
    -------
    bytes
        ``length`` random bytes.
    """
    return secrets.token_bytes(length)


def _prepare_embedding(embedding: EmbeddingLike, dimension: int) -> bytes:
    """
    Convert an embedding to little-endian float32 bytes.

    Raises
    ------
    FingerprintComputationFailed
        If the embedding is empty, has the wrong dimension or holds
        non-finite values.
    """
    try:
        vector = np.asarray(embedding, dtype=np.float64)
    except (TypeError, ValueError) as e:
        raise FingerprintComputationFailed(f"Embedding is not numeric: {e}")

    if vector.ndim != 1:
        raise FingerprintComputationFailed(
            f"Embedding must be 1D, got {vector.ndim}D", shape=vector.shape
        )

    if vector.size == 0:
        raise FingerprintComputationFailed("Embedding is empty")

    if vector.size != dimension:
        raise FingerprintComputationFailed(
            f"Embedding must have {dimension} dimensions, got {vector.size}",
            dimension=vector.size,
        )

    if not np.isfinite(vector).all():
        raise FingerprintComputationFailed("Embedding contains non-finite values")

    return vector.astype("<f4").tobytes()


def compute_facehash(
    wallet_address: str,
    salt: bytes,
    embedding: Optional[EmbeddingLike],
    dimension: int = EMBEDDING_DIM,
) -> str:
    """
    Derive the identity fingerprint.

    Parameters
    ----------
    wallet_address : str
        Wallet address as text (base58); hashed as its UTF-8 bytes.
    salt : bytes
        Per-session random salt.
    embedding : array-like
        Biometric embedding from the sensor.
    dimension : int, default=128
        Expected embedding dimension.

    Returns
    -------
    str
        64 lowercase hex characters.

    Raises
    ------
    FingerprintComputationFailed
        If any input is missing or invalid.

    Examples
    --------
    >>> h = compute_facehash("wallet", bytes(16), [0.0] * 128)
    >>> len(h)
    64
    """
    if embedding is None:
        raise FingerprintComputationFailed("No embedding was produced")

    if not wallet_address:
        raise FingerprintComputationFailed("Wallet address is required")

    if not salt:
        raise FingerprintComputationFailed("Salt is required")

    embedding_bytes = _prepare_embedding(embedding, dimension)

    digest = hashlib.sha256()
    digest.update(FINGERPRINT_DOMAIN_TAG.encode("utf-8"))
    digest.update(wallet_address.encode("utf-8"))
    digest.update(bytes(salt))
    digest.update(embedding_bytes)
    facehash = digest.hexdigest()

    logger.debug(
        "Facehash computed",
        facehash=truncate_hex(facehash),
        salt_length=len(salt),
    )
    return facehash
