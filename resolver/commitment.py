"""
Commitment codec: one secret, many digests.

Every ledger commits to the same 32-byte secret under its own native hash
function. The registry below maps an algorithm identifier to that function so
adding a ledger with a new hash needs no coordinator change.
"""

import hashlib
import secrets
from typing import Callable, Dict, Iterable, Union

from web3 import Web3

from .errors import UnsupportedAlgorithm

SECRET_SIZE = 32

HashFn = Callable[[bytes], bytes]

_REGISTRY: Dict[str, HashFn] = {
    "sha256": lambda data: hashlib.sha256(data).digest(),
    "keccak256": lambda data: bytes(Web3.keccak(data)),
    "sha3_256": lambda data: hashlib.sha3_256(data).digest(),
    "blake2b_256": lambda data: hashlib.blake2b(data, digest_size=32).digest(),
}


def register(algorithm: str, fn: HashFn):
    """Register (or replace) a hash function under an algorithm identifier."""
    _REGISTRY[algorithm.lower()] = fn


def supported_algorithms() -> list:
    return sorted(_REGISTRY)


def _hash_fn(algorithm: str) -> HashFn:
    fn = _REGISTRY.get((algorithm or "").lower())
    if fn is None:
        raise UnsupportedAlgorithm(algorithm)
    return fn


def normalize_hex(value: Union[str, bytes]) -> str:
    """Lowercase hex without 0x prefix."""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).hex()
    value = value.strip().lower()
    if value.startswith("0x"):
        value = value[2:]
    return value


def secret_bytes(secret: Union[str, bytes]) -> bytes:
    """Decode a secret given as raw bytes or hex (with or without 0x)."""
    if isinstance(secret, (bytes, bytearray)):
        return bytes(secret)
    return bytes.fromhex(normalize_hex(secret))


def generate_secret() -> bytes:
    """Fresh random 32-byte secret."""
    return secrets.token_bytes(SECRET_SIZE)


def commit(secret: Union[str, bytes], algorithm: str) -> str:
    """
    Compute the hashlock for a secret.

    Args:
        secret: 32-byte secret (bytes or hex)
        algorithm: registry identifier, e.g. "sha256" or "keccak256"

    Returns:
        Digest as lowercase hex (no 0x)

    Raises:
        UnsupportedAlgorithm: algorithm not registered
        ValueError: secret is not 32 bytes
    """
    fn = _hash_fn(algorithm)
    raw = secret_bytes(secret)
    if len(raw) != SECRET_SIZE:
        raise ValueError(f"Secret must be {SECRET_SIZE} bytes, got {len(raw)}")
    return fn(raw).hex()


def commit_all(secret: Union[str, bytes], algorithms: Iterable[str]) -> Dict[str, str]:
    """Commit one secret under several algorithms: {algorithm: hashlock}."""
    return {algorithm: commit(secret, algorithm) for algorithm in algorithms}


def verify(secret: Union[str, bytes], digest: Union[str, bytes], algorithm: str) -> bool:
    """
    Check that algorithm(secret) == digest.

    Malformed secrets or digests verify as False. An unknown algorithm still
    raises UnsupportedAlgorithm.
    """
    fn = _hash_fn(algorithm)
    try:
        raw = secret_bytes(secret)
        expected = normalize_hex(digest)
    except (ValueError, TypeError, AttributeError):
        return False
    if len(raw) != SECRET_SIZE:
        return False
    return fn(raw).hex() == expected
