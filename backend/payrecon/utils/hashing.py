"""
Cryptographic Hashing Utilities — SHA-256 hashing for audit rows, idempotency
request fingerprints and webhook dedup keys.
"""
import hashlib
import json
from typing import Union


def generate_hash(data: dict) -> str:
    """Generate a SHA-256 hash of a dictionary (deterministic, sorted keys)."""
    canonical = json.dumps(data, sort_keys=True, default=str).encode("utf-8")
    return hashlib.sha256(canonical).hexdigest()


def sha256_hex(value: Union[str, bytes]) -> str:
    if isinstance(value, str):
        value = value.encode("utf-8")
    return hashlib.sha256(value).hexdigest()
