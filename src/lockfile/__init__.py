"""Deterministic lockfile codec.

Encodes a Resolution as TOML, decodes it back, and checks whether a stored
lockfile still matches the current root requirements.
"""

from .codec import LockStatus, decode, encode, is_consistent

__all__ = [
    "LockStatus",
    "decode",
    "encode",
    "is_consistent",
]
