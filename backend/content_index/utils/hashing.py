"""Hashing utilities."""

from __future__ import annotations

import hashlib


def sha256_bytes(data: bytes) -> str:
    """Return hex digest for bytes input."""
    return hashlib.sha256(data).hexdigest()


def sha256_text(*parts: str) -> str:
    """Digest of several text fields joined by a NUL separator."""
    return sha256_bytes("\x00".join(parts).encode("utf-8"))


__all__ = ["sha256_bytes", "sha256_text"]
