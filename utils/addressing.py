"""Mint and public key normalization helpers."""

from __future__ import annotations

import base58

_B58_ALPHABET = set("123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz")


def normalize_mint(value: str | None) -> str:
    """Normalize mint keys for internal maps. Base58 is case-sensitive, so only trim."""
    return str(value or "").strip()


def is_valid_mint(value: str | None) -> bool:
    """A mint is a base58 string decoding to a 32-byte public key."""
    text = normalize_mint(value)
    if not text or any(ch not in _B58_ALPHABET for ch in text):
        return False
    try:
        return len(base58.b58decode(text)) == 32
    except ValueError:
        return False


def short_key(value: str | None, keep: int = 4) -> str:
    text = normalize_mint(value)
    if len(text) <= keep * 2 + 2:
        return text
    return f"{text[:keep]}..{text[-keep:]}"
