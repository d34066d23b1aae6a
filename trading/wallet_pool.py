"""Signing wallet pool: key loading, rotation and balance lookups."""

from __future__ import annotations

import json
import logging
import os
import random
from typing import Any, Iterable, Protocol

import base58
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.transaction import Transaction, VersionedTransaction

import config
from trading.errors import ConfigError, KeyFormatError, NoWalletLoaded

logger = logging.getLogger(__name__)

SECRET_KEY_LENGTH = 64


class Signer(Protocol):
    def public_identity(self) -> str: ...

    def sign(self, transaction_bytes: bytes) -> bytes: ...


class KeypairSigner:
    """Owns one keypair. Exposes only the public key and a sign operation."""

    __slots__ = ("_keypair", "_pubkey")

    def __init__(self, keypair: Keypair) -> None:
        self._keypair = keypair
        self._pubkey = str(keypair.pubkey())

    def public_identity(self) -> str:
        return self._pubkey

    def sign(self, transaction_bytes: bytes) -> bytes:
        try:
            tx = VersionedTransaction.from_bytes(transaction_bytes)
        except Exception:  # solders raises its own bincode error type
            legacy = Transaction.from_bytes(transaction_bytes)
            legacy.sign([self._keypair], legacy.message.recent_blockhash)
            return bytes(legacy)
        return bytes(VersionedTransaction(tx.message, [self._keypair]))

    def __repr__(self) -> str:
        return f"KeypairSigner({self._pubkey})"

    def __reduce__(self) -> Any:
        raise TypeError("KeypairSigner holds secret key material and cannot be serialized")

    def __copy__(self) -> "KeypairSigner":
        raise TypeError("KeypairSigner cannot be copied")

    def __deepcopy__(self, memo: dict) -> "KeypairSigner":
        raise TypeError("KeypairSigner cannot be copied")


def decode_secret_key(encoded: str) -> bytes:
    """Decode a JSON byte array or a base58 string into a 64-byte secret."""
    text = str(encoded or "").strip()
    if not text:
        raise KeyFormatError("empty secret key")
    secret: bytes | None = None
    if text.startswith("["):
        try:
            values = json.loads(text)
            if isinstance(values, list) and all(isinstance(v, int) and 0 <= v <= 255 for v in values):
                secret = bytes(values)
        except json.JSONDecodeError:
            secret = None
    else:
        try:
            secret = base58.b58decode(text)
        except ValueError:
            secret = None
    if secret is None or len(secret) != SECRET_KEY_LENGTH:
        # Never echo key material, only its shape.
        raise KeyFormatError(
            f"secret key is neither base58 nor a JSON byte array of {SECRET_KEY_LENGTH} bytes (len={len(text)})"
        )
    return secret


def signer_from_secret(encoded: str) -> KeypairSigner:
    secret = decode_secret_key(encoded)
    try:
        keypair = Keypair.from_bytes(secret)
    except Exception as exc:  # solders raises its own error types
        raise KeyFormatError(f"secret key rejected by keypair parser: {exc}") from exc
    return KeypairSigner(keypair)


def read_wallet_dir(folder: str) -> list[str]:
    """One secret per file: `*.txt` holds base58, `*.json` holds a byte array."""
    if not folder or not os.path.isdir(folder):
        return []
    try:
        names = sorted(os.listdir(folder))
    except OSError as exc:
        raise ConfigError(f"wallet dir unreadable: {folder}") from exc
    out: list[str] = []
    for name in names:
        if not name.endswith((".txt", ".json")):
            continue
        try:
            with open(os.path.join(folder, name), "r", encoding="utf-8-sig") as f:
                text = f.read().strip()
        except (OSError, UnicodeDecodeError) as exc:
            raise ConfigError(f"wallet file unreadable: {name}") from exc
        if text:
            out.append(text)
    return out


def collect_key_sources(wallet_keys: Iterable[str] = ()) -> list[str]:
    keys = [k for k in wallet_keys if str(k or "").strip()]
    if keys:
        return keys
    keys = read_wallet_dir(config.WALLET_DIR)
    if keys:
        return keys
    return [config.PRIVATE_KEY] if config.PRIVATE_KEY else []


class WalletPool:
    def __init__(
        self,
        signers: list[KeypairSigner],
        rotation_mode: str = "round",
        rpc: Any = None,
        rng: random.Random | None = None,
    ) -> None:
        self._signers = list(signers)
        self.rotation_mode = rotation_mode
        self._rpc = rpc
        self._rng = rng or random.Random()
        self._index = 0
        self._current: KeypairSigner | None = None

    def __len__(self) -> int:
        return len(self._signers)

    @property
    def public_keys(self) -> list[str]:
        return [s.public_identity() for s in self._signers]

    def _require_wallets(self) -> None:
        if not self._signers:
            raise NoWalletLoaded("wallet pool is empty")

    def next(self) -> KeypairSigner:
        self._require_wallets()
        if self.rotation_mode == "random":
            wallet = self._signers[self._rng.randrange(len(self._signers))]
        else:
            wallet = self._signers[self._index]
            self._index = (self._index + 1) % len(self._signers)
        self._current = wallet
        return wallet

    def current(self) -> KeypairSigner:
        self._require_wallets()
        if self._current is None:
            raise NoWalletLoaded("no wallet handed out yet")
        return self._current

    async def balance_of(self, wallet: Signer) -> int:
        """Live lamport balance from the RPC node."""
        self._require_wallets()
        if self._rpc is None:
            raise RuntimeError("wallet pool has no RPC client")
        resp = await self._rpc.get_balance(Pubkey.from_string(wallet.public_identity()))
        return int(resp.value)


def load_pool(
    key_sources: Iterable[str],
    rotation_mode: str = "round",
    rpc: Any = None,
    rng: random.Random | None = None,
) -> WalletPool:
    signers: list[KeypairSigner] = []
    seen: set[str] = set()
    for source in key_sources:
        signer = signer_from_secret(source)
        pubkey = signer.public_identity()
        if pubkey in seen:
            logger.warning("WALLET_DUPLICATE pubkey=%s skipped", pubkey)
            continue
        seen.add(pubkey)
        signers.append(signer)
    if not signers:
        raise ConfigError("no wallet keys configured (walletKeys, WALLET_DIR or PRIVATE_KEY)")
    logger.info("WALLET_POOL loaded=%s rotation=%s", len(signers), rotation_mode)
    return WalletPool(signers, rotation_mode=rotation_mode, rpc=rpc, rng=rng)
