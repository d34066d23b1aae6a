"""Append-only per-strategy trade ledger."""

from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import asdict, dataclass, fields
from datetime import datetime, timezone
from typing import Any

import config
from trading.errors import PersistenceError
from utils.state_file import (
    StateFileCorruptError,
    StateFileLockError,
    atomic_write_json,
    read_json,
    state_file_lock,
)

logger = logging.getLogger(__name__)

# Stored key names follow the dashboard's camelCase JSON.
_FIELD_TO_KEY: dict[str, str] = {
    "timestamp": "timestamp",
    "strategy_id": "strategy",
    "input_mint": "inputMint",
    "output_mint": "outputMint",
    "in_amount": "inAmount",
    "out_amount": "outAmount",
    "price_impact_fraction": "priceImpact",
    "transaction_ref": "txHash",
    "success": "success",
    "simulated": "simulated",
    "take_profit_fraction": "takeProfit",
    "stop_loss_fraction": "stopLoss",
    "notes": "notes",
    "entry_price": "entryPrice",
    "route_hop_count": "routeHopCount",
    "wallet_public_key": "wallet",
}
_KEY_TO_FIELD = {v: k for k, v in _FIELD_TO_KEY.items()}


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class TradeRecord:
    timestamp: str
    strategy_id: str
    input_mint: str
    output_mint: str
    in_amount: int
    out_amount: int
    price_impact_fraction: float
    transaction_ref: str | None
    success: bool
    simulated: bool
    take_profit_fraction: float | None = None
    stop_loss_fraction: float | None = None
    notes: str = ""
    entry_price: float | None = None
    route_hop_count: int = 0
    wallet_public_key: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {_FIELD_TO_KEY[k]: v for k, v in asdict(self).items()}

    @classmethod
    def from_dict(cls, row: dict[str, Any]) -> "TradeRecord":
        known = {f.name for f in fields(cls)}
        values = {_KEY_TO_FIELD.get(k, k): v for k, v in row.items()}
        return cls(**{k: v for k, v in values.items() if k in known})


class TradeLedger:
    """One JSON file per strategy, rewritten atomically under an inter-process lock.

    A crash mid-write leaves the previous file intact, so readers see n-1 or n records.
    """

    def __init__(
        self,
        strategy_id: str,
        *,
        log_dir: str | None = None,
        max_records: int | None = None,
        lock_timeout_seconds: float | None = None,
    ) -> None:
        self.strategy_id = strategy_id
        self.log_dir = log_dir or config.TRADE_LOG_DIR
        self.path = os.path.join(self.log_dir, f"{strategy_id}.json")
        self.max_records = int(config.TRADE_LOG_MAX_RECORDS if max_records is None else max_records)
        self.lock_timeout_seconds = float(lock_timeout_seconds or config.STATE_LOCK_TIMEOUT_SECONDS)

    async def append(self, record: TradeRecord) -> None:
        try:
            await asyncio.to_thread(self._append_sync, record)
        except (OSError, StateFileLockError, TypeError, ValueError) as exc:
            raise PersistenceError(f"trade ledger write failed path={self.path} err={exc}") from exc

    def _append_sync(self, record: TradeRecord) -> None:
        with state_file_lock(self.path, timeout_seconds=self.lock_timeout_seconds):
            rows = self._load_rows(quarantine=True)
            rows.append(record.to_dict())
            if self.max_records > 0 and len(rows) > self.max_records:
                rows = rows[-self.max_records :]
            atomic_write_json(self.path, rows)
        logger.info(
            "LEDGER_APPEND strategy=%s simulated=%s success=%s total=%s",
            self.strategy_id,
            record.simulated,
            record.success,
            len(rows),
        )

    def _load_rows(self, *, quarantine: bool = False) -> list[dict[str, Any]]:
        try:
            payload = read_json(self.path, default=[])
        except StateFileCorruptError as exc:
            logger.warning("LEDGER_CORRUPT strategy=%s treating as empty err=%s", self.strategy_id, exc)
            if quarantine:
                aside = f"{self.path}.corrupt-{int(time.time())}"
                os.replace(self.path, aside)
                logger.warning("LEDGER_QUARANTINED strategy=%s moved_to=%s", self.strategy_id, aside)
            return []
        if not isinstance(payload, list):
            logger.warning("LEDGER_CORRUPT strategy=%s payload is not a list, treating as empty", self.strategy_id)
            return []
        return [row for row in payload if isinstance(row, dict)]

    def read_all(self) -> list[TradeRecord]:
        """Full ordered history; never raises on a damaged store."""
        try:
            with state_file_lock(self.path, timeout_seconds=self.lock_timeout_seconds):
                rows = self._load_rows()
        except (OSError, StateFileLockError) as exc:
            logger.warning("LEDGER_READ_FAILED strategy=%s err=%s", self.strategy_id, exc)
            return []
        records: list[TradeRecord] = []
        for row in rows:
            try:
                records.append(TradeRecord.from_dict(row))
            except TypeError as exc:
                logger.warning("LEDGER_ROW_SKIPPED strategy=%s err=%s", self.strategy_id, exc)
        return records

    async def history(self) -> list[TradeRecord]:
        return await asyncio.to_thread(self.read_all)
