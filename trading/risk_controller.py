"""Risk and cadence gating for a single strategy run."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable

import config
from trading.strategy_config import LAMPORTS_PER_SOL, StrategyConfig
from utils.addressing import normalize_mint, short_key

logger = logging.getLogger(__name__)


class RunState(str, Enum):
    READY = "READY"
    GATED = "GATED"
    APPROVED = "APPROVED"
    EXECUTED = "EXECUTED"
    RESCHEDULED = "RESCHEDULED"
    HALTED = "HALTED"


@dataclass(frozen=True)
class GateDecision:
    approved: bool
    reason: str
    detail: str = ""


@dataclass
class OpenPosition:
    token: str
    entry_price: float
    in_amount: int
    out_amount: int
    opened_at: float
    transaction_ref: str


@dataclass
class RiskState:
    today_volume_lamports: int = 0
    consecutive_failures: int = 0
    last_entry_ts_by_token: dict[str, float] = field(default_factory=dict)
    open_positions: list[OpenPosition] = field(default_factory=list)
    day_id: str = ""

    @property
    def today_volume(self) -> float:
        return self.today_volume_lamports / LAMPORTS_PER_SOL


def _day_id(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%d")


class RiskController:
    """Owns RiskState exclusively. HALTED is sticky until a new controller is built."""

    def __init__(
        self,
        cfg: StrategyConfig,
        *,
        min_balance_lamports: int | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.cfg = cfg
        if min_balance_lamports is None:
            min_balance_lamports = int(round(config.MIN_OPERATING_BALANCE_SOL * LAMPORTS_PER_SOL))
        self.min_balance_lamports = max(0, int(min_balance_lamports))
        self._clock = clock
        self.state = RiskState(day_id=_day_id(clock()))
        self.run_state = RunState.READY
        self.last_gate_reason = ""

    @property
    def is_halted(self) -> bool:
        return self.run_state is RunState.HALTED

    def begin_tick(self) -> None:
        if not self.is_halted:
            self.run_state = RunState.READY

    def mark_rescheduled(self) -> None:
        if not self.is_halted:
            self.run_state = RunState.RESCHEDULED

    def _refresh_daily_window(self) -> None:
        if not self.cfg.daily_reset_utc:
            return
        today = _day_id(self._clock())
        if today != self.state.day_id:
            logger.info(
                "RISK_DAY_ROLLOVER strategy=%s prev=%s volume=%.4f",
                self.cfg.strategy_id,
                self.state.day_id,
                self.state.today_volume,
            )
            self.state.day_id = today
            self.state.today_volume_lamports = 0

    def _gated(self, reason: str, detail: str = "") -> GateDecision:
        if not self.is_halted:
            self.run_state = RunState.GATED
        self.last_gate_reason = reason
        return GateDecision(False, reason, detail)

    async def gate(self, token: str, balance_of: Callable[[], Awaitable[int]]) -> GateDecision:
        """Evaluate gates in order, stopping at the first rejection."""
        token = normalize_mint(token)
        if self.is_halted:
            return self._gated("halted", f"consecutive_failures={self.state.consecutive_failures}")

        self._refresh_daily_window()
        now = self._clock()

        last_entry = self.state.last_entry_ts_by_token.get(token)
        if last_entry is not None and (now - last_entry) < self.cfg.cooldown_seconds:
            left = self.cfg.cooldown_seconds - (now - last_entry)
            return self._gated("cooldown", f"cooldown_left_{int(left)}s")

        try:
            balance = int(await balance_of())
        except Exception as exc:
            logger.warning("RISK_BALANCE_UNAVAILABLE strategy=%s err=%s", self.cfg.strategy_id, exc)
            return self._gated("balance_unavailable", str(exc))
        if balance < self.min_balance_lamports:
            return self._gated(
                "min_balance",
                f"balance={balance / LAMPORTS_PER_SOL:.4f} min={self.min_balance_lamports / LAMPORTS_PER_SOL:.4f}",
            )

        size = self.cfg.position_size_lamports
        if self.state.today_volume_lamports + size > self.cfg.max_daily_volume_lamports:
            return self._gated(
                "daily_cap",
                f"today={self.state.today_volume:.4f} size={self.cfg.position_size_sol:.4f} "
                f"max={self.cfg.max_daily_volume:.4f}",
            )

        max_open = self.cfg.max_open_trades
        if max_open is not None and len(self.state.open_positions) >= max_open:
            return self._gated("open_positions", f"open={len(self.state.open_positions)} max={max_open}")

        self.run_state = RunState.APPROVED
        self.last_gate_reason = ""
        return GateDecision(True, "approved")

    def record_success(self, token: str, *, in_amount: int, out_amount: int, transaction_ref: str) -> None:
        token = normalize_mint(token)
        now = self._clock()
        self.state.consecutive_failures = 0
        self.state.today_volume_lamports += self.cfg.position_size_lamports
        self.state.last_entry_ts_by_token[token] = now
        self.state.open_positions.append(
            OpenPosition(
                token=token,
                entry_price=(out_amount / in_amount) if in_amount > 0 else 0.0,
                in_amount=int(in_amount),
                out_amount=int(out_amount),
                opened_at=now,
                transaction_ref=transaction_ref,
            )
        )
        if not self.is_halted:
            self.run_state = RunState.EXECUTED

    def record_failure(self, reason: str) -> None:
        if self.is_halted:
            return
        self.state.consecutive_failures += 1
        logger.warning(
            "RISK_FAILURE strategy=%s reason=%s streak=%s/%s",
            self.cfg.strategy_id,
            reason,
            self.state.consecutive_failures,
            self.cfg.halt_on_failures,
        )
        if self.state.consecutive_failures >= self.cfg.halt_on_failures:
            self.run_state = RunState.HALTED
            logger.critical(
                "RUN_HALTED strategy=%s consecutive_failures=%s restart required",
                self.cfg.strategy_id,
                self.state.consecutive_failures,
            )

    def close_position(self, token: str) -> OpenPosition | None:
        token = normalize_mint(token)
        for idx, position in enumerate(self.state.open_positions):
            if position.token == token:
                logger.info("POSITION_CLOSED strategy=%s token=%s", self.cfg.strategy_id, short_key(token))
                return self.state.open_positions.pop(idx)
        return None

    def snapshot(self) -> dict[str, object]:
        return {
            "run_state": self.run_state.value,
            "halted": self.is_halted,
            "today_volume": round(self.state.today_volume, 9),
            "consecutive_failures": self.state.consecutive_failures,
            "open_positions": len(self.state.open_positions),
            "last_gate_reason": self.last_gate_reason,
        }
