"""Pre-trade honeypot / liquidity probe."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

import config
from trading.jupiter_gateway import Quote
from trading.strategy_config import LAMPORTS_PER_SOL
from utils.addressing import short_key

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SafetyVerdict:
    safe: bool
    reason: str
    detail: str = ""


class QuoteSource(Protocol):
    async def get_quote(
        self, input_mint: str, output_mint: str, amount: int, slippage_fraction: float
    ) -> Quote | None: ...


class SafetyChecker(Protocol):
    async def check(self, output_mint: str) -> SafetyVerdict: ...

    async def is_safe_to_buy(self, output_mint: str) -> bool: ...


class ImpactSafetyChecker:
    """Simulated quote for a small probe size; rejects thin or broken routes.

    A heuristic, not a guarantee. Results are never cached: every call quotes again.
    """

    def __init__(
        self,
        quotes: QuoteSource,
        *,
        base_mint: str | None = None,
        probe_lamports: int | None = None,
        max_impact_percent: float | None = None,
        min_received: float | None = None,
        output_decimals: int | None = None,
        slippage_fraction: float = 0.01,
    ) -> None:
        self._quotes = quotes
        self.base_mint = base_mint or config.WSOL_MINT
        if probe_lamports is None:
            probe_lamports = int(round(config.HONEYPOT_CHECK_AMOUNT * LAMPORTS_PER_SOL))
        self.probe_lamports = max(1, int(probe_lamports))
        self.max_impact_percent = float(
            config.HONEYPOT_MAX_IMPACT if max_impact_percent is None else max_impact_percent
        )
        self.min_received = float(config.HONEYPOT_MIN_RECEIVED if min_received is None else min_received)
        self.output_decimals = int(config.HONEYPOT_OUTPUT_DECIMALS if output_decimals is None else output_decimals)
        self.slippage_fraction = float(slippage_fraction)

    async def check(self, output_mint: str) -> SafetyVerdict:
        quote = await self._quotes.get_quote(self.base_mint, output_mint, self.probe_lamports, self.slippage_fraction)
        if quote is None:
            logger.warning("SAFETY_REJECT token=%s reason=no_route", short_key(output_mint))
            return SafetyVerdict(False, "safety_no_route")

        impact_percent = quote.price_impact_fraction * 100.0
        if impact_percent > self.max_impact_percent:
            detail = f"impact={impact_percent:.2f}% max={self.max_impact_percent:.2f}%"
            logger.warning("SAFETY_REJECT token=%s reason=impact %s", short_key(output_mint), detail)
            return SafetyVerdict(False, "safety_impact", detail)

        received = quote.out_amount / (10 ** self.output_decimals)
        if received < self.min_received:
            detail = f"out={received:.4f} min={self.min_received:.4f}"
            logger.warning("SAFETY_REJECT token=%s reason=low_output %s", short_key(output_mint), detail)
            return SafetyVerdict(False, "safety_low_output", detail)

        return SafetyVerdict(True, "ok", f"impact={impact_percent:.2f}% out={received:.4f}")

    async def is_safe_to_buy(self, output_mint: str) -> bool:
        return (await self.check(output_mint)).safe
