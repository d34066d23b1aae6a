"""Reporting helpers over a strategy's trade history."""

from __future__ import annotations

from typing import Any, Iterable

from trading.strategy_config import LAMPORTS_PER_SOL
from trading.trade_ledger import TradeRecord


def summarize(records: Iterable[TradeRecord]) -> dict[str, Any]:
    total = simulated = real = successes = failures = 0
    volume_lamports = 0
    simulated_volume_lamports = 0
    impacts: list[float] = []
    last_ts = ""
    for record in records:
        total += 1
        last_ts = record.timestamp or last_ts
        if record.simulated:
            simulated += 1
            simulated_volume_lamports += int(record.in_amount)
            continue
        real += 1
        if record.success:
            successes += 1
            volume_lamports += int(record.in_amount)
            impacts.append(float(record.price_impact_fraction))
        else:
            failures += 1
    return {
        "total": total,
        "simulated": simulated,
        "real": real,
        "successes": successes,
        "failures": failures,
        "success_rate": (successes / real) if real else 0.0,
        "volume_sol": volume_lamports / LAMPORTS_PER_SOL,
        "simulated_volume_sol": simulated_volume_lamports / LAMPORTS_PER_SOL,
        "avg_price_impact": (sum(impacts) / len(impacts)) if impacts else 0.0,
        "last_trade_at": last_ts,
    }


def format_summary(strategy_id: str, stats: dict[str, Any]) -> str:
    lines = [
        f"Trade summary: {strategy_id}",
        f"Attempts: {stats.get('total', 0)} (real {stats.get('real', 0)}, dry-run {stats.get('simulated', 0)})",
        f"Confirmed: {stats.get('successes', 0)}  Failed: {stats.get('failures', 0)}",
        f"Success rate: {float(stats.get('success_rate', 0.0)) * 100:.1f}%",
        f"Volume: {float(stats.get('volume_sol', 0.0)):.4f} SOL",
    ]
    if stats.get("simulated"):
        lines.append(f"Dry-run volume: {float(stats.get('simulated_volume_sol', 0.0)):.4f} SOL")
    if stats.get("successes"):
        lines.append(f"Avg price impact: {float(stats.get('avg_price_impact', 0.0)) * 100:.2f}%")
    if stats.get("last_trade_at"):
        lines.append(f"Last attempt: {stats['last_trade_at']}")
    return "\n".join(lines)
