from __future__ import annotations

import asyncio
import json
import os
import tempfile
import unittest
from typing import Any

from trading.errors import PersistenceError
from trading.jupiter_gateway import Quote
from trading.risk_controller import RiskController, RunState
from trading.safety_guard import SafetyVerdict
from trading.signals import MonitoredTokenSource
from trading.strategy_config import StrategyConfig
from trading.strategy_loop import DecisionWriter, StrategyLoop
from trading.trade_ledger import TradeLedger

WSOL = "So11111111111111111111111111111111111111112"
TOKEN_A = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
TOKEN_B = "DezXAZ8z7PnrnRJjz3wXBoRgixCa6xjnB7YaB1pPB263"


class _StubWallet:
    def __init__(self, name: str) -> None:
        self.name = name

    def public_identity(self) -> str:
        return self.name

    def sign(self, transaction_bytes: bytes) -> bytes:
        return transaction_bytes


class _StubPool:
    def __init__(self, balance: int = 1_000_000_000) -> None:
        self.wallets = [_StubWallet("wallet-0"), _StubWallet("wallet-1")]
        self.balance = balance
        self.next_calls = 0

    def __len__(self) -> int:
        return len(self.wallets)

    def next(self) -> _StubWallet:
        wallet = self.wallets[self.next_calls % len(self.wallets)]
        self.next_calls += 1
        return wallet

    async def balance_of(self, wallet: _StubWallet) -> int:
        return self.balance


class _StubGateway:
    def __init__(self, out_amount: int = 5_000_000, signature: str | None = "sig-ok", delay: float = 0.0) -> None:
        self.out_amount = out_amount
        self.signature = signature
        self.delay = delay
        self.route = True
        self.quote_calls: list[tuple[str, str, int]] = []
        self.executed: list[tuple[Quote, Any]] = []
        self.last_failure = ""

    async def get_quote(self, input_mint: str, output_mint: str, amount: int, slippage_fraction: float) -> Quote | None:
        self.quote_calls.append((input_mint, output_mint, amount))
        if not self.route:
            return None
        return Quote(
            input_mint=input_mint,
            output_mint=output_mint,
            in_amount=amount,
            out_amount=self.out_amount,
            price_impact_fraction=0.002,
            route_hop_count=2,
            fetched_at=0.0,
        )

    async def execute(self, quote: Quote, wallet: Any) -> str | None:
        self.executed.append((quote, wallet))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.signature is None:
            self.last_failure = "submit:blockhash not found"
        return self.signature

    async def close(self) -> None:
        return None


class _StubSafety:
    def __init__(self, verdict: SafetyVerdict | None = None) -> None:
        self.verdict = verdict or SafetyVerdict(True, "ok")
        self.calls: list[str] = []

    async def check(self, output_mint: str) -> SafetyVerdict:
        self.calls.append(output_mint)
        return self.verdict

    async def is_safe_to_buy(self, output_mint: str) -> bool:
        return (await self.check(output_mint)).safe


class _CountingSignals(MonitoredTokenSource):
    def __init__(self, tokens: Any) -> None:
        super().__init__(tokens)
        self.calls = 0

    async def get_candidates(self) -> list[str]:
        self.calls += 1
        return await super().get_candidates()


class _StubNotifier:
    def __init__(self) -> None:
        self.events: list[dict] = []

    async def notify(self, event: dict) -> bool:
        self.events.append(event)
        return True

    async def close(self) -> None:
        return None


class _FailingLedger:
    def __init__(self) -> None:
        self.attempts = 0

    async def append(self, record: Any) -> None:
        self.attempts += 1
        raise PersistenceError("disk full")


class StrategyLoopTestBase(unittest.TestCase):
    def setUp(self) -> None:
        super().setUp()
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.tmp_dir = tmp.name

    def _loop(self, *, gateway: _StubGateway | None = None, safety: _StubSafety | None = None, **overrides: Any) -> StrategyLoop:
        values: dict[str, Any] = {
            "strategy_id": "loop-test",
            "monitored_tokens": (TOKEN_A, TOKEN_B),
            "position_size_lamports": 15_000_000,
            "max_daily_volume": 1.0,
            "halt_on_failures": 3,
            "rotation_mode": "round",
        }
        values.update(overrides)
        cfg = StrategyConfig(**values)
        self.pool = _StubPool()
        self.gateway = gateway or _StubGateway()
        self.safety = safety or _StubSafety()
        self.signals = _CountingSignals(cfg.monitored_tokens)
        self.notifier = _StubNotifier()
        self.ledger = TradeLedger(cfg.strategy_id, log_dir=self.tmp_dir)
        return StrategyLoop(
            cfg,
            pool=self.pool,  # type: ignore[arg-type]
            gateway=self.gateway,  # type: ignore[arg-type]
            safety=self.safety,
            risk=RiskController(cfg, min_balance_lamports=10_000_000),
            ledger=self.ledger,
            signals=self.signals,
            notifier=self.notifier,
            decisions=DecisionWriter(enabled=False),
        )

    @staticmethod
    def _ticks(loop: StrategyLoop, count: int) -> list[Any]:
        async def _run() -> list[Any]:
            outcomes = [await loop.tick() for _ in range(count)]
            await loop.drain_notifications()
            return outcomes

        return asyncio.run(_run())


class StrategyLoopScenarioTests(StrategyLoopTestBase):
    def test_daily_cap_gates_second_token_without_failure(self) -> None:
        loop = self._loop(max_daily_volume=0.02)
        first, second = self._ticks(loop, 2)

        self.assertEqual((first.token, first.reason), (TOKEN_A, "executed"))
        self.assertEqual((second.token, second.stage, second.reason), (TOKEN_B, "gate", "daily_cap"))
        self.assertAlmostEqual(loop.risk.state.today_volume, 0.015)
        self.assertEqual(loop.risk.state.consecutive_failures, 0)
        records = self.ledger.read_all()
        self.assertEqual(len(records), 1)
        self.assertTrue(records[0].success)
        self.assertEqual(records[0].transaction_ref, "sig-ok")
        self.assertEqual(records[0].wallet_public_key, "wallet-0")

    def test_dry_run_records_projection_without_execution(self) -> None:
        loop = self._loop(dry_run=True)
        (outcome,) = self._ticks(loop, 1)

        self.assertEqual(outcome.reason, "dry_run")
        self.assertEqual(self.gateway.executed, [])
        record = self.ledger.read_all()[0]
        self.assertTrue(record.simulated)
        self.assertTrue(record.success)
        self.assertIsNone(record.transaction_ref)
        self.assertEqual(record.out_amount, 5_000_000)
        self.assertEqual(loop.risk.state.today_volume_lamports, 0)
        self.assertEqual(loop.risk.state.last_entry_ts_by_token, {})
        self.assertEqual(loop.risk.state.open_positions, [])

    def test_dry_run_record_matches_real_record_shape(self) -> None:
        real = self._loop()
        self._ticks(real, 1)
        real_record = self.ledger.read_all()[0]

        dry = self._loop(strategy_id="loop-test-dry", dry_run=True)
        self._ticks(dry, 1)
        dry_record = self.ledger.read_all()[0]

        for name in ("input_mint", "output_mint", "in_amount", "out_amount", "price_impact_fraction", "route_hop_count"):
            self.assertEqual(getattr(dry_record, name), getattr(real_record, name), name)
        self.assertEqual(set(dry_record.to_dict()), set(real_record.to_dict()))

    def test_safety_rejection_never_reaches_execute(self) -> None:
        loop = self._loop(safety=_StubSafety(SafetyVerdict(False, "safety_impact", "impact=8.00% max=5.00%")))
        (outcome,) = self._ticks(loop, 1)

        self.assertEqual((outcome.stage, outcome.reason), ("safety", "safety_impact"))
        self.assertEqual(self.gateway.quote_calls, [])
        self.assertEqual(self.gateway.executed, [])
        self.assertEqual(self.ledger.read_all(), [])
        self.assertEqual(loop.risk.state.consecutive_failures, 0)

    def test_halt_after_consecutive_execution_failures(self) -> None:
        loop = self._loop(gateway=_StubGateway(signature=None), halt_on_failures=3)
        outcomes = self._ticks(loop, 4)

        self.assertEqual([o.reason for o in outcomes[:3]], ["execution_failed"] * 3)
        self.assertEqual(outcomes[3].reason, "halted")
        self.assertEqual(len(self.gateway.executed), 3)
        self.assertEqual(self.signals.calls, 3)
        self.assertEqual(self.pool.next_calls, 3)
        records = self.ledger.read_all()
        self.assertEqual(len(records), 3)
        self.assertTrue(all(not r.success and r.transaction_ref is None for r in records))
        self.assertIn("blockhash", records[0].notes)
        self.assertIs(loop.risk.run_state, RunState.HALTED)
        self.assertTrue(any(e["severity"] == "CRITICAL" for e in self.notifier.events))

    def test_success_notification_carries_explorer_link(self) -> None:
        loop = self._loop()
        self._ticks(loop, 1)
        self.assertEqual(len(self.notifier.events), 1)
        self.assertIn("sig-ok", self.notifier.events[0]["explorer_url"])
        self.assertEqual(self.notifier.events[0]["strategy_id"], "loop-test")

    def test_notify_disabled_sends_nothing(self) -> None:
        loop = self._loop(notify=False)
        self._ticks(loop, 1)
        self.assertEqual(self.notifier.events, [])


class StrategyLoopFailurePolicyTests(StrategyLoopTestBase):
    def test_no_route_is_a_benign_skip_by_default(self) -> None:
        gateway = _StubGateway()
        gateway.route = False
        loop = self._loop(gateway=gateway, halt_on_failures=1)
        (outcome,) = self._ticks(loop, 1)
        self.assertEqual((outcome.stage, outcome.reason), ("quote", "no_route"))
        self.assertFalse(loop.risk.is_halted)

    def test_no_route_counts_when_configured(self) -> None:
        gateway = _StubGateway()
        gateway.route = False
        loop = self._loop(gateway=gateway, halt_on_failures=2, count_no_route_as_failure=True)
        self._ticks(loop, 2)
        self.assertTrue(loop.risk.is_halted)

    def test_unexpected_error_is_caught_and_counted(self) -> None:
        class _ExplodingSafety(_StubSafety):
            async def check(self, output_mint: str) -> SafetyVerdict:
                raise KeyError("boom")

        loop = self._loop(safety=_ExplodingSafety())
        with self.assertLogs("trading.strategy_loop", level="ERROR"):
            (outcome,) = self._ticks(loop, 1)
        self.assertEqual((outcome.stage, outcome.reason), ("tick", "unexpected_error"))
        self.assertEqual(loop.risk.state.consecutive_failures, 1)
        self.assertFalse(loop.in_flight)

    def test_ledger_failure_does_not_abort_the_tick(self) -> None:
        loop = self._loop()
        failing = _FailingLedger()
        loop.ledger = failing  # type: ignore[assignment]
        with self.assertLogs("trading.strategy_loop", level="ERROR"):
            (outcome,) = self._ticks(loop, 1)
        self.assertEqual(outcome.reason, "executed")
        self.assertFalse(outcome.persisted)
        self.assertEqual(failing.attempts, 1)
        self.assertAlmostEqual(loop.risk.state.today_volume, 0.015)

    def test_ledger_failure_is_written_to_decision_log(self) -> None:
        loop = self._loop()
        loop.ledger = _FailingLedger()  # type: ignore[assignment]
        path = os.path.join(self.tmp_dir, "decisions.jsonl")
        loop.decisions = DecisionWriter(path=path, enabled=True)
        with self.assertLogs("trading.strategy_loop", level="ERROR"):
            self._ticks(loop, 1)
        with open(path, "r", encoding="utf-8") as f:
            rows = [json.loads(line) for line in f if line.strip()]
        self.assertEqual([r["reason_code"] for r in rows], ["LEDGER_WRITE_FAILED", "EXEC_SWAP_CONFIRMED"])
        self.assertEqual(rows[0]["token"], TOKEN_A)
        self.assertEqual(rows[0]["reason_severity"], "ERROR")
        self.assertFalse(rows[1]["persisted"])

    def test_low_balance_skips_without_quote(self) -> None:
        loop = self._loop()
        self.pool.balance = 1_000
        (outcome,) = self._ticks(loop, 1)
        self.assertEqual(outcome.reason, "min_balance")
        self.assertEqual(self.safety.calls, [])


class StrategyLoopSchedulerTests(StrategyLoopTestBase):
    def test_stop_ends_run_after_current_tick(self) -> None:
        loop = self._loop(tick_interval_ms=10, dry_run=True)

        async def _run() -> None:
            task = asyncio.create_task(loop.run())
            await asyncio.sleep(0.08)
            loop.stop()
            await asyncio.wait_for(task, timeout=1.0)

        asyncio.run(_run())
        self.assertGreaterEqual(loop.tick_count, 2)
        self.assertEqual(len(self.ledger.read_all()), loop.tick_count)

    def test_in_flight_tick_finishes_before_run_returns(self) -> None:
        loop = self._loop(gateway=_StubGateway(delay=0.1), tick_interval_ms=10)

        async def _run() -> None:
            task = asyncio.create_task(loop.run())
            await asyncio.sleep(0.03)
            self.assertTrue(loop.in_flight)
            loop.stop()
            await asyncio.wait_for(task, timeout=1.0)

        asyncio.run(_run())
        self.assertEqual(loop.tick_count, 1)
        self.assertEqual(loop.last_outcome.reason, "executed")

    def test_overlapping_tick_is_refused(self) -> None:
        loop = self._loop(gateway=_StubGateway(delay=0.05))

        async def _run() -> list[Any]:
            return list(await asyncio.gather(loop.tick(), loop.tick()))

        outcomes = asyncio.run(_run())
        self.assertEqual(sorted(o.reason for o in outcomes), ["executed", "in_flight"])
        self.assertEqual(len(self.gateway.executed), 1)


if __name__ == "__main__":
    unittest.main()
