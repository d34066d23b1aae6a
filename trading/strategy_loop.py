"""One strategy run: tick pipeline plus the completion-relative scheduler."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from dataclasses import dataclass
from typing import Any

import config
from monitor.notifier import explorer_link
from trading.errors import EngineError, PersistenceError
from trading.jupiter_gateway import JupiterGateway, Quote
from trading.risk_controller import RiskController
from trading.safety_guard import SafetyChecker
from trading.signals import SignalSource
from trading.strategy_config import StrategyConfig
from trading.trade_ledger import TradeLedger, TradeRecord, utc_now_iso
from trading.wallet_pool import Signer, WalletPool
from utils.addressing import short_key
from utils.log_contracts import trade_decision_event

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TickOutcome:
    stage: str
    reason: str
    token: str = ""
    detail: str = ""
    record: TradeRecord | None = None
    persisted: bool = False

    @property
    def traded(self) -> bool:
        return self.record is not None


class DecisionWriter:
    def __init__(self, path: str | None = None, enabled: bool | None = None) -> None:
        self.enabled = bool(config.DECISIONS_LOG_ENABLED if enabled is None else enabled)
        self.path = path or config.DECISIONS_LOG_FILE

    async def write(self, event: dict[str, Any]) -> None:
        if not self.enabled:
            return
        await asyncio.to_thread(self._write_sync, event)

    def _write_sync(self, event: dict[str, Any]) -> None:
        try:
            event = trade_decision_event(dict(event), run_tag=config.RUN_TAG)
            os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(json.dumps(event, ensure_ascii=False) + "\n")
        except Exception:
            logger.exception("DECISION_LOG write failed")


class StrategyLoop:
    """Owns the per-run engine state; every tick runs on one control flow."""

    def __init__(
        self,
        cfg: StrategyConfig,
        *,
        pool: WalletPool,
        gateway: JupiterGateway,
        safety: SafetyChecker,
        risk: RiskController,
        ledger: TradeLedger,
        signals: SignalSource,
        notifier: Any = None,
        decisions: DecisionWriter | None = None,
    ) -> None:
        self.cfg = cfg
        self.pool = pool
        self.gateway = gateway
        self.safety = safety
        self.risk = risk
        self.ledger = ledger
        self.signals = signals
        self.notifier = notifier
        self.decisions = decisions or DecisionWriter()
        self.tick_count = 0
        self.last_outcome: TickOutcome | None = None
        self._cursor = 0
        self._stop = asyncio.Event()
        self._in_flight = False
        self._pending_notifications: set[asyncio.Task] = set()

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def stop(self) -> None:
        """Prevent the next schedule; an in-flight tick runs to completion."""
        if not self._stop.is_set():
            logger.info("RUN_STOP_REQUESTED strategy=%s", self.cfg.strategy_id)
        self._stop.set()

    async def run(self) -> None:
        logger.info(
            "RUN_STARTED strategy=%s tokens=%s interval=%.1fs dry_run=%s wallets=%s",
            self.cfg.strategy_id,
            len(self.cfg.monitored_tokens),
            self.cfg.tick_interval_seconds,
            self.cfg.dry_run,
            len(self.pool),
        )
        while not self._stop.is_set():
            await self.tick()
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.cfg.tick_interval_seconds)
            except asyncio.TimeoutError:
                pass
        logger.info("RUN_STOPPED strategy=%s ticks=%s", self.cfg.strategy_id, self.tick_count)

    async def tick(self) -> TickOutcome:
        if self._in_flight:
            logger.warning("TICK_OVERLAP strategy=%s skipped", self.cfg.strategy_id)
            return TickOutcome(stage="tick", reason="in_flight")
        self._in_flight = True
        self.tick_count += 1
        self.risk.begin_tick()
        try:
            outcome = await self._run_tick()
        except EngineError as exc:
            logger.warning("TICK_SKIP strategy=%s code=%s err=%s", self.cfg.strategy_id, exc.code, exc)
            if exc.counts_as_failure:
                self.risk.record_failure(exc.code)
            outcome = TickOutcome(stage="tick", reason=exc.code.lower(), detail=str(exc))
        except Exception as exc:
            logger.exception("TICK_ERROR strategy=%s err=%s", self.cfg.strategy_id, exc)
            self.risk.record_failure("unexpected_error")
            outcome = TickOutcome(stage="tick", reason="unexpected_error", detail=str(exc))
        finally:
            self._in_flight = False
        self.risk.mark_rescheduled()
        self.last_outcome = outcome
        await self._log_outcome(outcome)
        return outcome

    async def _run_tick(self) -> TickOutcome:
        cfg = self.cfg
        if self.risk.is_halted:
            return TickOutcome(
                stage="gate",
                reason="halted",
                detail=f"consecutive_failures={self.risk.state.consecutive_failures}",
            )

        candidates = await self.signals.get_candidates()
        if not candidates:
            return TickOutcome(stage="tick", reason="no_candidate")
        token = candidates[self._cursor % len(candidates)]
        self._cursor += 1

        wallet = self.pool.next()
        decision = await self.risk.gate(token, lambda: self.pool.balance_of(wallet))
        if not decision.approved:
            return TickOutcome(stage="gate", reason=decision.reason, token=token, detail=decision.detail)

        verdict = await self.safety.check(token)
        if not verdict.safe:
            return TickOutcome(stage="safety", reason=verdict.reason, token=token, detail=verdict.detail)

        quote = await self.gateway.get_quote(cfg.input_mint, token, cfg.position_size_lamports, cfg.slippage_fraction)
        if quote is None:
            if cfg.count_no_route_as_failure:
                self.risk.record_failure("no_route")
            return TickOutcome(stage="quote", reason="no_route", token=token)

        if cfg.dry_run:
            record = self._build_record(quote, wallet, None, success=True, simulated=True, notes="dry_run")
            persisted = await self._persist(record)
            self._notify(
                {
                    "title": f"[DRY RUN] {cfg.strategy_id} buy {short_key(token)}",
                    "text": self._trade_text(quote),
                    "severity": "INFO",
                    "token": token,
                }
            )
            return TickOutcome(stage="execute", reason="dry_run", token=token, record=record, persisted=persisted)

        signature = await self.gateway.execute(quote, wallet)
        if signature is None:
            failure = self.gateway.last_failure
            self.risk.record_failure("execution_failed")
            record = self._build_record(quote, wallet, None, success=False, simulated=False, notes=failure)
            persisted = await self._persist(record)
            self._notify(
                {
                    "title": f"{cfg.strategy_id} swap failed {short_key(token)}",
                    "text": f"{failure}\nFailure streak: {self.risk.state.consecutive_failures}/{cfg.halt_on_failures}",
                    "severity": "ERROR",
                    "token": token,
                }
            )
            if self.risk.is_halted:
                self._notify(
                    {
                        "title": f"{cfg.strategy_id} halted",
                        "text": "Too many consecutive failures; restart required.",
                        "severity": "CRITICAL",
                    }
                )
            return TickOutcome(
                stage="execute", reason="execution_failed", token=token, detail=failure, record=record, persisted=persisted
            )

        self.risk.record_success(
            token, in_amount=quote.in_amount, out_amount=quote.out_amount, transaction_ref=signature
        )
        record = self._build_record(quote, wallet, signature, success=True, simulated=False)
        persisted = await self._persist(record)
        self._notify(
            {
                "title": f"{cfg.strategy_id} bought {short_key(token)}",
                "text": self._trade_text(quote),
                "severity": "INFO",
                "token": token,
                "explorer_url": explorer_link(signature),
            }
        )
        return TickOutcome(stage="execute", reason="executed", token=token, record=record, persisted=persisted)

    def _build_record(
        self,
        quote: Quote,
        wallet: Signer,
        transaction_ref: str | None,
        *,
        success: bool,
        simulated: bool,
        notes: str = "",
    ) -> TradeRecord:
        return TradeRecord(
            timestamp=utc_now_iso(),
            strategy_id=self.cfg.strategy_id,
            input_mint=quote.input_mint or self.cfg.input_mint,
            output_mint=quote.output_mint,
            in_amount=quote.in_amount,
            out_amount=quote.out_amount,
            price_impact_fraction=quote.price_impact_fraction,
            transaction_ref=transaction_ref,
            success=success,
            simulated=simulated,
            take_profit_fraction=self.cfg.take_profit_fraction,
            stop_loss_fraction=self.cfg.stop_loss_fraction,
            notes=notes,
            entry_price=quote.entry_price,
            route_hop_count=quote.route_hop_count,
            wallet_public_key=wallet.public_identity(),
        )

    @staticmethod
    def _trade_text(quote: Quote) -> str:
        return (
            f"in={quote.in_amount} out={quote.out_amount} "
            f"impact={quote.price_impact_fraction * 100:.2f}% hops={quote.route_hop_count}"
        )

    async def _persist(self, record: TradeRecord) -> bool:
        try:
            await self.ledger.append(record)
            return True
        except PersistenceError as exc:
            logger.error("LEDGER_WRITE_FAILED strategy=%s err=%s", self.cfg.strategy_id, exc)
            await self.decisions.write(
                {
                    "strategy_id": self.cfg.strategy_id,
                    "decision_stage": "ledger",
                    "decision": "persist",
                    "token": record.output_mint,
                    "reason": "persistence_failed",
                    "detail": str(exc),
                    "dry_run": record.simulated,
                    "tx": record.transaction_ref,
                }
            )
            self._notify(
                {"title": f"{self.cfg.strategy_id} ledger write failed", "text": str(exc), "severity": "ERROR"}
            )
            return False

    def _notify(self, event: dict[str, Any]) -> None:
        if self.notifier is None or not self.cfg.notify:
            return
        event = {"strategy_id": self.cfg.strategy_id, **event}
        task = asyncio.create_task(self._deliver(event))
        self._pending_notifications.add(task)
        task.add_done_callback(self._pending_notifications.discard)

    async def _deliver(self, event: dict[str, Any]) -> None:
        try:
            await self.notifier.notify(event)
        except Exception as exc:
            logger.warning("NOTIFY_FAILED strategy=%s err=%s", self.cfg.strategy_id, exc)

    async def drain_notifications(self, timeout: float = 5.0) -> None:
        pending = list(self._pending_notifications)
        if not pending:
            return
        _, not_done = await asyncio.wait(pending, timeout=timeout)
        for task in not_done:
            task.cancel()

    async def _log_outcome(self, outcome: TickOutcome) -> None:
        traded = outcome.traded
        level = logging.INFO
        if outcome.reason in ("execution_failed", "unexpected_error", "halted"):
            level = logging.WARNING
        logger.log(
            level,
            "%s strategy=%s token=%s stage=%s reason=%s detail=%s",
            "TICK_TRADE" if traded else "TICK_SKIP",
            self.cfg.strategy_id,
            short_key(outcome.token) if outcome.token else "-",
            outcome.stage,
            outcome.reason,
            outcome.detail or "-",
        )
        record = outcome.record
        await self.decisions.write(
            {
                "strategy_id": self.cfg.strategy_id,
                "decision_stage": outcome.stage,
                "decision": "trade" if traded else "skip",
                "token": outcome.token,
                "reason": outcome.reason,
                "detail": outcome.detail,
                "dry_run": self.cfg.dry_run,
                "tx": record.transaction_ref if record else None,
                "persisted": outcome.persisted,
                "run_state": self.risk.run_state.value,
            }
        )
