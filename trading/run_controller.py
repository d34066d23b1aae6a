"""start / stop / status surface for strategy runs inside one process."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable

from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Commitment

import config
from monitor.notifier import build_notifier
from trading.errors import ConfigError
from trading.jupiter_gateway import JupiterGateway
from trading.risk_controller import RiskController
from trading.safety_guard import ImpactSafetyChecker
from trading.signals import MonitoredTokenSource, SignalSource
from trading.strategy_config import StrategyConfig
from trading.strategy_loop import StrategyLoop
from trading.trade_ledger import TradeLedger
from trading.trade_summary import format_summary, summarize
from trading.wallet_pool import collect_key_sources, load_pool

logger = logging.getLogger(__name__)


def _default_rpc() -> AsyncClient:
    return AsyncClient(
        config.SOLANA_RPC_URL,
        commitment=Commitment(config.CONFIRM_COMMITMENT),
        timeout=config.RPC_TIMEOUT_SECONDS,
    )


@dataclass
class RunHandle:
    run_id: str
    cfg: StrategyConfig
    loop: StrategyLoop
    task: asyncio.Task
    rpc: Any
    started_at: float = field(default_factory=time.time)

    @property
    def strategy_id(self) -> str:
        return self.cfg.strategy_id


class RunController:
    def __init__(
        self,
        *,
        rpc_factory: Callable[[], Any] | None = None,
        notifier_factory: Callable[[], Any] | None = None,
        ledger_dir: str | None = None,
    ) -> None:
        self._rpc_factory = rpc_factory or _default_rpc
        self._notifier_factory = notifier_factory or build_notifier
        self._ledger_dir = ledger_dir
        self._runs: dict[str, RunHandle] = {}

    @property
    def runs(self) -> list[RunHandle]:
        return list(self._runs.values())

    async def start(self, cfg: StrategyConfig, *, signals: SignalSource | None = None) -> RunHandle:
        """Build a fresh engine for cfg and schedule its loop. Only ConfigError escapes."""
        for handle in self._runs.values():
            if handle.strategy_id == cfg.strategy_id and not handle.task.done():
                raise ConfigError(f"strategy {cfg.strategy_id!r} is already running")

        rpc = self._rpc_factory()
        try:
            pool = load_pool(collect_key_sources(cfg.wallet_keys), rotation_mode=cfg.rotation_mode, rpc=rpc)
        except Exception:
            await rpc.close()
            raise

        gateway = JupiterGateway(rpc)
        loop = StrategyLoop(
            cfg,
            pool=pool,
            gateway=gateway,
            safety=ImpactSafetyChecker(gateway, base_mint=cfg.input_mint, slippage_fraction=cfg.slippage_fraction),
            risk=RiskController(cfg),
            ledger=TradeLedger(cfg.strategy_id, log_dir=self._ledger_dir),
            signals=signals or MonitoredTokenSource(cfg.monitored_tokens),
            notifier=self._notifier_factory() if cfg.notify else None,
        )
        run_id = f"{cfg.strategy_id}-{uuid.uuid4().hex[:8]}"
        task = asyncio.create_task(loop.run(), name=f"strategy:{run_id}")
        task.add_done_callback(self._on_task_done)
        handle = RunHandle(run_id=run_id, cfg=cfg, loop=loop, task=task, rpc=rpc)
        self._runs[run_id] = handle
        logger.info(
            "RUN_REGISTERED run_id=%s strategy=%s dry_run=%s wallets=%s",
            run_id,
            cfg.strategy_id,
            cfg.dry_run,
            ",".join(pool.public_keys),
        )
        return handle

    @staticmethod
    def _on_task_done(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("RUN_CRASHED task=%s err=%s", task.get_name(), exc, exc_info=exc)

    async def stop(
        self, handle: RunHandle, timeout_seconds: float | None = None, *, send_summary: bool = False
    ) -> None:
        """Stop scheduling, let the in-flight tick finish (bounded), then release clients."""
        handle.loop.stop()
        if timeout_seconds is None:
            timeout_seconds = config.CONFIRM_TIMEOUT_SECONDS + config.HTTP_TIMEOUT_SECONDS + 5.0
        if not handle.task.done():
            try:
                await asyncio.wait_for(asyncio.shield(handle.task), timeout=timeout_seconds)
            except asyncio.TimeoutError:
                logger.warning("RUN_STOP_TIMEOUT run_id=%s cancelling in-flight tick", handle.run_id)
                handle.task.cancel()
                try:
                    await handle.task
                except asyncio.CancelledError:
                    pass
            except Exception as exc:
                logger.warning("RUN_STOP_AFTER_CRASH run_id=%s err=%s", handle.run_id, exc)
        if send_summary:
            logger.info("RUN_SUMMARY run_id=%s\n%s", handle.run_id, await self.summarize(handle, notify=True))
        await handle.loop.drain_notifications()
        await handle.loop.gateway.close()
        if handle.loop.notifier is not None:
            await handle.loop.notifier.close()
        await handle.rpc.close()
        self._runs.pop(handle.run_id, None)
        logger.info("RUN_RELEASED run_id=%s ticks=%s", handle.run_id, handle.loop.tick_count)

    async def stop_all(self) -> None:
        for handle in self.runs:
            await self.stop(handle)

    def status(self, handle: RunHandle) -> dict[str, Any]:
        risk = handle.loop.risk
        last = handle.loop.last_outcome
        return {
            "run_id": handle.run_id,
            "strategy_id": handle.strategy_id,
            "running": not handle.task.done(),
            "halt_state": "HALTED" if risk.is_halted else "ACTIVE",
            "halted": risk.is_halted,
            "run_state": risk.run_state.value,
            "today_volume": round(risk.state.today_volume, 9),
            "consecutive_failures": risk.state.consecutive_failures,
            "open_positions": len(risk.state.open_positions),
            "ticks": handle.loop.tick_count,
            "dry_run": handle.cfg.dry_run,
            "last_reason": last.reason if last else "",
            "uptime_seconds": round(time.time() - handle.started_at, 1),
        }

    async def summarize(self, handle: RunHandle, *, notify: bool = False) -> str:
        records = await handle.loop.ledger.history()
        text = format_summary(handle.strategy_id, summarize(records))
        if notify and handle.loop.notifier is not None:
            await handle.loop.notifier.notify({"title": f"{handle.strategy_id} summary", "text": text})
        return text
