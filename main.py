"""Entry point: run one swap strategy until interrupted."""

import argparse
import asyncio
import logging
import os
import signal
import sys
from logging.handlers import RotatingFileHandler

import config
from config import APP_LOG_FILE, LOG_DIR, LOG_LEVEL
from trading.errors import ConfigError
from trading.run_controller import RunController
from trading.strategy_config import load_strategy_config
from trading.trade_ledger import TradeLedger
from trading.trade_summary import format_summary, summarize


def configure_logging() -> None:
    os.makedirs(LOG_DIR, exist_ok=True)
    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    file_handler = RotatingFileHandler(APP_LOG_FILE, maxBytes=1_000_000, backupCount=5, encoding="utf-8")
    file_handler.setFormatter(formatter)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)

    root = logging.getLogger()
    root.setLevel(getattr(logging, LOG_LEVEL.upper(), logging.INFO))
    root.handlers.clear()
    root.addHandler(file_handler)
    root.addHandler(console_handler)

    # Avoid leaking bot token in verbose transport logs.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("telegram").setLevel(logging.INFO)
    logging.getLogger("aiohttp").setLevel(logging.WARNING)


logger = logging.getLogger(__name__)


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Jupiter swap strategy runner.")
    parser.add_argument("--config", required=True, help="Path to the strategy JSON file.")
    parser.add_argument("--dry-run", action="store_true", help="Record intended trades without submitting them.")
    parser.add_argument("--summary", action="store_true", help="Print the ledger summary and exit.")
    return parser.parse_args(argv)


async def run_strategy(config_path: str, *, dry_run: bool = False, summary_only: bool = False) -> None:
    overrides = {"dry_run": True} if dry_run else {}
    cfg = load_strategy_config(config_path, **overrides)
    if summary_only:
        records = await TradeLedger(cfg.strategy_id).history()
        print(format_summary(cfg.strategy_id, summarize(records)))
        return

    controller = RunController()
    handle = await controller.start(cfg)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):
            # Windows event loops have no signal handler support.
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(stop_event.set))

    waiter = asyncio.create_task(stop_event.wait())
    try:
        await asyncio.wait({waiter, handle.task}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
        status = controller.status(handle)
        logger.info(
            "SHUTDOWN strategy=%s run_state=%s today_volume=%.4f ticks=%s",
            status["strategy_id"],
            status["run_state"],
            status["today_volume"],
            status["ticks"],
        )
        await controller.stop(handle, send_summary=cfg.notify)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    configure_logging()
    if config.RUN_TAG:
        logger.info("RUN_TAG=%s", config.RUN_TAG)
    try:
        asyncio.run(run_strategy(args.config, dry_run=args.dry_run, summary_only=args.summary))
    except ConfigError as exc:
        logger.critical("CONFIG_ERROR code=%s err=%s", exc.code, exc)
        return 2
    except KeyboardInterrupt:
        logger.info("Interrupted")
    return 0


if __name__ == "__main__":
    sys.exit(main())
