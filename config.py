"""Application configuration."""

import os
from pathlib import Path

from dotenv import load_dotenv


def _load_dotenv_safe(dotenv_path: str | None = None, *, override: bool = False) -> None:
    """Load dotenv using UTF-8-SIG so BOM-prefixed files don't break first key parsing."""
    try:
        load_dotenv(dotenv_path=dotenv_path, override=override, encoding="utf-8-sig")
    except TypeError:
        # Older python-dotenv versions may not expose the `encoding` argument.
        load_dotenv(dotenv_path=dotenv_path, override=override)


# Load base environment first, then optional per-instance override env file.
_load_dotenv_safe()
_BOT_ENV_FILE = os.getenv("BOT_ENV_FILE", "").strip()
if _BOT_ENV_FILE:
    _bot_env_path = Path(_BOT_ENV_FILE).expanduser()
    if not _bot_env_path.is_absolute():
        _bot_env_path = (Path.cwd() / _bot_env_path).resolve()
    if not _bot_env_path.exists():
        raise FileNotFoundError(f"BOT_ENV_FILE does not exist: {_bot_env_path}")
    if not _bot_env_path.is_file():
        raise IsADirectoryError(f"BOT_ENV_FILE is not a file: {_bot_env_path}")
    try:
        _load_dotenv_safe(str(_bot_env_path), override=True)
    except (OSError, UnicodeError, ValueError) as exc:
        raise RuntimeError(f"Failed to load BOT_ENV_FILE '{_bot_env_path}': {exc}") from exc


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


RUN_TAG = os.getenv("RUN_TAG", "").strip()

# Solana RPC
SOLANA_RPC_URL = os.getenv("SOLANA_RPC_URL", "https://api.mainnet-beta.solana.com").strip()
RPC_TIMEOUT_SECONDS = max(1.0, float(os.getenv("RPC_TIMEOUT_SECONDS", "20")))
CONFIRM_TIMEOUT_SECONDS = max(1.0, float(os.getenv("CONFIRM_TIMEOUT_SECONDS", "60")))
CONFIRM_POLL_SECONDS = max(0.1, float(os.getenv("CONFIRM_POLL_SECONDS", "1.0")))
CONFIRM_COMMITMENT = os.getenv("CONFIRM_COMMITMENT", "confirmed").strip().lower() or "confirmed"
EXPLORER_TX_URL = os.getenv("EXPLORER_TX_URL", "https://explorer.solana.com/tx/{signature}")

# Jupiter aggregator
JUPITER_QUOTE_URL = os.getenv("JUPITER_QUOTE_URL", "https://api.jup.ag/swap/v1/quote").strip()
JUPITER_SWAP_URL = os.getenv("JUPITER_SWAP_URL", "https://api.jup.ag/swap/v1/swap").strip()
JUPITER_API_KEY = os.getenv("JUPITER_API_KEY", "").strip()
QUOTE_MAX_AGE_SECONDS = max(1.0, float(os.getenv("QUOTE_MAX_AGE_SECONDS", "20")))
PRIORITIZATION_FEE_LAMPORTS = max(0, int(os.getenv("PRIORITIZATION_FEE_LAMPORTS", "0")))
WRAP_AND_UNWRAP_SOL = _env_bool("WRAP_AND_UNWRAP_SOL", True)

# Shared HTTP client
HTTP_TIMEOUT_SECONDS = max(1.0, float(os.getenv("HTTP_TIMEOUT_SECONDS", "15")))
HTTP_CONNECTOR_LIMIT = max(1, int(os.getenv("HTTP_CONNECTOR_LIMIT", "10")))
HTTP_DEFAULT_CONCURRENCY = max(1, int(os.getenv("HTTP_DEFAULT_CONCURRENCY", "4")))
HTTP_429_COOLDOWN_SECONDS = max(0.0, float(os.getenv("HTTP_429_COOLDOWN_SECONDS", "30")))

# Honeypot / safety probe
WSOL_MINT = "So11111111111111111111111111111111111111112"
HONEYPOT_CHECK_AMOUNT = max(0.0, float(os.getenv("HONEYPOT_CHECK_AMOUNT", "0.005")))
HONEYPOT_MAX_IMPACT = max(0.0, float(os.getenv("HONEYPOT_MAX_IMPACT", "5.0")))
HONEYPOT_MIN_RECEIVED = max(0.0, float(os.getenv("HONEYPOT_MIN_RECEIVED", "5")))
HONEYPOT_OUTPUT_DECIMALS = max(0, min(18, int(os.getenv("HONEYPOT_OUTPUT_DECIMALS", "6"))))

# Risk
MIN_OPERATING_BALANCE_SOL = max(0.0, float(os.getenv("MIN_OPERATING_BALANCE_SOL", "0.01")))

# Wallets
WALLET_DIR = os.getenv("WALLET_DIR", "wallets").strip()
WALLET_ROTATION_MODE = os.getenv("WALLET_ROTATION_MODE", "round").strip().lower() or "round"
PRIVATE_KEY = os.getenv("PRIVATE_KEY", "").strip()

# Trade ledger
TRADE_LOG_DIR = os.getenv("TRADE_LOG_DIR", os.path.join("logs", "trades"))
TRADE_LOG_MAX_RECORDS = max(0, int(os.getenv("TRADE_LOG_MAX_RECORDS", "5000")))
STATE_LOCK_TIMEOUT_SECONDS = max(0.05, float(os.getenv("STATE_LOCK_TIMEOUT_SECONDS", "2.0")))

# Notifications
TELEGRAM_BOT_TOKEN = os.getenv("TELEGRAM_BOT_TOKEN", "")
TELEGRAM_CHAT_ID = os.getenv("TELEGRAM_CHAT_ID", "").strip()
LOCAL_EVENTS_FILE = os.getenv("LOCAL_EVENTS_FILE", os.path.join("logs", "events.jsonl"))

# Tick decisions (one JSON line per tick outcome)
DECISIONS_LOG_ENABLED = _env_bool("DECISIONS_LOG_ENABLED", True)
DECISIONS_LOG_FILE = os.getenv("DECISIONS_LOG_FILE", os.path.join("logs", "decisions.jsonl"))

# Logging
LOG_DIR = os.getenv("LOG_DIR", "logs")
APP_LOG_FILE = os.getenv("APP_LOG_FILE", os.path.join(LOG_DIR, "app.log"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
