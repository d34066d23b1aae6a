"""Validated, immutable configuration for one strategy run."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field, fields, replace
from typing import Any

import config
from trading.errors import ConfigError
from utils.addressing import is_valid_mint, normalize_mint

LAMPORTS_PER_SOL = 1_000_000_000
ROTATION_MODES = ("round", "random")

_CAMEL_RE = re.compile(r"(?<!^)(?=[A-Z])")

# Keys the dashboard and older run files use for the same options.
_KEY_ALIASES: dict[str, str] = {
    "strategy": "strategy_id",
    "name": "strategy_id",
    "interval": "tick_interval_ms",
    "interval_ms": "tick_interval_ms",
    "wallets": "wallet_keys",
    "take_profit": "take_profit_fraction",
    "stop_loss": "stop_loss_fraction",
    "slippage": "slippage_fraction",
    "cooldown": "cooldown_ms",
    "max_open_positions": "max_open_trades",
}


@dataclass(frozen=True)
class StrategyConfig:
    strategy_id: str
    monitored_tokens: tuple[str, ...]
    input_mint: str = config.WSOL_MINT
    slippage_fraction: float = 0.01
    position_size_lamports: int = 5_000_000
    tick_interval_ms: int = 10_000
    cooldown_ms: int = 0
    max_daily_volume: float = 3.0
    halt_on_failures: int = 5
    max_open_trades: int | None = None
    dry_run: bool = False
    take_profit_fraction: float | None = None
    stop_loss_fraction: float | None = None
    wallet_keys: tuple[str, ...] = field(default=(), repr=False)
    rotation_mode: str = field(default_factory=lambda: config.WALLET_ROTATION_MODE)
    count_no_route_as_failure: bool = False
    daily_reset_utc: bool = False
    notify: bool = True

    def __post_init__(self) -> None:
        if not re.fullmatch(r"[A-Za-z0-9_.-]{1,64}", self.strategy_id or ""):
            raise ConfigError(f"strategy_id must be 1-64 chars of [A-Za-z0-9_.-], got {self.strategy_id!r}")
        if not is_valid_mint(self.input_mint):
            raise ConfigError(f"input_mint is not a valid mint: {self.input_mint!r}")
        if not self.monitored_tokens:
            raise ConfigError("monitored_tokens (or output_mint) is required")
        for mint in self.monitored_tokens:
            if not is_valid_mint(mint):
                raise ConfigError(f"monitored token is not a valid mint: {mint!r}")
            if mint == self.input_mint:
                raise ConfigError(f"monitored token equals input_mint: {mint}")
        if not 0.0 < self.slippage_fraction < 1.0:
            raise ConfigError(f"slippage_fraction must be in (0, 1), got {self.slippage_fraction}")
        if self.position_size_lamports <= 0:
            raise ConfigError("position_size_lamports must be > 0")
        if self.tick_interval_ms <= 0:
            raise ConfigError("tick_interval_ms must be > 0")
        if self.cooldown_ms < 0:
            raise ConfigError("cooldown_ms must be >= 0")
        if self.max_daily_volume < 0:
            raise ConfigError("max_daily_volume must be >= 0")
        if self.halt_on_failures < 1:
            raise ConfigError("halt_on_failures must be >= 1")
        if self.max_open_trades is not None and self.max_open_trades < 1:
            raise ConfigError("max_open_trades must be >= 1 when set")
        for name in ("take_profit_fraction", "stop_loss_fraction"):
            value = getattr(self, name)
            if value is not None and value <= 0:
                raise ConfigError(f"{name} must be > 0 when set")
        if self.rotation_mode not in ROTATION_MODES:
            raise ConfigError(f"rotation_mode must be one of {ROTATION_MODES}, got {self.rotation_mode!r}")

    @property
    def slippage_bps(self) -> int:
        return max(1, int(round(self.slippage_fraction * 10_000)))

    @property
    def position_size_sol(self) -> float:
        return self.position_size_lamports / LAMPORTS_PER_SOL

    @property
    def max_daily_volume_lamports(self) -> int:
        return int(round(self.max_daily_volume * LAMPORTS_PER_SOL))

    @property
    def tick_interval_seconds(self) -> float:
        return self.tick_interval_ms / 1000.0

    @property
    def cooldown_seconds(self) -> float:
        return self.cooldown_ms / 1000.0

    def with_overrides(self, **changes: Any) -> "StrategyConfig":
        """A new config for a new run; the current one stays untouched."""
        return replace(self, **changes)


def _canonical_key(raw_key: str) -> str:
    key = _CAMEL_RE.sub("_", str(raw_key).strip()).lower()
    return _KEY_ALIASES.get(key, key)


def _as_bool(name: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "false"):
        return value.strip().lower() == "true"
    raise ConfigError(f"{name} must be a boolean, got {value!r}")


def _as_number(name: str, value: Any, kind: type) -> Any:
    if isinstance(value, bool):
        raise ConfigError(f"{name} must be a number, got {value!r}")
    try:
        number = kind(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{name} must be a number, got {value!r}") from exc
    if kind is int and isinstance(value, float) and not value.is_integer():
        raise ConfigError(f"{name} must be an integer, got {value!r}")
    return number


def _as_str_list(name: str, value: Any) -> tuple[str, ...]:
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, (list, tuple)):
        raise ConfigError(f"{name} must be a list of strings")
    out: list[str] = []
    for item in value:
        if isinstance(item, list):
            # JSON byte-array secret keys are kept as their JSON text.
            out.append(json.dumps(item))
            continue
        text = normalize_mint(item)
        if text and text not in out:
            out.append(text)
    return tuple(out)


_BOOL_FIELDS = {"dry_run", "count_no_route_as_failure", "daily_reset_utc", "notify"}
_INT_FIELDS = {"position_size_lamports", "tick_interval_ms", "cooldown_ms", "halt_on_failures", "max_open_trades"}
_FLOAT_FIELDS = {"slippage_fraction", "max_daily_volume", "take_profit_fraction", "stop_loss_fraction"}


def strategy_config_from_dict(payload: dict[str, Any], **overrides: Any) -> StrategyConfig:
    """Build a StrategyConfig, rejecting unknown keys and bad values with ConfigError."""
    if not isinstance(payload, dict):
        raise ConfigError("strategy config must be a JSON object")
    known = {f.name for f in fields(StrategyConfig)}
    values: dict[str, Any] = {}
    output_mint = ""
    for raw_key, value in {**payload, **overrides}.items():
        key = _canonical_key(raw_key)
        if key == "output_mint":
            output_mint = normalize_mint(value)
            continue
        if key not in known:
            raise ConfigError(f"unknown strategy config option: {raw_key!r}")
        if value is None:
            continue
        if key in _BOOL_FIELDS:
            value = _as_bool(key, value)
        elif key in _INT_FIELDS:
            value = _as_number(key, value, int)
        elif key in _FLOAT_FIELDS:
            value = _as_number(key, value, float)
        elif key in ("monitored_tokens", "wallet_keys"):
            value = _as_str_list(key, value)
        else:
            value = normalize_mint(value) if key == "input_mint" else str(value).strip()
        values[key] = value

    if output_mint:
        tokens = tuple(values.get("monitored_tokens", ()))
        values["monitored_tokens"] = tokens if output_mint in tokens else (output_mint,) + tokens
    if "strategy_id" not in values:
        raise ConfigError("strategy_id is required")
    values.setdefault("monitored_tokens", ())
    return StrategyConfig(**values)


def load_strategy_config(path: str, **overrides: Any) -> StrategyConfig:
    try:
        with open(path, "r", encoding="utf-8-sig") as f:
            payload = json.load(f)
    except FileNotFoundError as exc:
        raise ConfigError(f"strategy config not found: {path}") from exc
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigError(f"strategy config unreadable: {path} err={exc}") from exc
    return strategy_config_from_dict(payload, **overrides)
