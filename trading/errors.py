"""Error taxonomy for the swap execution engine."""

from __future__ import annotations

E_CONFIG = "E_CONFIG"
E_KEY_FORMAT = "E_KEY_FORMAT"
E_NO_WALLET = "E_NO_WALLET"
E_NO_ROUTE = "E_NO_ROUTE"
E_SAFETY_REJECTED = "E_SAFETY_REJECTED"
E_EXECUTION_FAILED = "E_EXECUTION_FAILED"
E_BALANCE_LOW = "E_BALANCE_LOW"
E_PERSISTENCE = "E_PERSISTENCE"
E_QUOTE_STALE = "E_QUOTE_STALE"


class EngineError(RuntimeError):
    """Base class; `code` is stable across releases and safe to match in logs."""

    code = "E_ENGINE"
    counts_as_failure = False


class ConfigError(EngineError):
    """Fatal at startup: missing field, bad range or unusable credentials."""

    code = E_CONFIG


class KeyFormatError(ConfigError):
    code = E_KEY_FORMAT


class NoWalletLoaded(EngineError):
    code = E_NO_WALLET


class NoRouteAvailable(EngineError):
    code = E_NO_ROUTE


class SafetyRejected(EngineError):
    code = E_SAFETY_REJECTED


class ExecutionFailure(EngineError):
    code = E_EXECUTION_FAILED
    counts_as_failure = True


class BalanceInsufficient(EngineError):
    code = E_BALANCE_LOW


class PersistenceError(EngineError):
    code = E_PERSISTENCE


class QuoteStale(EngineError):
    code = E_QUOTE_STALE
