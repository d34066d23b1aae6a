"""Stable log contracts shared across runtime writers."""

from __future__ import annotations

import hashlib
import re
from datetime import datetime, timezone
from typing import Any

LOG_SCHEMA_VERSION = "2026-10-01.v1"

SCHEMA_TRADE_DECISION = "trade_decision.v1"
SCHEMA_LOCAL_EVENT = "local_event.v1"

_STAGE_PREFIX: dict[str, str] = {
    "gate": "GATE",
    "safety": "SAFETY",
    "quote": "QUOTE",
    "execute": "EXEC",
    "ledger": "LEDGER",
    "tick": "TICK",
    "unknown": "UNKNOWN",
}

_REASON_CODE_OVERRIDES: dict[str, str] = {
    "halted": "GATE_HALTED",
    "cooldown": "GATE_COOLDOWN",
    "cooldown_left": "GATE_COOLDOWN",
    "min_balance": "GATE_MIN_BALANCE",
    "balance_unavailable": "GATE_MIN_BALANCE",
    "daily_cap": "GATE_DAILY_CAP",
    "open_positions": "GATE_OPEN_POSITIONS",
    "no_candidate": "TICK_NO_CANDIDATE",
    "no_route": "QUOTE_NO_ROUTE",
    "safety_no_route": "SAFETY_NO_ROUTE",
    "safety_impact": "SAFETY_IMPACT",
    "safety_low_output": "SAFETY_LOW_OUTPUT",
    "dry_run": "EXEC_DRY_RUN",
    "executed": "EXEC_SWAP_CONFIRMED",
    "execution_failed": "EXEC_SWAP_FAILED",
    "unexpected_error": "TICK_UNEXPECTED_ERROR",
    "persistence_failed": "LEDGER_WRITE_FAILED",
}

REASON_CODE_TAXONOMY: dict[str, dict[str, str]] = {
    "GATE_HALTED": {"severity": "ERROR", "category": "gate", "title": "Run halted after consecutive failures"},
    "GATE_COOLDOWN": {"severity": "INFO", "category": "gate", "title": "Token cooldown active"},
    "GATE_MIN_BALANCE": {"severity": "WARN", "category": "gate", "title": "Wallet below operating balance"},
    "GATE_DAILY_CAP": {"severity": "INFO", "category": "gate", "title": "Daily volume cap reached"},
    "GATE_OPEN_POSITIONS": {"severity": "INFO", "category": "gate", "title": "Open position cap reached"},
    "QUOTE_NO_ROUTE": {"severity": "INFO", "category": "quote", "title": "No route available"},
    "SAFETY_NO_ROUTE": {"severity": "WARN", "category": "safety", "title": "Safety probe found no route"},
    "SAFETY_IMPACT": {"severity": "WARN", "category": "safety", "title": "Probe price impact too high"},
    "SAFETY_LOW_OUTPUT": {"severity": "WARN", "category": "safety", "title": "Probe output below minimum"},
    "EXEC_DRY_RUN": {"severity": "INFO", "category": "execute", "title": "Dry-run trade recorded"},
    "EXEC_SWAP_CONFIRMED": {"severity": "INFO", "category": "execute", "title": "Swap confirmed"},
    "EXEC_SWAP_FAILED": {"severity": "ERROR", "category": "execute", "title": "Swap failed"},
    "TICK_UNEXPECTED_ERROR": {"severity": "ERROR", "category": "tick", "title": "Unexpected tick error"},
    "LEDGER_WRITE_FAILED": {"severity": "ERROR", "category": "ledger", "title": "Trade ledger write failed"},
}


def _as_ts(value: Any) -> float:
    if value is None or value == "":
        return datetime.now(timezone.utc).timestamp()
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    try:
        dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.timestamp()
    except ValueError:
        return datetime.now(timezone.utc).timestamp()


def _iso_from_ts(ts: float) -> str:
    return datetime.fromtimestamp(float(ts), tz=timezone.utc).isoformat()


def _normalize_reason_text(value: Any) -> str:
    text = str(value or "").strip().lower()
    if not text:
        return ""
    text = re.sub(r"[^a-z0-9]+", "_", text)
    text = re.sub(r"_+", "_", text).strip("_")
    if text.startswith("cooldown_left_"):
        return "cooldown_left"
    return text


def _sanitize_code_token(value: str) -> str:
    text = re.sub(r"[^A-Z0-9]+", "_", str(value or "").strip().upper())
    text = re.sub(r"_+", "_", text).strip("_")
    return text or "UNKNOWN"


def reason_code_for_event(*, reason: Any, decision_stage: Any = "") -> str:
    normalized_reason = _normalize_reason_text(reason)
    if not normalized_reason:
        return "UNKNOWN"
    override = _REASON_CODE_OVERRIDES.get(normalized_reason)
    if override:
        return override
    stage = _normalize_reason_text(decision_stage) or "unknown"
    prefix = _STAGE_PREFIX.get(stage, "UNKNOWN")
    return f"{prefix}_{_sanitize_code_token(normalized_reason)}"


def reason_code_meta(code: str) -> dict[str, str]:
    key = _sanitize_code_token(code)
    if key in REASON_CODE_TAXONOMY:
        return dict(REASON_CODE_TAXONOMY[key])
    return {
        "severity": "INFO",
        "category": "unknown",
        "title": key.replace("_", " ").title(),
    }


def _decision_id(payload: dict[str, Any], *, run_tag: str) -> str:
    raw = str(payload.get("decision_id", "") or "").strip()
    if raw:
        return raw
    seed = "|".join(
        str(p or "").strip()
        for p in (
            run_tag,
            payload.get("strategy_id", ""),
            payload.get("decision_stage", ""),
            payload.get("reason", ""),
            payload.get("token", ""),
            f"{float(payload.get('ts', 0.0)):.6f}",
        )
    )
    return "dec_" + hashlib.sha1(seed.encode("utf-8", errors="ignore")).hexdigest()[:20]


def stamp_event(
    event: dict[str, Any],
    *,
    schema_name: str,
    event_type: str,
    run_tag: str = "",
) -> dict[str, Any]:
    payload = dict(event or {})
    ts = _as_ts(payload.get("ts", payload.get("timestamp")))
    payload["ts"] = float(ts)
    payload["timestamp"] = str(payload.get("timestamp", "") or _iso_from_ts(ts))
    payload.setdefault("schema_version", LOG_SCHEMA_VERSION)
    payload.setdefault("schema_name", schema_name)
    payload.setdefault("event_type", str(event_type or "event"))
    if run_tag:
        payload.setdefault("run_tag", str(run_tag))
    payload["decision_id"] = _decision_id(payload, run_tag=str(payload.get("run_tag", run_tag or "")))
    return payload


def trade_decision_event(event: dict[str, Any], *, run_tag: str = "") -> dict[str, Any]:
    """Normalize a gate/skip/trade outcome into the trade_decision schema."""
    payload = stamp_event(
        event,
        schema_name=SCHEMA_TRADE_DECISION,
        event_type=str((event or {}).get("event_type", "trade_decision")),
        run_tag=run_tag,
    )
    payload.setdefault("strategy_id", "")
    payload.setdefault("decision_stage", "unknown")
    payload.setdefault("decision", "unknown")
    payload["token"] = str(payload.get("token", "") or "").strip()
    payload["reason"] = str(payload.get("reason", "") or "")
    payload["reason_code"] = str(
        payload.get("reason_code", "")
        or reason_code_for_event(reason=payload["reason"], decision_stage=payload["decision_stage"])
    ).strip().upper()
    meta = reason_code_meta(payload["reason_code"])
    payload["reason_severity"] = str(payload.get("reason_severity", meta["severity"]) or "INFO")
    payload["reason_category"] = str(payload.get("reason_category", meta["category"]) or "unknown")
    return payload


def local_event(event: dict[str, Any], *, run_tag: str = "") -> dict[str, Any]:
    payload = stamp_event(
        event,
        schema_name=SCHEMA_LOCAL_EVENT,
        event_type=str((event or {}).get("event_type", "local_event")),
        run_tag=run_tag,
    )
    payload["title"] = str(payload.get("title", "") or "").strip() or "event"
    payload["text"] = str(payload.get("text", "") or "")
    payload["severity"] = str(payload.get("severity", "INFO") or "INFO").upper()
    return payload
