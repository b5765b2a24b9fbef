"""Stable log contracts for per-block decision records."""

from __future__ import annotations

import hashlib
import re
from datetime import datetime, timezone
from typing import Any

LOG_SCHEMA_VERSION = "2026-10-19.v1"

SCHEMA_BLOCK_DECISION = "block_decision.v1"

_STAGE_PREFIX: dict[str, str] = {
    "guard": "GUARD",
    "service_head": "HEAD",
    "cooldown": "COOLDOWN",
    "load_pages": "LOAD",
    "build_batch": "BATCH",
    "submit": "EXEC",
    "error": "ERROR",
    "unknown": "UNKNOWN",
}

_REASON_CODE_OVERRIDES: dict[str, str] = {
    "busy": "GUARD_BUSY",
    "service_head_active": "HEAD_ACTIVE",
    "cooldown": "COOLDOWN_ACTIVE",
    "no_pages": "LOAD_NO_PAGES",
    "decode_error": "LOAD_DECODE_ERROR",
    "empty_batch": "BATCH_EMPTY",
    "submitted": "EXEC_SUBMITTED",
    "dry_run": "EXEC_DRY_RUN",
    "submit_failed": "EXEC_SUBMIT_FAILED",
    "block_error": "ERROR_BLOCK",
}

REASON_CODE_TAXONOMY: dict[str, dict[str, str]] = {
    "GUARD_BUSY": {"severity": "INFO", "category": "guard", "title": "Previous block still processing"},
    "HEAD_ACTIVE": {"severity": "INFO", "category": "service_head", "title": "Chain is servicing the queue"},
    "COOLDOWN_ACTIVE": {"severity": "INFO", "category": "cooldown", "title": "Cooldown active"},
    "LOAD_NO_PAGES": {"severity": "INFO", "category": "load", "title": "No queue pages"},
    "LOAD_DECODE_ERROR": {"severity": "ERROR", "category": "load", "title": "Queue page decoding failed"},
    "BATCH_EMPTY": {"severity": "INFO", "category": "batch", "title": "No eligible pages"},
    "EXEC_SUBMITTED": {"severity": "INFO", "category": "execute", "title": "Forced batch submitted"},
    "EXEC_DRY_RUN": {"severity": "INFO", "category": "execute", "title": "Forced batch built in dry-run mode"},
    "EXEC_SUBMIT_FAILED": {"severity": "WARN", "category": "execute", "title": "Forced batch submission failed"},
    "ERROR_BLOCK": {"severity": "ERROR", "category": "error", "title": "Block processing failed"},
}


def _safe_int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except Exception:
        return int(default)


def _as_ts(value: Any) -> float:
    if isinstance(value, (int, float)):
        return float(value)
    return datetime.now(timezone.utc).timestamp()


def _iso_from_ts(ts: float) -> str:
    return datetime.fromtimestamp(float(ts), tz=timezone.utc).isoformat()


def _normalize_reason_text(value: Any) -> str:
    text = str(value or "").strip().lower()
    if not text:
        return ""
    text = re.sub(r"[^a-z0-9]+", "_", text)
    return re.sub(r"_+", "_", text).strip("_")


def _sanitize_code_token(value: str) -> str:
    text = re.sub(r"[^A-Z0-9]+", "_", str(value or "").strip().upper())
    text = re.sub(r"_+", "_", text).strip("_")
    return text or "UNKNOWN"


def _stage_prefix(value: Any) -> str:
    stage = _normalize_reason_text(value) or "unknown"
    return _STAGE_PREFIX.get(stage, "UNKNOWN")


def reason_code_for_event(*, reason: Any, decision_stage: Any = "") -> str:
    normalized_reason = _normalize_reason_text(reason)
    if not normalized_reason:
        return "UNKNOWN"
    override = _REASON_CODE_OVERRIDES.get(normalized_reason)
    if override:
        return override
    return f"{_stage_prefix(decision_stage)}_{_sanitize_code_token(normalized_reason)}"


def reason_code_meta(code: str) -> dict[str, str]:
    key = _sanitize_code_token(code)
    if key in REASON_CODE_TAXONOMY:
        return dict(REASON_CODE_TAXONOMY[key])
    return {
        "severity": "INFO",
        "category": "unknown",
        "title": key.replace("_", " ").title(),
    }


def _digest_seed(*parts: Any) -> str:
    seed = "|".join(str(p or "").strip() for p in parts)
    return hashlib.sha1(seed.encode("utf-8", errors="ignore")).hexdigest()


def _decision_id(payload: dict[str, Any], *, run_tag: str) -> str:
    return (
        "dec_"
        + _digest_seed(
            run_tag,
            payload.get("block", ""),
            payload.get("decision_stage", ""),
            payload.get("decision", ""),
            payload.get("reason", ""),
            f"{payload['ts']:.6f}",
        )[:20]
    )


def stamp_event(
    event: dict[str, Any],
    *,
    schema_name: str,
    event_type: str,
    run_tag: str = "",
) -> dict[str, Any]:
    payload = dict(event or {})
    ts = _as_ts(payload.get("ts"))
    payload["ts"] = ts
    payload["timestamp"] = _iso_from_ts(ts)
    payload["schema_version"] = LOG_SCHEMA_VERSION
    payload["schema_name"] = schema_name
    payload["event_type"] = event_type
    if run_tag:
        payload["run_tag"] = str(run_tag)
    payload["decision_id"] = _decision_id(payload, run_tag=run_tag)
    return payload


def block_decision_event(event: dict[str, Any], *, run_tag: str = "") -> dict[str, Any]:
    payload = stamp_event(
        event,
        schema_name=SCHEMA_BLOCK_DECISION,
        event_type="block_decision",
        run_tag=run_tag,
    )
    payload["block"] = str(payload.get("block", "") or "")
    payload.setdefault("decision_stage", "unknown")
    payload.setdefault("decision", "unknown")
    payload["reason"] = str(payload.get("reason", "") or "")
    payload["cooldown"] = _safe_int(payload.get("cooldown", 0), 0)
    payload["banned_count"] = max(0, _safe_int(payload.get("banned_count", 0), 0))
    payload["pages"] = max(0, _safe_int(payload.get("pages", 0), 0))
    payload["batch_size"] = max(0, _safe_int(payload.get("batch_size", 0), 0))
    payload["reason_code"] = reason_code_for_event(
        reason=payload["reason"],
        decision_stage=payload["decision_stage"],
    )
    meta = reason_code_meta(payload["reason_code"])
    payload["reason_severity"] = meta["severity"]
    payload["reason_category"] = meta["category"]
    return payload
