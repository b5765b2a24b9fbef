"""JSONL sink for per-block controller decisions."""

from __future__ import annotations

import json
import logging
import os
from typing import Any

import config
from utils.log_contracts import block_decision_event

logger = logging.getLogger(__name__)


class BlockDecisionWriter:
    def __init__(self, path: str | None = None, *, enabled: bool | None = None, run_tag: str | None = None) -> None:
        self.enabled = bool(config.BLOCK_DECISIONS_LOG_ENABLED if enabled is None else enabled)
        raw = str(path or config.BLOCK_DECISIONS_LOG_FILE or "").strip()
        if not raw:
            raw = os.path.join("logs", "block_decisions.jsonl")
        self.path = os.path.abspath(raw)
        self.run_tag = str(config.RUN_TAG if run_tag is None else run_tag)

    def write(self, event: dict[str, Any]) -> None:
        if not self.enabled:
            return
        try:
            record = block_decision_event(dict(event), run_tag=self.run_tag)
            os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(json.dumps(record, ensure_ascii=False) + "\n")
        except Exception:
            logger.exception("BLOCK_DECISION_LOG write failed")
