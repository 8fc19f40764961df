"""Structured JSONL audit trail for trial and stake events."""

from __future__ import annotations

import hashlib
import json
import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from core.event_bus import (
    SESSION_RESERVED,
    SESSION_SETTLED,
    TRIAL_FAILED,
    TRIAL_PASSED,
    TRIAL_STARTED,
    EventBus,
)

AUDITED_EVENTS = [TRIAL_STARTED, TRIAL_PASSED, TRIAL_FAILED, SESSION_RESERVED, SESSION_SETTLED]


class AuditLogger:
    """Writes committed engine events as JSON lines."""

    def __init__(self, log_path: Path) -> None:
        self.log_path = log_path
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        self.logger = logging.getLogger("rankup.audit")
        self.logger.setLevel(logging.INFO)

    @staticmethod
    def _digest(payload: dict[str, Any]) -> str:
        encoded = json.dumps(payload, sort_keys=True, default=str).encode("utf-8")
        return hashlib.sha256(encoded).hexdigest()

    def log(self, event: str, payload: dict[str, Any]) -> None:
        """Append one JSONL audit record."""
        record = {
            "timestamp": datetime.now(UTC).isoformat(),
            "event": event,
            "owner_id": payload.get("owner_id"),
            "reference_id": payload.get("id"),
            "status": payload.get("status"),
            "payload": payload,
            "payload_hash": self._digest(payload),
        }
        line = json.dumps(record, ensure_ascii=True, default=str)
        with self.log_path.open("a", encoding="utf-8") as fh:
            fh.write(line + "\n")
        self.logger.info(line)

    def attach(self, event_bus: EventBus) -> None:
        event_bus.subscribe_many(AUDITED_EVENTS, self.log)

    def read(self, limit: int | None = None) -> list[dict[str, Any]]:
        if not self.log_path.exists():
            return []
        with self.log_path.open("r", encoding="utf-8") as fh:
            records = [json.loads(line) for line in fh if line.strip()]
        return records[-limit:] if limit else records
