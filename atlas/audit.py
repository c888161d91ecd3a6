"""
ATLAS Audit Sink

Append-only JSONL audit trail.

CONSTRAINTS:
- APPEND-ONLY: records are never modified or deleted
- FSYNC: every write is fsync'd
- FIRE-AND-FORGET: a failed write is logged and swallowed; callers never
  inspect audit failures and never roll back because of one
"""

import json
import logging
import os
from pathlib import Path
from typing import Optional, Dict, Any, List

from .models import Actor, AuditRecord

logger = logging.getLogger("audit")


class AuditSink:
    """JSONL audit log. One instance per application, injected into services."""

    def __init__(self, log_path: Path):
        self._log_path = Path(log_path)

    @property
    def log_path(self) -> Path:
        return self._log_path

    # -------------------------------------------------------------------------
    # Write (Append-Only)
    # -------------------------------------------------------------------------

    def record(self, entry: AuditRecord) -> None:
        try:
            self._append_record(entry.to_dict())
        except Exception as e:
            logger.critical(f"AUDIT LOG FAILURE: {e} (action={entry.action}, target={entry.target_table}/{entry.target_id})")

    def record_action(
        self,
        actor: Actor,
        action: str,
        target_table: str,
        target_id: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.record(AuditRecord(
            actor_id=actor.actor_id,
            actor_name=actor.display_name,
            action=action,
            target_table=target_table,
            target_id=target_id,
            metadata=metadata or {},
        ))

    # -------------------------------------------------------------------------
    # Read (Read-Only)
    # -------------------------------------------------------------------------

    def recent(
        self,
        limit: int = 100,
        actor_id: Optional[str] = None,
        target_id: Optional[str] = None,
    ) -> List[AuditRecord]:
        """Most recent records first."""
        records = []
        for data in reversed(self._read_records()):
            if actor_id and data.get("actor_id") != actor_id:
                continue
            if target_id and data.get("target_id") != target_id:
                continue
            records.append(AuditRecord.from_dict(data))
            if len(records) >= limit:
                break
        return records

    # -------------------------------------------------------------------------
    # Storage
    # -------------------------------------------------------------------------

    def _append_record(self, record: Dict[str, Any]) -> None:
        self._log_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self._log_path, "a") as f:
            f.write(json.dumps(record, default=str) + "\n")
            f.flush()
            os.fsync(f.fileno())

    def _read_records(self) -> List[Dict[str, Any]]:
        if not self._log_path.exists():
            return []

        records = []
        with open(self._log_path, "r") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    records.append(json.loads(line))
                except json.JSONDecodeError:
                    # Skip malformed lines
                    continue
        return records
