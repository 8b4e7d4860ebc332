"""
Audit trail: what happened to this vault on this machine.

``<home>/local/audit.log`` holds one JSON object per line, appended and
never rewritten. It lives in the machine-local subtree, so every
machine keeps its own trail and none of it is ever pushed.
"""

from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Iterable, Optional

from pydantic import BaseModel, Field

from .config import LOCAL_DIR, short_hostname
from .models import utcnow

logger = logging.getLogger("skvault.audit")

AUDIT_LOG_NAME = "audit.log"


class AuditEvent(str, Enum):
    """Every kind of event the vault records."""

    INIT = "INIT"
    COMMIT = "COMMIT"
    ROLLBACK = "ROLLBACK"
    SYNC_PUSH = "SYNC_PUSH"
    SYNC_PULL = "SYNC_PULL"
    SYNC_FAILED = "SYNC_FAILED"
    KEY_GENERATE = "KEY_GENERATE"
    KEY_ROTATE = "KEY_ROTATE"
    RULES_UPDATE = "RULES_UPDATE"


class AuditRecord(BaseModel):
    """One line of the audit log."""

    at: datetime = Field(default_factory=utcnow)
    event: AuditEvent
    detail: str
    host: str = Field(default_factory=short_hostname)
    data: dict[str, Any] = Field(default_factory=dict)


def audit_path(home: Path) -> Path:
    return home / LOCAL_DIR / AUDIT_LOG_NAME


def audit_event(
    home: Path,
    event: AuditEvent,
    detail: str,
    metadata: Optional[dict[str, Any]] = None,
) -> AuditRecord:
    """Append one record to the vault's audit log.

    Args:
        home: Vault home directory.
        event: What happened.
        detail: Human-readable description.
        metadata: Extra structured fields (content hash, counts).

    Returns:
        The record that was written.
    """
    record = AuditRecord(event=event, detail=detail, data=metadata or {})
    path = audit_path(home)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as f:
        f.write(record.model_dump_json() + "\n")
    logger.debug("Audit %s: %s", record.event.value, detail)
    return record


def read_audit_log(
    home: Path,
    events: Optional[Iterable[AuditEvent]] = None,
    limit: int = 0,
) -> list[AuditRecord]:
    """Read the audit log in write order.

    Lines that do not parse (a torn final write, a hand edit) are
    skipped with a warning.

    Args:
        home: Vault home directory.
        events: Only return these kinds of event.
        limit: Keep only the newest ``limit`` records (0 = all).
    """
    path = audit_path(home)
    if not path.exists():
        return []

    wanted = set(events) if events is not None else None
    records: list[AuditRecord] = []
    for lineno, line in enumerate(path.read_text(encoding="utf-8").splitlines(), start=1):
        if not line.strip():
            continue
        try:
            record = AuditRecord.model_validate_json(line)
        except ValueError:
            logger.warning("Skipping unreadable audit line %d in %s", lineno, path)
            continue
        if wanted is None or record.event in wanted:
            records.append(record)

    if limit > 0:
        records = records[-limit:]
    return records
