"""Audit log writer and batch audit sinks."""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

from sqlalchemy.orm import Session

from cashflow_ingest.core.config import get_settings
from cashflow_ingest.models.records import AuditLog

logger = logging.getLogger(__name__)

PII_REDACTION_FALLBACK_FIELDS = {
    "phone",
    "email",
    "address",
    "tax_id",
    "cpf",
    "cnpj",
}

BATCH_COMPLETED_ACTION = "INGEST_BATCH_COMPLETED"


def _redact_pii(value: Any, redact_keys: set[str]) -> Any:
    if isinstance(value, dict):
        redacted = {}
        for key, item in value.items():
            if str(key).lower() in redact_keys:
                redacted[key] = "[REDACTED]"
            else:
                redacted[key] = _redact_pii(item, redact_keys)
        return redacted
    if isinstance(value, list):
        return [_redact_pii(item, redact_keys) for item in value]
    return value


def create_audit_log(
    db: Session,
    *,
    entity_type: str,
    entity_id: str,
    action: str,
    old_value: Optional[dict[str, Any]],
    new_value: Optional[dict[str, Any]],
    actor_type: str,
    actor_id: Optional[str],
    team_id: Optional[str] = None,
    metadata: Optional[dict[str, Any]] = None,
) -> None:
    settings = get_settings()
    if settings.pii_redaction_enabled:
        configured = {item.lower() for item in settings.pii_redaction_fields}
        redact_keys = configured or set(PII_REDACTION_FALLBACK_FIELDS)
        old_value = _redact_pii(old_value, redact_keys)
        new_value = _redact_pii(new_value, redact_keys)
        if metadata is not None:
            metadata = _redact_pii(metadata, redact_keys)

    log = AuditLog(
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        old_value=old_value,
        new_value=new_value,
        actor_type=actor_type,
        actor_id=actor_id,
        team_id=team_id,
        audit_meta=metadata,
    )
    db.add(log)


@dataclass(frozen=True)
class AuditEvent:
    """One summary event per completed batch."""

    batch_id: str
    team_id: str
    actor_id: Optional[str]
    summary: dict[str, Any]
    metadata: dict[str, Any] = field(default_factory=dict)


class AuditSink(Protocol):
    def emit(self, event: AuditEvent) -> None: ...


class SqlAuditSink:
    def __init__(self, db: Session) -> None:
        self.db = db

    def emit(self, event: AuditEvent) -> None:
        create_audit_log(
            self.db,
            entity_type="ingest_batch",
            entity_id=event.batch_id,
            action=BATCH_COMPLETED_ACTION,
            old_value=None,
            new_value=event.summary,
            actor_type="USER" if event.actor_id else "SYSTEM",
            actor_id=event.actor_id,
            team_id=event.team_id,
            metadata=event.metadata,
        )


class MemoryAuditSink:
    def __init__(self) -> None:
        self.events: list[AuditEvent] = []

    def emit(self, event: AuditEvent) -> None:
        self.events.append(event)
