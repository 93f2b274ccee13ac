"""Audit subsystem: append-only JSONL record of memory lifecycle events."""

from appu_memory.audit.schemas import AuditEvent
from appu_memory.audit.schemas import AuditEventType
from appu_memory.audit.store import AuditLogger

__all__ = [
    "AuditEvent",
    "AuditEventType",
    "AuditLogger",
]
