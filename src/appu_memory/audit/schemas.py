"""Audit event types and data models."""

from __future__ import annotations

import time
from enum import Enum
from typing import Any

from pydantic import BaseModel
from pydantic import Field


class AuditEventType(str, Enum):
    """Memory lifecycle events worth keeping a trail of."""

    MEMORY_CREATED = "MEMORY_CREATED"
    MEMORY_MERGED = "MEMORY_MERGED"
    MEMORY_ARCHIVED = "MEMORY_ARCHIVED"
    MEMORY_DELETED = "MEMORY_DELETED"
    CONSOLIDATION_RUN = "CONSOLIDATION_RUN"
    INSIGHT_DERIVED = "INSIGHT_DERIVED"


class AuditEvent(BaseModel):
    """A single immutable audit log entry."""

    model_config = {"frozen": True}

    timestamp: float = Field(
        default_factory=time.time,
        description="Unix epoch when the event occurred.",
    )
    event_type: AuditEventType = Field(
        description="Category of the audited action.",
    )
    child_id: int | None = Field(
        default=None,
        description="Child whose memories were touched, if any.",
    )
    payload: dict[str, Any] = Field(
        default_factory=dict,
        description="Event-specific data (memory ids, counts, ...).",
    )
