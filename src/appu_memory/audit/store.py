"""Async JSONL audit logger."""

from __future__ import annotations

import asyncio
import logging
from functools import partial
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from appu_memory.audit.schemas import AuditEvent
from appu_memory.audit.schemas import AuditEventType
from appu_memory.config import AuditConfig

logger = logging.getLogger(__name__)


class AuditLogger:
    """Append-only JSONL audit log with async I/O.

    File access runs in ``asyncio.to_thread`` behind an ``asyncio.Lock`` so
    concurrent consolidation runs never interleave partial lines.  A
    disabled logger accepts every call and writes nothing.
    """

    def __init__(self, config: AuditConfig) -> None:
        self.config = config
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    async def log(self, event: AuditEvent) -> None:
        """Append *event* as a single JSON line to the audit file."""
        if not self.config.enabled:
            return
        line = event.model_dump_json() + "\n"
        async with self._lock:
            await asyncio.to_thread(
                partial(self._append, self.config.file_path, line),
            )

    async def record(
        self,
        event_type: AuditEventType,
        *,
        child_id: int | None = None,
        **payload: Any,
    ) -> None:
        """Build and log an event; I/O errors are logged, never raised."""
        try:
            await self.log(
                AuditEvent(event_type=event_type, child_id=child_id, payload=payload)
            )
        except OSError:
            logger.exception("Failed to write %s audit event", event_type.value)

    @staticmethod
    def _append(path: str, line: str) -> None:
        with open(path, "a", encoding="utf-8") as fh:
            fh.write(line)

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    async def read_events(
        self,
        *,
        event_type: AuditEventType | None = None,
        child_id: int | None = None,
        since: float | None = None,
    ) -> list[AuditEvent]:
        """Read events back from the audit file, optionally filtered."""
        path = Path(self.config.file_path)
        if not path.exists():
            return []

        async with self._lock:
            raw = await asyncio.to_thread(path.read_text, encoding="utf-8")
        events: list[AuditEvent] = []
        for line_no, line in enumerate(raw.strip().splitlines(), start=1):
            try:
                evt = AuditEvent.model_validate_json(line)
            except ValidationError:
                logger.warning(
                    "Skipping malformed audit line %d in %s",
                    line_no,
                    path,
                )
                continue
            if event_type is not None and evt.event_type != event_type:
                continue
            if child_id is not None and evt.child_id != child_id:
                continue
            if since is not None and evt.timestamp < since:
                continue
            events.append(evt)
        return events
