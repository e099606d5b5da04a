from __future__ import annotations

import json
import logging
from dataclasses import asdict
from typing import Protocol

from xpos.domain.models import AuditEvent, Severity

log = logging.getLogger("xpos.audit")

_LEVELS = {
    Severity.INFO: logging.INFO,
    Severity.WARNING: logging.WARNING,
    Severity.CRITICAL: logging.CRITICAL,
}


class AuditSink(Protocol):
    def record(self, event: AuditEvent) -> None: ...


class LoggingAuditSink:
    """Writes each event as one JSON object on the ``xpos.audit`` logger."""

    def record(self, event: AuditEvent) -> None:
        payload = asdict(event)
        payload["severity"] = event.severity.value
        log.log(_LEVELS[event.severity], json.dumps(payload, ensure_ascii=False, default=str, sort_keys=True))


class NullAuditSink:
    def record(self, event: AuditEvent) -> None:
        return None
