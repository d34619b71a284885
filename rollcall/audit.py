from __future__ import annotations

from typing import Any, Mapping, Optional

from .logger import setup_audit_logger


class LoggingAuditTrail:
    """Writes one JSON line per security event to ``audit.log``."""

    def __init__(self, name: str = "rollcall.audit"):
        self.logger = setup_audit_logger(name)

    def record_event(
        self,
        kind: str,
        severity: str,
        description: str,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self.logger.info(
            description,
            extra={"event": kind, "severity": severity, "details": dict(metadata or {})},
        )
