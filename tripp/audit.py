"""Best-effort audit logging.

Audit writes must never change a request's outcome, so every failure here
is logged and dropped.
"""
from typing import Optional
from datetime import datetime, timezone
import logging
import time

from tripp.models import AuditRecord
from tripp.utils import redact_pii

logger = logging.getLogger(__name__)


class AuditLogger:
    def __init__(self, store):
        self.store = store

    def record(
        self,
        route: str,
        status: int,
        client_id: Optional[str] = None,
        user_id: Optional[str] = None,
        session_id: Optional[str] = None,
        started_at: Optional[float] = None,
        error: Optional[str] = None,
    ) -> None:
        latency_ms = int((time.monotonic() - started_at) * 1000) if started_at is not None else None
        record = AuditRecord(
            route=route,
            status=status,
            client_id=client_id,
            user_id=user_id,
            session_id=session_id,
            latency_ms=latency_ms,
            error=redact_pii(error),
            created_at=datetime.now(timezone.utc),
        )
        try:
            self.store.insert_audit(record)
        except Exception as e:
            logger.warning("Audit write failed for %s (%s): %s", route, status, e)
