"""
Audit logging for token endpoint outcomes. No tokens, secrets or request bodies are recorded.
"""
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from op_server.models import AuditLog

logger = logging.getLogger(__name__)

EVENT_TOKEN_ISSUED = "token_issued"
EVENT_TOKEN_REFRESHED = "token_refreshed"
EVENT_TOKEN_DENIED = "token_denied"

OUTCOME_SUCCESS = "success"
OUTCOME_FAIL = "fail"


def log_audit(
    db: Session,
    event_type: str,
    *,
    client_id: str | None = None,
    error: str | None = None,
    outcome: str = OUTCOME_SUCCESS,
) -> None:
    """Append one audit record. The response has already been decided, so a failed write is only logged."""
    try:
        db.add(AuditLog(event_type=event_type, client_id=client_id, error=error, outcome=outcome))
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Could not write audit record %s for client_id=%s", event_type, client_id)


def recent_events(db: Session, *, limit: int = 100, client_id: str | None = None) -> list[dict]:
    """Most recent first."""
    q = db.query(AuditLog).order_by(AuditLog.id.desc())
    if client_id:
        q = q.filter(AuditLog.client_id == client_id)
    return [
        {
            "created_at": r.created_at.isoformat() if r.created_at else None,
            "event_type": r.event_type,
            "client_id": r.client_id,
            "error": r.error,
            "outcome": r.outcome,
        }
        for r in q.limit(min(limit, 500)).all()
    ]
