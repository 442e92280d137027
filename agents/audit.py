import json
import logging

from sqlalchemy.exc import SQLAlchemyError

from database import db, SqlGenerationLog
from utils import create_hash

logger = logging.getLogger(__name__)


class SqlAuditLogger:
    """
    Writes one sql_generation_logs row per terminal decision. Best effort:
    a database error is logged and rolled back, the request still succeeds.
    """

    def __init__(self, model=None):
        self.model = model

    def log(self, decision, request_id, question, user_identifier=None, duration_ms=None):
        user_hash = create_hash(user_identifier)
        metadata = {
            "iterations": decision.trace_dicts(),
            "iteration_count": decision.iteration_count,
            "forced_completion": decision.forced_completion,
            "confidence": decision.confidence,
            "violations": [v.to_dict() for v in decision.violations],
            "model": self.model,
        }
        status = 'success' if decision.ok else 'failed'

        logger.info(
            "sql_generation request_id=%s status=%s user_hash=%s sql_hash=%s error_code=%s "
            "violation_code=%s iterations=%s forced=%s duration_ms=%s",
            request_id, status, user_hash, create_hash(decision.sql), decision.error_code,
            decision.violation_code, decision.iteration_count, decision.forced_completion, duration_ms,
        )

        entry = SqlGenerationLog(
            request_id=request_id,
            status=status,
            user_id_hash=user_hash,
            prompt=question,
            generated_sql=decision.sql,
            error_code=decision.error_code,
            violation_code=decision.violation_code,
            duration_ms=duration_ms,
            log_metadata=json.dumps(metadata, default=str),
        )
        try:
            db.session.add(entry)
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error("Failed to write sql_generation_logs row for request %s: %s", request_id, e)
            return None
        return entry

    def recent(self, limit=50):
        logs = SqlGenerationLog.query.order_by(SqlGenerationLog.created_at.desc()).limit(limit).all()
        return [{
            "id": l.id,
            "request_id": l.request_id,
            "status": l.status,
            "prompt": l.prompt,
            "sql": l.generated_sql,
            "error_code": l.error_code,
            "violation_code": l.violation_code,
            "duration_ms": l.duration_ms,
            "created_at": l.created_at.isoformat() if l.created_at else None,
        } for l in logs]
