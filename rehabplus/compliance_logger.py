import json
import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError

from . import models
from .database import SessionLocal


def _json_safe(values: Optional[dict]) -> Optional[dict]:
    """Coerce dates, decimals and enums so the row fits a JSON column"""
    if values is None:
        return None

    def default(obj):
        if isinstance(obj, (datetime, date)):
            return obj.isoformat()
        if isinstance(obj, Decimal):
            return float(obj)
        if hasattr(obj, "value"):
            return obj.value
        return str(obj)

    return json.loads(json.dumps(values, default=default))


class ComplianceLogger:
    """Audit logger that stores every event in the audit_logs table."""

    def __init__(self):
        self.logger = logging.getLogger(__name__)

    def log_event(
        self,
        user_id: Optional[int],
        action: str,
        entity_type: str,
        entity_id: Optional[int] = None,
        details: Optional[str] = None,
        old_values: Optional[dict] = None,
        new_values: Optional[dict] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        **_: Any
    ) -> None:
        """Write one audit row in its own session.

        Failures are logged and never propagate to the request.
        """
        db = SessionLocal()
        try:
            db.add(models.AuditLog(
                user_id=user_id,
                action=(action or "UNKNOWN").upper(),
                entity_type=(entity_type or "GENERAL").upper(),
                entity_id=entity_id,
                details=details,
                old_values=_json_safe(old_values),
                new_values=_json_safe(new_values),
                ip_address=ip_address,
                user_agent=user_agent,
                timestamp=datetime.now(),
            ))
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            self.logger.error(f"Failed to save audit log: {e}")
        finally:
            db.close()


# Singleton instance for global import
compliance_logger = ComplianceLogger()
