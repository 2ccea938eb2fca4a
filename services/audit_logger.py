"""
Audit Trail Writer
Every audit entry goes to the audit_logs table and to the 'audit' logger as one JSON line.
Writing an audit entry never raises into the caller.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Dict, Any, Optional

from config import Config
from database import managed_session
from models import AuditLog

logger = logging.getLogger(__name__)


def _json_default(value):
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


class AuditLogger:
    """Service for the swap settlement audit trail"""

    def __init__(self, session_factory=None):
        self.session_factory = session_factory
        self.audit_logger = logging.getLogger('audit')
        self.audit_logger.setLevel(logging.INFO)

        if Config.AUDIT_LOG_FILE and not self.audit_logger.handlers:
            audit_handler = logging.FileHandler(Config.AUDIT_LOG_FILE)
            audit_handler.setFormatter(logging.Formatter(
                '%(asctime)s [AUDIT] %(levelname)s - %(message)s'
            ))
            self.audit_logger.addHandler(audit_handler)

    def record(
        self,
        action: str,
        entity_id: Optional[str] = None,
        reference: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        actor: str = "system",
        source: Optional[str] = None,
    ) -> bool:
        """Persist an audit entry. Returns False when the write failed."""
        audit_entry = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'action': action,
            'entity_id': entity_id,
            'reference': reference,
            'actor': actor,
            'source': source,
            'details': details or {},
        }

        try:
            self.audit_logger.info(json.dumps(audit_entry, default=_json_default))
        except Exception as e:
            logger.error(f"❌ AUDIT_LOG_EMIT_FAILED: {action} ({reference}): {e}")

        try:
            # Round-trip through json so Decimal and datetime values fit the JSON column
            stored_details = json.loads(json.dumps(details or {}, default=_json_default))
            with managed_session(self.session_factory) as session:
                session.add(AuditLog(
                    action=action,
                    entity_id=entity_id,
                    reference=reference,
                    actor=actor,
                    source=source,
                    details=stored_details,
                ))
            return True
        except Exception as e:
            logger.error(f"❌ AUDIT_LOG_WRITE_FAILED: {action} ({reference}): {e}")
            return False


# Global audit logger instance
audit_logger = AuditLogger()


def get_audit_logger() -> AuditLogger:
    """Get the shared audit logger"""
    return audit_logger
