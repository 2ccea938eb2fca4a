"""
System Control Service - emergency pause switch
While paused, new swap submissions are rejected before any record is created.
"""

import logging
from datetime import datetime, timezone
from typing import Dict, Any, Optional, Tuple

from database import managed_session
from models import SystemSettings
from services.audit_logger import get_audit_logger

logger = logging.getLogger(__name__)

SETTINGS_ROW_ID = 1


class SystemControlService:
    """Reads and flips the single system_settings row"""

    def __init__(self, session_factory=None):
        self.session_factory = session_factory
        self.audit = get_audit_logger()

    def _load(self, session) -> SystemSettings:
        settings = session.get(SystemSettings, SETTINGS_ROW_ID)
        if settings is None:
            settings = SystemSettings(id=SETTINGS_ROW_ID, system_paused=False)
            session.add(settings)
            session.flush()
        return settings

    def pause_state(self) -> Tuple[bool, Optional[str]]:
        with managed_session(self.session_factory) as session:
            settings = session.get(SystemSettings, SETTINGS_ROW_ID)
            if settings is None:
                return False, None
            return bool(settings.system_paused), settings.pause_reason

    def get_status(self) -> Dict[str, Any]:
        with managed_session(self.session_factory) as session:
            return self._to_dict(self._load(session))

    def pause(self, reason: str, admin: str) -> Dict[str, Any]:
        if not reason or not reason.strip():
            raise ValueError("A pause reason is required")

        with managed_session(self.session_factory) as session:
            settings = self._load(session)
            settings.system_paused = True
            settings.pause_reason = reason.strip()
            settings.paused_by = admin
            settings.paused_at = datetime.now(timezone.utc)
            status = self._to_dict(settings)

        logger.critical(f"🛑 SYSTEM_PAUSED by {admin}: {reason}")
        self.audit.record("system_paused", actor=admin, source="admin", details={"reason": reason})
        return status

    def resume(self, admin: str) -> Dict[str, Any]:
        with managed_session(self.session_factory) as session:
            settings = self._load(session)
            previous_reason = settings.pause_reason
            settings.system_paused = False
            settings.pause_reason = None
            settings.resumed_by = admin
            settings.resumed_at = datetime.now(timezone.utc)
            status = self._to_dict(settings)

        logger.warning(f"▶️ SYSTEM_RESUMED by {admin}")
        self.audit.record(
            "system_resumed", actor=admin, source="admin", details={"previous_reason": previous_reason}
        )
        return status

    @staticmethod
    def _to_dict(settings: SystemSettings) -> Dict[str, Any]:
        return {
            "systemPaused": bool(settings.system_paused),
            "pauseReason": settings.pause_reason,
            "pausedBy": settings.paused_by,
            "pausedAt": settings.paused_at.isoformat() if settings.paused_at else None,
            "resumedBy": settings.resumed_by,
            "resumedAt": settings.resumed_at.isoformat() if settings.resumed_at else None,
        }


# Global service instance
system_control_service = SystemControlService()


def get_system_control_service() -> SystemControlService:
    return system_control_service
