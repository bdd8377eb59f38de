"""Best-effort audit trail writer."""

from __future__ import annotations

import logging
from typing import Optional

from database import async_session_maker
from models.audit_log import AUDIT_ACTIONS, AuditLog


logger = logging.getLogger(__name__)


async def record_event(
    *,
    file_id: str,
    user_id: str,
    action: str,
    details: Optional[str] = None,
    ip_address: Optional[str] = None,
) -> Optional[AuditLog]:
    """Append one audit entry in its own session.

    Never raises: a failed write is logged and ``None`` is returned so the
    triggering request keeps its outcome.
    """
    try:
        if action not in AUDIT_ACTIONS:
            raise ValueError(f"Unknown audit action: {action}")
        entry = AuditLog(
            file_id=file_id,
            user_id=user_id,
            action=action,
            details=details,
            ip_address=ip_address,
        )
        async with async_session_maker() as session:
            session.add(entry)
            await session.commit()
        return entry
    except Exception:
        logger.exception(
            "Failed to create audit log action=%s file=%s user=%s",
            action,
            file_id,
            user_id,
        )
        return None
