"""
Audit router exposing the file activity trail.
"""

import logging
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from database import get_db
from models.audit_log import AuditLog
from models.file import File
from routers.auth_scope import AuthContext, get_auth_context
from services.access import as_utc
from services.files import serialize_user_summary

router = APIRouter()
logger = logging.getLogger(__name__)


def _serialize_entry(entry: AuditLog) -> Dict[str, Any]:
    user = serialize_user_summary(entry.user)
    timestamp = as_utc(entry.timestamp)
    return {
        "id": entry.id,
        "action": entry.action,
        "details": entry.details,
        "ip_address": entry.ip_address,
        "timestamp": timestamp.isoformat() if timestamp else None,
        "user": {k: user[k] for k in ("id", "name", "email")} if user else None,
        "file": (
            {
                "id": entry.file.id,
                "original_name": entry.file.original_name,
                "mime_type": entry.file.mime_type,
            }
            if entry.file
            else None
        ),
    }


@router.get("/file/{file_id}")
async def get_file_audit_logs(
    file_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
) -> List[Dict[str, Any]]:
    """Audit trail of one file, visible to its owner only."""
    file = await db.get(File, file_id)
    if not file:
        raise HTTPException(status_code=404, detail="File not found")
    if str(file.owner_id) != str(auth.user_id):
        raise HTTPException(status_code=403, detail="Access denied")

    try:
        result = await db.execute(
            select(AuditLog)
            .where(AuditLog.file_id == file_id)
            .order_by(AuditLog.timestamp.desc())
            .limit(settings.AUDIT_LOG_LIMIT)
        )
        entries = result.scalars().all()
    except Exception:
        logger.exception("Failed to fetch audit logs for file=%s", file_id)
        raise HTTPException(status_code=500, detail="Error fetching audit logs")
    return [_serialize_entry(entry) for entry in entries]


@router.get("/my-activity")
async def get_my_activity(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
) -> List[Dict[str, Any]]:
    """The caller's own recent actions."""
    try:
        result = await db.execute(
            select(AuditLog)
            .where(AuditLog.user_id == auth.user_id)
            .order_by(AuditLog.timestamp.desc())
            .limit(settings.AUDIT_LOG_LIMIT)
        )
        entries = result.scalars().all()
    except Exception:
        logger.exception("Failed to fetch activity for user=%s", auth.user_id)
        raise HTTPException(status_code=500, detail="Error fetching activity logs")
    return [_serialize_entry(entry) for entry in entries]
