"""
Users router: directory listing and search for picking share targets.
"""

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import or_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from database import get_db
from models.user import User
from routers.auth_scope import AuthContext, get_auth_context
from services.files import serialize_user_summary

router = APIRouter()

DIRECTORY_LIMIT = 50
SEARCH_LIMIT = 10
SEARCH_MIN_CHARS = 2


@router.get("/search")
async def search_users(
    q: str = Query(default=""),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Match other users by name or email (case-insensitive)."""
    term = q.strip()
    if len(term) < SEARCH_MIN_CHARS:
        return []

    literal = term.lower().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    pattern = f"%{literal}%"
    result = await db.execute(
        select(User)
        .where(
            User.id != auth.user_id,
            or_(
                User.email.ilike(pattern, escape="\\"),
                User.name.ilike(pattern, escape="\\"),
            ),
        )
        .order_by(User.name.asc())
        .limit(SEARCH_LIMIT)
    )
    return [serialize_user_summary(user) for user in result.scalars().all()]


@router.get("")
async def list_users(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Everyone except the caller, sorted by name."""
    result = await db.execute(
        select(User)
        .where(User.id != auth.user_id)
        .order_by(User.name.asc())
        .limit(DIRECTORY_LIMIT)
    )
    return [serialize_user_summary(user) for user in result.scalars().all()]


@router.get("/{user_id}")
async def get_user(
    user_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    user = await db.get(User, user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return serialize_user_summary(user)
