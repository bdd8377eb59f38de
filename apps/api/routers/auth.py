"""
Authentication router: registration, login and current-user profile.
"""

import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from werkzeug.security import check_password_hash, generate_password_hash

from database import get_db
from models.user import User
from routers.auth_scope import AuthContext, get_auth_context
from services.files import serialize_user_summary
from services.session_token import create_session_token

router = APIRouter()
logger = logging.getLogger(__name__)


class RegisterRequest(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    email: str = Field(min_length=3, max_length=254, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    password: str = Field(min_length=6, max_length=128)
    avatar: Optional[str] = None


class LoginRequest(BaseModel):
    email: str
    password: str


def _session_payload(user: User) -> dict:
    session = create_session_token(user.id, user.email)
    return {
        "token": session["token"],
        "expires_at": session["expires_at"],
        "user": serialize_user_summary(user),
    }


@router.post("/register", status_code=201)
async def register(
    request: RegisterRequest,
    db: AsyncSession = Depends(get_db),
):
    """Create an account and return a session token."""
    email = request.email.strip().lower()
    existing = await db.execute(select(User).where(func.lower(User.email) == email))
    if existing.scalar_one_or_none():
        raise HTTPException(status_code=400, detail="Email already exists")

    user = User(
        id=str(uuid.uuid4()),
        name=request.name.strip(),
        email=email,
        password=generate_password_hash(request.password),
        avatar=request.avatar,
    )
    db.add(user)
    await db.commit()
    await db.refresh(user)

    logger.info("register user=%s", user.id)
    return _session_payload(user)


@router.post("/login")
async def login(
    request: LoginRequest,
    db: AsyncSession = Depends(get_db),
):
    email = request.email.strip().lower()
    result = await db.execute(select(User).where(func.lower(User.email) == email))
    user = result.scalar_one_or_none()
    if not user or not check_password_hash(user.password, request.password):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return _session_payload(user)


@router.get("/profile")
@router.get("/me")
async def get_profile(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Current user's public profile."""
    user = await db.get(User, auth.user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    payload = serialize_user_summary(user)
    payload["created_at"] = user.created_at.isoformat() if user.created_at else None
    return payload
