"""Authentication dependencies resolving the calling user."""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException, Query
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from services.session_token import decode_session_token


auth_scheme = HTTPBearer(auto_error=False)


@dataclass
class AuthContext:
    user_id: str
    email: Optional[str] = None


def _context_from_token(token: str) -> AuthContext:
    try:
        payload = decode_session_token(token)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc

    return AuthContext(
        user_id=str(payload.get("sub", "")),
        email=str(payload.get("email", "")) or None,
    )


async def get_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> AuthContext:
    """Resolve authenticated user from Bearer session token."""
    if not credentials or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Missing Bearer session token.")
    return _context_from_token(credentials.credentials)


async def get_download_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
    token: Optional[str] = Query(default=None),
) -> AuthContext:
    """Like ``get_auth_context`` but also accepts ``?token=`` for browser downloads."""
    if credentials and credentials.scheme.lower() == "bearer":
        return _context_from_token(credentials.credentials)
    if token:
        return _context_from_token(token)
    raise HTTPException(status_code=401, detail="Missing Bearer session token.")
