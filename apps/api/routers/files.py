"""
Files router: upload, listing, sharing, share links, download and delete.
"""

import logging
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, File as FastAPIFile, HTTPException, Request, UploadFile
from fastapi.responses import RedirectResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from models.user import User
from routers.auth_scope import AuthContext, get_auth_context, get_download_auth_context
from routers.rate_limit import client_ip
from services import files as file_service
from services import storage
from services.access import can_download, check_share_link, evaluate_access
from services.audit_log import record_event
from services.storage import StorageError

router = APIRouter()
logger = logging.getLogger(__name__)


class ShareWithUsersRequest(BaseModel):
    users: List[str] = Field(min_length=1)
    permission: Literal["view", "download"] = "view"


class ShareLinkRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    expires_in: Optional[int] = Field(default=None, ge=1, alias="expiresIn")  # seconds from now


class ShareLinkResponse(BaseModel):
    link_id: str
    link: str
    token: str
    expires_at: Optional[str] = None


class MessageResponse(BaseModel):
    message: str


@router.post("/upload", status_code=201)
async def upload_files(
    request: Request,
    files: Optional[List[UploadFile]] = FastAPIFile(default=None),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Upload up to MAX_FILES_PER_UPLOAD files to object storage."""
    if not files:
        raise HTTPException(status_code=400, detail="No files uploaded")
    if len(files) > settings.MAX_FILES_PER_UPLOAD:
        raise HTTPException(
            status_code=400,
            detail=f"Too many files. Upload at most {settings.MAX_FILES_PER_UPLOAD} at once.",
        )

    owner = await db.get(User, auth.user_id)
    if not owner:
        raise HTTPException(status_code=404, detail="User not found")

    # Validate everything before any bytes leave the process.
    payloads = []
    for upload in files:
        payloads.append((upload, await file_service.read_validated_upload(upload)))

    try:
        created = await file_service.store_uploaded_files(db, owner, payloads)
    except StorageError:
        logger.exception("Upload to object storage failed for user=%s", auth.user_id)
        raise HTTPException(status_code=500, detail="Error uploading files")
    except Exception:
        logger.exception("Failed to persist uploaded files for user=%s", auth.user_id)
        raise HTTPException(status_code=500, detail="Error uploading files")

    ip_address = client_ip(request)
    for file in created:
        await record_event(
            file_id=file.id,
            user_id=auth.user_id,
            action="upload",
            details=f"Uploaded {file.original_name}",
            ip_address=ip_address,
        )

    return {
        "message": f"{len(created)} file(s) uploaded successfully",
        "files": [file_service.serialize_file(file, auth.user_id) for file in created],
    }


@router.get("/my-files")
async def get_my_files(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """List the caller's files, newest first."""
    try:
        files = await file_service.list_owned_files(db, auth.user_id)
    except Exception:
        logger.exception("Failed to list files for user=%s", auth.user_id)
        raise HTTPException(status_code=500, detail="Error fetching files")
    return [file_service.serialize_file(file, auth.user_id) for file in files]


@router.get("/shared-with-me")
async def get_shared_with_me(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """List files other users shared with the caller."""
    try:
        files = await file_service.list_shared_files(db, auth.user_id)
    except Exception:
        logger.exception("Failed to list shared files for user=%s", auth.user_id)
        raise HTTPException(status_code=500, detail="Error fetching shared files")
    return [file_service.serialize_file(file, auth.user_id) for file in files]


@router.get("/link/{token}")
async def access_by_link(
    token: str,
    request: Request,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Open a file through a share link; any authenticated user may use it."""
    file = await file_service.find_file_by_link_token(db, token)
    if not file:
        raise HTTPException(status_code=404, detail="File not found or link is invalid")

    check = check_share_link(file, token)
    if not check.is_valid:
        raise HTTPException(
            status_code=403,
            detail={"reason": check.reason, "message": check.message},
        )

    await record_event(
        file_id=file.id,
        user_id=auth.user_id,
        action="view",
        details="Accessed via share link",
        ip_address=client_ip(request),
    )
    payload = file_service.serialize_file(file, auth.user_id)
    payload["share_link"] = {
        "id": check.link.id,
        "expires_at": file_service.serialize_share_link(check.link)["expires_at"],
    }
    return payload


@router.get("/{file_id}")
async def get_file(
    file_id: str,
    request: Request,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """File details for the owner or a shared user."""
    file = await file_service.get_active_file(db, file_id)

    if not evaluate_access(file, auth.user_id).has_access:
        raise HTTPException(status_code=403, detail="Access denied")

    await record_event(
        file_id=file.id,
        user_id=auth.user_id,
        action="view",
        ip_address=client_ip(request),
    )
    return file_service.serialize_file(file, auth.user_id)


@router.delete("/{file_id}", response_model=MessageResponse)
async def delete_file(
    file_id: str,
    request: Request,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Owner-only soft delete with best-effort object purge."""
    file = await file_service.get_active_file(db, file_id)
    file_service.ensure_owner(file, auth.user_id, "Only the owner can delete this file")

    try:
        await file_service.soft_delete_file(db, file)
    except Exception:
        logger.exception("Failed to delete file=%s", file_id)
        raise HTTPException(status_code=500, detail="Error deleting file")

    await record_event(
        file_id=file.id,
        user_id=auth.user_id,
        action="delete",
        details=f"Deleted {file.original_name}",
        ip_address=client_ip(request),
    )
    return MessageResponse(message="File deleted successfully")


@router.get("/{file_id}/download")
async def download_file(
    file_id: str,
    request: Request,
    auth: AuthContext = Depends(get_download_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Redirect an authorized caller to the stored object."""
    file = await file_service.get_active_file(db, file_id)

    decision = evaluate_access(file, auth.user_id)
    if not decision.has_access:
        raise HTTPException(status_code=403, detail="Access denied")
    if not can_download(decision, settings.ENFORCE_DOWNLOAD_PERMISSION):
        raise HTTPException(status_code=403, detail="You only have view permission for this file")

    url = await storage.download_url(file.filename, file.path, file.original_name)

    await record_event(
        file_id=file.id,
        user_id=auth.user_id,
        action="download",
        details=f"Downloaded {file.original_name}",
        ip_address=client_ip(request),
    )
    return RedirectResponse(url=url, status_code=302)


@router.post("/{file_id}/share")
async def share_file(
    file_id: str,
    body: ShareWithUsersRequest,
    request: Request,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Owner-only upsert of per-user share entries."""
    file = await file_service.get_active_file(db, file_id)
    file_service.ensure_owner(file, auth.user_id, "Only the owner can share this file")

    try:
        count = await file_service.share_with_users(db, file, body.users, body.permission)
    except HTTPException:
        raise
    except Exception:
        logger.exception("Failed to share file=%s", file_id)
        raise HTTPException(status_code=500, detail="Error sharing file")

    await record_event(
        file_id=file.id,
        user_id=auth.user_id,
        action="share",
        details=f"Shared with {count} user(s) ({body.permission})",
        ip_address=client_ip(request),
    )
    return file_service.serialize_file(file, auth.user_id)


@router.post("/{file_id}/share-link", response_model=ShareLinkResponse)
async def generate_share_link(
    file_id: str,
    request: Request,
    body: Optional[ShareLinkRequest] = None,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Owner-only creation of an opaque, optionally expiring share link."""
    file = await file_service.get_active_file(db, file_id)
    file_service.ensure_owner(file, auth.user_id, "Only the owner can generate share links")

    expires_in = body.expires_in if body else None
    try:
        link = await file_service.create_share_link(db, file, expires_in)
    except Exception:
        logger.exception("Failed to create share link for file=%s", file_id)
        raise HTTPException(status_code=500, detail="Error generating share link")

    expires_at = file_service.serialize_share_link(link)["expires_at"]
    await record_event(
        file_id=file.id,
        user_id=auth.user_id,
        action="share",
        details=f"Generated share link (expires: {expires_at})" if expires_at else "Generated share link",
        ip_address=client_ip(request),
    )
    return ShareLinkResponse(
        link_id=link.id,
        link=file_service.share_link_url(link.token),
        token=link.token,
        expires_at=expires_at,
    )


@router.delete("/{file_id}/share-link/{link_id}", response_model=MessageResponse)
async def revoke_share_link(
    file_id: str,
    link_id: str,
    request: Request,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Deactivate a share link; the row is kept for history."""
    file = await file_service.get_active_file(db, file_id)
    file_service.ensure_owner(file, auth.user_id, "Only the owner can revoke share links")

    await file_service.revoke_share_link(db, file, link_id)

    await record_event(
        file_id=file.id,
        user_id=auth.user_id,
        action="revoke",
        details="Revoked share link",
        ip_address=client_ip(request),
    )
    return MessageResponse(message="Share link revoked")


@router.delete("/{file_id}/share/{user_id}", response_model=MessageResponse)
async def revoke_user_access(
    file_id: str,
    user_id: str,
    request: Request,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Remove a user's share entry."""
    file = await file_service.get_active_file(db, file_id)
    file_service.ensure_owner(file, auth.user_id, "Only the owner can revoke user access")

    if not await file_service.revoke_user_access(db, file, user_id):
        raise HTTPException(status_code=404, detail="User does not have access to this file")

    await record_event(
        file_id=file.id,
        user_id=auth.user_id,
        action="revoke",
        details=f"Revoked access for user {user_id}",
        ip_address=client_ip(request),
    )
    return MessageResponse(message="User access revoked")
