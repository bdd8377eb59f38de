"""File lifecycle operations: listing, upload, sharing, share links and delete."""

from __future__ import annotations

import logging
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from fastapi import HTTPException, UploadFile
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.file import File
from models.file_share import FileShare
from models.share_link import ShareLink
from models.user import User
from services import storage
from services.access import as_utc, evaluate_access, find_share_entry
from services.storage import StorageError


logger = logging.getLogger(__name__)

UPLOAD_CHUNK_BYTES = 1024 * 1024


def _iso(value: Optional[datetime]) -> Optional[str]:
    value = as_utc(value)
    return value.isoformat() if value else None


def serialize_user_summary(user: Optional[User]) -> Optional[Dict[str, Any]]:
    if user is None:
        return None
    return {
        "id": user.id,
        "name": user.name,
        "email": user.email,
        "avatar": user.avatar,
    }


def serialize_share_link(link: ShareLink) -> Dict[str, Any]:
    return {
        "id": link.id,
        "token": link.token,
        "expires_at": _iso(link.expires_at),
        "created_at": _iso(link.created_at),
        "is_active": bool(link.is_active),
    }


def serialize_file(file: File, viewer_id: str) -> Dict[str, Any]:
    """Shape a file for ``viewer_id``; share links are only shown to the owner."""
    decision = evaluate_access(file, viewer_id)
    return {
        "id": file.id,
        "filename": file.filename,
        "original_name": file.original_name,
        "mime_type": file.mime_type,
        "size": file.size,
        "owner": serialize_user_summary(file.owner),
        "path": file.path,
        "upload_date": _iso(file.upload_date),
        "is_owner": decision.is_owner,
        "permission": decision.permission,
        "shared_with": [
            {
                "user": serialize_user_summary(entry.user),
                "permission": entry.permission,
                "shared_at": _iso(entry.shared_at),
            }
            for entry in file.shared_with
        ],
        "share_links": (
            [serialize_share_link(link) for link in file.share_links]
            if decision.is_owner
            else []
        ),
    }


async def get_active_file(db: AsyncSession, file_id: str) -> File:
    """Load a non-deleted file or raise 404."""
    result = await db.execute(
        select(File).where(File.id == file_id, File.is_deleted.is_(False))
    )
    file = result.scalar_one_or_none()
    if not file:
        raise HTTPException(status_code=404, detail="File not found")
    return file


def ensure_owner(file: File, user_id: str, detail: str = "Only the owner can modify this file") -> None:
    if str(file.owner_id) != str(user_id):
        raise HTTPException(status_code=403, detail=detail)


async def list_owned_files(db: AsyncSession, user_id: str) -> List[File]:
    result = await db.execute(
        select(File)
        .where(File.owner_id == user_id, File.is_deleted.is_(False))
        .order_by(File.upload_date.desc())
    )
    return list(result.scalars().all())


async def list_shared_files(db: AsyncSession, user_id: str) -> List[File]:
    result = await db.execute(
        select(File)
        .join(FileShare, FileShare.file_id == File.id)
        .where(FileShare.user_id == user_id, File.is_deleted.is_(False))
        .order_by(File.upload_date.desc())
    )
    return list(result.scalars().unique().all())


async def find_file_by_link_token(db: AsyncSession, token: str) -> Optional[File]:
    result = await db.execute(
        select(File)
        .join(ShareLink, ShareLink.file_id == File.id)
        .where(ShareLink.token == token, File.is_deleted.is_(False))
    )
    return result.scalars().first()


async def read_validated_upload(upload: UploadFile) -> bytes:
    """Read an uploaded part, rejecting disallowed types and oversize bodies with 400."""
    content_type = (upload.content_type or "").lower()
    if content_type not in settings.ALLOWED_MIME_TYPES:
        await upload.close()
        raise HTTPException(
            status_code=400,
            detail=f"File type {content_type or 'unknown'} is not allowed",
        )

    limit_mb = settings.MAX_UPLOAD_BYTES // (1024 * 1024)
    chunks: List[bytes] = []
    total_size = 0
    try:
        while True:
            chunk = await upload.read(UPLOAD_CHUNK_BYTES)
            if not chunk:
                break
            total_size += len(chunk)
            if total_size > settings.MAX_UPLOAD_BYTES:
                raise HTTPException(
                    status_code=400,
                    detail=f"File size exceeds {limit_mb}MB limit",
                )
            chunks.append(chunk)
    finally:
        await upload.close()
    return b"".join(chunks)


async def _discard_objects(keys: Iterable[str]) -> None:
    for key in keys:
        try:
            await storage.delete_object(key)
        except StorageError as exc:
            logger.warning("Could not cleanup orphaned object %s: %s", key, exc)


async def store_uploaded_files(
    db: AsyncSession,
    owner: User,
    payloads: List[Tuple[UploadFile, bytes]],
) -> List[File]:
    """Push every payload to storage, then create all File rows at once.

    If any object upload or the final commit fails, objects already pushed
    for this request are removed and no File row is left behind.
    """
    stored: List[Tuple[str, str, UploadFile, bytes]] = []
    try:
        for upload, content in payloads:
            key = storage.build_object_key(owner.id, upload.filename)
            url = await storage.upload_object(key, content, upload.content_type)
            stored.append((key, url, upload, content))
    except StorageError:
        await _discard_objects(key for key, _, _, _ in stored)
        raise

    files = [
        File(
            id=str(uuid.uuid4()),
            filename=key,
            original_name=upload.filename or "upload",
            mime_type=(upload.content_type or "").lower(),
            size=len(content),
            owner_id=owner.id,
            owner=owner,
            path=url,
            upload_date=datetime.now(timezone.utc),
            is_deleted=False,
            shared_with=[],
            share_links=[],
        )
        for key, url, upload, content in stored
    ]
    db.add_all(files)
    try:
        await db.commit()
    except Exception:
        await db.rollback()
        await _discard_objects(key for key, _, _, _ in stored)
        raise

    logger.info("upload owner=%s files=%s", owner.id, [f.id for f in files])
    return files


async def _load_share_targets(db: AsyncSession, target_ids: List[str]) -> Dict[str, User]:
    result = await db.execute(select(User).where(User.id.in_(target_ids)))
    users = {user.id: user for user in result.scalars().all()}
    missing = [uid for uid in target_ids if uid not in users]
    if missing:
        raise HTTPException(status_code=404, detail=f"User not found: {', '.join(missing)}")
    return users


def _apply_shares(file: File, target_ids: List[str], users: Dict[str, User], permission: str) -> None:
    now = datetime.now(timezone.utc)
    for uid in target_ids:
        entry = find_share_entry(file, uid)
        if entry is not None:
            entry.permission = permission
        else:
            file.shared_with.append(
                FileShare(
                    id=str(uuid.uuid4()),
                    user_id=uid,
                    user=users[uid],
                    permission=permission,
                    shared_at=now,
                )
            )


async def share_with_users(
    db: AsyncSession,
    file: File,
    user_ids: List[str],
    permission: str,
) -> int:
    """Upsert share entries; returns how many distinct users were targeted.

    A concurrent first-time share of the same user trips the unique
    (file, user) constraint; the file is reloaded and the upsert applied
    once more so the last grant still wins.
    """
    target_ids = list(dict.fromkeys(str(uid) for uid in user_ids if str(uid) != str(file.owner_id)))
    if not target_ids:
        raise HTTPException(status_code=400, detail="Please provide users to share with")

    users = await _load_share_targets(db, target_ids)
    try:
        _apply_shares(file, target_ids, users, permission)
        await db.commit()
    except IntegrityError:
        await db.rollback()
        logger.warning("Concurrent share on file=%s, retrying upsert", file.id)
        await db.refresh(file)
        users = await _load_share_targets(db, target_ids)
        _apply_shares(file, target_ids, users, permission)
        await db.commit()

    logger.info("share file=%s users=%s permission=%s", file.id, target_ids, permission)
    return len(target_ids)


async def create_share_link(db: AsyncSession, file: File, expires_in: Optional[int] = None) -> ShareLink:
    now = datetime.now(timezone.utc)
    link = ShareLink(
        id=str(uuid.uuid4()),
        token=secrets.token_urlsafe(24),
        expires_at=now + timedelta(seconds=int(expires_in)) if expires_in else None,
        created_at=now,
        is_active=True,
    )
    file.share_links.append(link)
    await db.commit()
    return link


def share_link_url(token: str) -> str:
    return f"{settings.FRONTEND_URL.rstrip('/')}/share/{token}"


async def revoke_share_link(db: AsyncSession, file: File, link_id: str) -> ShareLink:
    link = next((l for l in file.share_links if l.id == link_id), None)
    if link is None:
        raise HTTPException(status_code=404, detail="Share link not found")
    link.is_active = False
    await db.commit()
    return link


async def revoke_user_access(db: AsyncSession, file: File, user_id: str) -> bool:
    """Remove the share entry for ``user_id``; returns whether one existed."""
    entry = find_share_entry(file, user_id)
    if entry is None:
        return False
    file.shared_with.remove(entry)
    await db.commit()
    return True


async def soft_delete_file(db: AsyncSession, file: File) -> None:
    """Hide the file, then purge its object best-effort."""
    file.is_deleted = True
    await db.commit()

    try:
        await storage.delete_object(file.filename)
    except StorageError as exc:
        logger.error("Error deleting stored object for file %s: %s", file.id, exc)

    logger.info("delete file=%s owner=%s", file.id, file.owner_id)
