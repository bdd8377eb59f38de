"""File model with its owned share entries and share links."""

from datetime import datetime, timezone
import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship

from database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class File(Base):
    """Uploaded file metadata; bytes live in object storage."""

    __tablename__ = "files"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    filename = Column(String, nullable=False)  # object storage key
    original_name = Column(String, nullable=False)
    mime_type = Column(String, nullable=False)
    size = Column(Integer, nullable=False)
    owner_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    path = Column(String, nullable=False)  # retrieval URL
    upload_date = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    is_deleted = Column(Boolean, default=False, nullable=False, index=True)

    # Relationships
    owner = relationship("User", back_populates="files", lazy="selectin")
    shared_with = relationship(
        "FileShare",
        back_populates="file",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="FileShare.shared_at",
    )
    share_links = relationship(
        "ShareLink",
        back_populates="file",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="ShareLink.created_at",
    )
