"""Per-user share entry owned by a File."""

from datetime import datetime, timezone
import uuid

from sqlalchemy import Column, DateTime, ForeignKey, String, UniqueConstraint
from sqlalchemy.orm import relationship

from database import Base


SHARE_PERMISSIONS = ("view", "download")


class FileShare(Base):
    """A user the file has been shared with, and at which permission."""

    __tablename__ = "file_shares"
    __table_args__ = (UniqueConstraint("file_id", "user_id", name="uq_file_share_user"),)

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    file_id = Column(String, ForeignKey("files.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    permission = Column(String, nullable=False, default="view")  # view, download
    shared_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    file = relationship("File", back_populates="shared_with")
    user = relationship("User", lazy="selectin")
