"""AuditLog model for file activity."""

from datetime import datetime, timezone
import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Index, String, Text
from sqlalchemy.orm import relationship

from database import Base


AUDIT_ACTIONS = ("upload", "download", "share", "view", "delete", "revoke")


class AuditLog(Base):
    """Append-only record of an action taken on a file."""

    __tablename__ = "audit_logs"
    __table_args__ = (
        Index("ix_audit_logs_file_timestamp", "file_id", "timestamp"),
        Index("ix_audit_logs_user_timestamp", "user_id", "timestamp"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    file_id = Column(String, ForeignKey("files.id"), nullable=False)
    user_id = Column(String, ForeignKey("users.id"), nullable=False)
    action = Column(String, nullable=False)  # upload, download, share, view, delete, revoke
    details = Column(Text, nullable=True)
    ip_address = Column(String, nullable=True)
    timestamp = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    user = relationship("User", lazy="selectin")
    file = relationship("File", lazy="selectin")
