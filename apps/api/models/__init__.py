"""Models package."""

from .user import User
from .file import File
from .file_share import FileShare
from .share_link import ShareLink
from .audit_log import AuditLog
