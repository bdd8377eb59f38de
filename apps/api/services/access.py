"""Access-control checks for files, share entries and share links.

Everything here operates on already-loaded ``File`` rows and never touches
the database, so callers decide what to do with a denial.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional


LINK_NOT_FOUND_OR_INACTIVE = "not_found_or_inactive"
LINK_EXPIRED = "expired"

LINK_REASON_MESSAGES = {
    LINK_NOT_FOUND_OR_INACTIVE: "Link not found or inactive",
    LINK_EXPIRED: "Link has expired",
}


@dataclass(frozen=True)
class AccessDecision:
    has_access: bool
    is_owner: bool
    permission: Optional[str] = None


@dataclass(frozen=True)
class LinkCheck:
    is_valid: bool
    reason: Optional[str] = None
    link: Any = None

    @property
    def message(self) -> Optional[str]:
        return LINK_REASON_MESSAGES.get(self.reason) if self.reason else None


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes (e.g. read back from SQLite) as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def find_share_entry(file: Any, user_id: str) -> Any:
    for entry in file.shared_with or []:
        if str(entry.user_id) == str(user_id):
            return entry
    return None


def evaluate_access(file: Any, user_id: str) -> AccessDecision:
    """Resolve the caller's relation to ``file``.

    The owner always gets ``download`` regardless of any explicit share
    entry; shared users get whatever permission was last granted to them.
    """
    if str(file.owner_id) == str(user_id):
        return AccessDecision(has_access=True, is_owner=True, permission="download")

    entry = find_share_entry(file, user_id)
    if entry is not None:
        return AccessDecision(has_access=True, is_owner=False, permission=entry.permission)

    return AccessDecision(has_access=False, is_owner=False, permission=None)


def can_download(decision: AccessDecision, enforce_permission: bool = False) -> bool:
    if not decision.has_access:
        return False
    if not enforce_permission:
        return True
    return decision.permission == "download"


def check_share_link(file: Any, token: str, now: Optional[datetime] = None) -> LinkCheck:
    """Validate ``token`` against the file's share links."""
    link = next(
        (l for l in (file.share_links or []) if l.token == token and l.is_active),
        None,
    )
    if link is None:
        return LinkCheck(is_valid=False, reason=LINK_NOT_FOUND_OR_INACTIVE)

    expires_at = as_utc(link.expires_at)
    current = as_utc(now) or datetime.now(timezone.utc)
    if expires_at is not None and current >= expires_at:
        return LinkCheck(is_valid=False, reason=LINK_EXPIRED, link=link)

    return LinkCheck(is_valid=True, link=link)
