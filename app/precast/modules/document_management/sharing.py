"""
Shares, share links and the document access log.

Access logging is best-effort: ``log_access`` returns an ``AccessLogResult``
instead of raising, and writes inside a SAVEPOINT so a failed log row never
poisons the caller's transaction.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError

from app.precast.audit import record_event
from app.precast.modules.document_management.errors import (
    InvalidShare,
    NotFound,
    SharePasswordInvalid,
    ShareUnavailable,
)
from app.precast.modules.document_management.models import (
    Document,
    DocumentAccessLog,
    DocumentShare,
    DocumentVersion,
)
from app.precast.security import check_share_password, hash_share_password, new_share_token

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

SHARE_TYPES = ("INTERNAL", "EXTERNAL", "PUBLIC")
RECIPIENT_TYPES = ("USER", "GROUP", "EMAIL", "LINK")
SHARE_ACCESS_LEVELS = ("VIEW", "COMMENT", "EDIT", "FULL")

SHARE_ACCESS = "SHARE_ACCESS"
ANONYMOUS = "ANONYMOUS"


@dataclass(frozen=True)
class AccessLogResult:
    ok: bool
    log_id: int | None = None
    error: str | None = None

    def __bool__(self) -> bool:
        return self.ok


@dataclass
class ShareRequest:
    share_type: str = "INTERNAL"
    recipient_type: str = "USER"
    access_level: str = "VIEW"
    recipient_id: str | None = None
    recipient_email: str | None = None
    document_version: str | None = None
    expiration_date: datetime | None = None
    password: str | None = field(default=None, repr=False)

    def validate(self) -> list[str]:
        errors = []
        if self.share_type not in SHARE_TYPES:
            errors.append(f"Invalid share_type. Must be one of: {', '.join(SHARE_TYPES)}")
        if self.recipient_type not in RECIPIENT_TYPES:
            errors.append(f"Invalid recipient_type. Must be one of: {', '.join(RECIPIENT_TYPES)}")
        if self.access_level not in SHARE_ACCESS_LEVELS:
            errors.append(f"Invalid access_level. Must be one of: {', '.join(SHARE_ACCESS_LEVELS)}")
        if self.recipient_type == "EMAIL" and not (self.recipient_email or "").strip():
            errors.append("recipient_email is required for EMAIL shares.")
        return errors

    @property
    def needs_link(self) -> bool:
        return self.share_type == "PUBLIC" or self.recipient_type == "LINK"


def log_access(
    s: "Session",
    document_id: int,
    version: str | None,
    action: str,
    user_id: str | None = None,
    details: str = "",
    *,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> AccessLogResult:
    """
    Append an access log row. Never raises on storage failure.

    SHARE_ACCESS also bumps access_count/last_accessed on the ACTIVE shares of
    (document_id, version); concurrent bumps are not required to be exact.
    """
    now = datetime.utcnow()
    try:
        with s.begin_nested():
            entry = DocumentAccessLog(
                document_id=document_id,
                document_version=version,
                user_id=user_id or ANONYMOUS,
                action=action,
                timestamp=now,
                details=details or None,
                ip_address=ip_address,
                user_agent=(user_agent or "")[:512] or None,
            )
            s.add(entry)
            s.flush()
            if action == SHARE_ACCESS:
                s.execute(
                    update(DocumentShare)
                    .where(
                        DocumentShare.document_id == document_id,
                        DocumentShare.document_version == version,
                        DocumentShare.status == "ACTIVE",
                    )
                    .values(access_count=DocumentShare.access_count + 1, last_accessed=now)
                    .execution_options(synchronize_session=False)
                )
        return AccessLogResult(ok=True, log_id=entry.id)
    except SQLAlchemyError as e:
        logger.warning("Access log write failed (document_id=%s action=%s): %s", document_id, action, e)
        return AccessLogResult(ok=False, error=str(e))


def _version_exists(s: "Session", document_id: int, version: str) -> bool:
    q = select(DocumentVersion.id).where(DocumentVersion.document_id == document_id, DocumentVersion.version == version)
    return s.execute(q).first() is not None


def share_document(s: "Session", document_id: int, req: ShareRequest, created_by: str) -> DocumentShare:
    d = s.get(Document, document_id)
    if d is None:
        raise NotFound(f"Document {document_id} not found.", document_id=document_id)

    errors = req.validate()
    if errors:
        raise InvalidShare("; ".join(errors), document_id=document_id)
    version = req.document_version or d.version
    if req.document_version and not _version_exists(s, d.id, version):
        raise InvalidShare(f"Version {version} does not exist.", document_id=d.id)

    token = None
    link = None
    if req.needs_link:
        from flask import current_app, has_app_context

        base = "/share"
        if has_app_context():
            base = current_app.config.get("SHARE_LINK_BASE") or base
        token = new_share_token()
        link = f"{base}/{d.id}/{token}"

    now = datetime.utcnow()
    share = DocumentShare(
        document_id=d.id,
        document_version=version,
        share_type=req.share_type,
        recipient_type=req.recipient_type,
        recipient_id=(req.recipient_id or "").strip() or None,
        recipient_email=(req.recipient_email or "").strip().lower() or None,
        access_level=req.access_level,
        expiration_date=req.expiration_date,
        share_token=token,
        share_link=link,
        password_hash=hash_share_password(req.password),
        created_by=created_by,
        status="ACTIVE",
        access_count=0,
        created_at=now,
        updated_at=now,
    )
    s.add(share)
    s.flush()

    record_event(
        s,
        actor=created_by,
        action="doc.share",
        entity_type="DocumentShare",
        entity_id=str(share.id),
        metadata={
            "document_id": d.id,
            "version": share.document_version,
            "share_type": share.share_type,
            "recipient_type": share.recipient_type,
            "access_level": share.access_level,
            "has_password": share.password_hash is not None,
        },
    )
    log_access(s, d.id, share.document_version, "SHARE", user_id=created_by, details=f"share_id={share.id}")
    return share


def revoke_share(s: "Session", share_id: int, user_id: str, reason: str | None = None) -> DocumentShare:
    share = s.get(DocumentShare, share_id)
    if share is None:
        raise NotFound(f"Share {share_id} not found.", share_id=share_id)
    if share.status != "REVOKED":
        share.status = "REVOKED"
        share.updated_at = datetime.utcnow()
        record_event(
            s,
            actor=user_id,
            action="doc.share_revoke",
            entity_type="DocumentShare",
            entity_id=str(share.id),
            reason=reason,
            metadata={"document_id": share.document_id},
        )
    s.flush()
    return share


def open_share(
    s: "Session",
    document_id: int,
    token: str,
    password: str | None = None,
    *,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> tuple[DocumentShare, Document]:
    """Resolve a share link, enforce expiry and password, and count the hit."""
    share = s.execute(
        select(DocumentShare).where(
            DocumentShare.share_token == token,
            DocumentShare.document_id == document_id,
        )
    ).scalar_one_or_none()
    if share is None or share.status == "REVOKED":
        raise NotFound("Share link not found.", document_id=document_id)

    now = datetime.utcnow()
    if share.status == "EXPIRED" or (share.expiration_date is not None and share.expiration_date <= now):
        raise ShareUnavailable("Share link has expired.", document_id=document_id)

    if not check_share_password(share.password_hash, password):
        raise SharePasswordInvalid("Share password missing or incorrect.", document_id=document_id)

    d = s.get(Document, document_id)
    if d is None:
        raise NotFound(f"Document {document_id} not found.", document_id=document_id)

    log_access(
        s,
        document_id,
        share.document_version,
        SHARE_ACCESS,
        user_id=None,
        details=f"share_id={share.id}",
        ip_address=ip_address,
        user_agent=user_agent,
    )
    s.refresh(share)
    return share, d


def can_view_document(document: Document, user_id: str | None, groups: list[str] | None = None) -> bool:
    """
    PUBLIC and INTERNAL documents are visible to any signed-in user.
    RESTRICTED and CONFIDENTIAL need the creator or a shared access group.
    """
    level = document.access_level or "INTERNAL"
    if level == "PUBLIC":
        return True
    if not user_id:
        return False
    if level == "INTERNAL":
        return True
    if document.created_by and document.created_by == user_id:
        return True
    return bool(set(groups or []).intersection(document.access_groups or []))


def share_permits(share: DocumentShare, required: str) -> bool:
    """VIEW < COMMENT < EDIT < FULL."""
    if required not in SHARE_ACCESS_LEVELS:
        raise ValueError(f"Unknown share access level: {required!r}")
    if share.access_level not in SHARE_ACCESS_LEVELS:
        return False
    return SHARE_ACCESS_LEVELS.index(share.access_level) >= SHARE_ACCESS_LEVELS.index(required)
