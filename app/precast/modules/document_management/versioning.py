"""
Document creation and versioned updates.

A document always has exactly one ACTIVE DocumentVersion, and ``Document.version``
names it. Cutting a new version supersedes the old one in the same transaction.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import select, update

from app.precast.audit import record_event
from app.precast.modules.document_management.approvals import (
    cancel_open_approvals_for_version,
    find_auto_start_workflow,
    find_open_approval,
    start_approval,
)
from app.precast.modules.document_management.errors import (
    ApprovalAlreadyActive,
    InvalidDocument,
    InvalidDocumentStatus,
    InvalidWorkflow,
    ReferenceNotFound,
)
from app.precast.modules.document_management.models import (
    DOC_DRAFT,
    DOC_PENDING_APPROVAL,
    VERSION_ACTIVE,
    VERSION_SUPERSEDED,
    ApprovalWorkflow,
    Document,
    DocumentVersion,
)
from app.precast.modules.document_management.service import (
    SETTABLE_STATUSES,
    CreateDocumentRequest,
    FileUpload,
    StoredFile,
    UpdateDocumentRequest,
    build_storage_key,
    check_references,
    get_document_or_raise,
    store_upload,
    validate_access_level,
)
from app.precast.modules.document_management.sharing import log_access

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.precast.storage import Storage

logger = logging.getLogger(__name__)

INITIAL_VERSION = "1.0"

_VERSION_RE = re.compile(r"^(\d+)(?:\.(\d+))?$")


def next_version(current: str) -> str:
    """
    Bump the minor number; the major never changes.

        >>> next_version("1.3"), next_version("1.9"), next_version("2")
        ('1.4', '1.10', '2.1')
    """
    m = _VERSION_RE.match((current or "").strip())
    if not m:
        raise ValueError(f"Unrecognised version string: {current!r}")
    major = int(m.group(1))
    minor = int(m.group(2) or 0)
    return f"{major}.{minor + 1}"


def _check_workflow(s: "Session", workflow_id: int | None) -> ApprovalWorkflow | None:
    if workflow_id is None:
        return None
    wf = s.get(ApprovalWorkflow, workflow_id)
    if wf is None:
        raise ReferenceNotFound(f"Approval workflow {workflow_id} not found.", workflow_id=workflow_id)
    if not wf.steps:
        raise InvalidWorkflow(f"Approval workflow {workflow_id} has no steps.", workflow_id=workflow_id)
    return wf


def list_versions(s: "Session", document_id: int) -> list[DocumentVersion]:
    get_document_or_raise(s, document_id)
    return list(
        s.execute(
            select(DocumentVersion)
            .where(DocumentVersion.document_id == document_id)
            .order_by(DocumentVersion.id.desc())
        ).scalars().all()
    )


def create_document(
    s: "Session",
    storage: "Storage",
    req: CreateDocumentRequest,
    upload: FileUpload | None = None,
) -> Document:
    title = (req.title or "").strip()
    if not title:
        raise InvalidDocument("Title is required.")
    errors = validate_access_level(req.access_level)
    if errors:
        raise InvalidDocument("; ".join(errors))
    if req.status not in SETTABLE_STATUSES:
        raise InvalidDocumentStatus(f"Status must be one of: {', '.join(SETTABLE_STATUSES)}")
    check_references(s, folder_id=req.folder_id, project_id=req.project_id)
    _check_workflow(s, req.approval_workflow_id)

    now = datetime.utcnow()
    d = Document(
        title=title,
        description=(req.description or "").strip() or None,
        type=req.type,
        category=req.category,
        tags=list(req.tags or []),
        file_url=req.file_url,
        file_name=req.file_name,
        file_size=req.file_size,
        file_type=req.file_type,
        version=INITIAL_VERSION,
        status=req.status,
        project_id=req.project_id,
        folder_id=req.folder_id,
        related_entities=list(req.related_entities or []),
        expiration_date=req.expiration_date,
        access_level=req.access_level or "INTERNAL",
        access_groups=list(req.access_groups or []),
        custom_fields=dict(req.custom_fields or {}),
        created_by=req.created_by,
        created_at=now,
        updated_by=req.created_by,
        updated_at=now,
    )
    s.add(d)
    s.flush()

    stored: StoredFile | None = None
    if upload is not None:
        stored = store_upload(storage, build_storage_key(d.id, INITIAL_VERSION, upload.filename), upload)
        d.file_url = stored.url
        d.file_name = stored.file_name
        d.file_size = stored.file_size
        d.file_type = stored.file_type

    s.add(
        DocumentVersion(
            document_id=d.id,
            version=INITIAL_VERSION,
            file_url=d.file_url,
            storage_key=stored.storage_key if stored else None,
            file_name=d.file_name,
            file_size=d.file_size,
            file_type=d.file_type,
            sha256=stored.sha256 if stored else None,
            change_description="Initial version",
            status=VERSION_ACTIVE,
            created_by=req.created_by,
            created_at=now,
        )
    )
    s.flush()
    s.expire(d, ["versions"])

    record_event(
        s,
        actor=req.created_by,
        action="doc.create",
        entity_type="Document",
        entity_id=str(d.id),
        metadata={
            "title": d.title,
            "type": d.type,
            "version": d.version,
            "file_name": d.file_name,
            "sha256": stored.sha256 if stored else None,
        },
    )

    workflow_id = req.approval_workflow_id
    if workflow_id is None:
        wf = find_auto_start_workflow(s, d.type)
        if wf is not None:
            workflow_id = wf.id
            logger.info("Auto-starting workflow %s for new %s document %s", wf.id, d.type, d.id)
    if workflow_id is not None:
        start_approval(s, d.id, workflow_id, req.created_by)

    logger.info("Document %s created by %s", d.id, req.created_by)
    s.flush()
    return d


def update_document(
    s: "Session",
    storage: "Storage",
    document_id: int,
    req: UpdateDocumentRequest,
    upload: FileUpload | None = None,
) -> Document:
    """
    Apply a partial update, cutting a new version when a file is supplied or
    ``is_new_version`` is set.
    """
    d = get_document_or_raise(s, document_id, for_update=True)
    cut_version = upload is not None or req.is_new_version

    if req.title is not None and not req.title.strip():
        raise InvalidDocument("Title cannot be blank.", document_id=d.id)
    errors = validate_access_level(req.access_level)
    if errors:
        raise InvalidDocument("; ".join(errors), document_id=d.id)
    if req.status is not None:
        if req.status not in SETTABLE_STATUSES:
            raise InvalidDocumentStatus(
                f"Status must be one of: {', '.join(SETTABLE_STATUSES)}",
                document_id=d.id,
            )
        if d.status == DOC_PENDING_APPROVAL and not cut_version:
            raise InvalidDocumentStatus(
                "Status cannot be changed while an approval is active.",
                document_id=d.id,
            )
    check_references(s, folder_id=req.folder_id, project_id=req.project_id)
    wf = _check_workflow(s, req.approval_workflow_id)
    if wf is not None and not cut_version:
        # Without a new version the approval would target d.version, so the slot must be free.
        existing = find_open_approval(s, d.id, d.version)
        if existing is not None:
            raise ApprovalAlreadyActive(
                f"Document {d.id} v{d.version} already has an active approval process.",
                document_id=d.id,
                approval_id=existing.id,
            )

    now = datetime.utcnow()
    previous_version = d.version
    changes = req.metadata_changes()

    if cut_version:
        version = next_version(previous_version)
        cancelled = cancel_open_approvals_for_version(s, d.id, previous_version, req.updated_by)
        s.execute(
            update(DocumentVersion)
            .where(DocumentVersion.document_id == d.id, DocumentVersion.status == VERSION_ACTIVE)
            .values(status=VERSION_SUPERSEDED)
        )

        stored: StoredFile | None = None
        if upload is not None:
            stored = store_upload(storage, build_storage_key(d.id, version, upload.filename), upload)
            d.file_url = stored.url
            d.file_name = stored.file_name
            d.file_size = stored.file_size
            d.file_type = stored.file_type

        s.add(
            DocumentVersion(
                document_id=d.id,
                version=version,
                file_url=d.file_url,
                storage_key=stored.storage_key if stored else None,
                file_name=d.file_name,
                file_size=d.file_size,
                file_type=d.file_type,
                sha256=stored.sha256 if stored else None,
                change_description=(req.change_description or "").strip() or "Updated version",
                status=VERSION_ACTIVE,
                created_by=req.updated_by,
                created_at=now,
            )
        )
        s.flush()
        s.expire(d, ["versions"])
        d.version = version
        if cancelled and d.status == DOC_PENDING_APPROVAL:
            d.status = DOC_DRAFT

    for name, value in changes.items():
        if name in ("tags", "related_entities", "access_groups"):
            value = list(value)
        elif name == "custom_fields":
            value = dict(value)
        setattr(d, name, value)
    if req.status is not None:
        d.status = req.status
    d.updated_by = req.updated_by
    d.updated_at = now
    s.flush()

    record_event(
        s,
        actor=req.updated_by,
        action="doc.update",
        entity_type="Document",
        entity_id=str(d.id),
        metadata={
            "fields": sorted(changes),
            "status": req.status,
            "previous_version": previous_version,
            "version": d.version,
            "new_version": cut_version,
        },
    )
    if cut_version:
        log_access(s, d.id, d.version, "EDIT", user_id=req.updated_by, details=f"superseded v{previous_version}")

    if req.approval_workflow_id is not None:
        start_approval(s, d.id, req.approval_workflow_id, req.updated_by)

    s.flush()
    return d
