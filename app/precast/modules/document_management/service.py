from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import or_, select
from werkzeug.utils import secure_filename

from app.precast.audit import record_event
from app.precast.modules.document_management.errors import InvalidDocument, NotFound, ReferenceNotFound
from app.precast.modules.document_management.models import (
    ACCESS_LEVELS,
    ApprovalWorkflow,
    Document,
    DocumentComment,
    DocumentFolder,
    DocumentTemplate,
)
from app.precast.modules.document_management.sharing import log_access
from app.precast.storage import document_key, template_key

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.precast.storage import Storage


# Statuses a caller may set directly; PENDING_APPROVAL and REJECTED are owned by the approval engine.
SETTABLE_STATUSES = ("ACTIVE", "ARCHIVED", "DRAFT")
TEMPLATE_STATUSES = ("ACTIVE", "INACTIVE")


@dataclass(frozen=True)
class FileUpload:
    filename: str
    data: bytes
    content_type: str = "application/octet-stream"

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class StoredFile:
    url: str
    storage_key: str
    file_name: str
    file_size: int
    file_type: str
    sha256: str


@dataclass
class CreateDocumentRequest:
    title: str
    created_by: str
    description: str | None = None
    type: str | None = None
    category: str | None = None
    tags: list[str] = field(default_factory=list)
    status: str = "ACTIVE"
    project_id: int | None = None
    folder_id: int | None = None
    related_entities: list[Any] = field(default_factory=list)
    expiration_date: datetime | None = None
    access_level: str = "INTERNAL"
    access_groups: list[str] = field(default_factory=list)
    custom_fields: dict[str, Any] = field(default_factory=dict)
    # Pointer to a file that already lives elsewhere (used when no upload is sent).
    file_url: str | None = None
    file_name: str | None = None
    file_size: int | None = None
    file_type: str | None = None
    approval_workflow_id: int | None = None


@dataclass
class UpdateDocumentRequest:
    """
    Partial update. ``None`` leaves a field unchanged.

    A new version is cut when a file is uploaded or ``is_new_version`` is set;
    ``change_description`` and ``approval_workflow_id`` only matter then.
    """

    updated_by: str
    title: str | None = None
    description: str | None = None
    type: str | None = None
    category: str | None = None
    tags: list[str] | None = None
    status: str | None = None
    project_id: int | None = None
    folder_id: int | None = None
    related_entities: list[Any] | None = None
    expiration_date: datetime | None = None
    access_level: str | None = None
    access_groups: list[str] | None = None
    custom_fields: dict[str, Any] | None = None
    is_new_version: bool = False
    change_description: str | None = None
    approval_workflow_id: int | None = None

    METADATA_FIELDS = (
        "title",
        "description",
        "type",
        "category",
        "tags",
        "project_id",
        "folder_id",
        "related_entities",
        "expiration_date",
        "access_level",
        "access_groups",
        "custom_fields",
    )

    def metadata_changes(self) -> dict[str, Any]:
        return {k: getattr(self, k) for k in self.METADATA_FIELDS if getattr(self, k) is not None}


@dataclass
class FolderRequest:
    name: str
    created_by: str
    description: str | None = None
    parent_id: int | None = None
    access_level: str = "INTERNAL"
    access_groups: list[str] = field(default_factory=list)


@dataclass
class CommentRequest:
    content: str
    document_version: str | None = None
    page_number: int | None = None
    coordinates: dict[str, Any] | None = None
    parent_id: int | None = None
    attachments: list[Any] = field(default_factory=list)


@dataclass
class DocumentFilters:
    type: str | None = None
    category: str | None = None
    status: str | None = None
    project_id: int | None = None
    folder_id: int | None = None
    created_by: str | None = None
    access_level: str | None = None
    tags: list[str] = field(default_factory=list)
    date_from: datetime | None = None
    date_to: datetime | None = None
    search: str | None = None


@dataclass
class TemplateRequest:
    name: str
    created_by: str
    description: str | None = None
    type: str | None = None
    category: str | None = None
    placeholders: list[Any] = field(default_factory=list)
    default_tags: list[str] = field(default_factory=list)
    default_access_level: str = "INTERNAL"
    default_approval_workflow_id: int | None = None
    status: str = "ACTIVE"


def parse_datetime(s: Any) -> datetime | None:
    """Parse ISO date or datetime strings ("2026-03-01" or "2026-03-01T08:00:00")."""
    if s is None or isinstance(s, datetime):
        return s
    if isinstance(s, date):
        return datetime(s.year, s.month, s.day)
    s = str(s).strip()
    if not s:
        return None
    if s.endswith("Z"):
        s = s[:-1]
    return datetime.fromisoformat(s)


def parse_int(s: Any) -> int | None:
    if s is None or isinstance(s, int):
        return s
    s = str(s).strip()
    if not s:
        return None
    return int(s)


def parse_bool(s: Any) -> bool:
    if isinstance(s, bool):
        return s
    return str(s or "").strip().lower() in ("1", "true", "yes", "on")


def parse_text(raw: Any, *, strip: bool = True) -> str | None:
    if raw is None:
        return None
    if not isinstance(raw, str):
        raise ValueError(f"expected a string, got {type(raw).__name__}")
    return raw.strip() if strip else raw


def parse_list(raw: Any) -> list | None:
    """Accept a JSON list, a JSON-encoded list, or a comma separated string (form posts)."""
    if raw is None:
        return None
    if isinstance(raw, list):
        return raw
    raw = str(raw).strip()
    if not raw:
        return []
    if raw.startswith("["):
        value = json.loads(raw)
        if not isinstance(value, list):
            raise ValueError("Expected a JSON list.")
        return value
    return [part.strip() for part in raw.split(",") if part.strip()]


def parse_dict(raw: Any) -> dict | None:
    if raw is None or isinstance(raw, dict):
        return raw
    raw = str(raw).strip()
    if not raw:
        return {}
    value = json.loads(raw)
    if not isinstance(value, dict):
        raise ValueError("Expected a JSON object.")
    return value


def validate_access_level(level: str | None) -> list[str]:
    if level and level not in ACCESS_LEVELS:
        return [f"Invalid access_level. Must be one of: {', '.join(ACCESS_LEVELS)}"]
    return []


def file_digest_and_bytes(file_bytes: bytes) -> tuple[str, int]:
    h = hashlib.sha256()
    h.update(file_bytes)
    return (h.hexdigest(), len(file_bytes))


def sanitize_upload_filename(filename: str) -> str:
    fn = secure_filename(filename or "")
    return fn or "document.bin"


def build_storage_key(document_id: int, version: str, filename: str) -> str:
    return document_key(document_id, version, sanitize_upload_filename(filename))


def store_upload(storage: "Storage", key: str, upload: FileUpload) -> StoredFile:
    """Put an uploaded file into the blob store; the returned url is opaque."""
    sha256, size_bytes = file_digest_and_bytes(upload.data)
    content_type = (upload.content_type or "application/octet-stream").strip()
    storage.put_bytes(key, upload.data, content_type=content_type)
    return StoredFile(
        url=storage.url(key),
        storage_key=key,
        file_name=sanitize_upload_filename(upload.filename),
        file_size=size_bytes,
        file_type=content_type,
        sha256=sha256,
    )


def check_references(s: "Session", *, folder_id: int | None, project_id: int | None) -> None:
    from app.precast.models import Project

    if folder_id is not None and s.get(DocumentFolder, folder_id) is None:
        raise ReferenceNotFound(f"Folder {folder_id} not found.", folder_id=folder_id)
    if project_id is not None and s.get(Project, project_id) is None:
        raise ReferenceNotFound(f"Project {project_id} not found.", project_id=project_id)


def get_document_or_raise(s: "Session", document_id: int, *, for_update: bool = False) -> Document:
    d = s.get(Document, document_id, with_for_update=for_update or None)
    if d is None:
        raise NotFound(f"Document {document_id} not found.", document_id=document_id)
    return d


def get_document(
    s: "Session",
    document_id: int,
    *,
    viewer: str | None = None,
    include_versions: bool = False,
    include_comments: bool = False,
) -> Document:
    """Fetch a document and record the read in the access log (best-effort)."""
    d = get_document_or_raise(s, document_id)
    if include_versions:
        s.refresh(d, ["versions"])
    if include_comments:
        s.refresh(d, ["active_comments"])
    log_access(s, d.id, d.version, "VIEW", user_id=viewer)
    return d


def list_documents(s: "Session", filters: DocumentFilters | None = None) -> list[Document]:
    f = filters or DocumentFilters()
    q = select(Document)
    if f.type:
        q = q.where(Document.type == f.type)
    if f.category:
        q = q.where(Document.category == f.category)
    if f.status:
        q = q.where(Document.status == f.status)
    if f.project_id is not None:
        q = q.where(Document.project_id == f.project_id)
    if f.folder_id is not None:
        q = q.where(Document.folder_id == f.folder_id)
    if f.created_by:
        q = q.where(Document.created_by == f.created_by)
    if f.access_level:
        q = q.where(Document.access_level == f.access_level)
    if f.date_from is not None:
        q = q.where(Document.created_at >= f.date_from)
    if f.date_to is not None:
        q = q.where(Document.created_at <= f.date_to)
    if f.search:
        term = f"%{f.search.strip()}%"
        q = q.where(
            or_(
                Document.title.ilike(term),
                Document.description.ilike(term),
                Document.file_name.ilike(term),
            )
        )
    q = q.order_by(Document.updated_at.desc(), Document.id.desc())
    docs = list(s.execute(q).scalars().all())
    if f.tags:
        # JSON containment differs per dialect; tag lists are short.
        wanted = set(f.tags)
        docs = [d for d in docs if wanted.intersection(d.tags or [])]
    return docs


def folder_path_for_child(parent: DocumentFolder) -> str:
    if parent.path == "/":
        return f"/{parent.name}"
    return f"{parent.path}/{parent.name}"


def create_folder(s: "Session", req: FolderRequest) -> DocumentFolder:
    """
    Create a folder. ``path`` is computed from the parent once, here; renaming a
    parent later does not rewrite the stored path of its children.
    """
    path = "/"
    if req.parent_id is not None:
        parent = s.get(DocumentFolder, req.parent_id)
        if parent is None:
            raise NotFound(f"Parent folder {req.parent_id} not found.", folder_id=req.parent_id)
        path = folder_path_for_child(parent)

    now = datetime.utcnow()
    folder = DocumentFolder(
        name=req.name.strip(),
        description=(req.description or "").strip() or None,
        parent_id=req.parent_id,
        path=path,
        access_level=req.access_level or "INTERNAL",
        access_groups=list(req.access_groups or []),
        created_by=req.created_by,
        updated_by=req.created_by,
        created_at=now,
        updated_at=now,
    )
    s.add(folder)
    s.flush()

    record_event(
        s,
        actor=req.created_by,
        action="folder.create",
        entity_type="DocumentFolder",
        entity_id=str(folder.id),
        metadata={"name": folder.name, "path": folder.path, "parent_id": folder.parent_id},
    )
    s.flush()
    return folder


def list_folders(s: "Session", parent_id: int | None = None) -> list[DocumentFolder]:
    q = select(DocumentFolder)
    if parent_id is None:
        q = q.where(DocumentFolder.parent_id.is_(None))
    else:
        q = q.where(DocumentFolder.parent_id == parent_id)
    return list(s.execute(q.order_by(DocumentFolder.name.asc())).scalars().all())


def add_comment(s: "Session", document_id: int, req: CommentRequest, created_by: str) -> DocumentComment:
    d = get_document_or_raise(s, document_id)
    if req.parent_id is not None:
        parent = s.get(DocumentComment, req.parent_id)
        if parent is None or parent.document_id != d.id:
            raise NotFound(f"Comment {req.parent_id} not found on this document.", document_id=d.id)

    now = datetime.utcnow()
    c = DocumentComment(
        document_id=d.id,
        document_version=req.document_version or d.version,
        content=req.content,
        page_number=req.page_number,
        coordinates=req.coordinates,
        parent_id=req.parent_id,
        attachments=list(req.attachments or []),
        status="ACTIVE",
        created_by=created_by,
        created_at=now,
        updated_at=now,
    )
    s.add(c)
    s.flush()
    return c


def list_comments(s: "Session", document_id: int) -> list[DocumentComment]:
    """Active comments on a document, newest first."""
    d = get_document_or_raise(s, document_id)
    q = (
        select(DocumentComment)
        .where(DocumentComment.document_id == d.id, DocumentComment.status == "ACTIVE")
        .order_by(DocumentComment.id.desc())
    )
    return list(s.execute(q).scalars().all())


def create_template(
    s: "Session",
    storage: "Storage",
    req: TemplateRequest,
    upload: FileUpload | None = None,
) -> DocumentTemplate:
    name = (req.name or "").strip()
    if not name:
        raise InvalidDocument("Template name is required.")
    errors = validate_access_level(req.default_access_level)
    if errors:
        raise InvalidDocument("; ".join(errors))
    if req.status not in TEMPLATE_STATUSES:
        raise InvalidDocument(f"Template status must be one of: {', '.join(TEMPLATE_STATUSES)}")
    wf_id = req.default_approval_workflow_id
    if wf_id is not None and s.get(ApprovalWorkflow, wf_id) is None:
        raise ReferenceNotFound(f"Approval workflow {wf_id} not found.", workflow_id=wf_id)

    now = datetime.utcnow()
    t = DocumentTemplate(
        name=name,
        description=(req.description or "").strip() or None,
        type=req.type,
        category=req.category,
        placeholders=list(req.placeholders or []),
        default_tags=list(req.default_tags or []),
        default_access_level=req.default_access_level or "INTERNAL",
        default_approval_workflow_id=wf_id,
        status=req.status,
        created_by=req.created_by,
        created_at=now,
        updated_at=now,
    )
    s.add(t)
    s.flush()

    if upload is not None:
        stored = store_upload(storage, template_key(t.id, sanitize_upload_filename(upload.filename)), upload)
        t.file_url = stored.url
        t.file_name = stored.file_name
        t.file_size = stored.file_size
        t.file_type = stored.file_type

    record_event(
        s,
        actor=req.created_by,
        action="template.create",
        entity_type="DocumentTemplate",
        entity_id=str(t.id),
        metadata={"name": t.name, "type": t.type, "category": t.category, "file_name": t.file_name},
    )
    s.flush()
    return t


def list_templates(
    s: "Session",
    *,
    type: str | None = None,
    category: str | None = None,
    status: str | None = None,
) -> list[DocumentTemplate]:
    q = select(DocumentTemplate)
    if type:
        q = q.where(DocumentTemplate.type == type)
    if category:
        q = q.where(DocumentTemplate.category == category)
    if status:
        q = q.where(DocumentTemplate.status == status)
    return list(s.execute(q.order_by(DocumentTemplate.name.asc(), DocumentTemplate.id.asc())).scalars().all())
