from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.precast.models import Base, Project

# Document.status
DOC_ACTIVE = "ACTIVE"
DOC_ARCHIVED = "ARCHIVED"
DOC_DRAFT = "DRAFT"
DOC_PENDING_APPROVAL = "PENDING_APPROVAL"
DOC_REJECTED = "REJECTED"
DOCUMENT_STATUSES = (DOC_ACTIVE, DOC_ARCHIVED, DOC_DRAFT, DOC_PENDING_APPROVAL, DOC_REJECTED)

# DocumentVersion.status
VERSION_ACTIVE = "ACTIVE"
VERSION_SUPERSEDED = "SUPERSEDED"

# DocumentApproval.status and approver entry status
APPROVAL_PENDING = "PENDING"
APPROVAL_IN_PROGRESS = "IN_PROGRESS"
APPROVAL_APPROVED = "APPROVED"
APPROVAL_REJECTED = "REJECTED"
APPROVAL_CANCELLED = "CANCELLED"
OPEN_APPROVAL_STATUSES = (APPROVAL_PENDING, APPROVAL_IN_PROGRESS)

ACCESS_LEVELS = ("PUBLIC", "INTERNAL", "RESTRICTED", "CONFIDENTIAL")


class DocumentFolder(Base):
    __tablename__ = "document_folders"
    __table_args__ = (
        Index("idx_document_folders_parent", "parent_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    parent_id: Mapped[int | None] = mapped_column(ForeignKey("document_folders.id", ondelete="RESTRICT"), nullable=True)
    # Snapshot of the ancestors at creation time ("/" for root folders).
    path: Mapped[str] = mapped_column(String(1024), nullable=False, default="/")

    access_level: Mapped[str] = mapped_column(String(32), nullable=False, default="INTERNAL")
    access_groups: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    created_by: Mapped[str | None] = mapped_column(String(320), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_by: Mapped[str | None] = mapped_column(String(320), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    parent: Mapped["DocumentFolder | None"] = relationship("DocumentFolder", remote_side=[id], lazy="selectin")


class Document(Base):
    __tablename__ = "documents"
    __table_args__ = (
        Index("idx_documents_status", "status"),
        Index("idx_documents_project", "project_id"),
        Index("idx_documents_folder", "folder_id"),
        Index("idx_documents_type", "type"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    type: Mapped[str | None] = mapped_column(String(64), nullable=True)  # CONTRACT, DRAWING, SPECIFICATION, ...
    category: Mapped[str | None] = mapped_column(String(128), nullable=True)
    tags: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    # Current file; mirrors the ACTIVE DocumentVersion.
    file_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    file_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    file_size: Mapped[int | None] = mapped_column(Integer, nullable=True)
    file_type: Mapped[str | None] = mapped_column(String(128), nullable=True)

    version: Mapped[str] = mapped_column(String(32), nullable=False, default="1.0")
    status: Mapped[str] = mapped_column(String(32), nullable=False, default=DOC_ACTIVE)

    project_id: Mapped[int | None] = mapped_column(ForeignKey("projects.id", ondelete="SET NULL"), nullable=True)
    folder_id: Mapped[int | None] = mapped_column(ForeignKey("document_folders.id", ondelete="SET NULL"), nullable=True)
    related_entities: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    access_level: Mapped[str] = mapped_column(String(32), nullable=False, default="INTERNAL")
    access_groups: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    custom_fields: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    expiration_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    created_by: Mapped[str | None] = mapped_column(String(320), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_by: Mapped[str | None] = mapped_column(String(320), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    folder: Mapped[DocumentFolder | None] = relationship("DocumentFolder", lazy="selectin")
    project: Mapped[Project | None] = relationship(Project, lazy="selectin")

    versions: Mapped[list["DocumentVersion"]] = relationship(
        "DocumentVersion",
        back_populates="document",
        cascade="all, delete-orphan",
        order_by="DocumentVersion.id.desc()",
        lazy="selectin",
    )
    # Read side of the comment thread; deleted and resolved comments are hidden.
    active_comments: Mapped[list["DocumentComment"]] = relationship(
        "DocumentComment",
        primaryjoin="and_(Document.id == DocumentComment.document_id, DocumentComment.status == 'ACTIVE')",
        order_by="DocumentComment.id.desc()",
        viewonly=True,
        lazy="select",
    )


class DocumentVersion(Base):
    __tablename__ = "document_versions"
    __table_args__ = (
        # One ACTIVE version per document.
        Index(
            "uq_document_versions_active",
            "document_id",
            unique=True,
            postgresql_where=text("status = 'ACTIVE'"),
            sqlite_where=text("status = 'ACTIVE'"),
        ),
        Index("idx_document_versions_document", "document_id", "version"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    document_id: Mapped[int] = mapped_column(ForeignKey("documents.id", ondelete="CASCADE"), nullable=False)
    version: Mapped[str] = mapped_column(String(32), nullable=False)

    file_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    storage_key: Mapped[str | None] = mapped_column(String(512), nullable=True)
    file_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    file_size: Mapped[int | None] = mapped_column(Integer, nullable=True)
    file_type: Mapped[str | None] = mapped_column(String(128), nullable=True)
    sha256: Mapped[str | None] = mapped_column(String(64), nullable=True)

    change_description: Mapped[str] = mapped_column(String(512), nullable=False, default="")
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=VERSION_ACTIVE)

    created_by: Mapped[str | None] = mapped_column(String(320), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    document: Mapped[Document] = relationship("Document", back_populates="versions", lazy="selectin")


class ApprovalWorkflow(Base):
    __tablename__ = "approval_workflows"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    document_types: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    # [{"id": "step-1", "name": "Engineering review", "approver_ids": ["bob@example.com"]}, ...]
    steps: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    is_sequential: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    default_due_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    auto_start_on_upload: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    status: Mapped[str] = mapped_column(String(16), nullable=False, default="ACTIVE")  # ACTIVE, INACTIVE

    created_by: Mapped[str | None] = mapped_column(String(320), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


class DocumentApproval(Base):
    __tablename__ = "document_approvals"
    __table_args__ = (
        # One open approval per document version.
        Index(
            "uq_document_approvals_open",
            "document_id",
            "document_version",
            unique=True,
            postgresql_where=text("status IN ('PENDING', 'IN_PROGRESS')"),
            sqlite_where=text("status IN ('PENDING', 'IN_PROGRESS')"),
        ),
        Index("idx_document_approvals_document", "document_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    document_id: Mapped[int] = mapped_column(ForeignKey("documents.id", ondelete="CASCADE"), nullable=False)
    document_version: Mapped[str] = mapped_column(String(32), nullable=False)
    approval_workflow_id: Mapped[int] = mapped_column(
        ForeignKey("approval_workflows.id", ondelete="RESTRICT"),
        nullable=False,
    )

    status: Mapped[str] = mapped_column(String(16), nullable=False, default=APPROVAL_PENDING)
    # One entry per workflow step: {userId, stepId, stepName, status, date, comments}
    approvers: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    current_step: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    due_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    completion_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    comments: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_by: Mapped[str | None] = mapped_column(String(320), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    document: Mapped[Document] = relationship("Document", lazy="selectin")
    workflow: Mapped[ApprovalWorkflow] = relationship("ApprovalWorkflow", lazy="selectin")


class DocumentShare(Base):
    __tablename__ = "document_shares"
    __table_args__ = (
        Index("idx_document_shares_document", "document_id", "document_version"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    document_id: Mapped[int] = mapped_column(ForeignKey("documents.id", ondelete="CASCADE"), nullable=False)
    document_version: Mapped[str] = mapped_column(String(32), nullable=False)

    share_type: Mapped[str] = mapped_column(String(16), nullable=False, default="INTERNAL")  # INTERNAL, EXTERNAL, PUBLIC
    recipient_type: Mapped[str] = mapped_column(String(16), nullable=False, default="USER")  # USER, GROUP, EMAIL, LINK
    recipient_id: Mapped[str | None] = mapped_column(String(320), nullable=True)
    recipient_email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    access_level: Mapped[str] = mapped_column(String(16), nullable=False, default="VIEW")  # VIEW, COMMENT, EDIT, FULL

    expiration_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    share_token: Mapped[str | None] = mapped_column(String(128), nullable=True, unique=True)
    share_link: Mapped[str | None] = mapped_column(String(512), nullable=True)
    password_hash: Mapped[str | None] = mapped_column(String(255), nullable=True)

    status: Mapped[str] = mapped_column(String(16), nullable=False, default="ACTIVE")  # ACTIVE, REVOKED, EXPIRED
    access_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_accessed: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    created_by: Mapped[str | None] = mapped_column(String(320), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


class DocumentAccessLog(Base):
    """Append-only; never updated or deleted."""

    __tablename__ = "document_access_logs"
    __table_args__ = (
        Index("idx_document_access_logs_document", "document_id", "document_version"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    document_id: Mapped[int] = mapped_column(Integer, nullable=False)
    document_version: Mapped[str | None] = mapped_column(String(32), nullable=True)
    user_id: Mapped[str] = mapped_column(String(320), nullable=False, default="ANONYMOUS")
    action: Mapped[str] = mapped_column(String(32), nullable=False)  # VIEW, DOWNLOAD, EDIT, SHARE, SHARE_ACCESS
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    details: Mapped[str | None] = mapped_column(Text, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(512), nullable=True)


class DocumentComment(Base):
    __tablename__ = "document_comments"
    __table_args__ = (
        Index("idx_document_comments_document", "document_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    document_id: Mapped[int] = mapped_column(ForeignKey("documents.id", ondelete="CASCADE"), nullable=False)
    document_version: Mapped[str] = mapped_column(String(32), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    page_number: Mapped[int | None] = mapped_column(Integer, nullable=True)
    coordinates: Mapped[dict | None] = mapped_column(JSON, nullable=True)  # markup position on the sheet
    parent_id: Mapped[int | None] = mapped_column(ForeignKey("document_comments.id", ondelete="CASCADE"), nullable=True)
    attachments: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="ACTIVE")  # ACTIVE, RESOLVED, DELETED

    created_by: Mapped[str | None] = mapped_column(String(320), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


class DocumentTemplate(Base):
    """Starting point for a new document: a blank file plus defaults to prefill."""

    __tablename__ = "document_templates"
    __table_args__ = (
        Index("idx_document_templates_type", "type", "category"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    category: Mapped[str | None] = mapped_column(String(128), nullable=True)

    file_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    file_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    file_size: Mapped[int | None] = mapped_column(Integer, nullable=True)
    file_type: Mapped[str | None] = mapped_column(String(128), nullable=True)

    # [{"key": "project_name", "label": "Project"}, ...]
    placeholders: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    default_tags: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    default_access_level: Mapped[str] = mapped_column(String(16), nullable=False, default="INTERNAL")
    default_approval_workflow_id: Mapped[int | None] = mapped_column(
        ForeignKey("approval_workflows.id", ondelete="SET NULL"), nullable=True
    )

    status: Mapped[str] = mapped_column(String(16), nullable=False, default="ACTIVE")  # ACTIVE, INACTIVE

    created_by: Mapped[str | None] = mapped_column(String(320), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
