from __future__ import annotations

from typing import Any

from flask import Blueprint, abort, current_app, g, jsonify, request, send_file
from sqlalchemy import select

from app.precast.db import db_session
from app.precast.models import User
from app.precast.modules.document_management.approvals import (
    WorkflowRequest,
    cancel_approval,
    create_workflow,
    decide_approval_step,
    start_approval,
)
from app.precast.modules.document_management.errors import InvalidDocument, NotFound
from app.precast.modules.document_management.models import (
    ApprovalWorkflow,
    Document,
    DocumentApproval,
    DocumentComment,
    DocumentFolder,
    DocumentShare,
    DocumentTemplate,
    DocumentVersion,
)
from app.precast.modules.document_management.service import (
    CommentRequest,
    CreateDocumentRequest,
    DocumentFilters,
    FileUpload,
    FolderRequest,
    TemplateRequest,
    UpdateDocumentRequest,
    add_comment,
    create_folder,
    create_template,
    get_document,
    get_document_or_raise,
    list_comments,
    list_documents,
    list_folders,
    list_templates,
    parse_bool,
    parse_datetime,
    parse_dict,
    parse_int,
    parse_list,
    parse_text,
)
from app.precast.modules.document_management.sharing import (
    ShareRequest,
    can_view_document,
    log_access,
    open_share,
    revoke_share,
    share_document,
    share_permits,
)
from app.precast.modules.document_management.versioning import create_document, list_versions, update_document
from app.precast.rbac import require_permission
from app.precast.storage import StorageError, storage_from_config

bp = Blueprint("documents", __name__)
# Unauthenticated share links; mounted at the site root so share_link paths resolve.
share_bp = Blueprint("share", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _payload() -> dict[str, Any]:
    if request.is_json:
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            raise InvalidDocument("Request body must be a JSON object.")
        return data
    return request.form.to_dict()


def _upload() -> FileUpload | None:
    f = request.files.get("file")
    if not f or not f.filename:
        return None
    return FileUpload(
        filename=f.filename,
        data=f.read(),
        content_type=(f.mimetype or "application/octet-stream"),
    )


def _field(data: dict[str, Any], name: str, parser=parse_text, default: Any = None) -> Any:
    """Read one payload field; anything the parser rejects becomes a 400."""
    if name not in data:
        return default
    raw = data[name]
    try:
        return parser(raw)
    except (TypeError, ValueError) as e:
        raise InvalidDocument(f"Invalid {name}: {e}") from None


def _ensure_can_view(d: Document) -> None:
    u = _current_user()
    if not can_view_document(d, u.identity, u.group_keys):
        g.missing_permission = f"document:{d.id}:{d.access_level}"
        abort(403)


def _ensure_can_view_id(s, document_id: int) -> Document:
    d = get_document_or_raise(s, document_id)
    _ensure_can_view(d)
    return d


def _ensure_can_view_approval(s, approval_id: int) -> DocumentApproval:
    a = s.get(DocumentApproval, approval_id)
    if a is None:
        raise NotFound(f"Approval {approval_id} not found.", approval_id=approval_id)
    _ensure_can_view_id(s, a.document_id)
    return a


def _iso(v) -> str | None:
    return v.isoformat() if v is not None else None


def _version_json(v: DocumentVersion) -> dict[str, Any]:
    return {
        "id": v.id,
        "document_id": v.document_id,
        "version": v.version,
        "status": v.status,
        "file_url": v.file_url,
        "file_name": v.file_name,
        "file_size": v.file_size,
        "file_type": v.file_type,
        "sha256": v.sha256,
        "change_description": v.change_description,
        "created_by": v.created_by,
        "created_at": _iso(v.created_at),
    }


def _document_json(d: Document, *, versions: list[DocumentVersion] | None = None) -> dict[str, Any]:
    out = {
        "id": d.id,
        "title": d.title,
        "description": d.description,
        "type": d.type,
        "category": d.category,
        "tags": d.tags or [],
        "file_url": d.file_url,
        "file_name": d.file_name,
        "file_size": d.file_size,
        "file_type": d.file_type,
        "version": d.version,
        "status": d.status,
        "project_id": d.project_id,
        "folder_id": d.folder_id,
        "related_entities": d.related_entities or [],
        "expiration_date": _iso(d.expiration_date),
        "access_level": d.access_level,
        "access_groups": d.access_groups or [],
        "custom_fields": d.custom_fields or {},
        "created_by": d.created_by,
        "created_at": _iso(d.created_at),
        "updated_by": d.updated_by,
        "updated_at": _iso(d.updated_at),
    }
    if versions is not None:
        out["versions"] = [_version_json(v) for v in versions]
    return out


def _approval_json(a: DocumentApproval) -> dict[str, Any]:
    return {
        "id": a.id,
        "document_id": a.document_id,
        "document_version": a.document_version,
        "approval_workflow_id": a.approval_workflow_id,
        "status": a.status,
        "approvers": a.approvers or [],
        "current_step": a.current_step,
        "start_date": _iso(a.start_date),
        "due_date": _iso(a.due_date),
        "completion_date": _iso(a.completion_date),
        "comments": a.comments,
        "created_by": a.created_by,
    }


def _workflow_json(wf: ApprovalWorkflow) -> dict[str, Any]:
    return {
        "id": wf.id,
        "name": wf.name,
        "description": wf.description,
        "document_types": wf.document_types or [],
        "steps": wf.steps or [],
        "is_sequential": wf.is_sequential,
        "default_due_days": wf.default_due_days,
        "auto_start_on_upload": wf.auto_start_on_upload,
        "status": wf.status,
    }


def _share_json(sh: DocumentShare) -> dict[str, Any]:
    return {
        "id": sh.id,
        "document_id": sh.document_id,
        "document_version": sh.document_version,
        "share_type": sh.share_type,
        "recipient_type": sh.recipient_type,
        "recipient_id": sh.recipient_id,
        "recipient_email": sh.recipient_email,
        "access_level": sh.access_level,
        "expiration_date": _iso(sh.expiration_date),
        "share_link": sh.share_link,
        "has_password": sh.password_hash is not None,
        "status": sh.status,
        "access_count": sh.access_count,
        "last_accessed": _iso(sh.last_accessed),
    }


def _folder_json(f: DocumentFolder) -> dict[str, Any]:
    return {
        "id": f.id,
        "name": f.name,
        "description": f.description,
        "parent_id": f.parent_id,
        "path": f.path,
        "access_level": f.access_level,
        "access_groups": f.access_groups or [],
    }


def _comment_json(c: DocumentComment) -> dict[str, Any]:
    return {
        "id": c.id,
        "document_id": c.document_id,
        "document_version": c.document_version,
        "content": c.content,
        "page_number": c.page_number,
        "coordinates": c.coordinates,
        "parent_id": c.parent_id,
        "attachments": c.attachments or [],
        "status": c.status,
        "created_by": c.created_by,
        "created_at": _iso(c.created_at),
    }


def _template_json(t: DocumentTemplate) -> dict[str, Any]:
    return {
        "id": t.id,
        "name": t.name,
        "description": t.description,
        "type": t.type,
        "category": t.category,
        "file_url": t.file_url,
        "file_name": t.file_name,
        "file_size": t.file_size,
        "file_type": t.file_type,
        "placeholders": t.placeholders or [],
        "default_tags": t.default_tags or [],
        "default_access_level": t.default_access_level,
        "default_approval_workflow_id": t.default_approval_workflow_id,
        "status": t.status,
        "created_by": t.created_by,
        "created_at": _iso(t.created_at),
    }


def _send_version_file(v: DocumentVersion):
    if not v.storage_key:
        raise NotFound(f"Version {v.id} has no stored file.", document_id=v.document_id)
    storage = storage_from_config(current_app.config)
    try:
        fobj = storage.open(v.storage_key)
    except StorageError:
        current_app.logger.exception("Blob missing for version %s (key=%s)", v.id, v.storage_key)
        raise NotFound(f"File for version {v.version} is missing from storage.", document_id=v.document_id) from None
    return send_file(
        fobj,
        mimetype=v.file_type or "application/octet-stream",
        as_attachment=True,
        download_name=v.file_name or "document.bin",
        max_age=0,
    )


@bp.get("/")
@require_permission("docs.view")
def documents_list():
    s = db_session()
    u = _current_user()
    args = request.args
    filters = DocumentFilters(
        type=args.get("type") or None,
        category=args.get("category") or None,
        status=args.get("status") or None,
        project_id=_field(args, "project_id", parse_int),
        folder_id=_field(args, "folder_id", parse_int),
        created_by=args.get("created_by") or None,
        access_level=args.get("access_level") or None,
        tags=_field(args, "tags", parse_list) or [],
        date_from=_field(args, "date_from", parse_datetime),
        date_to=_field(args, "date_to", parse_datetime),
        search=args.get("search") or None,
    )
    docs = [d for d in list_documents(s, filters) if can_view_document(d, u.identity, u.group_keys)]
    return jsonify({"documents": [_document_json(d) for d in docs]})


@bp.post("/")
@require_permission("docs.create")
def documents_create():
    s = db_session()
    u = _current_user()
    data = _payload()

    req = CreateDocumentRequest(
        title=_field(data, "title", default=""),
        created_by=u.identity,
        description=_field(data, "description"),
        type=_field(data, "type"),
        category=_field(data, "category"),
        tags=_field(data, "tags", parse_list) or [],
        status=_field(data, "status", default="ACTIVE"),
        project_id=_field(data, "project_id", parse_int),
        folder_id=_field(data, "folder_id", parse_int),
        related_entities=_field(data, "related_entities", parse_list) or [],
        expiration_date=_field(data, "expiration_date", parse_datetime),
        access_level=_field(data, "access_level", default="INTERNAL"),
        access_groups=_field(data, "access_groups", parse_list) or [],
        custom_fields=_field(data, "custom_fields", parse_dict) or {},
        file_url=_field(data, "file_url"),
        file_name=_field(data, "file_name"),
        file_size=_field(data, "file_size", parse_int),
        file_type=_field(data, "file_type"),
        approval_workflow_id=_field(data, "approval_workflow_id", parse_int),
    )
    d = create_document(s, storage_from_config(current_app.config), req, _upload())
    s.commit()
    return jsonify(_document_json(d, versions=list_versions(s, d.id))), 201


@bp.get("/<int:document_id>")
@require_permission("docs.view")
def documents_detail(document_id: int):
    s = db_session()
    u = _current_user()
    d = get_document_or_raise(s, document_id)
    _ensure_can_view(d)
    with_comments = parse_bool(request.args.get("include_comments"))
    d = get_document(s, document_id, viewer=u.identity, include_versions=True, include_comments=with_comments)
    s.commit()
    out = _document_json(d, versions=list_versions(s, d.id))
    if with_comments:
        out["comments"] = [_comment_json(c) for c in d.active_comments]
    return jsonify(out)


@bp.patch("/<int:document_id>")
@require_permission("docs.edit")
def documents_update(document_id: int):
    s = db_session()
    u = _current_user()
    _ensure_can_view_id(s, document_id)
    data = _payload()

    req = UpdateDocumentRequest(
        updated_by=u.identity,
        title=_field(data, "title"),
        description=_field(data, "description"),
        type=_field(data, "type"),
        category=_field(data, "category"),
        tags=_field(data, "tags", parse_list),
        status=_field(data, "status"),
        project_id=_field(data, "project_id", parse_int),
        folder_id=_field(data, "folder_id", parse_int),
        related_entities=_field(data, "related_entities", parse_list),
        expiration_date=_field(data, "expiration_date", parse_datetime),
        access_level=_field(data, "access_level"),
        access_groups=_field(data, "access_groups", parse_list),
        custom_fields=_field(data, "custom_fields", parse_dict),
        is_new_version=_field(data, "is_new_version", parse_bool, default=False),
        change_description=_field(data, "change_description"),
        approval_workflow_id=_field(data, "approval_workflow_id", parse_int),
    )
    d = update_document(s, storage_from_config(current_app.config), document_id, req, _upload())
    s.commit()
    return jsonify(_document_json(d, versions=list_versions(s, d.id)))


@bp.get("/<int:document_id>/versions")
@require_permission("docs.view")
def documents_versions(document_id: int):
    s = db_session()
    _ensure_can_view_id(s, document_id)
    return jsonify({"versions": [_version_json(v) for v in list_versions(s, document_id)]})


@bp.get("/versions/<int:version_id>/download")
@require_permission("docs.download")
def versions_download(version_id: int):
    s = db_session()
    u = _current_user()
    v = s.get(DocumentVersion, version_id)
    if v is None:
        raise NotFound(f"Version {version_id} not found.")
    _ensure_can_view(get_document_or_raise(s, v.document_id))

    resp = _send_version_file(v)
    log_access(
        s,
        v.document_id,
        v.version,
        "DOWNLOAD",
        user_id=u.identity,
        ip_address=request.remote_addr,
        user_agent=request.user_agent.string,
    )
    s.commit()
    return resp


@bp.get("/<int:document_id>/approvals")
@require_permission("docs.view")
def approvals_list(document_id: int):
    s = db_session()
    _ensure_can_view_id(s, document_id)
    approvals = (
        s.execute(
            select(DocumentApproval)
            .where(DocumentApproval.document_id == document_id)
            .order_by(DocumentApproval.id.desc())
        )
        .scalars()
        .all()
    )
    return jsonify({"approvals": [_approval_json(a) for a in approvals]})


@bp.post("/<int:document_id>/approvals")
@require_permission("docs.approve")
def approvals_start(document_id: int):
    s = db_session()
    u = _current_user()
    _ensure_can_view_id(s, document_id)
    data = _payload()
    workflow_id = _field(data, "workflow_id", parse_int)
    if workflow_id is None:
        raise InvalidDocument("workflow_id is required.", document_id=document_id)

    approval = start_approval(s, document_id, workflow_id, u.identity)
    s.commit()
    return jsonify(_approval_json(approval)), 201


@bp.post("/approvals/<int:approval_id>/steps/<int:step_index>")
@require_permission("docs.approve")
def approvals_decide(approval_id: int, step_index: int):
    s = db_session()
    u = _current_user()
    _ensure_can_view_approval(s, approval_id)
    data = _payload()

    approval = decide_approval_step(
        s,
        approval_id,
        step_index,
        u.identity,
        (_field(data, "decision") or "").upper(),
        comments=_field(data, "comments"),
        enforce_sequence=bool(current_app.config.get("APPROVAL_ENFORCE_SEQUENCE")),
    )
    s.commit()
    return jsonify(_approval_json(approval))


@bp.post("/approvals/<int:approval_id>/cancel")
@require_permission("docs.approve")
def approvals_cancel(approval_id: int):
    s = db_session()
    u = _current_user()
    _ensure_can_view_approval(s, approval_id)
    data = _payload()
    approval = cancel_approval(s, approval_id, u.identity, reason=_field(data, "reason"))
    s.commit()
    return jsonify(_approval_json(approval))


@bp.post("/<int:document_id>/shares")
@require_permission("docs.share")
def shares_create(document_id: int):
    s = db_session()
    u = _current_user()
    _ensure_can_view_id(s, document_id)
    data = _payload()

    req = ShareRequest(
        share_type=_field(data, "share_type", default="INTERNAL"),
        recipient_type=_field(data, "recipient_type", default="USER"),
        access_level=_field(data, "access_level", default="VIEW"),
        recipient_id=_field(data, "recipient_id"),
        recipient_email=_field(data, "recipient_email"),
        document_version=_field(data, "document_version"),
        expiration_date=_field(data, "expiration_date", parse_datetime),
        password=_field(data, "password", lambda raw: parse_text(raw, strip=False)) or None,
    )
    share = share_document(s, document_id, req, u.identity)
    s.commit()
    return jsonify(_share_json(share)), 201


@bp.post("/shares/<int:share_id>/revoke")
@require_permission("docs.share")
def shares_revoke(share_id: int):
    s = db_session()
    u = _current_user()
    sh = s.get(DocumentShare, share_id)
    if sh is None:
        raise NotFound(f"Share {share_id} not found.", share_id=share_id)
    _ensure_can_view_id(s, sh.document_id)
    data = _payload()
    share = revoke_share(s, share_id, u.identity, reason=_field(data, "reason"))
    s.commit()
    return jsonify(_share_json(share))


@bp.post("/<int:document_id>/comments")
@require_permission("docs.comment")
def comments_create(document_id: int):
    s = db_session()
    u = _current_user()
    _ensure_can_view_id(s, document_id)
    data = _payload()
    content = _field(data, "content") or ""
    if not content:
        raise InvalidDocument("Comment content is required.", document_id=document_id)

    req = CommentRequest(
        content=content,
        document_version=_field(data, "document_version"),
        page_number=_field(data, "page_number", parse_int),
        coordinates=_field(data, "coordinates", parse_dict),
        parent_id=_field(data, "parent_id", parse_int),
        attachments=_field(data, "attachments", parse_list) or [],
    )
    c = add_comment(s, document_id, req, u.identity)
    s.commit()
    return jsonify(_comment_json(c)), 201


@bp.get("/<int:document_id>/comments")
@require_permission("docs.view")
def comments_list(document_id: int):
    s = db_session()
    _ensure_can_view_id(s, document_id)
    return jsonify({"comments": [_comment_json(c) for c in list_comments(s, document_id)]})


@bp.get("/folders")
@require_permission("docs.view")
def folders_list():
    s = db_session()
    parent_id = _field(request.args, "parent_id", parse_int)
    return jsonify({"folders": [_folder_json(f) for f in list_folders(s, parent_id)]})


@bp.post("/folders")
@require_permission("folders.manage")
def folders_create():
    s = db_session()
    u = _current_user()
    data = _payload()
    name = _field(data, "name") or ""
    if not name:
        raise InvalidDocument("Folder name is required.")

    folder = create_folder(
        s,
        FolderRequest(
            name=name,
            created_by=u.identity,
            description=_field(data, "description"),
            parent_id=_field(data, "parent_id", parse_int),
            access_level=_field(data, "access_level", default="INTERNAL"),
            access_groups=_field(data, "access_groups", parse_list) or [],
        ),
    )
    s.commit()
    return jsonify(_folder_json(folder)), 201


@bp.get("/workflows")
@require_permission("docs.view")
def workflows_list():
    s = db_session()
    workflows = s.execute(select(ApprovalWorkflow).order_by(ApprovalWorkflow.name.asc())).scalars().all()
    return jsonify({"workflows": [_workflow_json(wf) for wf in workflows]})


@bp.post("/workflows")
@require_permission("workflows.manage")
def workflows_create():
    s = db_session()
    u = _current_user()
    data = _payload()

    steps = _field(data, "steps", parse_list) or []
    wf = create_workflow(
        s,
        WorkflowRequest(
            name=_field(data, "name") or "",
            created_by=u.identity,
            steps=steps,
            description=_field(data, "description"),
            document_types=_field(data, "document_types", parse_list) or [],
            is_sequential=_field(data, "is_sequential", parse_bool, default=True),
            default_due_days=_field(data, "default_due_days", parse_int),
            auto_start_on_upload=_field(data, "auto_start_on_upload", parse_bool, default=False),
        ),
    )
    s.commit()
    return jsonify(_workflow_json(wf)), 201


@bp.get("/templates")
@require_permission("docs.view")
def templates_list():
    s = db_session()
    args = request.args
    templates = list_templates(
        s,
        type=args.get("type") or None,
        category=args.get("category") or None,
        status=args.get("status") or None,
    )
    return jsonify({"templates": [_template_json(t) for t in templates]})


@bp.post("/templates")
@require_permission("templates.manage")
def templates_create():
    s = db_session()
    u = _current_user()
    data = _payload()

    t = create_template(
        s,
        storage_from_config(current_app.config),
        TemplateRequest(
            name=_field(data, "name", default=""),
            created_by=u.identity,
            description=_field(data, "description"),
            type=_field(data, "type"),
            category=_field(data, "category"),
            placeholders=_field(data, "placeholders", parse_list) or [],
            default_tags=_field(data, "default_tags", parse_list) or [],
            default_access_level=_field(data, "default_access_level", default="INTERNAL"),
            default_approval_workflow_id=_field(data, "default_approval_workflow_id", parse_int),
            status=_field(data, "status", default="ACTIVE"),
        ),
        _upload(),
    )
    s.commit()
    return jsonify(_template_json(t)), 201


@share_bp.get("/share/<int:document_id>/<token>")
def share_open(document_id: int, token: str):
    s = db_session()
    password = request.headers.get("X-Share-Password") or request.args.get("password")
    share, d = open_share(
        s,
        document_id,
        token,
        password,
        ip_address=request.remote_addr,
        user_agent=request.user_agent.string,
    )
    s.commit()

    if parse_bool(request.args.get("download")):
        if not share_permits(share, "VIEW"):
            abort(403)
        v = s.execute(
            select(DocumentVersion).where(
                DocumentVersion.document_id == d.id,
                DocumentVersion.version == share.document_version,
            )
        ).scalars().first()
        if v is None:
            raise NotFound(f"Version {share.document_version} not found.", document_id=d.id)
        return _send_version_file(v)

    return jsonify(
        {
            "document": {
                "id": d.id,
                "title": d.title,
                "description": d.description,
                "type": d.type,
                "version": share.document_version,
                "file_name": d.file_name,
            },
            "share": {
                "access_level": share.access_level,
                "expiration_date": _iso(share.expiration_date),
                "access_count": share.access_count,
            },
        }
    )
