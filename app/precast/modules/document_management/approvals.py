"""
Approval workflow engine.

One DocumentApproval runs a workflow template against one document version:

    PENDING -> IN_PROGRESS -> APPROVED | REJECTED
    PENDING | IN_PROGRESS -> CANCELLED   (explicit cancel, or version superseded)

A rejection on any step closes the process at once. ``current_step`` is
informational unless ``enforce_sequence`` is requested for a sequential
workflow.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from app.precast.audit import record_event
from app.precast.modules.document_management.errors import (
    ApprovalAlreadyActive,
    ApprovalClosed,
    InvalidDecision,
    InvalidStep,
    InvalidWorkflow,
    NotAuthorizedApprover,
    NotFound,
    StepOutOfSequence,
)
from app.precast.modules.document_management.models import (
    APPROVAL_APPROVED,
    APPROVAL_CANCELLED,
    APPROVAL_IN_PROGRESS,
    APPROVAL_PENDING,
    APPROVAL_REJECTED,
    DOC_ACTIVE,
    DOC_DRAFT,
    DOC_PENDING_APPROVAL,
    DOC_REJECTED,
    OPEN_APPROVAL_STATUSES,
    ApprovalWorkflow,
    Document,
    DocumentApproval,
)

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

DECISIONS = (APPROVAL_APPROVED, APPROVAL_REJECTED)
TERMINAL_STATUSES = (APPROVAL_APPROVED, APPROVAL_REJECTED)


@dataclass
class WorkflowRequest:
    name: str
    created_by: str
    steps: list[dict[str, Any]]
    description: str | None = None
    document_types: list[str] = field(default_factory=list)
    is_sequential: bool = True
    default_due_days: int | None = None
    auto_start_on_upload: bool = False


def normalize_steps(raw_steps: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Validate workflow steps and fill in missing ids/names."""
    if not raw_steps:
        raise InvalidWorkflow("A workflow needs at least one step.")
    steps = []
    for i, raw in enumerate(raw_steps, start=1):
        if not isinstance(raw, dict):
            raise InvalidWorkflow(f"Step {i} must be an object.")
        approver_ids = raw.get("approver_ids")
        if approver_ids is None and raw.get("approver"):
            approver_ids = [raw["approver"]]
        if approver_ids is not None and not isinstance(approver_ids, list):
            raise InvalidWorkflow(f"Step {i} approver_ids must be a list.")
        approver_ids = [str(a).strip() for a in (approver_ids or []) if str(a).strip()]
        if not approver_ids:
            raise InvalidWorkflow(f"Step {i} has no approver.")
        steps.append(
            {
                "id": str(raw.get("id") or f"step-{i}"),
                "name": str(raw.get("name") or f"Step {i}").strip(),
                "approver_ids": approver_ids,
            }
        )
    return steps


def create_workflow(s: "Session", req: WorkflowRequest) -> ApprovalWorkflow:
    if not (req.name or "").strip():
        raise InvalidWorkflow("Workflow name is required.")
    if req.default_due_days is not None and req.default_due_days < 0:
        raise InvalidWorkflow("default_due_days cannot be negative.")

    now = datetime.utcnow()
    wf = ApprovalWorkflow(
        name=req.name.strip(),
        description=(req.description or "").strip() or None,
        document_types=list(req.document_types or []),
        steps=normalize_steps(req.steps),
        is_sequential=req.is_sequential,
        default_due_days=req.default_due_days,
        auto_start_on_upload=req.auto_start_on_upload,
        status="ACTIVE",
        created_by=req.created_by,
        created_at=now,
        updated_at=now,
    )
    s.add(wf)
    s.flush()

    record_event(
        s,
        actor=req.created_by,
        action="workflow.create",
        entity_type="ApprovalWorkflow",
        entity_id=str(wf.id),
        metadata={"name": wf.name, "steps": len(wf.steps), "is_sequential": wf.is_sequential},
    )
    s.flush()
    return wf


def find_open_approval(s: "Session", document_id: int, version: str) -> DocumentApproval | None:
    return s.execute(
        select(DocumentApproval).where(
            DocumentApproval.document_id == document_id,
            DocumentApproval.document_version == version,
            DocumentApproval.status.in_(OPEN_APPROVAL_STATUSES),
        )
    ).scalars().first()


def find_auto_start_workflow(s: "Session", document_type: str | None) -> ApprovalWorkflow | None:
    if not document_type:
        return None
    candidates = s.execute(
        select(ApprovalWorkflow)
        .where(ApprovalWorkflow.status == "ACTIVE", ApprovalWorkflow.auto_start_on_upload.is_(True))
        .order_by(ApprovalWorkflow.id.asc())
    ).scalars().all()
    for wf in candidates:
        if document_type in (wf.document_types or []):
            return wf
    return None


def start_approval(s: "Session", document_id: int, workflow_id: int, initiated_by: str) -> DocumentApproval:
    d = s.get(Document, document_id, with_for_update=True)
    if d is None:
        raise NotFound(f"Document {document_id} not found.", document_id=document_id)
    wf = s.get(ApprovalWorkflow, workflow_id)
    if wf is None:
        raise NotFound(f"Approval workflow {workflow_id} not found.", document_id=document_id, workflow_id=workflow_id)
    if not wf.steps:
        raise InvalidWorkflow(f"Approval workflow {workflow_id} has no steps.", document_id=document_id)

    version = d.version
    existing = find_open_approval(s, d.id, version)
    if existing is not None:
        raise ApprovalAlreadyActive(
            f"Document {d.id} v{version} already has an active approval process.",
            document_id=d.id,
            approval_id=existing.id,
        )

    now = datetime.utcnow()
    approval = DocumentApproval(
        document_id=d.id,
        document_version=version,
        approval_workflow_id=wf.id,
        status=APPROVAL_PENDING,
        approvers=[
            {
                "userId": step["approver_ids"][0],
                "stepId": step.get("id"),
                "stepName": step.get("name"),
                "status": APPROVAL_PENDING,
                "date": None,
                "comments": "",
            }
            for step in wf.steps
        ],
        current_step=0,
        start_date=now,
        due_date=now + timedelta(days=wf.default_due_days) if wf.default_due_days else None,
        created_by=initiated_by,
        created_at=now,
        updated_at=now,
    )
    try:
        with s.begin_nested():
            s.add(approval)
            s.flush()
    except IntegrityError:
        # A concurrent start() won the (document, version) slot.
        raise ApprovalAlreadyActive(
            f"Document {d.id} v{version} already has an active approval process.",
            document_id=d.id,
        ) from None

    d.status = DOC_PENDING_APPROVAL
    d.updated_at = now
    d.updated_by = initiated_by

    record_event(
        s,
        actor=initiated_by,
        action="approval.start",
        entity_type="DocumentApproval",
        entity_id=str(approval.id),
        metadata={"document_id": d.id, "version": version, "workflow_id": wf.id, "steps": len(approval.approvers)},
    )
    logger.info("Approval %s started for document %s v%s (workflow %s)", approval.id, d.id, version, wf.id)
    s.flush()
    return approval


def decide_approval_step(
    s: "Session",
    approval_id: int,
    step_index: int,
    user_id: str,
    decision: str,
    comments: str | None = None,
    *,
    enforce_sequence: bool = False,
) -> DocumentApproval:
    approval = s.get(DocumentApproval, approval_id, with_for_update=True)
    if approval is None:
        raise NotFound(f"Approval {approval_id} not found.", approval_id=approval_id)
    if approval.status not in OPEN_APPROVAL_STATUSES:
        raise ApprovalClosed(
            f"Approval {approval_id} is {approval.status}; it can no longer be decided.",
            document_id=approval.document_id,
            approval_id=approval_id,
        )

    approvers = [dict(a) for a in (approval.approvers or [])]
    if isinstance(step_index, bool) or not isinstance(step_index, int) or not 0 <= step_index < len(approvers):
        raise InvalidStep(
            f"Step {step_index} is out of range for approval {approval_id}.",
            document_id=approval.document_id,
            approval_id=approval_id,
        )

    entry = approvers[step_index]
    if entry.get("userId") != user_id:
        raise NotAuthorizedApprover(
            f"{user_id} is not the approver for step {step_index}.",
            document_id=approval.document_id,
            approval_id=approval_id,
        )
    if decision not in DECISIONS:
        raise InvalidDecision(
            f"Decision must be one of: {', '.join(DECISIONS)}",
            document_id=approval.document_id,
            approval_id=approval_id,
        )
    if enforce_sequence and approval.workflow.is_sequential and step_index != approval.current_step:
        raise StepOutOfSequence(
            f"Step {approval.current_step} must be decided before step {step_index}.",
            document_id=approval.document_id,
            approval_id=approval_id,
        )

    now = datetime.utcnow()
    approvers[step_index] = {
        **entry,
        "status": decision,
        "date": now.isoformat(),
        "comments": comments or "",
    }

    status = APPROVAL_IN_PROGRESS
    current_step = approval.current_step
    if decision == APPROVAL_REJECTED:
        status = APPROVAL_REJECTED
    elif all(a.get("status") == APPROVAL_APPROVED for a in approvers):
        status = APPROVAL_APPROVED
    else:
        current_step = min(step_index + 1, len(approvers) - 1)

    approval.approvers = approvers
    approval.status = status
    approval.current_step = current_step
    approval.completion_date = now if status in TERMINAL_STATUSES else None
    approval.updated_at = now

    if status in TERMINAL_STATUSES:
        d = s.get(Document, approval.document_id, with_for_update=True)
        if d is not None:
            d.status = DOC_ACTIVE if status == APPROVAL_APPROVED else DOC_REJECTED
            d.updated_at = now
            d.updated_by = user_id

    record_event(
        s,
        actor=user_id,
        action="approval.decide",
        entity_type="DocumentApproval",
        entity_id=str(approval.id),
        reason=comments or None,
        metadata={
            "document_id": approval.document_id,
            "version": approval.document_version,
            "step": step_index,
            "decision": decision,
            "status": status,
        },
    )
    s.flush()
    return approval


def _mark_cancelled(approval: DocumentApproval, now: datetime, reason: str | None) -> None:
    approval.status = APPROVAL_CANCELLED
    approval.completion_date = now
    approval.updated_at = now
    if reason:
        approval.comments = reason


def cancel_approval(s: "Session", approval_id: int, user_id: str, reason: str | None = None) -> DocumentApproval:
    """Withdraw an open approval; the document drops back to DRAFT."""
    approval = s.get(DocumentApproval, approval_id, with_for_update=True)
    if approval is None:
        raise NotFound(f"Approval {approval_id} not found.", approval_id=approval_id)
    if approval.status not in OPEN_APPROVAL_STATUSES:
        raise ApprovalClosed(
            f"Approval {approval_id} is {approval.status}; it can no longer be cancelled.",
            document_id=approval.document_id,
            approval_id=approval_id,
        )

    now = datetime.utcnow()
    _mark_cancelled(approval, now, reason)

    d = s.get(Document, approval.document_id, with_for_update=True)
    if d is not None and d.status == DOC_PENDING_APPROVAL and d.version == approval.document_version:
        d.status = DOC_DRAFT
        d.updated_at = now
        d.updated_by = user_id

    record_event(
        s,
        actor=user_id,
        action="approval.cancel",
        entity_type="DocumentApproval",
        entity_id=str(approval.id),
        reason=reason,
        metadata={"document_id": approval.document_id, "version": approval.document_version},
    )
    s.flush()
    return approval


def cancel_open_approvals_for_version(s: "Session", document_id: int, version: str, user_id: str) -> list[DocumentApproval]:
    """Close approvals left behind when ``version`` is superseded. Document status is the caller's job."""
    now = datetime.utcnow()
    open_approvals = s.execute(
        select(DocumentApproval).where(
            DocumentApproval.document_id == document_id,
            DocumentApproval.document_version == version,
            DocumentApproval.status.in_(OPEN_APPROVAL_STATUSES),
        )
    ).scalars().all()
    for approval in open_approvals:
        _mark_cancelled(approval, now, f"Superseded by a new version of document {document_id}")
        record_event(
            s,
            actor=user_id,
            action="approval.cancel",
            entity_type="DocumentApproval",
            entity_id=str(approval.id),
            reason="version superseded",
            metadata={"document_id": document_id, "version": version},
        )
    s.flush()
    return list(open_approvals)
