from datetime import datetime, timedelta

import pytest
from sqlalchemy import select

from app.precast.models import AuditEvent
from app.precast.modules.document_management import approvals
from app.precast.modules.document_management.approvals import (
    WorkflowRequest,
    cancel_approval,
    create_workflow,
    decide_approval_step,
    start_approval,
)
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
from app.precast.modules.document_management.models import DocumentApproval


def test_start_builds_one_entry_per_step(s, make_document, make_workflow):
    d = make_document()
    wf = make_workflow(approvers=("bob", "carol", "dave"), default_due_days=5)

    a = start_approval(s, d.id, wf.id, "alice")

    assert a.status == "PENDING"
    assert a.current_step == 0
    assert a.document_version == "1.0"
    assert [e["userId"] for e in a.approvers] == ["bob", "carol", "dave"]
    assert [e["stepId"] for e in a.approvers] == ["step-1", "step-2", "step-3"]
    assert all(e["status"] == "PENDING" and e["date"] is None for e in a.approvers)
    assert a.due_date - a.start_date == timedelta(days=5)
    assert d.status == "PENDING_APPROVAL"


def test_start_without_due_days_has_no_due_date(s, make_document, make_workflow):
    a = start_approval(s, make_document().id, make_workflow().id, "alice")
    assert a.due_date is None


def test_start_missing_targets(s, make_document, make_workflow):
    wf = make_workflow()
    with pytest.raises(NotFound):
        start_approval(s, 12345, wf.id, "alice")
    with pytest.raises(NotFound):
        start_approval(s, make_document().id, 999, "alice")


def test_only_one_open_approval_per_version(s, make_document, make_workflow):
    d = make_document()
    wf = make_workflow()
    start_approval(s, d.id, wf.id, "alice")
    with pytest.raises(ApprovalAlreadyActive):
        start_approval(s, d.id, wf.id, "alice")


def test_concurrent_start_is_caught_by_unique_index(s, make_document, make_workflow, monkeypatch):
    d = make_document()
    wf = make_workflow()
    first = start_approval(s, d.id, wf.id, "alice")

    # Simulate a racer that checked before the first insert landed.
    monkeypatch.setattr(approvals, "find_open_approval", lambda *a, **kw: None)
    with pytest.raises(ApprovalAlreadyActive):
        start_approval(s, d.id, wf.id, "mallory")

    # The savepoint rolled back only the losing insert.
    rows = s.execute(select(DocumentApproval).where(DocumentApproval.document_id == d.id)).scalars().all()
    assert [r.id for r in rows] == [first.id]
    s.commit()


def test_all_steps_approved_closes_as_approved(s, make_document, make_workflow):
    d = make_document()
    a = start_approval(s, d.id, make_workflow().id, "alice")

    decide_approval_step(s, a.id, 0, "bob", "APPROVED", "Dimensions OK")
    assert a.status == "IN_PROGRESS"
    assert a.current_step == 1
    assert a.completion_date is None
    assert a.approvers[0]["status"] == "APPROVED"
    assert a.approvers[0]["comments"] == "Dimensions OK"
    assert a.approvers[0]["date"] is not None
    assert d.status == "PENDING_APPROVAL"

    decide_approval_step(s, a.id, 1, "carol", "APPROVED")
    assert a.status == "APPROVED"
    assert a.completion_date is not None
    assert d.status == "ACTIVE"


def test_rejection_ends_process_immediately(s, make_document, make_workflow):
    d = make_document()
    a = start_approval(s, d.id, make_workflow(approvers=("bob", "carol", "dave")).id, "alice")

    decide_approval_step(s, a.id, 0, "bob", "REJECTED", "Rebar cover too thin")

    assert a.status == "REJECTED"
    assert a.completion_date is not None
    assert d.status == "REJECTED"
    assert [e["status"] for e in a.approvers] == ["REJECTED", "PENDING", "PENDING"]
    with pytest.raises(ApprovalClosed):
        decide_approval_step(s, a.id, 1, "carol", "APPROVED")


def test_rejection_after_an_approval_is_final(s, make_document, make_workflow):
    d = make_document()
    a = start_approval(s, d.id, make_workflow(approvers=("bob", "carol", "dave")).id, "alice")

    decide_approval_step(s, a.id, 0, "bob", "APPROVED")
    assert a.status == "IN_PROGRESS"
    decide_approval_step(s, a.id, 1, "carol", "REJECTED", "Lifting inserts missing")

    assert a.status == "REJECTED"
    assert d.status == "REJECTED"
    assert [e["status"] for e in a.approvers] == ["APPROVED", "REJECTED", "PENDING"]
    with pytest.raises(ApprovalClosed):
        decide_approval_step(s, a.id, 2, "dave", "APPROVED")
    assert a.status == "REJECTED"
    assert a.approvers[2]["date"] is None


def test_decision_preconditions(s, make_document, make_workflow):
    a = start_approval(s, make_document().id, make_workflow().id, "alice")

    with pytest.raises(NotFound):
        decide_approval_step(s, 999, 0, "bob", "APPROVED")
    with pytest.raises(InvalidStep):
        decide_approval_step(s, a.id, 2, "bob", "APPROVED")
    with pytest.raises(InvalidStep):
        decide_approval_step(s, a.id, -1, "bob", "APPROVED")
    with pytest.raises(NotAuthorizedApprover):
        decide_approval_step(s, a.id, 0, "carol", "APPROVED")
    with pytest.raises(InvalidDecision):
        decide_approval_step(s, a.id, 0, "bob", "MAYBE")

    assert a.status == "PENDING"
    assert all(e["status"] == "PENDING" for e in a.approvers)


def test_steps_may_be_decided_out_of_order_by_default(s, make_document, make_workflow):
    d = make_document()
    a = start_approval(s, d.id, make_workflow().id, "alice")

    decide_approval_step(s, a.id, 1, "carol", "APPROVED")
    assert a.status == "IN_PROGRESS"
    assert a.current_step == 1

    decide_approval_step(s, a.id, 0, "bob", "APPROVED")
    assert a.status == "APPROVED"
    assert d.status == "ACTIVE"


def test_strict_mode_enforces_sequence(s, make_document, make_workflow):
    a = start_approval(s, make_document().id, make_workflow().id, "alice")

    with pytest.raises(StepOutOfSequence) as exc:
        decide_approval_step(s, a.id, 1, "carol", "APPROVED", enforce_sequence=True)
    assert isinstance(exc.value, InvalidStep)

    decide_approval_step(s, a.id, 0, "bob", "APPROVED", enforce_sequence=True)
    decide_approval_step(s, a.id, 1, "carol", "APPROVED", enforce_sequence=True)
    assert a.status == "APPROVED"


def test_strict_mode_ignores_parallel_workflows(s, make_document, make_workflow):
    a = start_approval(s, make_document().id, make_workflow(is_sequential=False).id, "alice")
    decide_approval_step(s, a.id, 1, "carol", "APPROVED", enforce_sequence=True)
    assert a.approvers[1]["status"] == "APPROVED"


def test_cancel_frees_the_version_slot(s, make_document, make_workflow):
    d = make_document()
    wf = make_workflow()
    a = start_approval(s, d.id, wf.id, "alice")

    cancel_approval(s, a.id, "alice", reason="Wrong workflow")
    assert a.status == "CANCELLED"
    assert a.comments == "Wrong workflow"
    assert a.completion_date is not None
    assert d.status == "DRAFT"

    with pytest.raises(ApprovalClosed):
        cancel_approval(s, a.id, "alice")

    again = start_approval(s, d.id, wf.id, "alice")
    assert again.id != a.id
    assert again.status == "PENDING"


def test_approval_lifecycle_is_audited(s, make_document, make_workflow):
    a = start_approval(s, make_document().id, make_workflow().id, "alice")
    decide_approval_step(s, a.id, 0, "bob", "APPROVED")
    decide_approval_step(s, a.id, 1, "carol", "REJECTED")

    actions = s.execute(
        select(AuditEvent.action).where(AuditEvent.entity_type == "DocumentApproval").order_by(AuditEvent.id)
    ).scalars().all()
    assert actions == ["approval.start", "approval.decide", "approval.decide"]


def test_create_workflow_validates_steps(s):
    with pytest.raises(InvalidWorkflow):
        create_workflow(s, WorkflowRequest(name="Empty", created_by="alice", steps=[]))
    with pytest.raises(InvalidWorkflow):
        create_workflow(s, WorkflowRequest(name="No approver", created_by="alice", steps=[{"name": "QA"}]))
    with pytest.raises(InvalidWorkflow):
        create_workflow(s, WorkflowRequest(name=" ", created_by="alice", steps=[{"approver_ids": ["bob"]}]))


def test_create_workflow_assigns_step_ids(s):
    wf = create_workflow(
        s,
        WorkflowRequest(
            name="Precast QA",
            created_by="alice",
            steps=[{"name": "Engineering", "approver_ids": ["bob"]}, {"id": "qa", "approver": "carol"}],
            document_types=["DRAWING"],
        ),
    )
    assert [st["id"] for st in wf.steps] == ["step-1", "qa"]
    assert wf.steps[1]["approver_ids"] == ["carol"]
    assert wf.steps[1]["name"] == "Step 2"
    assert wf.is_sequential is True
    assert wf.status == "ACTIVE"


def test_due_date_is_advisory(s, make_document, make_workflow):
    a = start_approval(s, make_document().id, make_workflow(default_due_days=1).id, "alice")
    a.due_date = datetime.utcnow() - timedelta(days=3)
    s.flush()
    decide_approval_step(s, a.id, 0, "bob", "APPROVED")
    assert a.status == "IN_PROGRESS"
