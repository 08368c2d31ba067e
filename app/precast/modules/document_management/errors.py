"""
Document engine error taxonomy.

Every error is raised before anything is written, so the caller's transaction
can simply be rolled back. ``status_code`` is what the HTTP layer renders.
"""

from __future__ import annotations

from typing import Any


class DocumentError(Exception):
    code = "document_error"
    status_code = 400

    def __init__(self, message: str, *, document_id: int | None = None, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.document_id = document_id
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"error": self.code, "message": self.message}
        if self.document_id is not None:
            out["document_id"] = self.document_id
        for k, v in self.context.items():
            if v is not None:
                out[k] = v
        return out


class NotFound(DocumentError):
    code = "not_found"
    status_code = 404


class ReferenceNotFound(DocumentError):
    """A patch points at a folder or project that does not exist."""

    code = "reference_not_found"
    status_code = 422


class InvalidDocumentStatus(DocumentError):
    code = "invalid_document_status"


class ApprovalAlreadyActive(DocumentError):
    code = "approval_already_active"
    status_code = 409


class ApprovalClosed(DocumentError):
    code = "approval_closed"
    status_code = 409


class InvalidStep(DocumentError):
    code = "invalid_step"


class StepOutOfSequence(InvalidStep):
    code = "step_out_of_sequence"
    status_code = 409


class NotAuthorizedApprover(DocumentError):
    code = "not_authorized_approver"
    status_code = 403


class InvalidDecision(DocumentError):
    code = "invalid_decision"


class InvalidWorkflow(DocumentError):
    code = "invalid_workflow"


class InvalidShare(DocumentError):
    code = "invalid_share"


class ShareUnavailable(DocumentError):
    code = "share_unavailable"
    status_code = 410


class SharePasswordInvalid(DocumentError):
    code = "share_password_invalid"
    status_code = 403


class InvalidDocument(DocumentError):
    """Malformed create/update payload (missing title, unknown access level, ...)."""

    code = "invalid_document"
