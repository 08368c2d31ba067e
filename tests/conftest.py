import pytest

from app.precast import auth, create_app
from app.precast.models import Base
from app.precast.modules.document_management.approvals import WorkflowRequest, create_workflow
from app.precast.modules.document_management.service import CreateDocumentRequest
from app.precast.modules.document_management.versioning import create_document
from app.precast.storage import LocalStorage


@pytest.fixture(autouse=True)
def _reset_login_rate_limit():
    auth._login_attempts.clear()
    yield
    auth._login_attempts.clear()


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    for k in (
        "S3_ENDPOINT",
        "S3_REGION",
        "S3_BUCKET",
        "S3_ACCESS_KEY_ID",
        "S3_SECRET_ACCESS_KEY",
        "STORAGE_ROOT",
        "MAX_UPLOAD_MB",
        "SHARE_LINK_BASE",
        "APPROVAL_ENFORCE_SEQUENCE",
    ):
        monkeypatch.delenv(k, raising=False)

    app = create_app()
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])
    return app


@pytest.fixture()
def s(app):
    """Service-level session on the app's engine (SAVEPOINT-capable on SQLite)."""
    session = app.extensions["sqlalchemy_sessionmaker"]()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture()
def storage(tmp_path):
    return LocalStorage(root=tmp_path / "blobs")


@pytest.fixture()
def make_document(s, storage):
    def _make(title: str = "Wall panel WP-12 shop drawing", created_by: str = "alice", upload=None, **kw):
        return create_document(s, storage, CreateDocumentRequest(title=title, created_by=created_by, **kw), upload)

    return _make


@pytest.fixture()
def make_workflow(s):
    def _make(approvers=("bob", "carol"), name: str = "Drawing review", **kw):
        steps = [{"name": f"Review {i}", "approver_ids": [a]} for i, a in enumerate(approvers, start=1)]
        return create_workflow(s, WorkflowRequest(name=name, created_by="alice", steps=steps, **kw))

    return _make
