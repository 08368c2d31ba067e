from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest
from sqlalchemy import func, select

from app.precast.modules.document_management.errors import (
    InvalidShare,
    NotFound,
    SharePasswordInvalid,
    ShareUnavailable,
)
from app.precast.modules.document_management.models import Document, DocumentAccessLog
from app.precast.modules.document_management.service import UpdateDocumentRequest
from app.precast.modules.document_management.sharing import (
    ShareRequest,
    can_view_document,
    log_access,
    open_share,
    revoke_share,
    share_document,
    share_permits,
)
from app.precast.modules.document_management.versioning import update_document


def _logs(s, document_id, action=None):
    q = select(DocumentAccessLog).where(DocumentAccessLog.document_id == document_id)
    if action:
        q = q.where(DocumentAccessLog.action == action)
    return s.execute(q.order_by(DocumentAccessLog.id)).scalars().all()


def test_public_share_gets_unguessable_link(s, make_document):
    d = make_document()
    a = share_document(s, d.id, ShareRequest(share_type="PUBLIC"), "alice")
    b = share_document(s, d.id, ShareRequest(share_type="EXTERNAL", recipient_type="LINK"), "alice")

    assert a.share_token and b.share_token
    assert a.share_token != b.share_token
    # token_urlsafe(32) -> 43 chars, 256 bits of entropy
    assert len(a.share_token) >= 43
    assert a.share_link == f"/share/{d.id}/{a.share_token}"
    assert a.document_version == "1.0"
    assert a.status == "ACTIVE"
    assert a.access_count == 0


def test_user_share_has_no_link(s, make_document):
    d = make_document()
    sh = share_document(s, d.id, ShareRequest(recipient_id="erin", access_level="COMMENT"), "alice")
    assert sh.share_token is None
    assert sh.share_link is None
    assert sh.recipient_id == "erin"


def test_share_validation(s, make_document):
    d = make_document()
    with pytest.raises(NotFound):
        share_document(s, 999, ShareRequest(), "alice")
    with pytest.raises(InvalidShare):
        share_document(s, d.id, ShareRequest(share_type="WORLD"), "alice")
    with pytest.raises(InvalidShare):
        share_document(s, d.id, ShareRequest(access_level="OWNER"), "alice")
    with pytest.raises(InvalidShare):
        share_document(s, d.id, ShareRequest(recipient_type="EMAIL"), "alice")


def test_share_pins_an_existing_version(s, storage, make_document):
    d = make_document()
    update_document(s, storage, d.id, UpdateDocumentRequest(updated_by="alice", is_new_version=True))
    assert d.version == "1.1"

    old = share_document(s, d.id, ShareRequest(recipient_id="erin", document_version="1.0"), "alice")
    assert old.document_version == "1.0"
    assert share_document(s, d.id, ShareRequest(recipient_id="erin"), "alice").document_version == "1.1"

    with pytest.raises(InvalidShare) as exc:
        share_document(s, d.id, ShareRequest(recipient_id="erin", document_version="7.3"), "alice")
    assert "7.3" in exc.value.message
    assert len(_logs(s, d.id, "SHARE")) == 2


def test_share_is_logged(s, make_document):
    d = make_document()
    sh = share_document(s, d.id, ShareRequest(recipient_type="EMAIL", recipient_email="GC@Example.com"), "alice")
    assert sh.recipient_email == "gc@example.com"
    entries = _logs(s, d.id, "SHARE")
    assert len(entries) == 1
    assert entries[0].user_id == "alice"


def test_password_is_stored_hashed(s, make_document):
    d = make_document()
    sh = share_document(s, d.id, ShareRequest(share_type="PUBLIC", password="precast!"), "alice")
    assert sh.password_hash
    assert sh.password_hash != "precast!"

    with pytest.raises(SharePasswordInvalid):
        open_share(s, d.id, sh.share_token)
    with pytest.raises(SharePasswordInvalid):
        open_share(s, d.id, sh.share_token, "wrong")
    opened, doc = open_share(s, d.id, sh.share_token, "precast!")
    assert doc.id == d.id
    assert opened.access_count == 1


def test_open_share_counts_and_logs(s, make_document):
    d = make_document()
    sh = share_document(s, d.id, ShareRequest(share_type="PUBLIC"), "alice")

    open_share(s, d.id, sh.share_token, ip_address="10.0.0.8", user_agent="pytest")
    opened, _ = open_share(s, d.id, sh.share_token)

    assert opened.access_count == 2
    assert opened.last_accessed is not None
    hits = _logs(s, d.id, "SHARE_ACCESS")
    assert len(hits) == 2
    assert hits[0].user_id == "ANONYMOUS"
    assert hits[0].ip_address == "10.0.0.8"
    assert hits[0].document_version == "1.0"


def test_open_share_refuses_bad_revoked_and_expired(s, make_document):
    d = make_document()
    with pytest.raises(NotFound):
        open_share(s, d.id, "not-a-token")

    revoked = share_document(s, d.id, ShareRequest(share_type="PUBLIC"), "alice")
    revoke_share(s, revoked.id, "alice", reason="Sent to wrong GC")
    assert revoked.status == "REVOKED"
    with pytest.raises(NotFound):
        open_share(s, d.id, revoked.share_token)

    expired = share_document(
        s,
        d.id,
        ShareRequest(share_type="PUBLIC", expiration_date=datetime.utcnow() - timedelta(minutes=1)),
        "alice",
    )
    with pytest.raises(ShareUnavailable):
        open_share(s, d.id, expired.share_token)
    assert expired.access_count == 0

    # Token is bound to its document.
    other = make_document(title="Other")
    live = share_document(s, d.id, ShareRequest(share_type="PUBLIC"), "alice")
    with pytest.raises(NotFound):
        open_share(s, other.id, live.share_token)


def test_log_access_records_defaults(s, make_document):
    d = make_document()
    res = log_access(s, d.id, "1.0", "VIEW")
    assert res
    assert res.ok is True
    assert res.log_id is not None

    entry = s.get(DocumentAccessLog, res.log_id)
    assert entry.user_id == "ANONYMOUS"
    assert entry.action == "VIEW"
    assert entry.timestamp is not None


def test_log_access_failure_does_not_poison_transaction(app, s, make_document):
    d = make_document()
    d.title = "Changed alongside a failed log write"

    res = log_access(s, d.id, "1.0", None)

    assert not res
    assert res.ok is False
    assert res.error
    s.commit()

    with app.extensions["sqlalchemy_sessionmaker"]() as fresh:
        assert fresh.get(Document, d.id).title == "Changed alongside a failed log write"
        assert fresh.execute(
            select(func.count(DocumentAccessLog.id)).where(DocumentAccessLog.action.is_(None))
        ).scalar_one() == 0


def test_share_permits_orders_levels(s, make_document):
    d = make_document()
    comment = share_document(s, d.id, ShareRequest(access_level="COMMENT"), "alice")
    assert share_permits(comment, "VIEW")
    assert share_permits(comment, "COMMENT")
    assert not share_permits(comment, "EDIT")
    assert not share_permits(comment, "FULL")
    with pytest.raises(ValueError):
        share_permits(comment, "ADMIN")


@pytest.mark.parametrize(
    "level,user,groups,expected",
    [
        ("PUBLIC", None, [], True),
        ("INTERNAL", None, [], False),
        ("INTERNAL", "erin", [], True),
        ("RESTRICTED", "erin", [], False),
        ("RESTRICTED", "erin", ["engineering"], True),
        ("CONFIDENTIAL", "alice", [], True),
        ("CONFIDENTIAL", "erin", ["sales"], False),
    ],
)
def test_can_view_document(level, user, groups, expected):
    doc = SimpleNamespace(access_level=level, created_by="alice", access_groups=["engineering"])
    assert can_view_document(doc, user, groups) is expected
