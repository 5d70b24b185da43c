import pytest
from sqlalchemy import update

from app.doclife import create_app
from app.doclife.db import session_scope
from app.doclife.errors import (
    ChainCycleDetected,
    ChainDepthExceeded,
    ChainTraversalError,
    DuplicateActiveDocument,
    RelationConflict,
    TransactionAborted,
    ValidationError,
)
from app.doclife.models import AuditEvent, Base
from app.doclife.modules.document_lifecycle import chain as chain_mod
from app.doclife.modules.document_lifecycle.chain import (
    backward_chain,
    complete_chain,
    forward_chain,
    replace_document,
    supersede,
)
from app.doclife.modules.document_lifecycle.models import Document, DocumentRelation
from app.doclife.modules.document_lifecycle.store import (
    approve_document,
    build_document,
    create_document,
    deactivate_document,
    find_invariant_violations,
    get_active_document,
    get_document,
)
from app.doclife.refs import EntityRef

TENANT = "tenant-a"
P1 = EntityRef("person", "P1")
POA = "PROOF_OF_ADDRESS"


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)
    return app


def _successor(file_ref: str, doc_type: str = POA, owner: EntityRef = P1) -> Document:
    return build_document(TENANT, owner, doc_type, file_ref)


def _build_chain(s, length: int, doc_type: str = POA) -> list[Document]:
    docs = [create_document(s, TENANT, P1, doc_type, f"blob://{doc_type.lower()}-0")]
    for i in range(1, length):
        docs.append(supersede(s, TENANT, docs[-1], _successor(f"blob://{doc_type.lower()}-{i}", doc_type)))
    return docs


def test_scenario_a_duplicate_create_then_supersede(app):
    with session_scope(app) as s:
        d1 = create_document(s, TENANT, P1, POA, "blob://poa-1")
        assert d1.is_active is True

        with pytest.raises(DuplicateActiveDocument):
            create_document(s, TENANT, P1, POA, "blob://poa-2")

        d2 = supersede(s, TENANT, d1, _successor("blob://poa-2"))

        assert d1.status == "SUPERSEDED"
        assert d1.is_active is False
        assert d1.valid_to is not None
        assert d1.superseded_by_id == d2.id
        assert d1.replacement_reason == "UPDATED"
        assert d1.replaced_at == d1.valid_to
        assert d2.is_active is True
        assert d2.valid_to is None
        assert d2.valid_from == d1.valid_to
        assert [d.id for d in complete_chain(s, TENANT, d1)] == [d1.id, d2.id]
        ids = (d1.id, d2.id)

    with session_scope(app) as s:
        d1, d2 = get_document(s, TENANT, ids[0]), get_document(s, TENANT, ids[1])
        assert d1.status == "SUPERSEDED" and d1.is_active is False
        assert d2.is_active is True
        owners = (
            s.query(DocumentRelation)
            .filter(DocumentRelation.document_id == d2.id, DocumentRelation.relation_context == "OWNERSHIP")
            .all()
        )
        assert [r.related for r in owners] == [P1]
        assert find_invariant_violations(s) == []


def test_supersede_records_reason_and_audit(app):
    with session_scope(app) as s:
        d1 = create_document(s, TENANT, P1, POA, "blob://poa-1")
        d2 = supersede(s, TENANT, d1, _successor("blob://poa-2"), "better_quality", actor=EntityRef("staff", "S1"))
        assert d1.replacement_reason == "BETTER_QUALITY"

        ev = s.query(AuditEvent).filter(AuditEvent.action == "document.supersede").one()
        assert ev.document_id == d1.id
        assert ev.related_ids == [d2.id]
        assert ev.reason == "BETTER_QUALITY"
        assert ev.actor == "staff:S1"


def test_chain_consistency_properties(app):
    with session_scope(app) as s:
        chain = _build_chain(s, 4)
        ids = [d.id for d in chain]

    with session_scope(app) as s:
        chain = [get_document(s, TENANT, i) for i in ids]
        assert [d.id for d in forward_chain(s, TENANT, chain[0])] == ids
        assert [d.id for d in backward_chain(s, TENANT, chain[-1])] == list(reversed(ids))
        for d in chain:
            assert [x.id for x in complete_chain(s, TENANT, d)] == ids
        assert [d.id for d in forward_chain(s, TENANT, chain[2])] == ids[2:]
        assert [d.id for d in backward_chain(s, TENANT, chain[1])] == [ids[1], ids[0]]


def test_never_superseded_document_is_a_singleton_chain(app):
    with session_scope(app) as s:
        d = create_document(s, TENANT, P1, "PASSPORT", "blob://passport")
        assert forward_chain(s, TENANT, d) == [d]
        assert backward_chain(s, TENANT, d) == [d]
        assert complete_chain(s, TENANT, d) == [d]


def test_scenario_d_long_chain_signals_depth_exceeded(app):
    with session_scope(app) as s:
        chain = _build_chain(s, 151)
        first_id, last_id = chain[0].id, chain[-1].id

    with session_scope(app) as s:
        first = get_document(s, TENANT, first_id)
        last = get_document(s, TENANT, last_id)
        with pytest.raises(ChainDepthExceeded) as ei:
            forward_chain(s, TENANT, first)
        assert ei.value.max_depth == 100
        with pytest.raises(ChainDepthExceeded):
            backward_chain(s, TENANT, last)

        assert len(forward_chain(s, TENANT, first, max_depth=150)) == 151
        with pytest.raises(ChainDepthExceeded):
            forward_chain(s, TENANT, first, max_depth=149)


def test_cycle_in_corrupted_lineage_is_detected(app):
    with session_scope(app) as s:
        a, b, c = _build_chain(s, 3)
        s.execute(update(Document).where(Document.id == c.id).values(superseded_by_id=a.id))

        with pytest.raises(ChainCycleDetected):
            forward_chain(s, TENANT, a)
        with pytest.raises(ChainCycleDetected):
            backward_chain(s, TENANT, a)


def test_branching_lineage_is_reported(app):
    with session_scope(app) as s:
        a, b = _build_chain(s, 2)
        stray = create_document(s, TENANT, P1, "SELFIE", "blob://selfie")
        s.execute(update(Document).where(Document.id == stray.id).values(superseded_by_id=b.id))

        with pytest.raises(ChainTraversalError) as ei:
            backward_chain(s, TENANT, b)
        assert not isinstance(ei.value, ChainCycleDetected)

        assert any("successor of 2 documents" in p for p in find_invariant_violations(s, TENANT))


@pytest.mark.parametrize(
    "make_new",
    [
        lambda s, old: old,
        lambda s, old: _successor("blob://other-type", doc_type="PASSPORT"),
        lambda s, old: _successor("blob://other-owner", owner=EntityRef("person", "P2")),
    ],
)
def test_supersede_preconditions(app, make_new):
    with session_scope(app) as s:
        old = create_document(s, TENANT, P1, POA, "blob://poa-1")
        with pytest.raises(ValidationError):
            supersede(s, TENANT, old, make_new(s, old))
        assert old.is_active is True


def test_supersede_requires_active_old(app):
    with session_scope(app) as s:
        old = create_document(s, TENANT, P1, POA, "blob://poa-1")
        deactivate_document(s, TENANT, old)
        with pytest.raises(ValidationError):
            supersede(s, TENANT, old, _successor("blob://poa-2"))


def test_supersede_rejects_document_that_already_succeeds_another(app):
    with session_scope(app) as s:
        d1, d2 = _build_chain(s, 2)
        deactivate_document(s, TENANT, d2)
        d3 = create_document(s, TENANT, P1, POA, "blob://poa-3")
        with pytest.raises(ValidationError, match="already succeeds"):
            supersede(s, TENANT, d3, d2)
        assert d3.is_active is True


def test_failed_step_rolls_back_whole_supersession(app, monkeypatch):
    with session_scope(app) as s:
        old_id = create_document(s, TENANT, P1, POA, "blob://poa-1").id

    def _conflict(*args, **kwargs):
        raise RelationConflict("simulated")

    monkeypatch.setattr(chain_mod, "link_ownership", _conflict)

    with session_scope(app) as s:
        old = get_document(s, TENANT, old_id)
        with pytest.raises(TransactionAborted) as ei:
            supersede(s, TENANT, old, _successor("blob://poa-2"))
        assert ei.value.operation == "supersede"
        assert isinstance(ei.value.cause, RelationConflict)
        assert ei.value.retryable is True

    with session_scope(app) as s:
        old = get_document(s, TENANT, old_id)
        assert old.is_active is True
        assert old.status == "PENDING"
        assert old.superseded_by_id is None
        assert s.query(Document).count() == 1
        assert s.query(AuditEvent).filter(AuditEvent.action == "document.supersede").count() == 0


def test_stale_old_document_aborts_supersession(app):
    with session_scope(app) as s:
        old_id = create_document(s, TENANT, P1, POA, "blob://poa-1").id

    sm = app.extensions["sqlalchemy_sessionmaker"]
    s1, s2 = sm(), sm()
    try:
        stale = get_document(s1, TENANT, old_id)
        fresh = get_document(s2, TENANT, old_id)

        supersede(s2, TENANT, fresh, _successor("blob://poa-winner"))
        s2.commit()

        with pytest.raises(TransactionAborted) as ei:
            supersede(s1, TENANT, stale, _successor("blob://poa-loser"))
        assert isinstance(ei.value.cause, DuplicateActiveDocument)
        assert ei.value.retryable is True
    finally:
        s1.close()
        s2.close()

    with session_scope(app) as s:
        active = get_active_document(s, TENANT, P1, POA)
        assert active.file_ref == "blob://poa-winner"
        assert find_invariant_violations(s) == []


def test_replace_document_creates_then_supersedes(app):
    with session_scope(app) as s:
        first = replace_document(s, TENANT, P1, POA, "blob://poa-1")
        assert first.is_active is True

        second = replace_document(s, TENANT, P1, POA, "blob://poa-2", "EXPIRED")
        assert second.id != first.id
        assert first.status == "SUPERSEDED"
        assert first.replacement_reason == "EXPIRED"
        assert [d.id for d in complete_chain(s, TENANT, second)] == [first.id, second.id]


def test_replace_document_protects_approved_holder(app):
    with session_scope(app) as s:
        holder = create_document(s, TENANT, P1, POA, "blob://poa-1")
        approve_document(s, TENANT, holder)

        with pytest.raises(ValidationError):
            replace_document(s, TENANT, P1, POA, "blob://poa-2")
        assert holder.is_active is True

        new = replace_document(s, TENANT, P1, POA, "blob://poa-2", allow_replace_approved=True)
        assert new.is_active is True
        assert holder.status == "SUPERSEDED"
