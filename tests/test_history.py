from datetime import datetime, timedelta, timezone

import pytest

from app.doclife import create_app
from app.doclife.db import session_scope
from app.doclife.models import Base
from app.doclife.modules.document_lifecycle.chain import supersede
from app.doclife.modules.document_lifecycle.history import (
    document_history,
    document_timeline,
    documents_valid_at,
)
from app.doclife.modules.document_lifecycle.relations import link_usage
from app.doclife.modules.document_lifecycle.store import (
    build_document,
    create_document,
    reject_document,
)
from app.doclife.refs import EntityRef
from app.doclife.utils import utcnow

TENANT = "tenant-a"
P1 = EntityRef("person", "P1")
APP1 = EntityRef("application", "APP1")
POA = "PROOF_OF_ADDRESS"


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)
    return app


def _two_versions(s):
    d1 = create_document(s, TENANT, P1, POA, "blob://poa-1")
    link_usage(s, TENANT, d1, APP1)
    reject_document(s, TENANT, d1, "Address does not match")
    d2 = supersede(s, TENANT, d1, build_document(TENANT, P1, POA, "blob://poa-2"), "REJECTED")
    return d1, d2


def test_document_history_is_newest_first_with_lineage_and_usage(app):
    with session_scope(app) as s:
        d1, d2 = _two_versions(s)
        create_document(s, TENANT, P1, "PASSPORT", "blob://passport")

        history = document_history(s, TENANT, P1, "proof_of_address")
        assert [v.document.id for v in history] == [d2.id, d1.id]

        newest, oldest = history
        assert newest.supersedes_id == d1.id
        assert newest.superseded_by_id is None
        assert newest.used_by == []
        assert oldest.supersedes_id is None
        assert oldest.superseded_by_id == d2.id
        assert oldest.used_by == [APP1]


def test_documents_valid_at_answers_point_in_time_questions(app):
    with session_scope(app) as s:
        d1, d2 = _two_versions(s)

        assert [d.id for d in documents_valid_at(s, TENANT, P1, d1.valid_from)] == [d1.id]
        assert [d.id for d in documents_valid_at(s, TENANT, P1, utcnow(), doc_type=POA)] == [d2.id]
        assert documents_valid_at(s, TENANT, P1, utcnow(), doc_type="PASSPORT") == []


def test_timeline_lists_lifecycle_events(app):
    with session_scope(app) as s:
        d1, d2 = _two_versions(s)
        events = document_timeline(s, TENANT, P1, POA)

        kinds = {(e.event, e.document_id) for e in events}
        assert kinds == {
            ("UPLOADED", d1.id),
            ("REJECTED", d1.id),
            ("SUPERSEDED", d1.id),
            ("USED_BY", d1.id),
            ("UPLOADED", d2.id),
        }
        assert [e.at for e in events] == sorted((e.at for e in events), reverse=True)

        rejected = next(e for e in events if e.event == "REJECTED")
        assert rejected.detail == "Address does not match"
        superseded = next(e for e in events if e.event == "SUPERSEDED")
        assert superseded.detail == f"by document {d2.id} (REJECTED)"
        used = next(e for e in events if e.event == "USED_BY")
        assert used.detail == "application:APP1"


def test_documents_valid_at_accepts_timezone_aware_instants(app):
    with session_scope(app) as s:
        d1, d2 = _two_versions(s)

        as_utc = d1.valid_from.replace(tzinfo=timezone.utc)
        shifted = as_utc.astimezone(timezone(timedelta(hours=9)))
        assert [d.id for d in documents_valid_at(s, TENANT, P1, shifted)] == [d1.id]
        assert [d.id for d in documents_valid_at(s, TENANT, P1, datetime.now(timezone.utc))] == [d2.id]
