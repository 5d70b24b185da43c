import pytest
from sqlalchemy import update

from app.doclife import create_app
from app.doclife.db import session_scope
from app.doclife.models import Base
from app.doclife.modules.document_lifecycle.chain import supersede
from app.doclife.modules.document_lifecycle.models import Document
from app.doclife.modules.document_lifecycle.store import build_document, create_document
from app.doclife.refs import EntityRef

TENANT = "tenant-a"
OWNER = EntityRef("person", "P1")


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.delenv("CHAIN_MAX_DEPTH", raising=False)

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)
    return app


@pytest.fixture()
def client(app):
    return app.test_client()


def test_health_ok(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json["ok"] is True
    assert r.json["database"] == "ok"


def test_healthz_is_plain_ok(client):
    r = client.get("/healthz")
    assert r.status_code == 200
    assert r.data == b"ok"


def test_request_id_is_echoed(client):
    r = client.get("/healthz", headers={"X-Request-ID": "req-123"})
    assert r.headers["X-Request-ID"] == "req-123"

    r = client.get("/healthz")
    assert r.headers.get("X-Request-ID")


def test_production_refuses_sqlite(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'prod.db'}")
    monkeypatch.setenv("ENV", "production")
    with pytest.raises(RuntimeError, match="Postgres"):
        create_app()


def test_invalid_chain_depth_setting_fails_fast(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("CHAIN_MAX_DEPTH", "lots")
    with pytest.raises(RuntimeError, match="CHAIN_MAX_DEPTH"):
        create_app()


def test_config_defaults(app):
    assert app.config["CHAIN_MAX_DEPTH"] == 100
    assert app.config["LOG_LEVEL"] == "INFO"


def test_cli_verify_reports_clean_database(app):
    with session_scope(app) as s:
        create_document(s, TENANT, OWNER, "PASSPORT", "blob://passport-1")

    result = app.test_cli_runner().invoke(args=["docs", "verify"])
    assert result.exit_code == 0
    assert "no invariant violations" in result.output


def test_cli_verify_flags_corrupted_lineage(app):
    with session_scope(app) as s:
        d = create_document(s, TENANT, OWNER, "PASSPORT", "blob://passport-1")
        other = create_document(s, TENANT, OWNER, "SELFIE", "blob://selfie-1")
        # Pointer without the SUPERSEDED status that must accompany it.
        s.execute(update(Document).where(Document.id == d.id).values(superseded_by_id=other.id))

    result = app.test_cli_runner().invoke(args=["docs", "verify", "--tenant", TENANT])
    assert result.exit_code == 1
    assert "VIOLATION" in result.output


def test_cli_chain_prints_lineage(app):
    with session_scope(app) as s:
        d1 = create_document(s, TENANT, OWNER, "PROOF_OF_ADDRESS", "blob://poa-1")
        d2 = supersede(s, TENANT, d1, build_document(TENANT, OWNER, "PROOF_OF_ADDRESS", "blob://poa-2"))
        d1_id, d2_id = d1.id, d2.id

    result = app.test_cli_runner().invoke(args=["docs", "chain", TENANT, str(d1_id)])
    assert result.exit_code == 0
    lines = result.output.strip().splitlines()
    assert len(lines) == 2
    assert lines[0].startswith("*") and f"{d1_id}\t" in lines[0] and "\tinactive\t" in lines[0]
    assert f"{d2_id}\t" in lines[1] and "\tactive\t" in lines[1]


def test_cli_chain_unknown_document(app):
    result = app.test_cli_runner().invoke(args=["docs", "chain", TENANT, "999"])
    assert result.exit_code != 0
    assert "not found" in result.output
