"""
Operator commands, registered on the app as ``flask docs ...``.

  flask docs verify [--tenant T]   scan for active-slot / lineage corruption
  flask docs chain TENANT DOC_ID   print the complete supersession lineage
"""

from __future__ import annotations

import click
from flask import current_app
from flask.cli import AppGroup

from app.doclife.constants import MAX_CHAIN_DEPTH
from app.doclife.db import session_scope
from app.doclife.errors import DocumentLifecycleError

docs_cli = AppGroup("docs", help="Document lifecycle maintenance commands.")


@docs_cli.command("verify")
@click.option("--tenant", default=None, help="Only scan this tenant.")
def verify_command(tenant: str | None) -> None:
    from app.doclife.modules.document_lifecycle.store import find_invariant_violations

    with session_scope(current_app) as s:
        problems = find_invariant_violations(s, tenant)
    if not problems:
        click.echo("OK: no invariant violations found.")
        return
    for p in problems:
        click.echo(f"VIOLATION: {p}")
    raise SystemExit(1)


@docs_cli.command("chain")
@click.argument("tenant")
@click.argument("document_id", type=int)
def chain_command(tenant: str, document_id: int) -> None:
    from app.doclife.modules.document_lifecycle.chain import complete_chain
    from app.doclife.modules.document_lifecycle.store import get_document

    max_depth = int(current_app.config.get("CHAIN_MAX_DEPTH") or MAX_CHAIN_DEPTH)
    try:
        with session_scope(current_app) as s:
            doc = get_document(s, tenant, document_id)
            chain = complete_chain(s, tenant, doc, max_depth=max_depth)
            lines = [
                f"{'*' if d.id == doc.id else ' '} {d.id}\t{d.doc_type}\t{d.status}\t"
                f"{'active' if d.is_active else 'inactive'}\t{d.valid_from or '-'} -> {d.valid_to or '-'}"
                for d in chain
            ]
    except DocumentLifecycleError as e:
        raise click.ClickException(str(e)) from e
    for line in lines:
        click.echo(line)
