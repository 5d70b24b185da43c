"""
Polymorphic entity references ("kind + id").

Owners, consumers and actors are addressed by an EntityRef. Each kind is
registered with a validator for its id; unregistered kinds are rejected. Id
values are opaque strings and are never completed or checksummed here.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass

from app.doclife.constants import MAX_REF_ID_LENGTH
from app.doclife.errors import ValidationError

_OPAQUE_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._:-]*$")


def opaque_id(value: str) -> bool:
    return bool(value) and len(value) <= MAX_REF_ID_LENGTH and bool(_OPAQUE_ID_RE.fullmatch(value))


KIND_VALIDATORS: dict[str, Callable[[str], bool]] = {
    "person": opaque_id,
    "person_identification": opaque_id,
    "person_address": opaque_id,
    "person_employment": opaque_id,
    "company": opaque_id,
    "company_address": opaque_id,
    "application": opaque_id,
    "staff": opaque_id,
}


def register_kind(kind: str, validator: Callable[[str], bool] = opaque_id) -> None:
    key = (kind or "").strip().lower()
    if not key:
        raise ValidationError("Entity kind must be non-empty.")
    KIND_VALIDATORS[key] = validator


@dataclass(frozen=True)
class EntityRef:
    kind: str
    id: str

    def __str__(self) -> str:
        return f"{self.kind}:{self.id}"

    @classmethod
    def parse(cls, raw: str) -> "EntityRef":
        """Parse "kind:id" (the form used by the CLI and audit metadata)."""
        kind, sep, ident = (raw or "").strip().partition(":")
        if not sep:
            raise ValidationError(f"Entity reference must look like kind:id, got {raw!r}")
        return validate_ref(cls(kind=kind, id=ident))


def validate_ref(ref: EntityRef | None, *, role: str = "entity") -> EntityRef:
    if not isinstance(ref, EntityRef):
        raise ValidationError(f"{role} reference is required.")
    kind = (ref.kind or "").strip().lower()
    ident = (ref.id or "").strip()
    validator = KIND_VALIDATORS.get(kind)
    if validator is None:
        raise ValidationError(f"Unknown {role} kind {ref.kind!r}.")
    if not validator(ident):
        raise ValidationError(f"Invalid {role} id {ref.id!r} for kind {kind!r}.")
    if kind == ref.kind and ident == ref.id:
        return ref
    return EntityRef(kind=kind, id=ident)


def validate_tenant(tenant_id: str | None) -> str:
    t = (tenant_id or "").strip()
    if not opaque_id(t):
        raise ValidationError(f"Invalid tenant id {tenant_id!r}.")
    return t
