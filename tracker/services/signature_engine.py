"""
Dual-party signature state machine — one engine, four entity kinds.

Stages (derived from the record, never stored):
    unsigned → partially_signed(party) → complete

Each entity kind plugs in a ``SignatureSpec`` strategy:
    load            fetch the entity being approved (NotFoundError if gone)
    check_can_sign  entity-level precondition (e.g. deliverable must be
                    review_complete); raises InvalidTransitionError
    on_signed       optional hook after a slot is filled (status mirroring)
    on_complete     side effect once both slots are signed; runs inside the
                    same transaction as the signature itself
    lock_keys       extra per-subtree locks the side effects need

sign() contract:
    1. role check via the permission collaborator → NotEligibleError
    2. slot already signed (or record complete)   → AlreadySignedError
    3. entity precondition                         → InvalidTransitionError
    4. the same user already holds the other slot  → NotEligibleError
    5. caller's ``expected_version`` is stale       → StaleVersionError
    6. fill slot, run hooks, commit once
    7. after commit publish ``signed`` and, on completion, ``completed``
       with an idempotency key, so completion side effects and the event
       happen exactly once per record.

Concurrent writers are serialised per record by ``locks.record_key`` in
process and by the record's ``version_id_col`` across processes. A lost
optimistic race surfaces as AlreadySignedError when the other writer filled
the same slot, otherwise as StaleVersionError.
"""

from __future__ import annotations

import importlib
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

from sqlalchemy import func, select
from sqlalchemy.orm.exc import StaleDataError

from tracker.core.exceptions import (
    AlreadySignedError,
    InvalidTransitionError,
    NotEligibleError,
    StaleVersionError,
    ValidationError,
)
from tracker.models import db
from tracker.models.auth import User
from tracker.models.signature import EntityKind, Party, SignatureRecord, SignatureStage
from tracker.services import events, locks, permission_service

logger = logging.getLogger(__name__)

_PARTY_LABELS = {Party.SUPPLIER: "supplier", Party.CUSTOMER: "customer"}


@dataclass
class SignatureSpec:
    """Per-kind strategy plugged into the generic engine."""
    kind: EntityKind
    label: str
    required_action: str
    load: Callable[..., Any]
    scope: Callable[[Any], tuple]
    describe: Callable[[Any], str]
    check_can_sign: Callable[[Any], None]
    on_complete: Callable[[Any, SignatureRecord, Party], None]
    on_signed: Callable[[Any, SignatureRecord, Party], None] | None = None
    lock_keys: Callable[[Any], list] | None = None


_SPECS: dict[str, SignatureSpec] = {}

# Modules that register the built-in kinds on import
_BUILTIN_SPEC_MODULES = (
    "tracker.services.deliverable_service",
    "tracker.services.baseline_service",
    "tracker.services.certificate_service",
    "tracker.services.variation_service",
)


def register_spec(spec: SignatureSpec) -> None:
    _SPECS[spec.kind.value] = spec


def get_spec(kind) -> SignatureSpec:
    kind = _kind(kind)
    if kind.value not in _SPECS:
        for module in _BUILTIN_SPEC_MODULES:
            importlib.import_module(module)
    return _SPECS[kind.value]


def _kind(kind) -> EntityKind:
    try:
        return EntityKind(kind)
    except ValueError:
        raise ValidationError(
            f"Unknown entity kind '{kind}'. Must be one of: "
            f"{', '.join(k.value for k in EntityKind)}.",
            details={"entity_kind": kind},
        )


def _party(party) -> Party:
    try:
        return Party(party)
    except ValueError:
        raise ValidationError(
            f"Unknown party '{party}'. Must be 'supplier' or 'customer'.",
            details={"party": party},
        )


def _snapshot_signer_name(user_id: int) -> str | None:
    user = db.session.get(User, user_id)
    return (user.full_name or user.email) if user else None


# ── Record queries ───────────────────────────────────────────────────────────


def get_record(kind, entity_id: int, *, refresh: bool = False) -> SignatureRecord | None:
    """Latest record (highest sequence) for the entity, or None."""
    stmt = (
        select(SignatureRecord)
        .where(
            SignatureRecord.entity_kind == _kind(kind).value,
            SignatureRecord.entity_id == entity_id,
        )
        .order_by(SignatureRecord.sequence.desc())
        .limit(1)
    )
    if refresh:
        stmt = stmt.execution_options(populate_existing=True)
    return db.session.execute(stmt).scalar_one_or_none()


def history(kind, entity_id: int) -> list[SignatureRecord]:
    return list(db.session.execute(
        select(SignatureRecord)
        .where(
            SignatureRecord.entity_kind == _kind(kind).value,
            SignatureRecord.entity_id == entity_id,
        )
        .order_by(SignatureRecord.sequence)
    ).scalars())


def open_records(tenant_id: int, project_id: int, kind=None) -> list[SignatureRecord]:
    """Records awaiting at least one signature, oldest first."""
    stmt = select(SignatureRecord).where(
        SignatureRecord.tenant_id == tenant_id,
        SignatureRecord.project_id == project_id,
        SignatureRecord.completed_at.is_(None),
        SignatureRecord.cancelled_at.is_(None),
    )
    if kind is not None:
        stmt = stmt.where(SignatureRecord.entity_kind == _kind(kind).value)
    return list(db.session.execute(stmt.order_by(SignatureRecord.created_at, SignatureRecord.id)).scalars())


def stage_of(record: SignatureRecord | None) -> SignatureStage:
    if record is None:
        return SignatureStage.UNSIGNED
    return record.stage


def is_complete(kind, entity_id: int) -> bool:
    record = get_record(kind, entity_id)
    return record is not None and record.is_complete


# ── Record lifecycle (flush-only) ────────────────────────────────────────────


def open_record(kind, entity_id: int, *, tenant_id: int, project_id: int) -> SignatureRecord:
    """Return the entity's open record, starting a new approval round if needed.

    Flushes; the caller commits.
    """
    kind = _kind(kind)
    latest = get_record(kind, entity_id)
    if latest is not None and latest.is_open:
        return latest

    next_seq = (db.session.execute(
        select(func.max(SignatureRecord.sequence)).where(
            SignatureRecord.entity_kind == kind.value,
            SignatureRecord.entity_id == entity_id,
        )
    ).scalar() or 0) + 1

    record = SignatureRecord(
        tenant_id=tenant_id,
        project_id=project_id,
        entity_kind=kind.value,
        entity_id=entity_id,
        sequence=next_seq,
    )
    db.session.add(record)
    db.session.flush()
    logger.info(
        "Signature record opened",
        extra={"tenant_id": tenant_id, "project_id": project_id,
               "entity_kind": kind.value, "entity_id": entity_id, "sequence": next_seq},
    )
    return record


def cancel_record(kind, entity_id: int, reason: str) -> SignatureRecord | None:
    """Cancel the entity's open record. Complete records cannot be cancelled.

    Flushes; the caller commits. Returns None when there is nothing open.
    """
    record = get_record(kind, entity_id)
    if record is None or record.is_cancelled:
        return None
    if record.is_complete:
        raise InvalidTransitionError(
            "This approval has already been signed by both parties and cannot be cancelled.",
            details={"entity_kind": record.entity_kind, "entity_id": entity_id},
        )
    record.cancelled_at = datetime.now(timezone.utc)
    record.cancel_reason = reason
    db.session.flush()
    return record


# ── sign() ───────────────────────────────────────────────────────────────────


def sign(
    kind,
    entity_id: int,
    party,
    signer_id: int,
    *,
    role=None,
    expected_version: int | None = None,
) -> SignatureRecord:
    """Fill ``party``'s slot on the entity's current signature record.

    Args:
        kind: EntityKind (or its value).
        entity_id: PK of the deliverable / milestone / certificate / variation.
        party: Party.SUPPLIER (providing) or Party.CUSTOMER (receiving).
        signer_id: acting user.
        role: explicit role; looked up from the project membership when None.
        expected_version: record version the caller last read, for an
            optimistic check. Omit to sign against whatever is current.

    Returns:
        The updated SignatureRecord.
    """
    kind = _kind(kind)
    party = _party(party)
    spec = get_spec(kind)

    entity = spec.load(entity_id)
    tenant_id, project_id = spec.scope(entity)

    role = permission_service.resolve_role(signer_id, project_id, role)
    if not permission_service.is_eligible_signer(role, kind, party):
        raise NotEligibleError(
            f"Your role ({permission_service.ROLE_LABELS.get(role, 'none')}) cannot sign "
            f"{spec.label} approvals for the {_PARTY_LABELS[party]}.",
            details={"entity_kind": kind.value, "party": party.value, "role": role},
        )

    keys = [locks.record_key(kind.value, entity_id)] + list(spec.lock_keys(entity) if spec.lock_keys else [])
    with locks.hold(*keys):
        try:
            entity = spec.load(entity_id, refresh=True)
            record = get_record(kind, entity_id, refresh=True)

            if record is not None and not record.is_cancelled and (
                record.is_complete or record.is_signed(party)
            ):
                raise AlreadySignedError(
                    f"The {_PARTY_LABELS[party]} has already signed this {spec.label} "
                    f"({record.signer_name(party) or 'unknown signer'}).",
                    details={"entity_kind": kind.value, "entity_id": entity_id, "party": party.value},
                )

            spec.check_can_sign(entity)

            if record is None or not record.is_open:
                record = open_record(kind, entity_id, tenant_id=tenant_id, project_id=project_id)

            if record.signer_id(party.other) == signer_id:
                raise NotEligibleError(
                    f"You already signed this {spec.label} for the {_PARTY_LABELS[party.other]}; "
                    f"the {_PARTY_LABELS[party]} signature must come from someone else.",
                    details={"entity_kind": kind.value, "entity_id": entity_id},
                )

            if expected_version is not None and record.version != expected_version:
                raise StaleVersionError(
                    f"This {spec.label} approval changed since you loaded it. Reload and try again.",
                    details={"current_version": record.version, "expected_version": expected_version},
                )

            record.fill_slot(party, signer_id, _snapshot_signer_name(signer_id))
            if spec.on_signed is not None:
                spec.on_signed(entity, record, party)

            completed = False
            if record.is_complete:
                record.completed_at = datetime.now(timezone.utc)
                spec.on_complete(entity, record, party)
                completed = True

            db.session.flush()
            db.session.commit()
        except StaleDataError:
            db.session.rollback()
            current = get_record(kind, entity_id, refresh=True)
            if current is not None and current.is_signed(party):
                raise AlreadySignedError(
                    f"The {_PARTY_LABELS[party]} signed this {spec.label} at the same time. "
                    "No further action is needed.",
                    details={"entity_kind": kind.value, "entity_id": entity_id, "party": party.value},
                )
            raise StaleVersionError(
                f"This {spec.label} approval changed while you were signing. Reload and try again.",
            )
        except Exception:
            db.session.rollback()
            raise

    payload = {
        "tenant_id": tenant_id,
        "project_id": project_id,
        "entity_kind": kind.value,
        "entity_id": entity_id,
        "record_id": record.id,
        "sequence": record.sequence,
        "party": party.value,
        "signer_id": signer_id,
        "stage": record.stage.value,
    }
    logger.info(
        "Signature recorded",
        extra={"tenant_id": tenant_id, "project_id": project_id, "entity_kind": kind.value,
               "entity_id": entity_id, "party": party.value, "completed": completed},
    )
    events.publish("signed", payload)
    if completed:
        events.publish("completed", payload, idempotency_key=record.completion_key)
    return record
