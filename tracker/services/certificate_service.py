"""
Milestone acceptance certificates.

Only a Completed milestone (every deliverable Delivered) may have a
certificate generated. Generation creates the certificate in Draft with an
empty signature record; the status then follows the signatures and
completion flips ``ready_to_bill`` for the billing collaborator.
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import select

from tracker.core.exceptions import CertificateNotReadyError, ConflictError, NotFoundError
from tracker.models import db
from tracker.models.certificate import CertificateStatus, MilestoneCertificate
from tracker.models.signature import EntityKind, Party
from tracker.services import locks, permission_service, signature_engine
from tracker.services.aggregation import milestone_view
from tracker.services.baseline_service import get_milestone

logger = logging.getLogger(__name__)


def _existing(milestone_id: int) -> MilestoneCertificate | None:
    return db.session.execute(
        select(MilestoneCertificate).where(MilestoneCertificate.milestone_id == milestone_id)
    ).scalar_one_or_none()


def get_certificate(milestone_id: int) -> MilestoneCertificate:
    cert = _existing(milestone_id)
    if cert is None:
        raise NotFoundError(resource="Certificate for milestone", resource_id=milestone_id)
    return cert


def load_certificate(certificate_id: int, *, refresh: bool = False) -> MilestoneCertificate:
    cert = db.session.get(MilestoneCertificate, certificate_id, populate_existing=refresh)
    if cert is None:
        raise NotFoundError(resource="Certificate", resource_id=certificate_id)
    return cert


def can_generate_certificate(milestone_id: int) -> bool:
    get_milestone(milestone_id)
    if _existing(milestone_id) is not None:
        return False
    return milestone_view(milestone_id).is_completed


def generate_certificate(milestone_id: int, user_id: int, *, role=None) -> MilestoneCertificate:
    """Create the Draft certificate for a Completed milestone.

    Raises:
        CertificateNotReadyError: some deliverable is not yet Delivered.
        ConflictError: the milestone already has a certificate.
    """
    m = get_milestone(milestone_id)
    role = permission_service.resolve_role(user_id, m.project_id, role)
    permission_service.require(role, "certificate.generate", user_id=user_id)

    with locks.hold(locks.subtree_key(m.id)):
        m = get_milestone(milestone_id, refresh=True)
        if _existing(m.id) is not None:
            raise ConflictError(resource="Certificate", field="milestone", value=m.item_ref)

        view = milestone_view(m.id)
        if not view.is_completed:
            raise CertificateNotReadyError(
                f"Cannot generate a certificate for {m.item_ref} until all deliverables are Delivered "
                f"({view.delivered_count} of {view.deliverable_count} delivered).",
                details={"delivered": view.delivered_count, "total": view.deliverable_count},
            )

        try:
            cert = MilestoneCertificate(
                tenant_id=m.tenant_id,
                project_id=m.project_id,
                milestone_id=m.id,
                certificate_number=f"{m.item_ref}-CERT",
                status=CertificateStatus.DRAFT.value,
                billable=m.billable,
                generated_by=user_id,
            )
            db.session.add(cert)
            db.session.flush()
            record = signature_engine.open_record(
                EntityKind.MILESTONE_CERTIFICATE, cert.id, tenant_id=m.tenant_id, project_id=m.project_id,
            )
            cert.signature_record_id = record.id
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

    logger.info(
        "Certificate generated",
        extra={"tenant_id": m.tenant_id, "project_id": m.project_id,
               "milestone_id": m.id, "certificate": cert.certificate_number},
    )
    return cert


def sign_certificate(milestone_id: int, party, user_id: int, *, role=None, expected_version=None):
    cert = get_certificate(milestone_id)
    return signature_engine.sign(
        EntityKind.MILESTONE_CERTIFICATE, cert.id, party, user_id,
        role=role, expected_version=expected_version,
    )


# ── Signature strategy ───────────────────────────────────────────────────────


def _check_can_sign(cert: MilestoneCertificate) -> None:
    view = milestone_view(cert.milestone_id)
    if not view.is_completed:
        raise CertificateNotReadyError(
            f"Certificate {cert.certificate_number} cannot be signed while the milestone has undelivered "
            f"deliverables ({view.delivered_count} of {view.deliverable_count} delivered).",
            details={"delivered": view.delivered_count, "total": view.deliverable_count},
        )


def _on_signed(cert: MilestoneCertificate, record, party) -> None:
    if record.is_complete:
        return
    if Party(party) is Party.SUPPLIER:
        cert.status = CertificateStatus.PENDING_CUSTOMER_SIGNATURE.value
    else:
        cert.status = CertificateStatus.PENDING_SUPPLIER_SIGNATURE.value


def _on_complete(cert: MilestoneCertificate, record, party) -> None:
    cert.status = CertificateStatus.SIGNED.value
    cert.ready_to_bill = True
    cert.signed_at = record.completed_at or datetime.now(timezone.utc)


signature_engine.register_spec(signature_engine.SignatureSpec(
    kind=EntityKind.MILESTONE_CERTIFICATE,
    label="certificate",
    required_action="sign_certificate",
    load=lambda entity_id, refresh=False: load_certificate(entity_id, refresh=refresh),
    scope=lambda c: (c.tenant_id, c.project_id),
    describe=lambda c: c.certificate_number,
    check_can_sign=_check_can_sign,
    on_signed=_on_signed,
    on_complete=_on_complete,
))
