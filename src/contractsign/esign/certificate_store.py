from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from contractsign.clock import Clock, utcnow
from contractsign.esign.models import CertificateStatus, DigitalCertificate
from contractsign.exceptions import NotFoundError, PersistenceError, ValidationError

logger = logging.getLogger(__name__)


def normalize_fingerprint(value: str) -> str:
    return (value or "").replace(":", "").replace(" ", "").strip().lower()


def certificate_summary(certificate: DigitalCertificate, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Listing view of a certificate; never includes key material."""
    return {
        "id": certificate.id,
        "alias": certificate.alias,
        "subject_dn": certificate.subject_dn,
        "issuer_dn": certificate.issuer_dn,
        "common_name": certificate.common_name,
        "serial_number": certificate.serial_number,
        "certificate_type": certificate.certificate_type,
        "key_algorithm": certificate.key_algorithm,
        "key_size": certificate.key_size,
        "signature_algorithm": certificate.signature_algorithm,
        "valid_from": certificate.valid_from,
        "valid_to": certificate.valid_to,
        "status": certificate.status,
        "currently_valid": certificate.is_currently_valid(now),
        "fingerprint_sha1": certificate.fingerprint_sha1,
        "fingerprint_sha256": certificate.fingerprint_sha256,
        "has_private_key": certificate.has_private_key,
        "description": certificate.description,
        "created_by": certificate.created_by,
        "created_at": certificate.created_at,
    }


class CertificateStore:
    def __init__(self, session: Session, *, clock: Clock = utcnow) -> None:
        self.session = session
        self.clock = clock

    def save(self, certificate: DigitalCertificate) -> str:
        try:
            self.session.add(certificate)
            self.session.flush()
        except SQLAlchemyError as exc:
            logger.exception("Failed to store certificate serial=%s", certificate.serial_number)
            raise PersistenceError(
                "Failed to store certificate", serial_number=certificate.serial_number
            ) from exc
        return certificate.id

    def get(self, certificate_id: str) -> Optional[DigitalCertificate]:
        return self.session.get(DigitalCertificate, certificate_id)

    def find_by_id(self, certificate_id: str) -> DigitalCertificate:
        certificate = self.get(certificate_id)
        if not certificate:
            raise NotFoundError("Certificate", certificate_id)
        return certificate

    def find_by_fingerprint(self, fingerprint: str) -> DigitalCertificate:
        normalized = normalize_fingerprint(fingerprint)
        column = (
            DigitalCertificate.fingerprint_sha1
            if len(normalized) == 40
            else DigitalCertificate.fingerprint_sha256
        )
        certificate = self.session.query(DigitalCertificate).filter(column == normalized).first()
        if not certificate:
            raise NotFoundError("Certificate", fingerprint, lookup="fingerprint")
        return certificate

    def find_by_alias(self, alias: str) -> List[DigitalCertificate]:
        return (
            self.session.query(DigitalCertificate)
            .filter(DigitalCertificate.alias == alias)
            .order_by(DigitalCertificate.created_at.desc())
            .all()
        )

    def find_active_valid_at(self, at: Optional[datetime] = None) -> List[DigitalCertificate]:
        at = at or self.clock()
        return (
            self.session.query(DigitalCertificate)
            .filter(
                DigitalCertificate.status == CertificateStatus.ACTIVE.value,
                DigitalCertificate.valid_from <= at,
                DigitalCertificate.valid_to >= at,
            )
            .order_by(DigitalCertificate.valid_to)
            .all()
        )

    def find_expiring_before(self, before: datetime) -> List[DigitalCertificate]:
        return (
            self.session.query(DigitalCertificate)
            .filter(DigitalCertificate.valid_to < before)
            .order_by(DigitalCertificate.valid_to)
            .all()
        )

    def find_expired(self, now: Optional[datetime] = None) -> List[DigitalCertificate]:
        return self.find_expiring_before(now or self.clock())

    def find_expiring_soon(self, days: int, now: Optional[datetime] = None) -> List[DigitalCertificate]:
        now = now or self.clock()
        return (
            self.session.query(DigitalCertificate)
            .filter(
                DigitalCertificate.status == CertificateStatus.ACTIVE.value,
                DigitalCertificate.valid_to > now,
                DigitalCertificate.valid_to <= now + timedelta(days=days),
            )
            .order_by(DigitalCertificate.valid_to)
            .all()
        )

    def is_usable(self, certificate_id: str, at: Optional[datetime] = None) -> bool:
        at = at or self.clock()
        certificate = self.get(certificate_id)
        return bool(certificate and certificate.is_currently_valid(at))

    def count_active(self) -> int:
        total = (
            self.session.query(func.count(DigitalCertificate.id))
            .filter(DigitalCertificate.status == CertificateStatus.ACTIVE.value)
            .scalar()
        )
        return int(total or 0)

    def list_certificates(
        self,
        *,
        status: Optional[str] = None,
        alias: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[DigitalCertificate]:
        query = self.session.query(DigitalCertificate)
        if status:
            query = query.filter(DigitalCertificate.status == status)
        if alias:
            query = query.filter(DigitalCertificate.alias == alias)
        return (
            query.order_by(DigitalCertificate.created_at.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )

    def update_status(
        self,
        certificate_id: str,
        status: str,
        *,
        description: Optional[str] = None,
    ) -> DigitalCertificate:
        try:
            status = CertificateStatus(status).value
        except ValueError as exc:
            raise ValidationError(f"Unknown certificate status: {status}", field="status") from exc

        certificate = self.find_by_id(certificate_id)
        previous = certificate.status
        certificate.status = status
        if description is not None:
            certificate.description = description
        certificate.updated_at = self.clock()
        self.session.add(certificate)
        self.session.flush()
        logger.info("Certificate %s status %s -> %s", certificate_id, previous, status)
        return certificate

    def update_description(self, certificate_id: str, description: Optional[str]) -> DigitalCertificate:
        certificate = self.find_by_id(certificate_id)
        certificate.description = description
        certificate.updated_at = self.clock()
        self.session.add(certificate)
        self.session.flush()
        return certificate

    def strip_signing_authority(self, certificate_id: str) -> DigitalCertificate:
        """Drop the bundled private key so the certificate can only verify."""
        certificate = self.find_by_id(certificate_id)
        certificate.keystore_data = None
        certificate.updated_at = self.clock()
        self.session.add(certificate)
        self.session.flush()
        return certificate

    def purge_certificates(self) -> int:
        """Bulk delete for test fixtures only; normal flows never delete certificates."""
        deleted = self.session.query(DigitalCertificate).delete(synchronize_session=False)
        self.session.flush()
        logger.warning("Purged %s certificates", deleted)
        return int(deleted or 0)
