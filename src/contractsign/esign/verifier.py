"""
Signature verification.

Each check runs independently and contributes its own reasons; a failing step never
stops later steps. Outcomes are returned as data, not raised.
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from contractsign.clock import Clock, utcnow
from contractsign.esign.certificate_store import CertificateStore
from contractsign.esign.content import ContentProvider, compute_content_hash
from contractsign.esign.crypto import CryptoProvider
from contractsign.esign.models import (
    CertificateStatus,
    DigitalCertificate,
    DigitalSignatureRecord,
    SignatureAlgorithm,
    SignatureStatus,
)
from contractsign.esign.recorder import signing_input
from contractsign.exceptions import ContractSignError, CryptoProviderError

logger = logging.getLogger(__name__)

RECORD_NOT_FOUND = "signature record not found"
CERTIFICATE_NOT_FOUND = "certificate not found"
CERTIFICATE_EXPIRED = "certificate expired"
CERTIFICATE_REVOKED = "certificate revoked"
CERTIFICATE_NOT_YET_VALID = "certificate not yet valid"
NO_CERTIFICATE_FOR_SIGNATURE = "no certificate available to verify signature"
SIGNATURE_MISMATCH = "signature does not match signed content"
SIGNATURE_MISSING = "no signature or signature image present"
PUBLIC_KEY_UNREADABLE = "certificate public key is unreadable"
UNKNOWN_ALGORITHM = "unknown signature algorithm"
DOCUMENT_MODIFIED = "document modified since signing"
TIMESTAMP_MALFORMED = "timestamp token is not a DER structure"


@dataclass
class VerificationResult:
    signature_record_id: str
    signature_valid: bool = False
    certificate_valid: bool = False
    # None means the current document could not be obtained
    document_integrity_valid: Optional[bool] = None
    # None means no timestamp token was attached
    timestamp_valid: Optional[bool] = None
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    status: Optional[str] = None
    signer_name: Optional[str] = None
    signer_email: Optional[str] = None
    issuer_name: Optional[str] = None
    certificate_serial_number: Optional[str] = None
    certificate_fingerprint: Optional[str] = None
    signature_algorithm: Optional[str] = None
    hash_algorithm: Optional[str] = None
    signing_time: Optional[datetime] = None
    has_timestamp: bool = False
    timestamp_authority: Optional[str] = None
    verified_at: Optional[datetime] = field(default=None, compare=False)

    @property
    def is_valid(self) -> bool:
        return (
            self.signature_valid
            and self.certificate_valid
            and self.document_integrity_valid is not False
            and self.timestamp_valid is not False
            and not self.errors
        )

    @property
    def status_summary(self) -> str:
        if self.is_valid:
            return "VALID"
        if self.signature_valid or self.certificate_valid:
            return "PARTIALLY_VALID"
        return "INVALID"

    @property
    def detailed_status(self) -> str:
        parts = [
            f"signature={'ok' if self.signature_valid else 'failed'}",
            f"certificate={'ok' if self.certificate_valid else 'failed'}",
            "document="
            + {True: "ok", False: "modified", None: "indeterminate"}[self.document_integrity_valid],
        ]
        if self.has_timestamp:
            parts.append(f"timestamp={'ok' if self.timestamp_valid else 'failed'}")
        return ", ".join(parts)

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["is_valid"] = self.is_valid
        payload["status_summary"] = self.status_summary
        payload["detailed_status"] = self.detailed_status
        return payload


def is_der_sequence(token: bytes) -> bool:
    """Structural check: a single DER SEQUENCE whose length matches the buffer."""
    if not token or len(token) < 2 or token[0] != 0x30:
        return False
    first = token[1]
    if first < 0x80:
        return 2 + first == len(token)
    count = first & 0x7F
    if count == 0 or count > 4 or len(token) < 2 + count:
        return False
    length = int.from_bytes(token[2 : 2 + count], "big")
    if length < 0x80 or token[2] == 0:
        return False
    return 2 + count + length == len(token)


# Ordered: the first matching rule decides the persisted status.
STATUS_RULES: List[Tuple[Callable[[VerificationResult, Optional[str]], bool], SignatureStatus]] = [
    (lambda r, cert: PUBLIC_KEY_UNREADABLE in r.errors, SignatureStatus.CORRUPTED),
    (lambda r, cert: not r.signature_valid, SignatureStatus.INVALID),
    (lambda r, cert: r.document_integrity_valid is False, SignatureStatus.DOCUMENT_MODIFIED),
    (lambda r, cert: cert == CERTIFICATE_REVOKED, SignatureStatus.CERTIFICATE_REVOKED),
    (lambda r, cert: cert == CERTIFICATE_EXPIRED, SignatureStatus.CERTIFICATE_EXPIRED),
    (lambda r, cert: not r.certificate_valid, SignatureStatus.CERTIFICATE_INVALID),
    (lambda r, cert: r.timestamp_valid is False, SignatureStatus.TIMESTAMP_INVALID),
]


def resolve_status(result: VerificationResult, certificate_reason: Optional[str]) -> SignatureStatus:
    for matches, status in STATUS_RULES:
        if matches(result, certificate_reason):
            return status
    return SignatureStatus.VALID


def certificate_problem(certificate: DigitalCertificate, now: datetime) -> Optional[str]:
    if certificate.status == CertificateStatus.REVOKED.value:
        return CERTIFICATE_REVOKED
    if certificate.status == CertificateStatus.EXPIRED.value or now > certificate.valid_to:
        return CERTIFICATE_EXPIRED
    if now < certificate.valid_from:
        return CERTIFICATE_NOT_YET_VALID
    if certificate.status != CertificateStatus.ACTIVE.value:
        return f"certificate is {certificate.status.lower()}"
    return None


class SignatureVerifier:
    def __init__(
        self,
        session: Session,
        *,
        certificates: CertificateStore,
        content_provider: ContentProvider,
        crypto: CryptoProvider,
        expiry_warning_days: int = 30,
        clock: Clock = utcnow,
    ) -> None:
        self.session = session
        self.certificates = certificates
        self.content_provider = content_provider
        self.crypto = crypto
        self.expiry_warning_days = expiry_warning_days
        self.clock = clock

    def verify(self, signature_record_id: str) -> VerificationResult:
        now = self.clock()
        record = self.session.get(DigitalSignatureRecord, signature_record_id)
        if not record:
            return VerificationResult(
                signature_record_id=signature_record_id,
                errors=[RECORD_NOT_FOUND],
                status=SignatureStatus.VERIFICATION_FAILED.value,
                verified_at=now,
            )

        result = VerificationResult(
            signature_record_id=record.id,
            signer_name=record.signer_name,
            signer_email=record.signer_email,
            signature_algorithm=record.signature_algorithm,
            hash_algorithm=record.hash_algorithm,
            signing_time=record.signed_at,
            has_timestamp=record.has_timestamp,
            timestamp_authority=record.timestamp_url,
            verified_at=now,
        )

        certificate: Optional[DigitalCertificate] = None
        if record.certificate_id:
            certificate = self.certificates.get(record.certificate_id)
        if certificate is not None:
            result.issuer_name = certificate.issuer_common_name
            result.certificate_serial_number = certificate.serial_number
            result.certificate_fingerprint = certificate.fingerprint_sha256

        certificate_reason = self._check_certificate(record, certificate, result, now)
        self._check_signature(record, certificate, result)
        self._check_document(record, result)
        self._check_timestamp(record, result)

        status = resolve_status(result, certificate_reason)
        result.status = status.value

        record.signature_verified = result.signature_valid
        record.certificate_verified = result.certificate_valid
        record.timestamp_verified = bool(result.timestamp_valid)
        record.status = status.value
        record.verification_errors = list(result.errors)
        record.last_verified_at = now
        self.session.add(record)
        self.session.flush()

        log = logger.info if status == SignatureStatus.VALID else logger.warning
        log("Verified signature %s: %s %s", record.id, status.value, result.errors)
        return result

    def _check_certificate(
        self,
        record: DigitalSignatureRecord,
        certificate: Optional[DigitalCertificate],
        result: VerificationResult,
        now: datetime,
    ) -> Optional[str]:
        if not record.certificate_id:
            if record.signature_value:
                result.certificate_valid = False
                return None
            # Image-only legacy record: no certificate was checked. The flag is set
            # only so the record can reach VALID; the warning below marks the gap.
            result.certificate_valid = True
            result.warnings.append("no certificate attached to signature")
            return None

        if certificate is None:
            result.certificate_valid = False
            result.errors.append(CERTIFICATE_NOT_FOUND)
            return CERTIFICATE_NOT_FOUND

        problem = certificate_problem(certificate, now)
        if problem:
            result.certificate_valid = False
            result.errors.append(problem)
            return problem

        result.certificate_valid = True
        if now + timedelta(days=self.expiry_warning_days) >= certificate.valid_to:
            result.warnings.append(
                f"certificate expires within {self.expiry_warning_days} days"
            )
        return None

    def _check_signature(
        self,
        record: DigitalSignatureRecord,
        certificate: Optional[DigitalCertificate],
        result: VerificationResult,
    ) -> None:
        if not record.signature_value:
            result.signature_valid = record.has_image
            if not result.signature_valid:
                result.errors.append(SIGNATURE_MISSING)
            return

        if certificate is None:
            result.signature_valid = False
            result.errors.append(NO_CERTIFICATE_FOR_SIGNATURE)
            return

        try:
            algorithm = SignatureAlgorithm.parse(
                record.signature_algorithm or certificate.signature_algorithm
            )
        except ValueError:
            result.signature_valid = False
            result.errors.append(UNKNOWN_ALGORITHM)
            return

        try:
            public_key = self.crypto.load_public_key(certificate.public_key_data)
        except CryptoProviderError:
            result.signature_valid = False
            result.errors.append(PUBLIC_KEY_UNREADABLE)
            return

        result.signature_valid = self.crypto.verify(
            public_key,
            record.signature_value,
            signing_input(record.signature_hash),
            algorithm,
        )
        if not result.signature_valid:
            result.errors.append(SIGNATURE_MISMATCH)

    def _check_document(self, record: DigitalSignatureRecord, result: VerificationResult) -> None:
        try:
            current_hash = compute_content_hash(
                self.content_provider, self.crypto, record.contract_id, record.hash_algorithm
            )
        except ContractSignError as exc:
            result.document_integrity_valid = None
            result.warnings.append(f"document integrity indeterminate: {exc.message}")
            return

        if current_hash is None:
            result.document_integrity_valid = None
            result.warnings.append("document content unavailable; integrity not checked")
            return

        result.document_integrity_valid = current_hash == record.signature_hash
        if not result.document_integrity_valid:
            result.errors.append(DOCUMENT_MODIFIED)

    def _check_timestamp(self, record: DigitalSignatureRecord, result: VerificationResult) -> None:
        if not record.has_timestamp:
            result.timestamp_valid = None
            return
        result.timestamp_valid = is_der_sequence(record.timestamp_token)
        if not result.timestamp_valid:
            result.errors.append(TIMESTAMP_MALFORMED)
