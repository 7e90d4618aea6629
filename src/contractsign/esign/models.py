"""
Contract signing data models: certificates, contracts, signature records and history.
"""
from __future__ import annotations

import enum
import uuid
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    JSON,
    LargeBinary,
    Numeric,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB

from contractsign.clock import utcnow
from contractsign.models.base import Base


class CertificateType(str, enum.Enum):
    SELF_SIGNED = "SELF_SIGNED"
    CA_ISSUED = "CA_ISSUED"
    ORGANIZATION = "ORGANIZATION"
    PERSONAL = "PERSONAL"
    CODE_SIGNING = "CODE_SIGNING"
    DOCUMENT_SIGNING = "DOCUMENT_SIGNING"


class CertificateStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    REVOKED = "REVOKED"
    EXPIRED = "EXPIRED"
    PENDING = "PENDING"
    SUSPENDED = "SUSPENDED"


class SignerType(str, enum.Enum):
    STAFF = "STAFF"
    CUSTOMER = "CUSTOMER"
    MANAGER = "MANAGER"


class ContractStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    PENDING_SELLER_SIGNATURE = "PENDING_SELLER_SIGNATURE"
    PENDING_CUSTOMER_SIGNATURE = "PENDING_CUSTOMER_SIGNATURE"
    ACTIVE = "ACTIVE"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


class ContractAction(str, enum.Enum):
    CREATED = "CREATED"
    UPDATED = "UPDATED"
    STATUS_CHANGED = "STATUS_CHANGED"
    SIGNED = "SIGNED"
    HIDDEN = "HIDDEN"
    RESTORED = "RESTORED"
    CANCELLED = "CANCELLED"
    FILE_UPLOADED = "FILE_UPLOADED"
    DIGITAL_SIGNATURE_ADDED = "DIGITAL_SIGNATURE_ADDED"


class SignatureStatus(str, enum.Enum):
    VALID = "VALID"
    INVALID = "INVALID"
    PENDING_VERIFICATION = "PENDING_VERIFICATION"
    VERIFICATION_FAILED = "VERIFICATION_FAILED"
    CERTIFICATE_REVOKED = "CERTIFICATE_REVOKED"
    CERTIFICATE_EXPIRED = "CERTIFICATE_EXPIRED"
    CERTIFICATE_INVALID = "CERTIFICATE_INVALID"
    TIMESTAMP_INVALID = "TIMESTAMP_INVALID"
    DOCUMENT_MODIFIED = "DOCUMENT_MODIFIED"
    CORRUPTED = "CORRUPTED"


class SignatureAlgorithm(str, enum.Enum):
    SHA256_WITH_RSA = "SHA256withRSA"
    SHA384_WITH_RSA = "SHA384withRSA"
    SHA512_WITH_RSA = "SHA512withRSA"
    SHA256_WITH_ECDSA = "SHA256withECDSA"
    SHA384_WITH_ECDSA = "SHA384withECDSA"
    SHA512_WITH_ECDSA = "SHA512withECDSA"
    RSASSA_PSS = "RSASSA-PSS"
    ED25519 = "Ed25519"
    ED448 = "Ed448"

    @property
    def key_algorithm(self) -> str:
        if self in (SignatureAlgorithm.ED25519, SignatureAlgorithm.ED448):
            return self.value
        if self.value.endswith("ECDSA"):
            return "EC"
        return "RSA"

    @property
    def digest_name(self) -> Optional[str]:
        """Digest used by the scheme; None for EdDSA which hashes internally."""
        if self in (SignatureAlgorithm.ED25519, SignatureAlgorithm.ED448):
            return None
        if self == SignatureAlgorithm.RSASSA_PSS:
            return "SHA-256"
        return f"SHA-{self.value[3:6]}"

    @classmethod
    def parse(cls, value: str) -> "SignatureAlgorithm":
        raw = (value or "").strip()
        for member in cls:
            if raw == member.value or raw.upper() == member.name:
                return member
        lowered = raw.lower()
        for member in cls:
            if lowered == member.value.lower():
                return member
        raise ValueError(f"Unsupported signature algorithm: {value}")

    @classmethod
    def default_for_key(cls, key_algorithm: str) -> "SignatureAlgorithm":
        normalized = (key_algorithm or "").strip().upper()
        if normalized in {"EC", "ECDSA"}:
            return cls.SHA256_WITH_ECDSA
        if normalized == "ED25519":
            return cls.ED25519
        if normalized == "ED448":
            return cls.ED448
        return cls.SHA256_WITH_RSA


def _parse_dn_attribute(dn: Optional[str], attribute: str) -> Optional[str]:
    if not dn:
        return None
    prefix = f"{attribute.upper()}="
    for part in dn.split(","):
        part = part.strip()
        if part.upper().startswith(prefix):
            return part[len(prefix):].strip() or None
    return None


class DigitalCertificate(Base):
    __tablename__ = "digital_certificates"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))

    alias = Column(String(100), nullable=False, index=True)
    subject_dn = Column(String(500), nullable=False)
    issuer_dn = Column(String(500), nullable=False)
    serial_number = Column(String(100), nullable=False, unique=True)
    certificate_type = Column(String(30), nullable=False, default=CertificateType.SELF_SIGNED.value)

    key_algorithm = Column(String(20), nullable=False)
    key_size = Column(Integer, nullable=True)
    signature_algorithm = Column(String(50), nullable=False)

    # DER encoded certificate and SubjectPublicKeyInfo
    certificate_data = Column(LargeBinary, nullable=False)
    public_key_data = Column(LargeBinary, nullable=False)
    # password protected PKCS#12 bundle; NULL once signing authority is stripped
    keystore_data = Column(LargeBinary, nullable=True)

    valid_from = Column(DateTime, nullable=False)
    valid_to = Column(DateTime, nullable=False, index=True)
    status = Column(String(20), nullable=False, default=CertificateStatus.ACTIVE.value, index=True)

    fingerprint_sha1 = Column(String(40), nullable=False, index=True)
    fingerprint_sha256 = Column(String(64), nullable=False, unique=True)

    description = Column(Text, nullable=True)
    created_by = Column(String(100), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=True)

    def is_currently_valid(self, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        return (
            self.status == CertificateStatus.ACTIVE.value
            and self.valid_from <= now <= self.valid_to
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        return now > self.valid_to

    def expires_within(self, days: int, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        return now < self.valid_to <= now + timedelta(days=days)

    @property
    def common_name(self) -> Optional[str]:
        return _parse_dn_attribute(self.subject_dn, "CN")

    @property
    def organization(self) -> Optional[str]:
        return _parse_dn_attribute(self.subject_dn, "O")

    @property
    def issuer_common_name(self) -> Optional[str]:
        return _parse_dn_attribute(self.issuer_dn, "CN")

    @property
    def has_private_key(self) -> bool:
        return bool(self.keystore_data)


class Contract(Base):
    __tablename__ = "contracts"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))

    contract_number = Column(String(50), nullable=False, unique=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)

    customer_id = Column(String(100), nullable=True, index=True)
    staff_id = Column(String(100), nullable=True, index=True)
    total_value = Column(Numeric(14, 2), nullable=True)
    start_date = Column(Date, nullable=True)
    end_date = Column(Date, nullable=True)

    status = Column(String(40), nullable=False, default=ContractStatus.DRAFT.value, index=True)
    digital_signed = Column(Boolean, nullable=False, default=False)
    signed_at = Column(DateTime, nullable=True)
    signed_by = Column(String(255), nullable=True)
    is_hidden = Column(Boolean, nullable=False, default=False)

    created_by = Column(String(100), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=True)

    version = Column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}


class ContractLineItem(Base):
    __tablename__ = "contract_line_items"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    contract_id = Column(String, ForeignKey("contracts.id"), nullable=False, index=True)
    sequence = Column(Integer, nullable=False, default=0)
    description = Column(String(500), nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    unit_price = Column(Numeric(14, 2), nullable=False, default=0)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class DigitalSignatureRecord(Base):
    __tablename__ = "digital_signature_records"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))

    contract_id = Column(String, ForeignKey("contracts.id"), nullable=False, index=True)
    certificate_id = Column(
        String, ForeignKey("digital_certificates.id"), nullable=True, index=True
    )

    signer_type = Column(String(20), nullable=False)
    signer_id = Column(String(100), nullable=False)
    signer_name = Column(String(255), nullable=False)
    signer_email = Column(String(255), nullable=True)

    signature_algorithm = Column(String(50), nullable=True)
    signature_value = Column(LargeBinary, nullable=True)
    signature_hash = Column(String(128), nullable=False)
    hash_algorithm = Column(String(20), nullable=False, default="SHA-256")

    signature_image_data = Column(LargeBinary, nullable=True)
    signature_image_width = Column(Integer, nullable=True)
    signature_image_height = Column(Integer, nullable=True)

    page_number = Column(Integer, nullable=True)
    signature_x = Column(Integer, nullable=True)
    signature_y = Column(Integer, nullable=True)
    signature_width = Column(Integer, nullable=True)
    signature_height = Column(Integer, nullable=True)
    signature_field_name = Column(String(100), nullable=True)

    timestamp_token = Column(LargeBinary, nullable=True)
    timestamp_url = Column(String(500), nullable=True)

    signature_verified = Column(Boolean, nullable=False, default=False)
    certificate_verified = Column(Boolean, nullable=False, default=False)
    timestamp_verified = Column(Boolean, nullable=False, default=False)
    status = Column(
        String(30), nullable=False, default=SignatureStatus.PENDING_VERIFICATION.value, index=True
    )
    verification_errors = Column(JSON().with_variant(JSONB, "postgresql"), nullable=True)
    last_verified_at = Column(DateTime, nullable=True)

    reason = Column(String(500), nullable=True)
    location = Column(String(255), nullable=True)
    contact_info = Column(String(255), nullable=True)
    ip_address = Column(String(100), nullable=True)
    user_agent = Column(Text, nullable=True)

    signed_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    @property
    def is_valid(self) -> bool:
        return (
            self.status == SignatureStatus.VALID.value
            and bool(self.signature_verified)
            and bool(self.certificate_verified)
        )

    @property
    def has_timestamp(self) -> bool:
        return bool(self.timestamp_token)

    @property
    def is_completely_verified(self) -> bool:
        return self.is_valid and (not self.has_timestamp or bool(self.timestamp_verified))

    @property
    def has_image(self) -> bool:
        return bool(self.signature_image_data)


class ContractHistory(Base):
    __tablename__ = "contract_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    contract_id = Column(String, ForeignKey("contracts.id"), nullable=False, index=True)

    action = Column(String(40), nullable=False, index=True)
    old_status = Column(String(40), nullable=True)
    new_status = Column(String(40), nullable=True)

    changed_by = Column(String(255), nullable=False)
    change_reason = Column(Text, nullable=True)
    changed_at = Column(DateTime, nullable=False, default=utcnow, index=True)

    @property
    def is_status_change(self) -> bool:
        return bool(self.old_status and self.new_status and self.old_status != self.new_status)

    @property
    def is_signing_action(self) -> bool:
        return self.action in (
            ContractAction.SIGNED.value,
            ContractAction.DIGITAL_SIGNATURE_ADDED.value,
        )

    @property
    def change_description(self) -> str:
        description = f"{self.action} by {self.changed_by}"
        if self.is_status_change:
            description += f" ({self.old_status} -> {self.new_status})"
        if self.change_reason:
            description += f": {self.change_reason}"
        return description
