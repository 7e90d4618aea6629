"""
Self-signed certificate issuance.

The authority generates a key pair and a leaf certificate for a subject. It does not
persist anything; callers store the resulting entity through CertificateStore.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import timedelta
from threading import Lock
from typing import Any, Dict, Optional, Tuple

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from contractsign.clock import Clock, utcnow
from contractsign.esign.crypto import CryptoProvider, key_algorithm_name, key_size_of
from contractsign.esign.models import (
    CertificateStatus,
    CertificateType,
    DigitalCertificate,
    SignatureAlgorithm,
)
from contractsign.exceptions import CryptoProviderError, ValidationError

logger = logging.getLogger(__name__)


class SerialNumberGenerator:
    """Strictly increasing serial numbers for this process."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._last = 0

    def next(self) -> int:
        with self._lock:
            candidate = max(time.time_ns(), self._last + 1)
            self._last = candidate
            return candidate


_serials = SerialNumberGenerator()


# role -> (common name, organization, certificate type)
ROLE_IDENTITIES: Dict[str, Tuple[str, str, CertificateType]] = {
    "manager": ("Test Manager", "CEM Test Organization", CertificateType.ORGANIZATION),
    "staff": ("Test Staff", "CEM Test Organization", CertificateType.ORGANIZATION),
    "customer": ("Test Customer", "Customer Test Organization", CertificateType.PERSONAL),
}


@dataclass(frozen=True)
class IssuedCertificate:
    certificate: x509.Certificate
    private_key: Any
    subject_dn: str
    issuer_dn: str

    @property
    def der(self) -> bytes:
        return self.certificate.public_bytes(serialization.Encoding.DER)

    @property
    def serial_number(self) -> str:
        return str(self.certificate.serial_number)


def _distinguished_name(common_name: str, organization: str) -> str:
    return f"CN={common_name}, O={organization}"


class CertificateAuthority:
    def __init__(
        self,
        crypto: CryptoProvider,
        *,
        issuer_common_name: str = "Test CA",
        issuer_organization: str = "Test Certification Authority",
        validity_days: int = 365,
        clock: Clock = utcnow,
        serials: Optional[SerialNumberGenerator] = None,
    ) -> None:
        self.crypto = crypto
        self.issuer_common_name = issuer_common_name
        self.issuer_organization = issuer_organization
        self.validity_days = validity_days
        self.clock = clock
        self.serials = serials or _serials

    @property
    def issuer_dn(self) -> str:
        return _distinguished_name(self.issuer_common_name, self.issuer_organization)

    def issue(
        self,
        common_name: str,
        organization: str,
        *,
        key_algorithm: Optional[str] = None,
        key_size: Optional[int] = None,
    ) -> IssuedCertificate:
        common_name = (common_name or "").strip()
        organization = (organization or "").strip()
        if not common_name:
            raise ValidationError("Common name is required", field="common_name")
        if not organization:
            raise ValidationError("Organization is required", field="organization")

        private_key = self.crypto.generate_key_pair(key_algorithm, key_size)
        now = self.clock().replace(microsecond=0)
        serial = self.serials.next()

        subject = x509.Name(
            [
                x509.NameAttribute(NameOID.COMMON_NAME, common_name),
                x509.NameAttribute(NameOID.ORGANIZATION_NAME, organization),
            ]
        )
        issuer = x509.Name(
            [
                x509.NameAttribute(NameOID.COMMON_NAME, self.issuer_common_name),
                x509.NameAttribute(NameOID.ORGANIZATION_NAME, self.issuer_organization),
            ]
        )

        try:
            builder = (
                x509.CertificateBuilder()
                .subject_name(subject)
                .issuer_name(issuer)
                .public_key(private_key.public_key())
                .serial_number(serial)
                .not_valid_before(now)
                .not_valid_after(now + timedelta(days=self.validity_days))
                .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
                .add_extension(
                    x509.KeyUsage(
                        digital_signature=True,
                        content_commitment=False,
                        key_encipherment=True,
                        data_encipherment=False,
                        key_agreement=False,
                        key_cert_sign=False,
                        crl_sign=False,
                        encipher_only=False,
                        decipher_only=False,
                    ),
                    critical=True,
                )
                .add_extension(
                    x509.ExtendedKeyUsage(
                        [
                            ExtendedKeyUsageOID.SERVER_AUTH,
                            ExtendedKeyUsageOID.CLIENT_AUTH,
                            ExtendedKeyUsageOID.CODE_SIGNING,
                        ]
                    ),
                    critical=False,
                )
                .add_extension(
                    x509.SubjectKeyIdentifier.from_public_key(private_key.public_key()),
                    critical=False,
                )
            )
            eddsa = key_algorithm_name(private_key).startswith("Ed")
            hash_algorithm = None if eddsa else hashes.SHA256()
            certificate = builder.sign(private_key, hash_algorithm)
        except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
            logger.exception("Certificate signing failed for %s", common_name)
            raise CryptoProviderError("Certificate signing failed", common_name=common_name) from exc

        logger.info("Issued certificate serial=%s subject=CN=%s", serial, common_name)
        return IssuedCertificate(
            certificate=certificate,
            private_key=private_key,
            subject_dn=_distinguished_name(common_name, organization),
            issuer_dn=self.issuer_dn,
        )

    def fingerprint(self, certificate_bytes: bytes, algorithm: str = "SHA-256") -> str:
        return self.crypto.digest(certificate_bytes, algorithm)

    def to_entity(
        self,
        issued: IssuedCertificate,
        *,
        alias: Optional[str] = None,
        certificate_type: CertificateType = CertificateType.SELF_SIGNED,
        created_by: Optional[str] = None,
        description: Optional[str] = None,
        keep_private_key: bool = True,
    ) -> DigitalCertificate:
        der = issued.der
        key_alg = key_algorithm_name(issued.private_key)
        certificate = issued.certificate
        return DigitalCertificate(
            alias=alias or f"cert-{issued.serial_number}",
            subject_dn=issued.subject_dn,
            issuer_dn=issued.issuer_dn,
            serial_number=issued.serial_number,
            certificate_type=certificate_type.value,
            key_algorithm=key_alg,
            key_size=key_size_of(issued.private_key),
            signature_algorithm=SignatureAlgorithm.default_for_key(key_alg).value,
            certificate_data=der,
            public_key_data=self.crypto.public_key_der(issued.private_key),
            keystore_data=(
                self.crypto.pack_keystore(issued.private_key, certificate)
                if keep_private_key
                else None
            ),
            valid_from=certificate.not_valid_before_utc.replace(tzinfo=None),
            valid_to=certificate.not_valid_after_utc.replace(tzinfo=None),
            status=CertificateStatus.ACTIVE.value,
            fingerprint_sha1=self.fingerprint(der, "SHA-1"),
            fingerprint_sha256=self.fingerprint(der, "SHA-256"),
            created_by=created_by,
            description=description,
        )

