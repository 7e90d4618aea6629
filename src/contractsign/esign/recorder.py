from __future__ import annotations

import base64
import binascii
import logging
import uuid
from dataclasses import dataclass
from typing import Optional, Union

from sqlalchemy.orm import Session

from contractsign.clock import Clock, utcnow
from contractsign.esign.certificate_store import CertificateStore
from contractsign.esign.content import ContentProvider, compute_content_hash
from contractsign.esign.crypto import CryptoProvider, normalize_digest_name
from contractsign.esign.models import (
    Contract,
    DigitalSignatureRecord,
    SignatureAlgorithm,
    SignatureStatus,
    SignerType,
)
from contractsign.esign.workflow import ContractSigningWorkflow, trigger_for_signer
from contractsign.exceptions import (
    MalformedSignaturePayloadError,
    NotFoundError,
    ValidationError,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SignaturePlacement:
    page_number: Optional[int] = None
    x: Optional[int] = None
    y: Optional[int] = None
    width: Optional[int] = None
    height: Optional[int] = None


def decode_image_payload(value: Union[bytes, str, None]) -> Optional[bytes]:
    """Accept raw bytes, base64 text or a data URL such as data:image/png;base64,..."""
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    text = value.strip()
    if text.startswith("data:"):
        header, _, text = text.partition(",")
        if ";base64" not in header:
            raise MalformedSignaturePayloadError(
                "Signature image data URL must be base64 encoded", field="image"
            )
    try:
        return base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise MalformedSignaturePayloadError(
            "Signature image is not valid base64", field="image"
        ) from exc


def signing_input(content_hash: str) -> bytes:
    """Bytes covered by a raw signature: the hex content hash."""
    return content_hash.encode("ascii")


class SignatureRecorder:
    def __init__(
        self,
        session: Session,
        *,
        workflow: ContractSigningWorkflow,
        certificates: CertificateStore,
        content_provider: ContentProvider,
        crypto: CryptoProvider,
        max_signature_bytes: int = 16 * 1024,
        max_image_bytes: int = 2 * 1024 * 1024,
        max_timestamp_token_bytes: int = 64 * 1024,
        clock: Clock = utcnow,
    ) -> None:
        self.session = session
        self.workflow = workflow
        self.certificates = certificates
        self.content_provider = content_provider
        self.crypto = crypto
        self.max_signature_bytes = max_signature_bytes
        self.max_image_bytes = max_image_bytes
        self.max_timestamp_token_bytes = max_timestamp_token_bytes
        self.clock = clock

    def _check_payload(self, name: str, value: Optional[bytes], limit: int) -> None:
        if value is None:
            return
        if len(value) == 0:
            raise MalformedSignaturePayloadError(f"{name} is empty", field=name)
        if len(value) > limit:
            raise MalformedSignaturePayloadError(
                f"{name} exceeds {limit} bytes", field=name, size=len(value), limit=limit
            )

    def _field_name(self, signer_type: SignerType) -> str:
        return f"{signer_type.value.lower()}_signature_{uuid.uuid4().hex[:12]}"

    def record_signature(
        self,
        *,
        contract_id: str,
        signer_type: SignerType,
        signer_id: str,
        signer_name: str,
        signer_email: Optional[str] = None,
        certificate_id: Optional[str] = None,
        signature_bytes: Optional[bytes] = None,
        signature_algorithm: Optional[SignatureAlgorithm] = None,
        image_bytes: Union[bytes, str, None] = None,
        image_width: Optional[int] = None,
        image_height: Optional[int] = None,
        placement: Optional[SignaturePlacement] = None,
        hash_algorithm: str = "SHA-256",
        content_hash: Optional[str] = None,
        timestamp_token: Optional[bytes] = None,
        timestamp_url: Optional[str] = None,
        field_name: Optional[str] = None,
        reason: Optional[str] = None,
        location: Optional[str] = None,
        contact_info: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> DigitalSignatureRecord:
        signer_type = SignerType(signer_type)
        contract = self.session.get(Contract, contract_id)
        if not contract:
            raise NotFoundError("Contract", contract_id)

        trigger = trigger_for_signer(signer_type)
        self.workflow.check(contract, trigger, actor=signer_id, signer_type=signer_type)

        if not (signer_name or "").strip():
            raise ValidationError("Signer name is required", field="signer_name")

        image = decode_image_payload(image_bytes)
        if signature_bytes is None and image is None:
            raise MalformedSignaturePayloadError(
                "Either a raw signature or a signature image is required"
            )
        self._check_payload("signature", signature_bytes, self.max_signature_bytes)
        self._check_payload("image", image, self.max_image_bytes)
        self._check_payload("timestamp_token", timestamp_token, self.max_timestamp_token_bytes)

        certificate = None
        if certificate_id is not None:
            certificate = self.certificates.find_by_id(certificate_id)

        hash_algorithm = normalize_digest_name(hash_algorithm)
        if content_hash is None:
            content_hash = compute_content_hash(
                self.content_provider, self.crypto, contract_id, hash_algorithm
            )
        if not content_hash:
            raise ValidationError("Contract content is unavailable for hashing", field="contract_id")

        if signature_bytes is not None and signature_algorithm is None and certificate is not None:
            signature_algorithm = SignatureAlgorithm.parse(certificate.signature_algorithm)
        if signature_bytes is not None and signature_algorithm is None:
            raise ValidationError(
                "Signature algorithm is required with a raw signature", field="signature_algorithm"
            )

        placement = placement or SignaturePlacement()
        now = self.clock()
        record = DigitalSignatureRecord(
            contract_id=contract_id,
            certificate_id=certificate_id,
            signer_type=signer_type.value,
            signer_id=signer_id,
            signer_name=signer_name,
            signer_email=signer_email,
            signature_algorithm=(
                SignatureAlgorithm(signature_algorithm).value if signature_algorithm else None
            ),
            signature_value=signature_bytes,
            signature_hash=content_hash,
            hash_algorithm=hash_algorithm,
            signature_image_data=image,
            signature_image_width=image_width,
            signature_image_height=image_height,
            page_number=placement.page_number,
            signature_x=placement.x,
            signature_y=placement.y,
            signature_width=placement.width,
            signature_height=placement.height,
            signature_field_name=field_name or self._field_name(signer_type),
            timestamp_token=timestamp_token,
            timestamp_url=timestamp_url,
            signature_verified=False,
            certificate_verified=False,
            timestamp_verified=False,
            status=SignatureStatus.PENDING_VERIFICATION.value,
            verification_errors=[],
            reason=reason,
            location=location,
            contact_info=contact_info,
            ip_address=ip_address,
            user_agent=user_agent,
            signed_at=now,
            created_at=now,
        )
        self.session.add(record)
        self.session.flush()

        if signature_bytes is not None:
            contract.digital_signed = True

        self.workflow.apply(
            contract,
            trigger,
            actor=signer_id,
            signer_type=signer_type,
            signer_name=signer_name,
            reason=reason,
        )
        logger.info(
            "Recorded %s signature %s on contract %s", signer_type.value, record.id, contract_id
        )
        return record
