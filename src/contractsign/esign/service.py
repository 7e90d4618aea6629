"""Contract signing service layer."""
from __future__ import annotations

import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, TypeVar, Union

from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from contractsign.clock import Clock, utcnow
from contractsign.config import Settings, get_settings
from contractsign.esign.audit import AuditTrail
from contractsign.esign.authority import ROLE_IDENTITIES, CertificateAuthority
from contractsign.esign.certificate_store import CertificateStore
from contractsign.esign.content import (
    ContentProvider,
    ContractRecordContentProvider,
    compute_content_hash,
)
from contractsign.esign.crypto import CryptoProvider, get_crypto_provider, normalize_digest_name
from contractsign.esign.models import (
    CertificateType,
    Contract,
    ContractAction,
    ContractHistory,
    ContractLineItem,
    ContractStatus,
    DigitalCertificate,
    DigitalSignatureRecord,
    SignatureAlgorithm,
    SignatureStatus,
    SignerType,
)
from contractsign.esign.recorder import SignaturePlacement, SignatureRecorder, signing_input
from contractsign.esign.verifier import SignatureVerifier, VerificationResult
from contractsign.esign.workflow import (
    ContractSigningWorkflow,
    SigningTrigger,
    contract_lock,
    trigger_for_signer,
)
from contractsign.exceptions import (
    InvalidStateTransitionError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ContractSigningService:
    def __init__(
        self,
        session: Session,
        *,
        settings: Optional[Settings] = None,
        crypto: Optional[CryptoProvider] = None,
        content_provider: Optional[ContentProvider] = None,
        clock: Clock = utcnow,
    ) -> None:
        self.session = session
        self.settings = settings or get_settings()
        self.crypto = crypto or get_crypto_provider()
        self.content_provider = content_provider or ContractRecordContentProvider(session)
        self.clock = clock

        self.authority = CertificateAuthority(
            self.crypto,
            issuer_common_name=self.settings.CA_ISSUER_COMMON_NAME,
            issuer_organization=self.settings.CA_ISSUER_ORGANIZATION,
            validity_days=self.settings.CERT_VALIDITY_DAYS,
            clock=clock,
        )
        self.certificates = CertificateStore(session, clock=clock)
        self.audit = AuditTrail(session, clock=clock)
        self.workflow = ContractSigningWorkflow(session, audit=self.audit, clock=clock)
        self.recorder = SignatureRecorder(
            session,
            workflow=self.workflow,
            certificates=self.certificates,
            content_provider=self.content_provider,
            crypto=self.crypto,
            max_signature_bytes=self.settings.MAX_SIGNATURE_BYTES,
            max_image_bytes=self.settings.MAX_IMAGE_BYTES,
            max_timestamp_token_bytes=self.settings.MAX_TIMESTAMP_TOKEN_BYTES,
            clock=clock,
        )
        self.verifier = SignatureVerifier(
            session,
            certificates=self.certificates,
            content_provider=self.content_provider,
            crypto=self.crypto,
            expiry_warning_days=self.settings.CERT_EXPIRY_WARNING_DAYS,
            clock=clock,
        )

    # Transactions

    def _atomic(self, operation: Callable[[], T]) -> T:
        """Run operation as one unit: commit on success, roll back everything otherwise."""
        try:
            result = operation()
            self.session.commit()
        except StaleDataError as exc:
            self.session.rollback()
            logger.warning("Concurrent modification detected: %s", exc)
            raise InvalidStateTransitionError(
                "Contract was modified concurrently; reload and retry"
            ) from exc
        except Exception:
            self.session.rollback()
            raise
        return result

    def _get_contract(self, contract_id: str) -> Contract:
        contract = self.session.get(Contract, contract_id)
        if not contract:
            raise NotFoundError("Contract", contract_id)
        return contract

    # Contracts

    def create_contract(
        self,
        *,
        contract_number: str,
        title: str,
        created_by: str,
        customer_id: Optional[str] = None,
        staff_id: Optional[str] = None,
        description: Optional[str] = None,
        total_value: Optional[Union[Decimal, float, str]] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        line_items: Optional[Iterable[Dict[str, Any]]] = None,
    ) -> Contract:
        if not (contract_number or "").strip():
            raise ValidationError("Contract number is required", field="contract_number")
        if not (title or "").strip():
            raise ValidationError("Title is required", field="title")
        if start_date and end_date and end_date < start_date:
            raise ValidationError("End date precedes start date", field="end_date")

        def _create() -> Contract:
            contract = Contract(
                contract_number=contract_number.strip(),
                title=title.strip(),
                description=description,
                customer_id=customer_id,
                staff_id=staff_id,
                total_value=Decimal(str(total_value)) if total_value is not None else None,
                start_date=start_date,
                end_date=end_date,
                status=ContractStatus.DRAFT.value,
                created_by=created_by,
                created_at=self.clock(),
            )
            self.session.add(contract)
            try:
                self.session.flush()
            except IntegrityError as exc:
                raise ValidationError(
                    "Contract number already exists", field="contract_number"
                ) from exc
            except SQLAlchemyError as exc:
                logger.exception("Failed to store contract %s", contract_number)
                raise PersistenceError(
                    "Failed to store contract", contract_number=contract_number
                ) from exc
            for index, item in enumerate(line_items or []):
                self._add_line_item(contract.id, index, item)
            self.audit.append(
                contract.id,
                ContractAction.CREATED,
                actor=created_by,
                new_status=ContractStatus.DRAFT.value,
            )
            return contract

        contract = self._atomic(_create)
        logger.info("Created contract %s (%s)", contract.id, contract.contract_number)
        return contract

    def _add_line_item(self, contract_id: str, sequence: int, item: Dict[str, Any]) -> ContractLineItem:
        description = (item.get("description") or "").strip()
        if not description:
            raise ValidationError("Line item description is required", field="line_items")
        quantity = int(item.get("quantity", 1))
        if quantity < 1:
            raise ValidationError("Line item quantity must be positive", field="line_items")
        line = ContractLineItem(
            contract_id=contract_id,
            sequence=sequence,
            description=description,
            quantity=quantity,
            unit_price=Decimal(str(item.get("unit_price", 0))),
        )
        self.session.add(line)
        try:
            self.session.flush()
        except SQLAlchemyError as exc:
            logger.exception("Failed to store line item %s of contract %s", sequence, contract_id)
            raise PersistenceError(
                "Failed to store line item", contract_id=contract_id, sequence=sequence
            ) from exc
        return line

    def add_line_item(
        self,
        contract_id: str,
        *,
        description: str,
        quantity: int = 1,
        unit_price: Union[Decimal, float, str] = 0,
        actor: str,
    ) -> ContractLineItem:
        with contract_lock(contract_id):

            def _add() -> ContractLineItem:
                contract = self._get_contract(contract_id)
                if contract.status != ContractStatus.DRAFT.value:
                    raise InvalidStateTransitionError(
                        "Line items can only change while the contract is a draft",
                        current_status=contract.status,
                    )
                sequence = self.workflow.line_item_count(contract_id)
                line = self._add_line_item(
                    contract_id,
                    sequence,
                    {"description": description, "quantity": quantity, "unit_price": unit_price},
                )
                self.audit.append(
                    contract_id,
                    ContractAction.UPDATED,
                    actor=actor,
                    reason=f"line item added: {line.description}",
                )
                return line

            return self._atomic(_add)

    def get_contract(self, contract_id: str) -> Contract:
        return self._get_contract(contract_id)

    def _transition(
        self,
        contract_id: str,
        trigger: SigningTrigger,
        *,
        actor: str,
        actor_roles: Optional[Iterable[str]] = None,
        reason: Optional[str] = None,
        today: Optional[date] = None,
    ) -> Contract:
        with contract_lock(contract_id):

            def _apply() -> Contract:
                contract = self._get_contract(contract_id)
                self.workflow.apply(
                    contract,
                    trigger,
                    actor=actor,
                    actor_roles=actor_roles,
                    reason=reason,
                    today=today,
                )
                return contract

            return self._atomic(_apply)

    def submit(self, contract_id: str, *, actor: str) -> Contract:
        return self._transition(contract_id, SigningTrigger.SUBMIT, actor=actor)

    def reject(self, contract_id: str, *, reviewer: str, reason: Optional[str] = None) -> Contract:
        return self._transition(contract_id, SigningTrigger.REJECT, actor=reviewer, reason=reason)

    def cancel(
        self,
        contract_id: str,
        *,
        actor: str,
        actor_roles: Iterable[str],
        reason: Optional[str] = None,
    ) -> Contract:
        return self._transition(
            contract_id,
            SigningTrigger.CANCEL,
            actor=actor,
            actor_roles=actor_roles,
            reason=reason,
        )

    def expire(self, contract_id: str, *, actor: str = "system", today: Optional[date] = None) -> Contract:
        return self._transition(
            contract_id,
            SigningTrigger.EXPIRE,
            actor=actor,
            reason="end date passed",
            today=today,
        )

    def expire_due_contracts(self, *, today: Optional[date] = None, actor: str = "system") -> List[str]:
        """Expire every active contract whose end date has passed; one transaction each."""
        today = today or self.clock().date()
        due_ids = [
            row[0]
            for row in self.session.query(Contract.id)
            .filter(
                Contract.status == ContractStatus.ACTIVE.value,
                Contract.end_date.isnot(None),
                Contract.end_date < today,
            )
            .all()
        ]
        expired: List[str] = []
        for contract_id in due_ids:
            try:
                self.expire(contract_id, actor=actor, today=today)
            except InvalidStateTransitionError as exc:
                logger.warning("Skipped expiring contract %s: %s", contract_id, exc.message)
                continue
            expired.append(contract_id)
        return expired

    def hide(self, contract_id: str, *, actor: str) -> Contract:
        return self._set_hidden(contract_id, True, actor=actor)

    def restore(self, contract_id: str, *, actor: str) -> Contract:
        return self._set_hidden(contract_id, False, actor=actor)

    def _set_hidden(self, contract_id: str, hidden: bool, *, actor: str) -> Contract:
        with contract_lock(contract_id):

            def _apply() -> Contract:
                contract = self._get_contract(contract_id)
                self.workflow.set_hidden(contract, hidden, actor=actor)
                return contract

            return self._atomic(_apply)

    # Certificates

    def issue_certificate(
        self,
        *,
        common_name: str,
        organization: Optional[str] = None,
        alias: Optional[str] = None,
        certificate_type: CertificateType = CertificateType.SELF_SIGNED,
        created_by: Optional[str] = None,
        description: Optional[str] = None,
        keep_private_key: bool = True,
    ) -> DigitalCertificate:
        def _issue() -> DigitalCertificate:
            return self._issue_certificate(
                common_name=common_name,
                organization=organization,
                alias=alias,
                certificate_type=certificate_type,
                created_by=created_by,
                description=description,
                keep_private_key=keep_private_key,
            )

        return self._atomic(_issue)

    def _issue_certificate(
        self,
        *,
        common_name: str,
        organization: Optional[str],
        alias: Optional[str],
        certificate_type: CertificateType,
        created_by: Optional[str],
        description: Optional[str],
        keep_private_key: bool = True,
    ) -> DigitalCertificate:
        issued = self.authority.issue(
            common_name, organization or self.settings.DEFAULT_ORGANIZATION
        )
        certificate = self.authority.to_entity(
            issued,
            alias=alias,
            certificate_type=CertificateType(certificate_type),
            created_by=created_by,
            description=description,
            keep_private_key=keep_private_key,
        )
        self.certificates.save(certificate)
        return certificate

    def issue_role_certificate(self, role: str, *, created_by: Optional[str] = None) -> DigitalCertificate:
        key = (role or "").strip().lower()
        if key not in ROLE_IDENTITIES:
            raise ValidationError(f"Unknown role: {role}", field="role")
        common_name, organization, certificate_type = ROLE_IDENTITIES[key]
        return self.issue_certificate(
            common_name=common_name,
            organization=organization,
            alias=f"test-{key}",
            certificate_type=certificate_type,
            created_by=created_by,
            description=f"Test certificate for {key} role",
        )

    def setup_test_certificates(self, *, created_by: Optional[str] = None) -> List[DigitalCertificate]:
        """Issue one certificate per test role unless certificates already exist."""
        if self.certificates.count_active() > 0:
            logger.info("Test certificates already present; skipping setup")
            return []
        return [
            self.issue_role_certificate(role, created_by=created_by) for role in ROLE_IDENTITIES
        ]

    def update_certificate_status(
        self,
        certificate_id: str,
        status: str,
        *,
        description: Optional[str] = None,
    ) -> DigitalCertificate:
        return self._atomic(
            lambda: self.certificates.update_status(certificate_id, status, description=description)
        )

    def strip_signing_authority(self, certificate_id: str) -> DigitalCertificate:
        return self._atomic(lambda: self.certificates.strip_signing_authority(certificate_id))

    # Signing

    def sign_contract(
        self,
        contract_id: str,
        *,
        signer_type: SignerType,
        signer_id: str,
        signer_name: str,
        signer_email: Optional[str] = None,
        certificate_id: Optional[str] = None,
        signature_bytes: Optional[bytes] = None,
        signature_algorithm: Optional[Union[SignatureAlgorithm, str]] = None,
        sign_with_certificate: bool = True,
        image: Union[bytes, str, None] = None,
        image_width: Optional[int] = None,
        image_height: Optional[int] = None,
        placement: Optional[SignaturePlacement] = None,
        hash_algorithm: Optional[str] = None,
        timestamp_token: Optional[bytes] = None,
        timestamp_url: Optional[str] = None,
        reason: Optional[str] = None,
        location: Optional[str] = None,
        contact_info: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> DigitalSignatureRecord:
        """
        Record a signature and advance the contract in a single transaction.

        When no raw signature is supplied and sign_with_certificate is set, the
        content hash is signed with the certificate's bundled key. Without a
        certificate id a certificate is issued for the signer first (when
        AUTO_ISSUE_CERTIFICATE is enabled).
        """
        signer_type = SignerType(signer_type)
        algorithm = self._parse_algorithm(signature_algorithm)
        hash_algorithm = normalize_digest_name(
            hash_algorithm or self.settings.DEFAULT_HASH_ALGORITHM
        )

        with contract_lock(contract_id):

            def _sign() -> DigitalSignatureRecord:
                contract = self._get_contract(contract_id)
                self.workflow.check(
                    contract,
                    trigger_for_signer(signer_type),
                    actor=signer_id,
                    signer_type=signer_type,
                )

                cert_id = certificate_id
                raw_signature = signature_bytes
                chosen_algorithm = algorithm
                content_hash: Optional[str] = None

                if raw_signature is None and sign_with_certificate:
                    certificate = self._signing_certificate(
                        cert_id, signer_name=signer_name, signer_type=signer_type, signer_id=signer_id
                    )
                    if certificate is not None:
                        cert_id = certificate.id
                        content_hash = compute_content_hash(
                            self.content_provider, self.crypto, contract_id, hash_algorithm
                        )
                        if not content_hash:
                            raise ValidationError(
                                "Contract content is unavailable for hashing", field="contract_id"
                            )
                        chosen_algorithm, raw_signature = self._sign_with_certificate(
                            certificate, content_hash, chosen_algorithm
                        )

                return self.recorder.record_signature(
                    contract_id=contract_id,
                    signer_type=signer_type,
                    signer_id=signer_id,
                    signer_name=signer_name,
                    signer_email=signer_email,
                    certificate_id=cert_id,
                    signature_bytes=raw_signature,
                    signature_algorithm=chosen_algorithm,
                    image_bytes=image,
                    image_width=image_width,
                    image_height=image_height,
                    placement=placement,
                    hash_algorithm=hash_algorithm,
                    content_hash=content_hash,
                    timestamp_token=timestamp_token,
                    timestamp_url=timestamp_url,
                    reason=reason,
                    location=location,
                    contact_info=contact_info,
                    ip_address=ip_address,
                    user_agent=user_agent,
                )

            return self._atomic(_sign)

    def _parse_algorithm(
        self, value: Optional[Union[SignatureAlgorithm, str]]
    ) -> Optional[SignatureAlgorithm]:
        if value is None or isinstance(value, SignatureAlgorithm):
            return value
        try:
            return SignatureAlgorithm.parse(value)
        except ValueError as exc:
            raise ValidationError(str(exc), field="signature_algorithm") from exc

    def _signing_certificate(
        self,
        certificate_id: Optional[str],
        *,
        signer_name: str,
        signer_type: SignerType,
        signer_id: str,
    ) -> Optional[DigitalCertificate]:
        if certificate_id:
            return self.certificates.find_by_id(certificate_id)
        if not self.settings.AUTO_ISSUE_CERTIFICATE:
            return None
        organization = (
            ROLE_IDENTITIES["customer"][1]
            if signer_type == SignerType.CUSTOMER
            else self.settings.DEFAULT_ORGANIZATION
        )
        return self._issue_certificate(
            common_name=signer_name,
            organization=organization,
            alias=f"{signer_type.value.lower()}-{signer_id}",
            certificate_type=CertificateType.DOCUMENT_SIGNING,
            created_by=signer_id,
            description="Issued automatically at signing",
        )

    def _default_algorithm(self, certificate: DigitalCertificate) -> SignatureAlgorithm:
        """Configured default when it fits the certificate key, else the certificate's own."""
        try:
            configured = SignatureAlgorithm.parse(self.settings.DEFAULT_SIGNATURE_ALGORITHM)
        except ValueError:
            logger.warning(
                "Ignoring unknown DEFAULT_SIGNATURE_ALGORITHM %r",
                self.settings.DEFAULT_SIGNATURE_ALGORITHM,
            )
        else:
            if configured.key_algorithm == certificate.key_algorithm:
                return configured
        return SignatureAlgorithm.parse(certificate.signature_algorithm)

    def _sign_with_certificate(
        self,
        certificate: DigitalCertificate,
        content_hash: str,
        algorithm: Optional[SignatureAlgorithm],
    ) -> Tuple[SignatureAlgorithm, bytes]:
        if not certificate.has_private_key:
            raise ValidationError(
                "Certificate has no signing key; supply a signature", field="certificate_id"
            )
        algorithm = algorithm or self._default_algorithm(certificate)
        if algorithm.key_algorithm != certificate.key_algorithm:
            raise ValidationError(
                f"{algorithm.value} does not match a {certificate.key_algorithm} certificate",
                field="signature_algorithm",
            )
        private_key, _ = self.crypto.load_keystore(certificate.keystore_data)
        return algorithm, self.crypto.sign(private_key, signing_input(content_hash), algorithm)

    def get_signatures(self, contract_id: str) -> List[DigitalSignatureRecord]:
        return (
            self.session.query(DigitalSignatureRecord)
            .filter(DigitalSignatureRecord.contract_id == contract_id)
            .order_by(DigitalSignatureRecord.signed_at, DigitalSignatureRecord.created_at)
            .all()
        )

    def get_signatures_by_type(self, contract_id: str, signer_type: SignerType) -> List[DigitalSignatureRecord]:
        return (
            self.session.query(DigitalSignatureRecord)
            .filter(
                DigitalSignatureRecord.contract_id == contract_id,
                DigitalSignatureRecord.signer_type == SignerType(signer_type).value,
            )
            .order_by(DigitalSignatureRecord.signed_at)
            .all()
        )

    def has_valid_signature_by_type(self, contract_id: str, signer_type: SignerType) -> bool:
        return any(record.is_valid for record in self.get_signatures_by_type(contract_id, signer_type))

    def find_signatures_needing_verification(
        self,
        *,
        verified_before: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[DigitalSignatureRecord]:
        conditions = [
            DigitalSignatureRecord.status == SignatureStatus.PENDING_VERIFICATION.value,
            DigitalSignatureRecord.last_verified_at.is_(None),
        ]
        if verified_before is not None:
            conditions.append(DigitalSignatureRecord.last_verified_at < verified_before)
        return (
            self.session.query(DigitalSignatureRecord)
            .filter(or_(*conditions))
            .order_by(DigitalSignatureRecord.signed_at)
            .limit(limit)
            .all()
        )

    def count_signatures_by_status(self) -> Dict[str, int]:
        rows = (
            self.session.query(DigitalSignatureRecord.status, func.count(DigitalSignatureRecord.id))
            .group_by(DigitalSignatureRecord.status)
            .all()
        )
        return {row[0]: int(row[1]) for row in rows}

    # Verification

    def verify_signature(self, signature_id: str) -> VerificationResult:
        return self._atomic(lambda: self.verifier.verify(signature_id))

    # Audit

    def get_audit_trail(self, contract_id: str, *, ascending: bool = True) -> List[ContractHistory]:
        return self.audit.list_entries(contract_id, ascending=ascending)
