from datetime import date
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from contractsign.config import Settings
from contractsign.esign.audit import AuditTrail
from contractsign.esign.models import (
    CertificateType,
    Contract,
    ContractAction,
    ContractStatus,
    DigitalCertificate,
    DigitalSignatureRecord,
    SignatureStatus,
    SignerType,
)
from contractsign.esign.service import ContractSigningService
from contractsign.exceptions import (
    InvalidStateTransitionError,
    MalformedSignaturePayloadError,
    PersistenceError,
    ValidationError,
)
from contractsign.tests.conftest import (
    SteppingClock,
    build_session_factory,
    create_draft,
    sign_as,
    submitted_contract,
)

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 16


def test_full_signing_lifecycle(service):
    contract = submitted_contract(service)
    assert contract.status == ContractStatus.PENDING_SELLER_SIGNATURE.value

    staff_record = sign_as(service, contract.id, SignerType.STAFF)
    assert service.get_contract(contract.id).status == ContractStatus.PENDING_CUSTOMER_SIGNATURE.value
    assert len(service.get_signatures(contract.id)) == 1
    assert len(service.audit.list_signing_activity(contract.id)) == 1
    assert staff_record.certificate_id is not None
    assert staff_record.signature_value

    customer_record = sign_as(service, contract.id, SignerType.CUSTOMER)
    contract = service.get_contract(contract.id)
    assert contract.status == ContractStatus.ACTIVE.value
    assert contract.signed_at is not None
    assert contract.signed_by == "Cleo Customer"
    assert contract.digital_signed is True
    assert [r.id for r in service.get_signatures(contract.id)] == [staff_record.id, customer_record.id]

    result = service.verify_signature(customer_record.id)
    assert result.certificate_valid is True
    assert result.signature_valid is True

    with pytest.raises(InvalidStateTransitionError):
        sign_as(service, contract.id, SignerType.CUSTOMER)
    assert len(service.get_signatures(contract.id)) == 2

    actions = [entry.action for entry in service.get_audit_trail(contract.id)]
    assert actions == [
        ContractAction.CREATED.value,
        ContractAction.STATUS_CHANGED.value,
        ContractAction.SIGNED.value,
        ContractAction.SIGNED.value,
    ]
    newest_first = service.get_audit_trail(contract.id, ascending=False)
    assert newest_first[0].new_status == ContractStatus.ACTIVE.value


def test_auto_issued_certificate_belongs_to_signer(service):
    contract = submitted_contract(service)
    record = sign_as(service, contract.id, SignerType.STAFF)
    certificate = service.certificates.find_by_id(record.certificate_id)

    assert certificate.common_name == "Sam Staff"
    assert certificate.alias == "staff-staff-3"
    assert certificate.certificate_type == CertificateType.DOCUMENT_SIGNING.value
    assert certificate.organization == "CEM Contract System"


def test_auto_issue_disabled_requires_explicit_material(session, crypto, clock):
    settings = Settings(KEYSTORE_PASSWORD="test-keystore", AUTO_ISSUE_CERTIFICATE=False)
    service = ContractSigningService(session, settings=settings, crypto=crypto, clock=clock)
    contract = submitted_contract(service)

    with pytest.raises(MalformedSignaturePayloadError):
        sign_as(service, contract.id, SignerType.STAFF)
    assert session.query(DigitalCertificate).count() == 0


def test_signing_with_existing_certificate(service):
    certificate = service.issue_role_certificate("staff")
    contract = submitted_contract(service)
    record = sign_as(service, contract.id, SignerType.STAFF, certificate_id=certificate.id)

    assert record.certificate_id == certificate.id
    assert record.signature_algorithm == "SHA256withRSA"
    assert service.verify_signature(record.id).is_valid


def test_signing_with_stripped_certificate_needs_raw_signature(service):
    certificate = service.issue_certificate(common_name="Sam Staff")
    service.strip_signing_authority(certificate.id)
    contract = submitted_contract(service)

    with pytest.raises(ValidationError):
        sign_as(service, contract.id, SignerType.STAFF, certificate_id=certificate.id)
    assert service.get_contract(contract.id).status == ContractStatus.PENDING_SELLER_SIGNATURE.value


def test_signing_algorithm_must_match_certificate_key(service):
    certificate = service.issue_certificate(common_name="Sam Staff")
    contract = submitted_contract(service)
    with pytest.raises(ValidationError):
        sign_as(
            service,
            contract.id,
            SignerType.STAFF,
            certificate_id=certificate.id,
            signature_algorithm="SHA256withECDSA",
        )


def test_failure_before_audit_append_rolls_back_everything(session, service):
    contract = submitted_contract(service)

    with patch.object(AuditTrail, "append", side_effect=PersistenceError("audit store down")):
        with pytest.raises(PersistenceError):
            sign_as(service, contract.id, SignerType.STAFF)

    assert service.get_contract(contract.id).status == ContractStatus.PENDING_SELLER_SIGNATURE.value
    assert session.query(DigitalSignatureRecord).count() == 0
    assert session.query(DigitalCertificate).count() == 0
    assert len(service.get_audit_trail(contract.id)) == 2


@pytest.mark.slow
def test_concurrent_signers_only_one_wins(tmp_path, settings, crypto):
    engine, SessionLocal = build_session_factory(f"sqlite:///{tmp_path / 'signing.db'}")
    first_session, second_session = SessionLocal(), SessionLocal()
    try:
        first = ContractSigningService(first_session, settings=settings, crypto=crypto, clock=SteppingClock())
        second = ContractSigningService(second_session, settings=settings, crypto=crypto, clock=SteppingClock())
        contract = submitted_contract(first)

        assert second.get_contract(contract.id).status == ContractStatus.PENDING_SELLER_SIGNATURE.value
        sign_as(first, contract.id, SignerType.STAFF, image=PNG, sign_with_certificate=False)

        with pytest.raises(InvalidStateTransitionError):
            sign_as(
                second,
                contract.id,
                SignerType.MANAGER,
                image=PNG,
                sign_with_certificate=False,
            )
    finally:
        first_session.close()
        second_session.close()

    check = SessionLocal()
    try:
        assert check.query(DigitalSignatureRecord).count() == 1
    finally:
        check.close()
        engine.dispose()


def test_expire_due_contracts(service):
    overdue = submitted_contract(service, "C-OLD", end_date=date(2026, 1, 2), start_date=date(2025, 1, 1))
    current = submitted_contract(service, "C-NEW")
    for contract in (overdue, current):
        sign_as(service, contract.id, SignerType.STAFF, image=PNG, sign_with_certificate=False)
        sign_as(service, contract.id, SignerType.CUSTOMER, image=PNG, sign_with_certificate=False)

    expired = service.expire_due_contracts(today=date(2026, 1, 5))

    assert expired == [overdue.id]
    assert service.get_contract(overdue.id).status == ContractStatus.EXPIRED.value
    assert service.get_contract(current.id).status == ContractStatus.ACTIVE.value
    last = service.get_audit_trail(overdue.id)[-1]
    assert (last.old_status, last.new_status) == ("ACTIVE", "EXPIRED")


def test_line_items_are_frozen_after_submission(service):
    contract = create_draft(service)
    line = service.add_line_item(contract.id, description="Extra visit", unit_price="50", actor="alice")
    assert line.sequence == 1

    service.submit(contract.id, actor="alice")
    with pytest.raises(InvalidStateTransitionError):
        service.add_line_item(contract.id, description="Late addition", actor="alice")


def test_create_contract_validates_dates(service):
    with pytest.raises(ValidationError):
        create_draft(service, start_date=date(2026, 6, 1), end_date=date(2026, 5, 1))


def test_setup_test_certificates_runs_once(service):
    issued = service.setup_test_certificates(created_by="admin")
    assert sorted(c.alias for c in issued) == ["test-customer", "test-manager", "test-staff"]
    customer = next(c for c in issued if c.alias == "test-customer")
    assert customer.certificate_type == CertificateType.PERSONAL.value
    assert customer.organization == "Customer Test Organization"

    assert service.setup_test_certificates() == []
    with pytest.raises(ValidationError):
        service.issue_role_certificate("auditor")


def test_signature_queries(service):
    contract = submitted_contract(service)
    staff = sign_as(service, contract.id, SignerType.STAFF)
    sign_as(service, contract.id, SignerType.CUSTOMER, image=PNG, sign_with_certificate=False)

    assert [r.id for r in service.get_signatures_by_type(contract.id, SignerType.STAFF)] == [staff.id]
    assert not service.has_valid_signature_by_type(contract.id, SignerType.STAFF)
    assert len(service.find_signatures_needing_verification()) == 2
    assert service.count_signatures_by_status() == {SignatureStatus.PENDING_VERIFICATION.value: 2}

    service.verify_signature(staff.id)
    assert service.has_valid_signature_by_type(contract.id, SignerType.STAFF)
    assert [r.signer_type for r in service.find_signatures_needing_verification()] == ["CUSTOMER"]
    assert service.count_signatures_by_status() == {
        SignatureStatus.PENDING_VERIFICATION.value: 1,
        SignatureStatus.VALID.value: 1,
    }


def test_default_signature_algorithm_applies_when_key_matches(session, crypto, clock):
    settings = Settings(KEYSTORE_PASSWORD="test-keystore", DEFAULT_SIGNATURE_ALGORITHM="RSASSA-PSS")
    service = ContractSigningService(session, settings=settings, crypto=crypto, clock=clock)
    contract = submitted_contract(service)

    record = sign_as(service, contract.id, SignerType.STAFF)
    assert record.signature_algorithm == "RSASSA-PSS"
    assert service.verify_signature(record.id).signature_valid


def test_duplicate_contract_number_is_a_validation_error(session, service):
    create_draft(service, "C-DUP")

    with pytest.raises(ValidationError) as exc_info:
        create_draft(service, "C-DUP")
    assert exc_info.value.details["field"] == "contract_number"
    assert exc_info.value.status_code == 422
    assert session.query(Contract).filter(Contract.contract_number == "C-DUP").count() == 1


def test_storage_failure_while_creating_contract_is_wrapped(session, service):
    failure = OperationalError("INSERT", {}, Exception("disk full"))
    with patch.object(session, "flush", side_effect=failure):
        with pytest.raises(PersistenceError) as exc_info:
            create_draft(service, "C-IOERR")
    assert exc_info.value.details == {"contract_number": "C-IOERR"}
    assert session.query(Contract).count() == 0
