import base64

import pytest

from contractsign.esign.models import (
    ContractStatus,
    DigitalSignatureRecord,
    SignatureStatus,
    SignerType,
)
from contractsign.esign.recorder import SignaturePlacement, decode_image_payload, signing_input
from contractsign.exceptions import (
    InvalidStateTransitionError,
    MalformedSignaturePayloadError,
    NotFoundError,
    UnsupportedDigestError,
    ValidationError,
)
from contractsign.tests.conftest import create_draft, submitted_contract

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 16


def _record(service, contract_id, **overrides):
    kwargs = dict(
        contract_id=contract_id,
        signer_type=SignerType.STAFF,
        signer_id="staff-3",
        signer_name="Sam Staff",
        image_bytes=PNG,
    )
    kwargs.update(overrides)
    return service.recorder.record_signature(**kwargs)


def test_decode_image_payload_accepts_common_encodings():
    encoded = base64.b64encode(PNG).decode("ascii")
    assert decode_image_payload(PNG) == PNG
    assert decode_image_payload(encoded) == PNG
    assert decode_image_payload(f"data:image/png;base64,{encoded}") == PNG
    assert decode_image_payload(None) is None


@pytest.mark.parametrize("value", ["not base64!!", "data:image/png,rawbytes"])
def test_decode_image_payload_rejects_garbage(value):
    with pytest.raises(MalformedSignaturePayloadError):
        decode_image_payload(value)


def test_signing_input_is_the_hex_hash():
    assert signing_input("ab12") == b"ab12"


def test_image_only_signature_is_pending_and_advances_contract(session, service):
    contract = submitted_contract(service)
    record = _record(
        service,
        contract.id,
        placement=SignaturePlacement(page_number=2, x=10, y=20, width=120, height=40),
        reason="approve",
        ip_address="10.0.0.5",
    )

    assert record.status == SignatureStatus.PENDING_VERIFICATION.value
    assert record.signature_verified is False
    assert record.certificate_verified is False
    assert record.timestamp_verified is False
    assert record.has_image
    assert record.page_number == 2
    assert record.signature_field_name.startswith("staff_signature_")
    assert len(record.signature_hash) == 64
    assert record.ip_address == "10.0.0.5"

    assert contract.status == ContractStatus.PENDING_CUSTOMER_SIGNATURE.value
    assert contract.digital_signed is False
    assert contract.signed_by == "Sam Staff"


def test_signature_or_image_is_required(service):
    contract = submitted_contract(service)
    with pytest.raises(MalformedSignaturePayloadError):
        _record(service, contract.id, image_bytes=None)


@pytest.mark.parametrize(
    "field,value",
    [
        ("signature_bytes", b""),
        ("image_bytes", b""),
        ("timestamp_token", b""),
        ("signature_bytes", b"x" * (16 * 1024 + 1)),
        ("timestamp_token", b"\x30" * (64 * 1024 + 1)),
    ],
)
def test_empty_or_oversized_payload_is_rejected(service, field, value):
    contract = submitted_contract(service)
    overrides = {field: value}
    if field == "signature_bytes":
        overrides["signature_algorithm"] = "SHA256withRSA"
    with pytest.raises(MalformedSignaturePayloadError):
        _record(service, contract.id, **overrides)


def test_raw_signature_needs_an_algorithm_without_certificate(service):
    contract = submitted_contract(service)
    with pytest.raises(ValidationError):
        _record(service, contract.id, image_bytes=None, signature_bytes=b"\x01" * 256)


def test_signer_name_is_required(service):
    contract = submitted_contract(service)
    with pytest.raises(ValidationError):
        _record(service, contract.id, signer_name="   ")


def test_unknown_contract_is_reported(service):
    with pytest.raises(NotFoundError):
        _record(service, "missing-contract")


def test_unknown_certificate_is_reported(service):
    contract = submitted_contract(service)
    with pytest.raises(NotFoundError):
        _record(service, contract.id, certificate_id="missing-cert")


def test_draft_contract_cannot_be_signed(session, service):
    contract = create_draft(service)
    with pytest.raises(InvalidStateTransitionError):
        _record(service, contract.id)
    assert session.query(DigitalSignatureRecord).count() == 0


def test_unsupported_hash_algorithm_is_rejected(service):
    contract = submitted_contract(service)
    with pytest.raises(UnsupportedDigestError):
        _record(service, contract.id, hash_algorithm="MD5")
