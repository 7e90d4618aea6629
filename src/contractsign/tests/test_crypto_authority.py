from datetime import timedelta

import pytest
from cryptography import x509
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from contractsign.esign.authority import CertificateAuthority, SerialNumberGenerator
from contractsign.esign.crypto import normalize_digest_name
from contractsign.esign.models import CertificateType, SignatureAlgorithm
from contractsign.exceptions import (
    CryptoProviderError,
    UnsupportedDigestError,
    ValidationError,
)
from contractsign.tests.conftest import START, SteppingClock


def _authority(crypto, clock=None):
    return CertificateAuthority(
        crypto,
        issuer_common_name="Test CA",
        issuer_organization="Test Certification Authority",
        validity_days=365,
        clock=clock or SteppingClock(),
    )


def test_serial_numbers_strictly_increase():
    serials = SerialNumberGenerator()
    values = [serials.next() for _ in range(500)]
    assert len(set(values)) == len(values)
    assert values == sorted(values)


def test_issued_certificates_have_unique_serials(ec_crypto):
    authority = _authority(ec_crypto)
    first = authority.issue("Alice", "Acme")
    second = authority.issue("Alice", "Acme")
    assert first.serial_number != second.serial_number


def test_issue_populates_subject_issuer_and_validity(ec_crypto):
    authority = _authority(ec_crypto, SteppingClock(START.replace(microsecond=123456)))
    issued = authority.issue("Alice", "Acme")
    cert = issued.certificate

    assert cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)[0].value == "Alice"
    assert cert.issuer.get_attributes_for_oid(NameOID.COMMON_NAME)[0].value == "Test CA"
    assert issued.subject_dn == "CN=Alice, O=Acme"
    assert issued.issuer_dn == "CN=Test CA, O=Test Certification Authority"
    assert cert.not_valid_before_utc.replace(tzinfo=None) == START
    assert cert.not_valid_after_utc.replace(tzinfo=None) == START + timedelta(days=365)


def test_issue_sets_signing_extensions(ec_crypto):
    cert = _authority(ec_crypto).issue("Alice", "Acme").certificate

    basic = cert.extensions.get_extension_for_class(x509.BasicConstraints)
    assert basic.critical is True
    assert basic.value.ca is False

    usage = cert.extensions.get_extension_for_class(x509.KeyUsage)
    assert usage.critical is True
    assert usage.value.digital_signature is True
    assert usage.value.key_cert_sign is False

    eku = cert.extensions.get_extension_for_class(x509.ExtendedKeyUsage).value
    assert ExtendedKeyUsageOID.CODE_SIGNING in eku
    assert ExtendedKeyUsageOID.CLIENT_AUTH in eku

    cert.extensions.get_extension_for_class(x509.SubjectKeyIdentifier)


@pytest.mark.parametrize("common_name,organization", [("", "Acme"), ("  ", "Acme"), ("Alice", "")])
def test_issue_rejects_blank_identity(ec_crypto, common_name, organization):
    with pytest.raises(ValidationError):
        _authority(ec_crypto).issue(common_name, organization)


def test_fingerprint_is_deterministic_hex(ec_crypto):
    authority = _authority(ec_crypto)
    der = authority.issue("Alice", "Acme").der

    first = authority.fingerprint(der)
    assert first == authority.fingerprint(der)
    assert len(first) == 64
    int(first, 16)
    assert authority.fingerprint(der + b"\x00") != first
    assert len(authority.fingerprint(der, "SHA-1")) == 40


def test_unsupported_digest_is_rejected(ec_crypto):
    with pytest.raises(UnsupportedDigestError):
        normalize_digest_name("MD5")
    with pytest.raises(UnsupportedDigestError):
        ec_crypto.digest(b"payload", "whirlpool")
    assert normalize_digest_name("sha256") == "SHA-256"
    assert normalize_digest_name("SHA_512") == "SHA-512"


def test_to_entity_maps_certificate_fields(ec_crypto):
    authority = _authority(ec_crypto)
    issued = authority.issue("Alice", "Acme")
    entity = authority.to_entity(
        issued,
        alias="alice",
        certificate_type=CertificateType.PERSONAL,
        created_by="admin",
    )

    assert entity.alias == "alice"
    assert entity.certificate_type == "PERSONAL"
    assert entity.key_algorithm == "EC"
    assert entity.key_size == 256
    assert entity.signature_algorithm == SignatureAlgorithm.SHA256_WITH_ECDSA.value
    assert entity.serial_number == issued.serial_number
    assert entity.common_name == "Alice"
    assert entity.issuer_common_name == "Test CA"
    assert entity.has_private_key
    assert entity.fingerprint_sha256 == authority.fingerprint(issued.der)

    stripped = authority.to_entity(authority.issue("Bob", "Acme"), keep_private_key=False)
    assert stripped.keystore_data is None
    assert stripped.alias.startswith("cert-")


def test_keystore_round_trip_restores_signing_key(ec_crypto):
    issued = _authority(ec_crypto).issue("Alice", "Acme")
    bundle = ec_crypto.pack_keystore(issued.private_key, issued.certificate)

    private_key, certificate = ec_crypto.load_keystore(bundle)
    assert certificate.serial_number == issued.certificate.serial_number
    signature = ec_crypto.sign(private_key, b"abc", SignatureAlgorithm.SHA256_WITH_ECDSA)
    public_key = ec_crypto.load_public_key(ec_crypto.public_key_der(issued.private_key))
    assert ec_crypto.verify(public_key, signature, b"abc", SignatureAlgorithm.SHA256_WITH_ECDSA)


def test_keystore_with_wrong_password_fails(ec_crypto):
    from contractsign.esign.crypto import CryptoProvider

    issued = _authority(ec_crypto).issue("Alice", "Acme")
    bundle = ec_crypto.pack_keystore(issued.private_key, issued.certificate)
    other = CryptoProvider(keystore_password="wrong", key_algorithm="EC", key_size=256)
    with pytest.raises(CryptoProviderError):
        other.load_keystore(bundle)


def test_rsa_signature_detects_tampering(crypto):
    key = crypto.generate_key_pair("RSA", 2048)
    public_key = crypto.load_public_key(crypto.public_key_der(key))
    for algorithm in (SignatureAlgorithm.SHA256_WITH_RSA, SignatureAlgorithm.RSASSA_PSS):
        signature = crypto.sign(key, b"content-hash", algorithm)
        assert crypto.verify(public_key, signature, b"content-hash", algorithm)
        assert not crypto.verify(public_key, signature, b"content-hasH", algorithm)


def test_ed25519_signature_verifies(crypto):
    key = crypto.generate_key_pair("Ed25519")
    public_key = crypto.load_public_key(crypto.public_key_der(key))
    signature = crypto.sign(key, b"payload", SignatureAlgorithm.ED25519)
    assert crypto.verify(public_key, signature, b"payload", SignatureAlgorithm.ED25519)
    assert not crypto.verify(public_key, signature, b"payload", SignatureAlgorithm.SHA256_WITH_RSA)


def test_sign_with_mismatched_algorithm_raises(ec_crypto):
    key = ec_crypto.generate_key_pair()
    with pytest.raises(CryptoProviderError):
        ec_crypto.sign(key, b"payload", SignatureAlgorithm.SHA256_WITH_RSA)


def test_unreadable_public_key_raises(crypto):
    with pytest.raises(CryptoProviderError):
        crypto.load_public_key(b"not a key")


def test_signature_algorithm_parse_accepts_names_and_values():
    assert SignatureAlgorithm.parse("SHA384withECDSA") == SignatureAlgorithm.SHA384_WITH_ECDSA
    assert SignatureAlgorithm.parse("sha256withrsa") == SignatureAlgorithm.SHA256_WITH_RSA
    assert SignatureAlgorithm.parse("ED25519") == SignatureAlgorithm.ED25519
    assert SignatureAlgorithm.SHA512_WITH_RSA.digest_name == "SHA-512"
    assert SignatureAlgorithm.ED448.digest_name is None
    with pytest.raises(ValueError):
        SignatureAlgorithm.parse("MD5withRSA")
