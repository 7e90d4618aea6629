"""
Cryptographic capability used by certificate issuance and signature verification.

A single CryptoProvider is created per process (see get_crypto_provider) and shared
read-only between requests.
"""
from __future__ import annotations

import hashlib
import logging
from functools import lru_cache
from typing import Any, Optional, Tuple

from cryptography import x509
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed448, ed25519, padding, rsa
from cryptography.hazmat.primitives.serialization import pkcs12

from contractsign.config import get_settings
from contractsign.esign.models import SignatureAlgorithm
from contractsign.exceptions import CryptoProviderError, UnsupportedDigestError

logger = logging.getLogger(__name__)

_DIGESTS = {
    "SHA1": ("sha1", hashes.SHA1),
    "SHA256": ("sha256", hashes.SHA256),
    "SHA384": ("sha384", hashes.SHA384),
    "SHA512": ("sha512", hashes.SHA512),
}

_EC_CURVES = {
    256: ec.SECP256R1,
    384: ec.SECP384R1,
    521: ec.SECP521R1,
}

KEYSTORE_ALIAS = "cert"


def normalize_digest_name(algorithm: str) -> str:
    """Return the canonical name (SHA-1, SHA-256, ...) or raise UnsupportedDigestError."""
    key = (algorithm or "").strip().upper().replace("-", "").replace("_", "")
    if key not in _DIGESTS:
        raise UnsupportedDigestError(algorithm)
    return f"SHA-{key[3:]}"


def _digest_entry(algorithm: str) -> Tuple[str, Any]:
    return _DIGESTS[normalize_digest_name(algorithm).replace("-", "")]


def key_algorithm_name(key: Any) -> str:
    if isinstance(key, (rsa.RSAPrivateKey, rsa.RSAPublicKey)):
        return "RSA"
    if isinstance(key, (ec.EllipticCurvePrivateKey, ec.EllipticCurvePublicKey)):
        return "EC"
    if isinstance(key, (ed25519.Ed25519PrivateKey, ed25519.Ed25519PublicKey)):
        return "Ed25519"
    if isinstance(key, (ed448.Ed448PrivateKey, ed448.Ed448PublicKey)):
        return "Ed448"
    raise CryptoProviderError(f"Unsupported key type: {type(key).__name__}")


def key_size_of(key: Any) -> Optional[int]:
    if isinstance(key, (rsa.RSAPrivateKey, rsa.RSAPublicKey)):
        return key.key_size
    if isinstance(key, (ec.EllipticCurvePrivateKey, ec.EllipticCurvePublicKey)):
        return key.curve.key_size
    return None


class CryptoProvider:
    def __init__(
        self,
        *,
        keystore_password: str,
        key_algorithm: str = "RSA",
        key_size: int = 2048,
    ) -> None:
        self.keystore_password = keystore_password
        self.key_algorithm = key_algorithm
        self.key_size = key_size

    # Digests

    def digest(self, data: bytes, algorithm: str = "SHA-256") -> str:
        name, _ = _digest_entry(algorithm)
        return hashlib.new(name, data).hexdigest()

    def hash_algorithm(self, algorithm: str) -> hashes.HashAlgorithm:
        _, hash_cls = _digest_entry(algorithm)
        return hash_cls()

    # Keys

    def generate_key_pair(
        self, algorithm: Optional[str] = None, key_size: Optional[int] = None
    ) -> Any:
        algorithm = (algorithm or self.key_algorithm).strip().upper()
        key_size = key_size or self.key_size
        try:
            if algorithm == "RSA":
                return rsa.generate_private_key(public_exponent=65537, key_size=key_size)
            if algorithm in {"EC", "ECDSA"}:
                curve = _EC_CURVES.get(key_size, ec.SECP256R1)
                return ec.generate_private_key(curve())
            if algorithm == "ED25519":
                return ed25519.Ed25519PrivateKey.generate()
            if algorithm == "ED448":
                return ed448.Ed448PrivateKey.generate()
        except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
            logger.exception("Key generation failed: algorithm=%s size=%s", algorithm, key_size)
            raise CryptoProviderError(
                "Key generation failed", algorithm=algorithm, key_size=key_size
            ) from exc
        raise CryptoProviderError(f"Unsupported key algorithm: {algorithm}", algorithm=algorithm)

    def public_key_der(self, key: Any) -> bytes:
        public_key = key.public_key() if hasattr(key, "private_bytes") else key
        return public_key.public_bytes(
            encoding=serialization.Encoding.DER,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )

    def load_public_key(self, der: bytes) -> Any:
        try:
            return serialization.load_der_public_key(der)
        except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
            raise CryptoProviderError("Public key is unreadable") from exc

    # Signatures

    def sign(self, private_key: Any, data: bytes, algorithm: SignatureAlgorithm) -> bytes:
        key_alg = key_algorithm_name(private_key)
        if key_alg != algorithm.key_algorithm:
            raise CryptoProviderError(
                f"{algorithm.value} cannot be used with a {key_alg} key",
                algorithm=algorithm.value,
            )
        try:
            if key_alg == "RSA":
                return private_key.sign(data, self._rsa_padding(algorithm), self._scheme_hash(algorithm))
            if key_alg == "EC":
                return private_key.sign(data, ec.ECDSA(self._scheme_hash(algorithm)))
            return private_key.sign(data)
        except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
            logger.exception("Signing failed: algorithm=%s", algorithm.value)
            raise CryptoProviderError("Signing failed", algorithm=algorithm.value) from exc

    def verify(
        self,
        public_key: Any,
        signature: bytes,
        data: bytes,
        algorithm: SignatureAlgorithm,
    ) -> bool:
        """Return True when the signature matches; mismatches are not errors."""
        try:
            key_alg = key_algorithm_name(public_key)
        except CryptoProviderError:
            return False
        if key_alg != algorithm.key_algorithm:
            return False
        try:
            if key_alg == "RSA":
                public_key.verify(
                    signature, data, self._rsa_padding(algorithm), self._scheme_hash(algorithm)
                )
            elif key_alg == "EC":
                public_key.verify(signature, data, ec.ECDSA(self._scheme_hash(algorithm)))
            else:
                public_key.verify(signature, data)
        except (InvalidSignature, ValueError):
            return False
        return True

    def _scheme_hash(self, algorithm: SignatureAlgorithm) -> hashes.HashAlgorithm:
        return self.hash_algorithm(algorithm.digest_name or "SHA-256")

    def _rsa_padding(self, algorithm: SignatureAlgorithm):
        if algorithm == SignatureAlgorithm.RSASSA_PSS:
            return padding.PSS(
                mgf=padding.MGF1(hashes.SHA256()),
                salt_length=padding.PSS.DIGEST_LENGTH,
            )
        return padding.PKCS1v15()

    # Keystores

    def pack_keystore(self, private_key: Any, certificate: x509.Certificate) -> bytes:
        try:
            return pkcs12.serialize_key_and_certificates(
                name=KEYSTORE_ALIAS.encode("utf-8"),
                key=private_key,
                cert=certificate,
                cas=None,
                encryption_algorithm=serialization.BestAvailableEncryption(
                    self.keystore_password.encode("utf-8")
                ),
            )
        except (ValueError, TypeError) as exc:
            logger.exception("Keystore packaging failed")
            raise CryptoProviderError("Keystore packaging failed") from exc

    def load_keystore(self, data: bytes) -> Tuple[Any, Optional[x509.Certificate]]:
        try:
            private_key, certificate, _additional = pkcs12.load_key_and_certificates(
                data, self.keystore_password.encode("utf-8")
            )
        except (ValueError, TypeError) as exc:
            logger.exception("Keystore could not be opened")
            raise CryptoProviderError("Keystore could not be opened") from exc
        if private_key is None:
            raise CryptoProviderError("Keystore holds no private key")
        return private_key, certificate


@lru_cache(maxsize=1)
def get_crypto_provider() -> CryptoProvider:
    settings = get_settings()
    return CryptoProvider(
        keystore_password=settings.KEYSTORE_PASSWORD,
        key_algorithm=settings.CERT_KEY_ALGORITHM,
        key_size=settings.CERT_KEY_SIZE,
    )
