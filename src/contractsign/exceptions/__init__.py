from contractsign.exceptions.handlers import (
    ContractSignError,
    CryptoProviderError,
    InvalidStateTransitionError,
    MalformedSignaturePayloadError,
    NotFoundError,
    PersistenceError,
    UnsupportedDigestError,
    ValidationError,
)

__all__ = [
    "ContractSignError",
    "ValidationError",
    "NotFoundError",
    "InvalidStateTransitionError",
    "MalformedSignaturePayloadError",
    "UnsupportedDigestError",
    "CryptoProviderError",
    "PersistenceError",
]
