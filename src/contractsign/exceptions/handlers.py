from __future__ import annotations

from typing import Any, Dict, Optional


class ContractSignError(Exception):
    """
    Base exception for the signing subsystem.

    Every error carries:
    - attributes: message/code/status_code/details/user_message
    - method: to_dict()
    """

    def __init__(
        self,
        message: str,
        *,
        code: str = "CONTRACTSIGN_ERROR",
        status_code: int = 400,
        details: Optional[Dict[str, Any]] = None,
        user_message: Optional[str] = None,
    ) -> None:
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details: Dict[str, Any] = details or {}
        self.user_message = user_message or message
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "user_message": self.user_message,
            "details": self.details,
        }

    def __str__(self) -> str:  # pragma: no cover
        return self.message


class ValidationError(ContractSignError):
    def __init__(self, message: str, field: Optional[str] = None, **kwargs: Any):
        details: Dict[str, Any] = {"field": field} if field else {}
        details.update(kwargs)
        super().__init__(
            message=message,
            code="VALIDATION_ERROR",
            status_code=422,
            details=details,
            user_message=f"Validation failed: {message}",
        )


class NotFoundError(ContractSignError):
    def __init__(self, resource: str, identifier: Any, **kwargs: Any):
        message = f"{resource} not found: {identifier}"
        details: Dict[str, Any] = {"resource": resource, "id": str(identifier)}
        details.update(kwargs)
        super().__init__(
            message=message,
            code="NOT_FOUND",
            status_code=404,
            details=details,
            user_message=message,
        )


class InvalidStateTransitionError(ContractSignError):
    def __init__(
        self,
        message: str,
        *,
        current_status: Optional[str] = None,
        trigger: Optional[str] = None,
        **kwargs: Any,
    ):
        details: Dict[str, Any] = {"current_status": current_status, "trigger": trigger}
        details.update(kwargs)
        super().__init__(
            message=message,
            code="INVALID_STATE_TRANSITION",
            status_code=409,
            details=details,
            user_message=message,
        )


class MalformedSignaturePayloadError(ContractSignError):
    def __init__(self, message: str, field: Optional[str] = None, **kwargs: Any):
        details: Dict[str, Any] = {"field": field} if field else {}
        details.update(kwargs)
        super().__init__(
            message=message,
            code="MALFORMED_SIGNATURE_PAYLOAD",
            status_code=422,
            details=details,
            user_message=f"Invalid signature payload: {message}",
        )


class UnsupportedDigestError(ContractSignError):
    def __init__(self, algorithm: str):
        super().__init__(
            message=f"Unsupported digest algorithm: {algorithm}",
            code="UNSUPPORTED_DIGEST",
            status_code=422,
            details={"algorithm": algorithm},
        )


class CryptoProviderError(ContractSignError):
    def __init__(self, message: str, **kwargs: Any):
        super().__init__(
            message=message,
            code="CRYPTO_PROVIDER_ERROR",
            status_code=500,
            details=dict(kwargs),
            user_message="Cryptographic operation failed",
        )


class PersistenceError(ContractSignError):
    def __init__(self, message: str, **kwargs: Any):
        super().__init__(
            message=message,
            code="PERSISTENCE_ERROR",
            status_code=503,
            details=dict(kwargs),
            user_message="Storage is temporarily unavailable",
        )
