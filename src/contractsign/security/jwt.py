"""
Minimal HS256 tokens for resolving signer identity at the HTTP edge.

Only what the auth dependency and the `dev-token` command need: one header
shape, an HMAC-SHA256 signature and an optional `exp` claim.
"""
from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from typing import Any, Dict, List, Optional

_HEADER = {"alg": "HS256", "typ": "JWT"}


class JWTError(ValueError):
    pass


def now_ts() -> int:
    return int(time.time())


def _encode_segment(data: Dict[str, Any]) -> str:
    raw = json.dumps(data, separators=(",", ":"), sort_keys=True).encode("utf-8")
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _decode_segment(segment: str, what: str) -> Any:
    try:
        raw = base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4))
        return json.loads(raw) if what != "signature" else raw
    except (ValueError, TypeError) as e:
        raise JWTError(f"Invalid {what} encoding") from e


def _mac(secret: str, signing_input: str) -> bytes:
    return hmac.new(secret.encode("utf-8"), signing_input.encode("ascii"), hashlib.sha256).digest()


def encode_hs256(payload: Dict[str, Any], *, secret: str) -> str:
    signing_input = f"{_encode_segment(_HEADER)}.{_encode_segment(payload)}"
    signature = base64.urlsafe_b64encode(_mac(secret, signing_input)).rstrip(b"=").decode("ascii")
    return f"{signing_input}.{signature}"


def decode_hs256(token: str, *, secret: str, leeway_seconds: int = 0) -> Dict[str, Any]:
    parts = token.split(".")
    if len(parts) != 3:
        raise JWTError("Invalid token format")
    header_b64, payload_b64, sig_b64 = parts

    header = _decode_segment(header_b64, "header")
    if not isinstance(header, dict) or header.get("alg") != "HS256":
        raise JWTError("Unsupported alg")

    expected = _mac(secret, f"{header_b64}.{payload_b64}")
    if not hmac.compare_digest(expected, _decode_segment(sig_b64, "signature")):
        raise JWTError("Invalid signature")

    payload = _decode_segment(payload_b64, "payload")
    if not isinstance(payload, dict):
        raise JWTError("Invalid token payload")
    _check_expiry(payload.get("exp"), leeway_seconds)
    return payload


def _check_expiry(exp: Any, leeway_seconds: int) -> None:
    if exp is None:
        return
    try:
        deadline = int(exp) + int(leeway_seconds)
    except (TypeError, ValueError) as e:
        raise JWTError("Invalid exp claim") from e
    if now_ts() > deadline:
        raise JWTError("Token expired")


def build_access_token_payload(
    *,
    user_id: str,
    username: str,
    email: Optional[str] = None,
    roles: Optional[List[str]] = None,
    ttl_seconds: int = 3600,
) -> Dict[str, Any]:
    issued_at = now_ts()
    payload: Dict[str, Any] = {
        "sub": str(user_id),
        "username": username,
        "roles": list(roles or []),
        "iat": issued_at,
        "exp": issued_at + int(ttl_seconds),
    }
    if email:
        payload["email"] = email
    return payload
