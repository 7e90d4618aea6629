from datetime import datetime
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

from fastapi.testclient import TestClient

from contractsign.api.app import create_app
from contractsign.api.dependencies.auth import CurrentUser, get_current_user
from contractsign.database import get_db
from contractsign.esign.models import SignerType
from contractsign.exceptions import InvalidStateTransitionError, NotFoundError


def _client_with_user(user):
    mock_db_session = MagicMock()

    def override_get_db():
        try:
            yield mock_db_session
        finally:
            pass

    def override_get_current_user():
        return user

    app = create_app()
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    return TestClient(app), mock_db_session


def _viewer():
    return CurrentUser(id="2", username="viewer", roles=["viewer"])


def _admin():
    return CurrentUser(id="1", username="root", roles=["admin"])


def _signature(**overrides):
    values = dict(
        id="sig-1",
        contract_id="contract-1",
        certificate_id="cert-1",
        signer_type="STAFF",
        signer_id="2",
        signer_name="Sam Staff",
        signer_email=None,
        signature_algorithm="SHA256withRSA",
        signature_hash="ab" * 32,
        hash_algorithm="SHA-256",
        has_image=False,
        has_timestamp=False,
        signature_field_name="staff_signature_1",
        status="PENDING_VERIFICATION",
        signature_verified=False,
        certificate_verified=False,
        timestamp_verified=False,
        verification_errors=[],
        last_verified_at=None,
        reason=None,
        location=None,
        signed_at=datetime(2026, 2, 6, 12, 0, 0),
    )
    values.update(overrides)
    return SimpleNamespace(**values)


def test_audit_summary_requires_admin():
    client, _db = _client_with_user(_viewer())
    resp = client.get("/api/v1/contracts/audit/summary")
    assert resp.status_code == 403
    assert resp.json().get("detail") == "Admin permission required"


def test_audit_export_requires_admin():
    client, _db = _client_with_user(_viewer())
    resp = client.get("/api/v1/contracts/audit/export", params={"format": "csv"})
    assert resp.status_code == 403
    assert resp.json().get("detail") == "Admin permission required"


def test_certificate_status_change_requires_admin():
    client, _db = _client_with_user(_viewer())
    resp = client.post("/api/v1/certificates/cert-1/status", json={"status": "REVOKED"})
    assert resp.status_code == 403
    assert resp.json().get("detail") == "Admin permission required"


def test_test_certificate_setup_requires_admin():
    client, _db = _client_with_user(_viewer())
    resp = client.post("/api/v1/certificates/test-setup")
    assert resp.status_code == 403
    assert resp.json().get("detail") == "Admin permission required"


def test_audit_export_returns_attachment_for_admin():
    svc = MagicMock()
    svc.audit.export.return_value = {
        "content": b"\xef\xbb\xbfid,contract_id\n",
        "media_type": "text/csv",
        "extension": "csv",
    }
    client, _db = _client_with_user(_admin())
    with patch("contractsign.web.esign_router._service", return_value=svc):
        resp = client.get("/api/v1/contracts/audit/export", params={"format": "csv"})

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/csv")
    assert "contract-history.csv" in resp.headers["content-disposition"]


def test_sign_passes_caller_identity_and_decoded_payload():
    svc = MagicMock()
    svc.sign_contract.return_value = _signature()
    client, _db = _client_with_user(_viewer())
    with patch("contractsign.web.esign_router._service", return_value=svc):
        resp = client.post(
            "/api/v1/contracts/contract-1/sign",
            json={
                "signer_type": "STAFF",
                "signer_name": "Sam Staff",
                "signature_base64": "AQID",
                "signature_algorithm": "SHA256withRSA",
                "sign_with_certificate": False,
            },
            headers={"User-Agent": "pytest-agent"},
        )

    assert resp.status_code == 200
    assert resp.json()["id"] == "sig-1"
    kwargs = svc.sign_contract.call_args.kwargs
    assert svc.sign_contract.call_args.args == ("contract-1",)
    assert kwargs["signer_id"] == "2"
    assert kwargs["signer_type"] == SignerType.STAFF
    assert kwargs["signature_bytes"] == b"\x01\x02\x03"
    assert kwargs["user_agent"] == "pytest-agent"


def test_sign_rejects_invalid_base64():
    svc = MagicMock()
    client, _db = _client_with_user(_viewer())
    with patch("contractsign.web.esign_router._service", return_value=svc):
        resp = client.post(
            "/api/v1/contracts/contract-1/sign",
            json={"signer_type": "CUSTOMER", "signature_base64": "@@not-base64@@"},
        )

    assert resp.status_code == 422
    assert resp.json()["detail"]["code"] == "MALFORMED_SIGNATURE_PAYLOAD"
    svc.sign_contract.assert_not_called()


def test_domain_errors_map_to_status_codes():
    svc = MagicMock()
    svc.get_contract.side_effect = NotFoundError("Contract", "missing")
    svc.submit.side_effect = InvalidStateTransitionError(
        "Cannot SUBMIT contract in status ACTIVE", current_status="ACTIVE", trigger="SUBMIT"
    )
    client, _db = _client_with_user(_viewer())
    with patch("contractsign.web.esign_router._service", return_value=svc):
        missing = client.get("/api/v1/contracts/missing")
        conflict = client.post("/api/v1/contracts/contract-1/submit")

    assert missing.status_code == 404
    assert missing.json()["detail"]["code"] == "NOT_FOUND"
    assert conflict.status_code == 409
    assert conflict.json()["detail"]["details"]["current_status"] == "ACTIVE"


def test_verify_returns_result_payload():
    svc = MagicMock()
    svc.verify_signature.return_value.to_dict.return_value = {
        "signature_record_id": "sig-1",
        "is_valid": True,
        "status_summary": "VALID",
    }
    client, _db = _client_with_user(_viewer())
    with patch("contractsign.web.esign_router._service", return_value=svc):
        resp = client.post("/api/v1/contracts/signatures/sig-1/verify")

    assert resp.status_code == 200
    assert resp.json()["status_summary"] == "VALID"
    svc.verify_signature.assert_called_once_with("sig-1")


def test_audit_trail_order_is_forwarded():
    svc = MagicMock()
    svc.get_audit_trail.return_value = [
        SimpleNamespace(
            id=3,
            contract_id="contract-1",
            action="SIGNED",
            old_status="PENDING_SELLER_SIGNATURE",
            new_status="PENDING_CUSTOMER_SIGNATURE",
            changed_by="viewer",
            change_reason=None,
            changed_at=datetime(2026, 2, 6, 12, 0, 0),
            change_description="SIGNED by viewer",
        )
    ]
    client, _db = _client_with_user(_viewer())
    with patch("contractsign.web.esign_router._service", return_value=svc):
        resp = client.get("/api/v1/contracts/contract-1/audit-trail", params={"order": "desc"})
        bad = client.get("/api/v1/contracts/contract-1/audit-trail", params={"order": "sideways"})

    assert resp.status_code == 200
    assert resp.json()["items"][0]["description"] == "SIGNED by viewer"
    svc.get_audit_trail.assert_called_once_with("contract-1", ascending=False)
    assert bad.status_code == 422


def test_cancel_adds_superuser_role():
    svc = MagicMock()
    svc.cancel.side_effect = InvalidStateTransitionError("stop")
    user = CurrentUser(id="9", username="su", roles=[], is_superuser=True)
    client, _db = _client_with_user(user)
    with patch("contractsign.web.esign_router._service", return_value=svc):
        resp = client.post("/api/v1/contracts/contract-1/cancel", json={"reason": "dup"})

    assert resp.status_code == 409
    assert svc.cancel.call_args.kwargs["actor_roles"] == ["superuser"]
    assert svc.cancel.call_args.kwargs["reason"] == "dup"


def test_health_endpoint():
    client, _db = _client_with_user(_viewer())
    resp = client.get("/api/v1/health")
    assert resp.status_code == 200
    body = resp.json()
    assert body["ok"] is True
    assert body["service"] == "contractsign"
