from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from contractsign.api.dependencies.auth import CurrentUser, ensure_admin, get_current_user
from contractsign.clock import utcnow
from contractsign.database import get_db
from contractsign.esign.certificate_store import certificate_summary
from contractsign.esign.models import CertificateStatus, CertificateType
from contractsign.esign.service import ContractSigningService

certificate_router = APIRouter(prefix="/certificates", tags=["Certificates"])


class CertificateIssueRequest(BaseModel):
    common_name: str = Field(..., min_length=1, max_length=200)
    organization: Optional[str] = Field(default=None, max_length=200)
    alias: Optional[str] = Field(default=None, max_length=100)
    certificate_type: CertificateType = CertificateType.SELF_SIGNED
    description: Optional[str] = Field(default=None, max_length=2000)
    keep_private_key: bool = True


class CertificateStatusRequest(BaseModel):
    status: CertificateStatus
    description: Optional[str] = Field(default=None, max_length=2000)


class CertificateResponse(BaseModel):
    id: str
    alias: str
    subject_dn: str
    issuer_dn: str
    common_name: Optional[str]
    serial_number: str
    certificate_type: str
    key_algorithm: str
    key_size: Optional[int]
    signature_algorithm: str
    valid_from: datetime
    valid_to: datetime
    status: str
    currently_valid: bool
    fingerprint_sha1: str
    fingerprint_sha256: str
    has_private_key: bool
    description: Optional[str]
    created_by: Optional[str]
    created_at: Optional[datetime]


def _service(db: Session) -> ContractSigningService:
    return ContractSigningService(db)


def _response(certificate) -> CertificateResponse:
    return CertificateResponse(**certificate_summary(certificate))


@certificate_router.post("", response_model=CertificateResponse)
def issue_certificate(
    req: CertificateIssueRequest,
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> CertificateResponse:
    service = _service(db)
    certificate = service.issue_certificate(
        common_name=req.common_name,
        organization=req.organization,
        alias=req.alias,
        certificate_type=req.certificate_type,
        created_by=user.username,
        description=req.description,
        keep_private_key=req.keep_private_key,
    )
    return _response(certificate)


@certificate_router.get("", response_model=Dict[str, Any])
def list_certificates(
    status: Optional[CertificateStatus] = Query(None),
    alias: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    _user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    service = _service(db)
    certificates = service.certificates.list_certificates(
        status=status.value if status else None, alias=alias, limit=limit, offset=offset
    )
    return {"items": [_response(cert).model_dump() for cert in certificates]}


@certificate_router.get("/usable", response_model=Dict[str, Any])
def list_usable_certificates(
    _user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    service = _service(db)
    certificates = service.certificates.find_active_valid_at(utcnow())
    return {"items": [_response(cert).model_dump() for cert in certificates]}


@certificate_router.get("/expiring", response_model=Dict[str, Any])
def list_expiring_certificates(
    days: int = Query(30, ge=0, le=3650),
    _user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    service = _service(db)
    certificates = service.certificates.find_expiring_before(utcnow() + timedelta(days=days))
    return {"items": [_response(cert).model_dump() for cert in certificates]}


@certificate_router.get("/fingerprint/{fingerprint}", response_model=CertificateResponse)
def get_certificate_by_fingerprint(
    fingerprint: str,
    _user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> CertificateResponse:
    return _response(_service(db).certificates.find_by_fingerprint(fingerprint))


@certificate_router.get("/{certificate_id}", response_model=CertificateResponse)
def get_certificate(
    certificate_id: str,
    _user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> CertificateResponse:
    return _response(_service(db).certificates.find_by_id(certificate_id))


@certificate_router.post("/{certificate_id}/status", response_model=CertificateResponse)
def update_certificate_status(
    certificate_id: str,
    req: CertificateStatusRequest,
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> CertificateResponse:
    ensure_admin(user)
    certificate = _service(db).update_certificate_status(
        certificate_id, req.status.value, description=req.description
    )
    return _response(certificate)


@certificate_router.post("/{certificate_id}/strip-key", response_model=CertificateResponse)
def strip_signing_key(
    certificate_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> CertificateResponse:
    ensure_admin(user)
    return _response(_service(db).strip_signing_authority(certificate_id))


@certificate_router.post("/test-setup", response_model=Dict[str, List[Dict[str, Any]]])
def setup_test_certificates(
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> Dict[str, List[Dict[str, Any]]]:
    ensure_admin(user)
    certificates = _service(db).setup_test_certificates(created_by=user.username)
    return {"items": [_response(cert).model_dump() for cert in certificates]}
