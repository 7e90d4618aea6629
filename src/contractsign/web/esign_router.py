from __future__ import annotations

import base64
import binascii
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import Response
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from contractsign.api.dependencies.auth import CurrentUser, ensure_admin, get_current_user
from contractsign.database import get_db
from contractsign.esign.models import (
    Contract,
    ContractHistory,
    DigitalSignatureRecord,
    SignerType,
)
from contractsign.esign.recorder import SignaturePlacement
from contractsign.esign.service import ContractSigningService
from contractsign.exceptions import MalformedSignaturePayloadError

esign_router = APIRouter(prefix="/contracts", tags=["Contract Signing"])


class LineItemRequest(BaseModel):
    description: str = Field(..., min_length=1, max_length=500)
    quantity: int = Field(default=1, ge=1)
    unit_price: Decimal = Field(default=Decimal("0"), ge=0)


class ContractCreateRequest(BaseModel):
    contract_number: str = Field(..., min_length=1, max_length=50)
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, max_length=5000)
    customer_id: Optional[str] = None
    staff_id: Optional[str] = None
    total_value: Optional[Decimal] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    line_items: List[LineItemRequest] = Field(default_factory=list)


class ContractResponse(BaseModel):
    id: str
    contract_number: str
    title: str
    status: str
    customer_id: Optional[str]
    staff_id: Optional[str]
    end_date: Optional[date]
    digital_signed: bool
    signed_at: Optional[datetime]
    signed_by: Optional[str]
    is_hidden: bool
    version: int


class PlacementRequest(BaseModel):
    page_number: Optional[int] = Field(default=None, ge=1)
    x: Optional[int] = None
    y: Optional[int] = None
    width: Optional[int] = Field(default=None, ge=0)
    height: Optional[int] = Field(default=None, ge=0)


class SignRequest(BaseModel):
    signer_type: SignerType
    signer_name: Optional[str] = Field(default=None, max_length=255)
    signer_email: Optional[str] = Field(default=None, max_length=255)
    certificate_id: Optional[str] = None
    signature_base64: Optional[str] = None
    signature_algorithm: Optional[str] = Field(default=None, max_length=50)
    sign_with_certificate: bool = True
    image: Optional[str] = Field(default=None, description="base64 or data URL")
    image_width: Optional[int] = Field(default=None, ge=0)
    image_height: Optional[int] = Field(default=None, ge=0)
    placement: Optional[PlacementRequest] = None
    hash_algorithm: Optional[str] = Field(default=None, max_length=20)
    timestamp_token_base64: Optional[str] = None
    timestamp_url: Optional[str] = Field(default=None, max_length=500)
    reason: Optional[str] = Field(default=None, max_length=500)
    location: Optional[str] = Field(default=None, max_length=255)
    contact_info: Optional[str] = Field(default=None, max_length=255)


class SignatureResponse(BaseModel):
    id: str
    contract_id: str
    certificate_id: Optional[str]
    signer_type: str
    signer_id: str
    signer_name: str
    signer_email: Optional[str]
    signature_algorithm: Optional[str]
    signature_hash: str
    hash_algorithm: str
    has_image: bool
    has_timestamp: bool
    signature_field_name: Optional[str]
    status: str
    signature_verified: bool
    certificate_verified: bool
    timestamp_verified: bool
    verification_errors: List[str]
    last_verified_at: Optional[datetime]
    reason: Optional[str]
    location: Optional[str]
    signed_at: Optional[datetime]


class ActorRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=2000)


class HistoryResponse(BaseModel):
    id: int
    contract_id: str
    action: str
    old_status: Optional[str]
    new_status: Optional[str]
    changed_by: str
    change_reason: Optional[str]
    changed_at: Optional[datetime]
    description: str


def _service(db: Session) -> ContractSigningService:
    return ContractSigningService(db)


def _decode_b64(value: Optional[str], field: str) -> Optional[bytes]:
    if value is None:
        return None
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise MalformedSignaturePayloadError(f"{field} is not valid base64", field=field) from exc


def _contract_response(contract: Contract) -> ContractResponse:
    return ContractResponse(
        id=contract.id,
        contract_number=contract.contract_number,
        title=contract.title,
        status=contract.status,
        customer_id=contract.customer_id,
        staff_id=contract.staff_id,
        end_date=contract.end_date,
        digital_signed=bool(contract.digital_signed),
        signed_at=contract.signed_at,
        signed_by=contract.signed_by,
        is_hidden=bool(contract.is_hidden),
        version=contract.version,
    )


def _signature_response(record: DigitalSignatureRecord) -> SignatureResponse:
    return SignatureResponse(
        id=record.id,
        contract_id=record.contract_id,
        certificate_id=record.certificate_id,
        signer_type=record.signer_type,
        signer_id=record.signer_id,
        signer_name=record.signer_name,
        signer_email=record.signer_email,
        signature_algorithm=record.signature_algorithm,
        signature_hash=record.signature_hash,
        hash_algorithm=record.hash_algorithm,
        has_image=record.has_image,
        has_timestamp=record.has_timestamp,
        signature_field_name=record.signature_field_name,
        status=record.status,
        signature_verified=bool(record.signature_verified),
        certificate_verified=bool(record.certificate_verified),
        timestamp_verified=bool(record.timestamp_verified),
        verification_errors=list(record.verification_errors or []),
        last_verified_at=record.last_verified_at,
        reason=record.reason,
        location=record.location,
        signed_at=record.signed_at,
    )


def _history_response(entry: ContractHistory) -> HistoryResponse:
    return HistoryResponse(
        id=entry.id,
        contract_id=entry.contract_id,
        action=entry.action,
        old_status=entry.old_status,
        new_status=entry.new_status,
        changed_by=entry.changed_by,
        change_reason=entry.change_reason,
        changed_at=entry.changed_at,
        description=entry.change_description,
    )


@esign_router.post("", response_model=ContractResponse)
def create_contract(
    req: ContractCreateRequest,
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> ContractResponse:
    contract = _service(db).create_contract(
        contract_number=req.contract_number,
        title=req.title,
        created_by=user.username,
        customer_id=req.customer_id,
        staff_id=req.staff_id,
        description=req.description,
        total_value=req.total_value,
        start_date=req.start_date,
        end_date=req.end_date,
        line_items=[item.model_dump() for item in req.line_items],
    )
    return _contract_response(contract)


@esign_router.get("/audit/summary", response_model=Dict[str, Any])
def get_audit_summary(
    contract_id: Optional[str] = Query(None),
    actor: Optional[str] = Query(None),
    date_from: Optional[datetime] = Query(None),
    date_to: Optional[datetime] = Query(None),
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    ensure_admin(user)
    return _service(db).audit.get_summary(
        contract_id=contract_id, actor=actor, date_from=date_from, date_to=date_to
    )


@esign_router.get("/audit/export")
def export_audit(
    export_format: str = Query("csv", alias="format"),
    contract_id: Optional[str] = Query(None),
    action: Optional[str] = Query(None),
    actor: Optional[str] = Query(None),
    date_from: Optional[datetime] = Query(None),
    date_to: Optional[datetime] = Query(None),
    limit: int = Query(2000, ge=1, le=20000),
    offset: int = Query(0, ge=0),
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> Response:
    ensure_admin(user)
    result = _service(db).audit.export(
        export_format=export_format,
        contract_id=contract_id,
        action=action,
        actor=actor,
        date_from=date_from,
        date_to=date_to,
        limit=limit,
        offset=offset,
    )
    filename = f"contract-history.{result['extension']}"
    return Response(
        content=result["content"],
        media_type=result["media_type"],
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@esign_router.get("/{contract_id}", response_model=ContractResponse)
def get_contract(
    contract_id: str,
    _user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> ContractResponse:
    return _contract_response(_service(db).get_contract(contract_id))


@esign_router.post("/{contract_id}/line-items", response_model=Dict[str, Any])
def add_line_item(
    contract_id: str,
    req: LineItemRequest,
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    line = _service(db).add_line_item(
        contract_id,
        description=req.description,
        quantity=req.quantity,
        unit_price=req.unit_price,
        actor=user.username,
    )
    return {"id": line.id, "contract_id": contract_id, "sequence": line.sequence}


@esign_router.post("/{contract_id}/submit", response_model=ContractResponse)
def submit_contract(
    contract_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> ContractResponse:
    return _contract_response(_service(db).submit(contract_id, actor=user.username))


@esign_router.post("/{contract_id}/sign", response_model=SignatureResponse)
def sign_contract(
    contract_id: str,
    req: SignRequest,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> SignatureResponse:
    placement = (
        SignaturePlacement(
            page_number=req.placement.page_number,
            x=req.placement.x,
            y=req.placement.y,
            width=req.placement.width,
            height=req.placement.height,
        )
        if req.placement
        else None
    )
    record = _service(db).sign_contract(
        contract_id,
        signer_type=req.signer_type,
        signer_id=user.id,
        signer_name=req.signer_name or user.username,
        signer_email=req.signer_email or user.email,
        certificate_id=req.certificate_id,
        signature_bytes=_decode_b64(req.signature_base64, "signature"),
        signature_algorithm=req.signature_algorithm,
        sign_with_certificate=req.sign_with_certificate,
        image=req.image,
        image_width=req.image_width,
        image_height=req.image_height,
        placement=placement,
        hash_algorithm=req.hash_algorithm,
        timestamp_token=_decode_b64(req.timestamp_token_base64, "timestamp_token"),
        timestamp_url=req.timestamp_url,
        reason=req.reason,
        location=req.location,
        contact_info=req.contact_info,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )
    return _signature_response(record)


@esign_router.post("/{contract_id}/reject", response_model=ContractResponse)
def reject_contract(
    contract_id: str,
    req: ActorRequest,
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> ContractResponse:
    contract = _service(db).reject(contract_id, reviewer=user.username, reason=req.reason)
    return _contract_response(contract)


@esign_router.post("/{contract_id}/cancel", response_model=ContractResponse)
def cancel_contract(
    contract_id: str,
    req: ActorRequest,
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> ContractResponse:
    roles = list(user.roles or [])
    if user.is_superuser:
        roles.append("superuser")
    contract = _service(db).cancel(
        contract_id, actor=user.username, actor_roles=roles, reason=req.reason
    )
    return _contract_response(contract)


@esign_router.post("/{contract_id}/hide", response_model=ContractResponse)
def hide_contract(
    contract_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> ContractResponse:
    return _contract_response(_service(db).hide(contract_id, actor=user.username))


@esign_router.post("/{contract_id}/restore", response_model=ContractResponse)
def restore_contract(
    contract_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> ContractResponse:
    return _contract_response(_service(db).restore(contract_id, actor=user.username))


@esign_router.get("/{contract_id}/signatures", response_model=Dict[str, Any])
def list_signatures(
    contract_id: str,
    signer_type: Optional[SignerType] = Query(None),
    _user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    service = _service(db)
    if signer_type:
        records = service.get_signatures_by_type(contract_id, signer_type)
    else:
        records = service.get_signatures(contract_id)
    return {"items": [_signature_response(r).model_dump() for r in records]}


@esign_router.post("/signatures/{signature_id}/verify", response_model=Dict[str, Any])
def verify_signature(
    signature_id: str,
    _user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    result = _service(db).verify_signature(signature_id)
    return result.to_dict()


@esign_router.get("/{contract_id}/audit-trail", response_model=Dict[str, Any])
def get_audit_trail(
    contract_id: str,
    order: str = Query("asc", pattern="^(asc|desc)$"),
    _user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    entries = _service(db).get_audit_trail(contract_id, ascending=order == "asc")
    return {"items": [_history_response(e).model_dump() for e in entries]}
