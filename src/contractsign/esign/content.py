"""
Canonical contract content used for signing hashes.

Status and signing fields are excluded so that every signature on a contract
covers the same bytes.
"""
from __future__ import annotations

import json
from decimal import Decimal
from typing import Any, Dict, List, Optional, Protocol

from sqlalchemy.orm import Session

from contractsign.esign.crypto import CryptoProvider
from contractsign.esign.models import Contract, ContractLineItem


class ContentProvider(Protocol):
    def get_content(self, contract_id: str) -> Optional[bytes]:
        """Return the bytes to hash for the contract, or None when unavailable."""


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return str(value)


def _money(value: Any) -> Optional[str]:
    if value is None:
        return None
    return f"{Decimal(str(value)):.2f}"


def canonical_contract_payload(contract: Contract, line_items: List[ContractLineItem]) -> Dict[str, Any]:
    return {
        "contract_number": contract.contract_number,
        "title": contract.title,
        "description": contract.description,
        "customer_id": contract.customer_id,
        "staff_id": contract.staff_id,
        "total_value": _money(contract.total_value),
        "start_date": _text(contract.start_date),
        "end_date": _text(contract.end_date),
        "line_items": [
            {
                "description": item.description,
                "quantity": item.quantity,
                "unit_price": _money(item.unit_price),
            }
            for item in line_items
        ],
    }


class ContractRecordContentProvider:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get_content(self, contract_id: str) -> Optional[bytes]:
        contract = self.session.get(Contract, contract_id)
        if not contract:
            return None
        line_items = (
            self.session.query(ContractLineItem)
            .filter(ContractLineItem.contract_id == contract_id)
            .order_by(ContractLineItem.sequence, ContractLineItem.id)
            .all()
        )
        payload = canonical_contract_payload(contract, line_items)
        return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode(
            "utf-8"
        )


def compute_content_hash(
    provider: ContentProvider,
    crypto: CryptoProvider,
    contract_id: str,
    algorithm: str = "SHA-256",
) -> Optional[str]:
    content = provider.get_content(contract_id)
    if content is None:
        return None
    return crypto.digest(content, algorithm)
