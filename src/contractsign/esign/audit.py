"""Append-only contract history."""
from __future__ import annotations

import csv
import io
import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from contractsign.clock import Clock, utcnow
from contractsign.esign.models import ContractAction, ContractHistory
from contractsign.exceptions import PersistenceError, ValidationError

logger = logging.getLogger(__name__)

EXPORT_COLUMNS = [
    "id",
    "contract_id",
    "action",
    "old_status",
    "new_status",
    "changed_by",
    "change_reason",
    "changed_at",
    "description",
]


class AuditTrail:
    def __init__(self, session: Session, *, clock: Clock = utcnow) -> None:
        self.session = session
        self.clock = clock

    def append(
        self,
        contract_id: str,
        action: ContractAction,
        *,
        actor: str,
        old_status: Optional[str] = None,
        new_status: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> ContractHistory:
        entry = ContractHistory(
            contract_id=contract_id,
            action=ContractAction(action).value,
            old_status=old_status,
            new_status=new_status,
            changed_by=actor,
            change_reason=reason,
            changed_at=self.clock(),
        )
        try:
            self.session.add(entry)
            self.session.flush()
        except SQLAlchemyError as exc:
            logger.exception("Failed to append history for contract %s", contract_id)
            raise PersistenceError(
                "Failed to append audit entry", contract_id=contract_id, action=entry.action
            ) from exc
        return entry

    def list_entries(self, contract_id: str, *, ascending: bool = True) -> List[ContractHistory]:
        order = (
            (ContractHistory.changed_at, ContractHistory.id)
            if ascending
            else (ContractHistory.changed_at.desc(), ContractHistory.id.desc())
        )
        return (
            self.session.query(ContractHistory)
            .filter(ContractHistory.contract_id == contract_id)
            .order_by(*order)
            .all()
        )

    def list_signing_activity(self, contract_id: str) -> List[ContractHistory]:
        return [entry for entry in self.list_entries(contract_id) if entry.is_signing_action]

    def _filters(
        self,
        *,
        contract_id: Optional[str] = None,
        action: Optional[str] = None,
        actor: Optional[str] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
    ) -> list:
        filters = []
        if contract_id:
            filters.append(ContractHistory.contract_id == contract_id)
        if action:
            filters.append(ContractHistory.action == action)
        if actor:
            filters.append(ContractHistory.changed_by == actor)
        if date_from:
            filters.append(ContractHistory.changed_at >= date_from)
        if date_to:
            filters.append(ContractHistory.changed_at <= date_to)
        return filters

    def list_history(
        self,
        *,
        contract_id: Optional[str] = None,
        action: Optional[str] = None,
        actor: Optional[str] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        limit: int = 200,
        offset: int = 0,
    ) -> List[ContractHistory]:
        query = self.session.query(ContractHistory).filter(
            *self._filters(
                contract_id=contract_id,
                action=action,
                actor=actor,
                date_from=date_from,
                date_to=date_to,
            )
        )
        return (
            query.order_by(ContractHistory.changed_at.desc(), ContractHistory.id.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )

    def get_summary(
        self,
        *,
        contract_id: Optional[str] = None,
        actor: Optional[str] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        filters = self._filters(
            contract_id=contract_id, actor=actor, date_from=date_from, date_to=date_to
        )
        total = self.session.query(func.count(ContractHistory.id)).filter(*filters).scalar()
        by_action = (
            self.session.query(ContractHistory.action, func.count(ContractHistory.id))
            .filter(*filters)
            .group_by(ContractHistory.action)
            .all()
        )
        return {
            "total": int(total or 0),
            "by_action": {row[0]: int(row[1]) for row in by_action},
        }

    def export(
        self,
        *,
        export_format: str,
        contract_id: Optional[str] = None,
        action: Optional[str] = None,
        actor: Optional[str] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        limit: int = 2000,
        offset: int = 0,
    ) -> Dict[str, Any]:
        normalized = (export_format or "").lower().strip()
        if normalized not in {"json", "csv"}:
            raise ValidationError("Unsupported export format", field="format")

        entries = self.list_history(
            contract_id=contract_id,
            action=action,
            actor=actor,
            date_from=date_from,
            date_to=date_to,
            limit=limit,
            offset=offset,
        )
        rows = [
            {
                "id": entry.id,
                "contract_id": entry.contract_id,
                "action": entry.action,
                "old_status": entry.old_status,
                "new_status": entry.new_status,
                "changed_by": entry.changed_by,
                "change_reason": entry.change_reason,
                "changed_at": entry.changed_at.isoformat() if entry.changed_at else None,
                "description": entry.change_description,
            }
            for entry in entries
        ]

        if normalized == "json":
            payload = json.dumps({"items": rows}, ensure_ascii=False, default=str).encode("utf-8")
            return {"content": payload, "media_type": "application/json", "extension": "json"}

        buffer = io.StringIO()
        writer = csv.writer(buffer)
        writer.writerow(EXPORT_COLUMNS)
        for row in rows:
            writer.writerow(["" if row.get(col) is None else str(row.get(col)) for col in EXPORT_COLUMNS])
        content = buffer.getvalue().encode("utf-8-sig")
        return {"content": content, "media_type": "text/csv", "extension": "csv"}
