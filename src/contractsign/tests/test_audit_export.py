import json
from datetime import datetime
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from contractsign.esign.audit import AuditTrail
from contractsign.esign.models import ContractAction
from contractsign.exceptions import PersistenceError, ValidationError


def _entry(**overrides):
    values = dict(
        id=7,
        contract_id="contract-1",
        action="SIGNED",
        old_status="PENDING_SELLER_SIGNATURE",
        new_status="PENDING_CUSTOMER_SIGNATURE",
        changed_by="staff-3",
        change_reason=None,
        changed_at=datetime(2026, 2, 6, 12, 0, 0),
        change_description="SIGNED by staff-3 (PENDING_SELLER_SIGNATURE -> PENDING_CUSTOMER_SIGNATURE)",
    )
    values.update(overrides)
    return SimpleNamespace(**values)


def test_list_history_applies_filters_and_paging():
    session = MagicMock()
    audit = AuditTrail(session)

    query = MagicMock()
    query.filter.return_value = query
    query.order_by.return_value = query
    query.offset.return_value = query
    query.limit.return_value = query
    query.all.return_value = [MagicMock()]
    session.query.return_value = query

    entries = audit.list_history(contract_id="contract-1", action="SIGNED", limit=10, offset=5)

    assert len(entries) == 1
    filters = query.filter.call_args.args
    assert len(filters) == 2
    query.offset.assert_called_with(5)
    query.limit.assert_called_with(10)


def test_get_summary_counts_by_action():
    session = MagicMock()
    audit = AuditTrail(session)

    count_q = MagicMock()
    count_q.filter.return_value = count_q
    count_q.scalar.return_value = 3

    by_action_q = MagicMock()
    by_action_q.filter.return_value = by_action_q
    by_action_q.group_by.return_value = by_action_q
    by_action_q.all.return_value = [("SIGNED", 2), ("CREATED", 1)]

    session.query.side_effect = [count_q, by_action_q]

    summary = audit.get_summary(actor="staff-3")

    assert summary == {"total": 3, "by_action": {"SIGNED": 2, "CREATED": 1}}


def test_export_supports_json_and_csv():
    audit = AuditTrail(MagicMock())
    audit.list_history = MagicMock(return_value=[_entry(change_reason="ok, signed")])

    json_result = audit.export(export_format="json")
    assert json_result["extension"] == "json"
    assert json_result["media_type"] == "application/json"
    payload = json.loads(json_result["content"])
    assert payload["items"][0]["changed_at"] == "2026-02-06T12:00:00"
    assert payload["items"][0]["description"].startswith("SIGNED by staff-3")

    csv_result = audit.export(export_format="CSV")
    assert csv_result["extension"] == "csv"
    assert csv_result["media_type"] == "text/csv"
    assert csv_result["content"].startswith(b"\xef\xbb\xbf")
    text = csv_result["content"].decode("utf-8-sig")
    header, row = text.splitlines()[:2]
    assert header.startswith("id,contract_id,action")
    assert '"ok, signed"' in row


def test_export_rejects_unknown_format():
    audit = AuditTrail(MagicMock())
    with pytest.raises(ValidationError):
        audit.export(export_format="xml")


def test_append_wraps_storage_failures():
    session = MagicMock()
    session.flush.side_effect = OperationalError("INSERT", {}, Exception("disk full"))
    audit = AuditTrail(session)

    with pytest.raises(PersistenceError) as exc_info:
        audit.append("contract-1", ContractAction.SIGNED, actor="staff-3")
    assert exc_info.value.details == {"contract_id": "contract-1", "action": "SIGNED"}


def test_append_rejects_unknown_action():
    audit = AuditTrail(MagicMock())
    with pytest.raises(ValueError):
        audit.append("contract-1", "ARCHIVED", actor="staff-3")
