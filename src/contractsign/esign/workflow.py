"""
Contract signing lifecycle.

Every allowed move is listed in TRANSITIONS; anything else is rejected with
InvalidStateTransitionError and leaves the contract untouched.
"""
from __future__ import annotations

import enum
import logging
from contextlib import contextmanager
from datetime import date
from threading import Lock, RLock
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from contractsign.clock import Clock, utcnow
from contractsign.esign.audit import AuditTrail
from contractsign.esign.models import (
    Contract,
    ContractAction,
    ContractHistory,
    ContractLineItem,
    ContractStatus,
    SignerType,
)
from contractsign.exceptions import InvalidStateTransitionError

logger = logging.getLogger(__name__)


class SigningTrigger(str, enum.Enum):
    SUBMIT = "SUBMIT"
    SELLER_SIGN = "SELLER_SIGN"
    CUSTOMER_SIGN = "CUSTOMER_SIGN"
    REJECT = "REJECT"
    CANCEL = "CANCEL"
    EXPIRE = "EXPIRE"


TRANSITIONS: Dict[Tuple[ContractStatus, SigningTrigger], ContractStatus] = {
    (ContractStatus.DRAFT, SigningTrigger.SUBMIT): ContractStatus.PENDING_SELLER_SIGNATURE,
    (
        ContractStatus.PENDING_SELLER_SIGNATURE,
        SigningTrigger.SELLER_SIGN,
    ): ContractStatus.PENDING_CUSTOMER_SIGNATURE,
    (ContractStatus.PENDING_CUSTOMER_SIGNATURE, SigningTrigger.CUSTOMER_SIGN): ContractStatus.ACTIVE,
    (ContractStatus.PENDING_SELLER_SIGNATURE, SigningTrigger.REJECT): ContractStatus.REJECTED,
    (ContractStatus.PENDING_CUSTOMER_SIGNATURE, SigningTrigger.REJECT): ContractStatus.REJECTED,
    (ContractStatus.DRAFT, SigningTrigger.CANCEL): ContractStatus.CANCELLED,
    (ContractStatus.PENDING_SELLER_SIGNATURE, SigningTrigger.CANCEL): ContractStatus.CANCELLED,
    (ContractStatus.PENDING_CUSTOMER_SIGNATURE, SigningTrigger.CANCEL): ContractStatus.CANCELLED,
    (ContractStatus.ACTIVE, SigningTrigger.EXPIRE): ContractStatus.EXPIRED,
}

SIGNER_TRIGGERS: Dict[SignerType, SigningTrigger] = {
    SignerType.STAFF: SigningTrigger.SELLER_SIGN,
    SignerType.MANAGER: SigningTrigger.SELLER_SIGN,
    SignerType.CUSTOMER: SigningTrigger.CUSTOMER_SIGN,
}

TRIGGER_ACTIONS: Dict[SigningTrigger, ContractAction] = {
    SigningTrigger.SUBMIT: ContractAction.STATUS_CHANGED,
    SigningTrigger.SELLER_SIGN: ContractAction.SIGNED,
    SigningTrigger.CUSTOMER_SIGN: ContractAction.SIGNED,
    SigningTrigger.REJECT: ContractAction.STATUS_CHANGED,
    SigningTrigger.CANCEL: ContractAction.CANCELLED,
    SigningTrigger.EXPIRE: ContractAction.STATUS_CHANGED,
}

TERMINAL_STATES = frozenset(
    {
        ContractStatus.ACTIVE,
        ContractStatus.REJECTED,
        ContractStatus.CANCELLED,
        ContractStatus.EXPIRED,
    }
)

ADMIN_ROLES = frozenset({"admin", "superuser", "manager"})


def next_status(current: ContractStatus, trigger: SigningTrigger) -> ContractStatus:
    target = TRANSITIONS.get((ContractStatus(current), SigningTrigger(trigger)))
    if target is None:
        raise InvalidStateTransitionError(
            f"Cannot apply {SigningTrigger(trigger).value} to a contract in {ContractStatus(current).value}",
            current_status=ContractStatus(current).value,
            trigger=SigningTrigger(trigger).value,
        )
    return target


def trigger_for_signer(signer_type: SignerType) -> SigningTrigger:
    return SIGNER_TRIGGERS[SignerType(signer_type)]


class _LockEntry:
    __slots__ = ("lock", "holders")

    def __init__(self) -> None:
        self.lock = RLock()
        self.holders = 0


_contract_locks: Dict[str, _LockEntry] = {}
_contract_locks_guard = Lock()


@contextmanager
def contract_lock(contract_id: str) -> Iterator[None]:
    """
    Serialise signing-side mutations of one contract within this process.

    Entries are reference counted (holders plus waiters) and dropped when the
    last one leaves, so the registry only holds contracts in use.
    """
    with _contract_locks_guard:
        entry = _contract_locks.get(contract_id)
        if entry is None:
            entry = _contract_locks[contract_id] = _LockEntry()
        entry.holders += 1
    try:
        with entry.lock:
            yield
    finally:
        with _contract_locks_guard:
            entry.holders -= 1
            if entry.holders == 0:
                del _contract_locks[contract_id]


def _normalized_roles(roles: Optional[Iterable[str]]) -> set:
    return {str(role).strip().lower() for role in (roles or []) if str(role).strip()}


class ContractSigningWorkflow:
    def __init__(
        self,
        session: Session,
        *,
        audit: AuditTrail,
        clock: Clock = utcnow,
    ) -> None:
        self.session = session
        self.audit = audit
        self.clock = clock

    def line_item_count(self, contract_id: str) -> int:
        total = (
            self.session.query(func.count(ContractLineItem.id))
            .filter(ContractLineItem.contract_id == contract_id)
            .scalar()
        )
        return int(total or 0)

    def allowed_triggers(self, contract: Contract) -> List[SigningTrigger]:
        current = ContractStatus(contract.status)
        return [trigger for (state, trigger) in TRANSITIONS if state == current]

    def can_sign(self, contract: Contract, signer_type: SignerType) -> bool:
        trigger = trigger_for_signer(signer_type)
        return (ContractStatus(contract.status), trigger) in TRANSITIONS

    def check(
        self,
        contract: Contract,
        trigger: SigningTrigger,
        *,
        actor: Optional[str] = None,
        actor_roles: Optional[Iterable[str]] = None,
        signer_type: Optional[SignerType] = None,
        today: Optional[date] = None,
    ) -> ContractStatus:
        """Resolve the target state and evaluate guards without mutating anything."""
        trigger = SigningTrigger(trigger)
        target = next_status(ContractStatus(contract.status), trigger)
        current = contract.status

        if trigger == SigningTrigger.SUBMIT and self.line_item_count(contract.id) < 1:
            raise InvalidStateTransitionError(
                "Contract needs at least one line item before submission",
                current_status=current,
                trigger=trigger.value,
            )
        if trigger in (SigningTrigger.SELLER_SIGN, SigningTrigger.CUSTOMER_SIGN):
            if signer_type is None or trigger_for_signer(signer_type) != trigger:
                raise InvalidStateTransitionError(
                    f"Signer type {signer_type} cannot perform {trigger.value}",
                    current_status=current,
                    trigger=trigger.value,
                )
        if trigger == SigningTrigger.REJECT and not (actor or "").strip():
            raise InvalidStateTransitionError(
                "A reviewer is required to reject a contract",
                current_status=current,
                trigger=trigger.value,
            )
        if trigger == SigningTrigger.CANCEL and not (_normalized_roles(actor_roles) & ADMIN_ROLES):
            raise InvalidStateTransitionError(
                "Only administrative users can cancel a contract",
                current_status=current,
                trigger=trigger.value,
            )
        if trigger == SigningTrigger.EXPIRE:
            today = today or self.clock().date()
            if contract.end_date is None or contract.end_date >= today:
                raise InvalidStateTransitionError(
                    "Contract end date has not passed",
                    current_status=current,
                    trigger=trigger.value,
                    end_date=contract.end_date.isoformat() if contract.end_date else None,
                )
        return target

    def apply(
        self,
        contract: Contract,
        trigger: SigningTrigger,
        *,
        actor: str,
        actor_roles: Optional[Iterable[str]] = None,
        signer_type: Optional[SignerType] = None,
        signer_name: Optional[str] = None,
        reason: Optional[str] = None,
        today: Optional[date] = None,
    ) -> ContractHistory:
        trigger = SigningTrigger(trigger)
        try:
            target = self.check(
                contract,
                trigger,
                actor=actor,
                actor_roles=actor_roles,
                signer_type=signer_type,
                today=today,
            )
        except InvalidStateTransitionError:
            logger.warning(
                "Rejected transition contract=%s status=%s trigger=%s",
                contract.id,
                contract.status,
                trigger.value,
            )
            raise

        previous = contract.status
        now = self.clock()
        contract.status = target.value
        contract.updated_at = now
        if trigger in (SigningTrigger.SELLER_SIGN, SigningTrigger.CUSTOMER_SIGN):
            contract.signed_at = now
            contract.signed_by = signer_name or actor
        self.session.add(contract)
        self.session.flush()

        logger.info(
            "Contract %s %s -> %s (%s by %s)",
            contract.id,
            previous,
            target.value,
            trigger.value,
            actor,
        )
        return self.audit.append(
            contract.id,
            TRIGGER_ACTIONS[trigger],
            actor=actor,
            old_status=previous,
            new_status=target.value,
            reason=reason,
        )

    def set_hidden(self, contract: Contract, hidden: bool, *, actor: str) -> ContractHistory:
        contract.is_hidden = hidden
        contract.updated_at = self.clock()
        self.session.add(contract)
        self.session.flush()
        return self.audit.append(
            contract.id,
            ContractAction.HIDDEN if hidden else ContractAction.RESTORED,
            actor=actor,
        )
