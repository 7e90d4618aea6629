from __future__ import annotations

from datetime import date, datetime, timedelta

import pytest

from contractsign.config import Settings
from contractsign.database import create_db_engine, create_session_factory, import_all_models
from contractsign.esign.crypto import CryptoProvider
from contractsign.esign.models import SignerType
from contractsign.esign.service import ContractSigningService
from contractsign.models.base import Base

START = datetime(2026, 1, 5, 9, 0, 0)


class SteppingClock:
    """Returns a strictly increasing time on every call."""

    def __init__(self, start: datetime = START, step: timedelta = timedelta(seconds=1)):
        self.current = start
        self.step = step

    def __call__(self) -> datetime:
        value = self.current
        self.current = self.current + self.step
        return value

    def advance(self, delta: timedelta) -> None:
        self.current = self.current + delta


def build_session_factory(url: str = "sqlite:///:memory:"):
    engine = create_db_engine(url)
    import_all_models()
    Base.metadata.create_all(bind=engine)
    return engine, create_session_factory(engine)


@pytest.fixture()
def session():
    engine, SessionLocal = build_session_factory()
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
        engine.dispose()


@pytest.fixture(scope="session")
def crypto():
    return CryptoProvider(keystore_password="test-keystore", key_algorithm="RSA", key_size=2048)


@pytest.fixture(scope="session")
def ec_crypto():
    return CryptoProvider(keystore_password="test-keystore", key_algorithm="EC", key_size=256)


@pytest.fixture()
def clock():
    return SteppingClock()


@pytest.fixture()
def settings():
    return Settings(
        KEYSTORE_PASSWORD="test-keystore",
        CERT_VALIDITY_DAYS=365,
        CERT_EXPIRY_WARNING_DAYS=30,
        AUTO_ISSUE_CERTIFICATE=True,
    )


@pytest.fixture()
def service(session, settings, crypto, clock):
    return ContractSigningService(session, settings=settings, crypto=crypto, clock=clock)


def create_draft(service, number="C-1001", *, line_items=1, end_date=None, **kwargs):
    return service.create_contract(
        contract_number=number,
        title=kwargs.pop("title", "Annual maintenance"),
        created_by=kwargs.pop("created_by", "alice"),
        customer_id=kwargs.pop("customer_id", "cust-7"),
        staff_id=kwargs.pop("staff_id", "staff-3"),
        total_value=kwargs.pop("total_value", "1200.00"),
        start_date=kwargs.pop("start_date", date(2026, 1, 1)),
        end_date=end_date or date(2026, 12, 31),
        line_items=[
            {"description": f"Service block {i + 1}", "quantity": 1, "unit_price": "100.00"}
            for i in range(line_items)
        ],
        **kwargs,
    )


def submitted_contract(service, number="C-1001", **kwargs):
    contract = create_draft(service, number, **kwargs)
    return service.submit(contract.id, actor="alice")


def sign_as(service, contract_id, signer_type, **kwargs):
    signer_type = SignerType(signer_type)
    defaults = {
        SignerType.STAFF: ("staff-3", "Sam Staff"),
        SignerType.MANAGER: ("mgr-1", "Mia Manager"),
        SignerType.CUSTOMER: ("cust-7", "Cleo Customer"),
    }
    signer_id, signer_name = defaults[signer_type]
    kwargs.setdefault("signer_id", signer_id)
    kwargs.setdefault("signer_name", signer_name)
    return service.sign_contract(contract_id, signer_type=signer_type, **kwargs)
