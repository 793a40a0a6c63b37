from __future__ import annotations

import itertools
import os
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))
os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from fastapi import Depends
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session, sessionmaker

from talentvote.core.config import Settings
from talentvote.db import Base, build_engine, get_db, seed_vote_packages
from talentvote.domain import (
    AuthenticationError,
    ChargeRequest,
    ChargeResult,
    PaymentError,
    PurchaseReceipt,
    VerifiedIdentity,
)
from talentvote.models import (
    ApplicationStatus,
    Competition,
    CompetitionStatus,
    Contestant,
    VotePackage,
)
from talentvote.services.purchase_service import PurchaseService


class FakeGateway:
    """Accepts every charge unless told to decline."""

    name = "fake"

    def __init__(self, *, decline_message: str | None = None, transaction_id: str | None = None) -> None:
        self.decline_message = decline_message
        self.transaction_id = transaction_id
        self.requests: list[ChargeRequest] = []
        self._ids = itertools.count(60000001)

    def charge(self, request: ChargeRequest) -> ChargeResult:
        self.requests.append(request)
        if self.decline_message:
            raise PaymentError(f"Payment failed: {self.decline_message}", gateway_code="2")
        return ChargeResult(transaction_id=self.transaction_id or str(next(self._ids)), auth_code="ABC123")

    def public_config(self) -> dict[str, str | None]:
        return {"apiLoginId": "test-login", "clientKey": "client-key", "environment": "sandbox"}


class RecordingNotifier:
    def __init__(self, *, succeed: bool = True) -> None:
        self.succeed = succeed
        self.receipts: list[PurchaseReceipt] = []

    def send_purchase_receipt(self, receipt: PurchaseReceipt) -> bool:
        self.receipts.append(receipt)
        return self.succeed


class FakeVerifier:
    def __init__(self, identities: dict[str, VerifiedIdentity]) -> None:
        self.identities = identities

    def verify(self, token: str) -> VerifiedIdentity:
        try:
            return self.identities[token]
        except KeyError:
            raise AuthenticationError("Invalid authentication token") from None


HOST = VerifiedIdentity(uid="host-1", email="host@example.com", level=3)
ADMIN = VerifiedIdentity(uid="admin-1", email="admin@example.com", level=4)
VIEWER = VerifiedIdentity(uid="viewer-1", email="viewer@example.com", level=1)

TOKENS = {"host-token": HOST, "admin-token": ADMIN, "viewer-token": VIEWER}


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        _env_file=None,
        database_url="sqlite://",
        sales_tax_percent=0.0,
        vote_price_cents=100,
        authorize_net_api_login_id="test-login",
        authorize_net_transaction_key="test-key",
        authorize_net_public_client_key="client-key",
        mail_from_address=None,
    )


@pytest.fixture
def session_factory(tmp_path) -> sessionmaker[Session]:
    # A file database gives the audit trail its own connection, as in production.
    engine = build_engine(f"sqlite:///{tmp_path / 'talentvote.db'}")
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(bind=engine, autoflush=True, expire_on_commit=False)
    yield factory
    engine.dispose()


@pytest.fixture
def session(session_factory) -> Session:
    db = session_factory()
    yield db
    db.close()


@pytest.fixture
def make_competition(session):
    def _make(**overrides) -> Competition:
        fields = {
            "title": "Spring Showcase",
            "category": "singing",
            "status": CompetitionStatus.ACTIVE.value,
            "max_votes_per_day": 10,
            "online_vote_weight": 100,
            "vote_cost": 0,
            "created_by": HOST.uid,
        }
        fields.update(overrides)
        competition = Competition(**fields)
        session.add(competition)
        session.commit()
        return competition

    return _make


@pytest.fixture
def make_contestant(session):
    counter = itertools.count(1)

    def _make(competition: Competition, **overrides) -> Contestant:
        index = next(counter)
        fields = {
            "competition_id": competition.id,
            "talent_profile_id": index,
            "display_name": f"Contestant {index}",
            "application_status": ApplicationStatus.APPROVED.value,
        }
        fields.update(overrides)
        contestant = Contestant(**fields)
        session.add(contestant)
        session.commit()
        return contestant

    return _make


@pytest.fixture
def make_package(session):
    def _make(**overrides) -> VotePackage:
        fields = {"name": "Fan Pack", "vote_count": 1000, "bonus_votes": 300, "price_cents": 1500}
        fields.update(overrides)
        package = VotePackage(**fields)
        session.add(package)
        session.commit()
        return package

    return _make


@pytest.fixture
def seeded_packages(session, test_settings) -> list[VotePackage]:
    seed_vote_packages(session, test_settings)
    session.commit()
    return session.query(VotePackage).order_by(VotePackage.position).all()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def purchase_service(session, gateway, notifier, test_settings, session_factory) -> PurchaseService:
    return PurchaseService(
        session,
        gateway=gateway,
        notifier=notifier,
        settings=test_settings,
        audit_session_factory=session_factory,
    )


@pytest.fixture
def api_client(session_factory, gateway, notifier, test_settings):
    """TestClient backed by the per-test database and fake integrations."""

    from talentvote.main import (
        _identity_verifier,
        _payment_gateway,
        _purchase_service,
        _receipt_notifier,
        app,
    )

    def _get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    def _purchase(db: Session = Depends(get_db)) -> PurchaseService:
        return PurchaseService(
            db,
            gateway=gateway,
            notifier=notifier,
            settings=test_settings,
            audit_session_factory=session_factory,
        )

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[_identity_verifier] = lambda: FakeVerifier(TOKENS)
    app.dependency_overrides[_payment_gateway] = lambda: gateway
    app.dependency_overrides[_receipt_notifier] = lambda: notifier
    app.dependency_overrides[_purchase_service] = _purchase
    yield TestClient(app)
    app.dependency_overrides.clear()
