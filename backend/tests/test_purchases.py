from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import OperationalError

from talentvote.domain import (
    InvalidStateError,
    NotFoundError,
    OpaquePayment,
    PaymentError,
    PurchaseState,
    StorageError,
    ValidationError,
)
from talentvote.models import (
    CompetitionStatus,
    PaymentAuditEvent,
    ReferralCode,
    ViewerProfile,
    Vote,
    VotePurchase,
)
from talentvote.repositories import VoteRepository
from talentvote.services.purchase_service import (
    EVENT_CHARGE_CAPTURED,
    EVENT_RECONCILED,
    EVENT_RECONCILIATION_REQUIRED,
    CheckoutOrder,
    PurchaseService,
    format_cents,
)

TOKEN = OpaquePayment(data_descriptor="COMMON.ACCEPT.INAPP.PAYMENT", data_value="eyJjb2RlIjoiNTBf")


def _order(competition, contestant, **overrides) -> CheckoutOrder:
    fields = {
        "competition_id": competition.id,
        "contestant_id": contestant.id,
        "buyer_name": "Jamie Rivera",
        "buyer_email": "Jamie@Example.com",
        "payment": TOKEN,
    }
    fields.update(overrides)
    return CheckoutOrder(**fields)


def _audit_events(session_factory, event_type: str) -> list[PaymentAuditEvent]:
    with session_factory() as audit:
        return audit.query(PaymentAuditEvent).filter_by(event_type=event_type).all()


def _after_grace(settings) -> datetime:
    return datetime.now(timezone.utc) + timedelta(minutes=settings.reconciliation_grace_minutes + 1)


def test_package_purchase_credits_votes_plus_bonus(
    session, make_competition, make_contestant, make_package, purchase_service, notifier
):
    competition = make_competition()
    contestant = make_contestant(competition)
    package = make_package(vote_count=1000, bonus_votes=300, price_cents=1500)

    result = purchase_service.checkout(_order(competition, contestant, package_id=package.id))

    session.refresh(contestant)
    assert contestant.vote_count == 1300
    assert contestant.online_vote_count == 1300
    assert result.votes_added == 1300
    assert result.purchase.amount_cents == 1500
    assert result.purchase.package_id == package.id
    assert session.query(VotePurchase).count() == 1
    votes = session.query(Vote).all()
    assert [(vote.quantity, vote.purchase_id, vote.daily_slot) for vote in votes] == [
        (1300, result.purchase.id, None)
    ]
    assert result.attempt.state is PurchaseState.RECEIPT_SENT
    assert notifier.receipts[0].to == "Jamie@Example.com"
    assert notifier.receipts[0].contestant_name == contestant.display_name


def test_individual_purchase_uses_competition_vote_cost(
    session, make_competition, make_contestant, purchase_service, gateway
):
    competition = make_competition(vote_cost=25)
    contestant = make_contestant(competition)

    result = purchase_service.checkout(_order(competition, contestant, individual_vote_count=40))

    assert result.purchase.subtotal_cents == 1000
    assert result.purchase.description == "40 Votes"
    assert str(gateway.requests[0].amount) == "10.00"
    assert gateway.requests[0].payment is TOKEN


def test_sales_tax_rounds_half_up(
    session, make_competition, make_contestant, gateway, notifier, test_settings, session_factory
):
    taxed = test_settings.model_copy(update={"sales_tax_percent": 8.25})
    service = PurchaseService(
        session,
        gateway=gateway,
        notifier=notifier,
        settings=taxed,
        audit_session_factory=session_factory,
    )
    competition = make_competition(vote_cost=0)
    contestant = make_contestant(competition)

    result = service.checkout(_order(competition, contestant, individual_vote_count=2))

    # 200 cents * 8.25% = 16.5 cents -> 17
    assert result.purchase.tax_cents == 17
    assert result.purchase.amount_cents == 217
    assert str(gateway.requests[0].amount) == "2.17"
    assert notifier.receipts[0].tax == "$0.17"


def test_gateway_error_leaves_no_trace(
    session, make_competition, make_contestant, make_package, gateway, purchase_service, notifier
):
    competition = make_competition()
    contestant = make_contestant(competition)
    package = make_package()
    gateway.decline_message = "The credit card has expired."

    with pytest.raises(PaymentError) as excinfo:
        purchase_service.checkout(_order(competition, contestant, package_id=package.id))

    assert excinfo.value.message == "Payment failed: The credit card has expired."
    session.refresh(contestant)
    assert contestant.vote_count == 0
    assert session.query(VotePurchase).count() == 0
    assert session.query(Vote).count() == 0
    assert notifier.receipts == []


@pytest.mark.parametrize(
    "overrides",
    [
        {},
        {"package_id": 1, "individual_vote_count": 5},
        {"individual_vote_count": 0},
        {"individual_vote_count": 10_001},
        {"individual_vote_count": 5, "payment": OpaquePayment("", "")},
        {"individual_vote_count": 5, "buyer_name": "   "},
    ],
)
def test_invalid_orders_never_reach_gateway(
    make_competition, make_contestant, purchase_service, gateway, overrides
):
    competition = make_competition()
    contestant = make_contestant(competition)

    with pytest.raises(ValidationError):
        purchase_service.checkout(_order(competition, contestant, **overrides))
    assert gateway.requests == []


def test_individual_bounds_are_inclusive(make_competition, make_contestant, purchase_service):
    competition = make_competition()
    contestant = make_contestant(competition)

    assert purchase_service.quote(competition, individual_vote_count=1).votes == 1
    assert purchase_service.quote(competition, individual_vote_count=10_000).votes == 10_000


def test_unknown_or_inactive_package_is_not_found(
    make_competition, make_contestant, make_package, purchase_service
):
    competition = make_competition()
    contestant = make_contestant(competition)
    retired = make_package(is_active=False)

    with pytest.raises(NotFoundError):
        purchase_service.checkout(_order(competition, contestant, package_id=retired.id))
    with pytest.raises(NotFoundError):
        purchase_service.checkout(_order(competition, contestant, package_id=424242))


def test_purchase_requires_open_competition_and_member_contestant(
    make_competition, make_contestant, purchase_service, gateway
):
    closed = make_competition(status=CompetitionStatus.COMPLETED.value)
    open_one = make_competition(title="Open")
    stranger = make_contestant(closed)

    with pytest.raises(InvalidStateError):
        purchase_service.checkout(_order(closed, stranger, individual_vote_count=1))
    with pytest.raises(InvalidStateError):
        purchase_service.checkout(_order(open_one, stranger, individual_vote_count=1))
    assert gateway.requests == []


def test_replayed_transaction_credits_once(
    session, make_competition, make_contestant, make_package, purchase_service, gateway, notifier
):
    competition = make_competition()
    contestant = make_contestant(competition)
    package = make_package(vote_count=500, bonus_votes=0, price_cents=1000)
    gateway.transaction_id = "60099887766"

    first = purchase_service.checkout(_order(competition, contestant, package_id=package.id))
    second = purchase_service.checkout(_order(competition, contestant, package_id=package.id))

    session.refresh(contestant)
    assert contestant.vote_count == 500
    assert session.query(VotePurchase).count() == 1
    assert second.replayed is True
    assert second.votes_added == 0
    assert second.purchase.id == first.purchase.id
    assert len(notifier.receipts) == 1


def test_receipt_failure_keeps_credited_votes(
    session, make_competition, make_contestant, make_package, purchase_service, notifier
):
    notifier.succeed = False
    competition = make_competition()
    contestant = make_contestant(competition)
    package = make_package()

    result = purchase_service.checkout(_order(competition, contestant, package_id=package.id))

    assert result.receipt_sent is False
    assert result.attempt.state is PurchaseState.VOTES_CREDITED
    assert result.attempt.succeeded
    session.refresh(contestant)
    assert contestant.vote_count == 1300


def test_raising_notifier_does_not_fail_checkout(
    session, make_competition, make_contestant, gateway, test_settings, session_factory
):
    class ExplodingNotifier:
        def send_purchase_receipt(self, receipt):
            raise RuntimeError("smtp offline")

    service = PurchaseService(
        session,
        gateway=gateway,
        notifier=ExplodingNotifier(),
        settings=test_settings,
        audit_session_factory=session_factory,
    )
    competition = make_competition()
    contestant = make_contestant(competition)

    result = service.checkout(_order(competition, contestant, individual_vote_count=3))

    assert result.receipt_sent is False
    assert result.purchase.vote_count == 3


def test_captured_charge_is_audited(
    make_competition, make_contestant, purchase_service, session_factory
):
    competition = make_competition()
    contestant = make_contestant(competition)

    result = purchase_service.checkout(_order(competition, contestant, individual_vote_count=2))

    events = _audit_events(session_factory, EVENT_CHARGE_CAPTURED)
    assert len(events) == 1
    assert events[0].transaction_id == result.purchase.transaction_id
    assert events[0].details["votes"] == 2
    assert "payment" not in events[0].details


def test_crediting_failure_is_flagged_then_reconciled(
    session,
    make_competition,
    make_contestant,
    make_package,
    purchase_service,
    session_factory,
    notifier,
    test_settings,
    monkeypatch,
):
    competition = make_competition()
    contestant = make_contestant(competition)
    package = make_package(vote_count=100, bonus_votes=20, price_cents=500)

    def _boom(self, *args, **kwargs):
        raise OperationalError("UPDATE contestants", {}, Exception("database is locked"))

    with monkeypatch.context() as patch:
        patch.setattr(VoteRepository, "increment_counters", _boom)
        with pytest.raises(StorageError) as excinfo:
            purchase_service.checkout(_order(competition, contestant, package_id=package.id))

    assert "payment was captured" in excinfo.value.message
    assert session.query(VotePurchase).count() == 0
    flagged = _audit_events(session_factory, EVENT_RECONCILIATION_REQUIRED)
    assert len(flagged) == 1

    pending = purchase_service.pending_reconciliations()
    assert [event.transaction_id for event in pending] == [flagged[0].transaction_id]
    assert [event.event_type for event in pending] == [EVENT_RECONCILIATION_REQUIRED]
    # Once the capture event ages past the grace period it must not list the charge twice.
    assert len(purchase_service.pending_reconciliations(now=_after_grace(test_settings))) == 1

    purchase, replayed = purchase_service.reconcile(pending[0])

    assert replayed is False
    assert purchase.vote_count == 120
    session.refresh(contestant)
    assert contestant.vote_count == 120
    assert purchase_service.pending_reconciliations() == []
    assert len(_audit_events(session_factory, EVENT_RECONCILED)) == 1
    assert [receipt.transaction_id for receipt in notifier.receipts] == [purchase.transaction_id]


def test_charge_interrupted_before_crediting_is_reconciled_once(
    session, make_competition, make_contestant, purchase_service, notifier, test_settings, monkeypatch
):
    competition = make_competition()
    contestant = make_contestant(competition)

    def _crash(self, pending):
        raise RuntimeError("worker killed")

    with monkeypatch.context() as patch:
        patch.setattr(PurchaseService, "_credit", _crash)
        with pytest.raises(RuntimeError):
            purchase_service.checkout(_order(competition, contestant, individual_vote_count=7))

    assert session.query(VotePurchase).count() == 0
    # Still inside the grace period: the checkout could be crediting right now.
    assert purchase_service.pending_reconciliations() == []

    later = _after_grace(test_settings)
    pending = purchase_service.pending_reconciliations(now=later)
    assert [event.event_type for event in pending] == [EVENT_CHARGE_CAPTURED]

    purchase, replayed = purchase_service.reconcile(pending[0])

    assert replayed is False
    assert purchase.vote_count == 7
    session.refresh(contestant)
    assert contestant.vote_count == 7
    assert purchase_service.pending_reconciliations(now=later) == []
    assert [receipt.transaction_id for receipt in notifier.receipts] == [purchase.transaction_id]

    again, replayed = purchase_service.reconcile(pending[0])

    assert replayed is True
    assert again.id == purchase.id
    session.refresh(contestant)
    assert contestant.vote_count == 7
    assert len(notifier.receipts) == 1


def test_create_account_attaches_viewer_profile(
    session, make_competition, make_contestant, purchase_service
):
    competition = make_competition()
    contestant = make_contestant(competition)

    first = purchase_service.checkout(
        _order(competition, contestant, individual_vote_count=1, create_account=True)
    )
    second = purchase_service.checkout(
        _order(competition, contestant, individual_vote_count=1, create_account=True, buyer_email="jamie@example.com ")
    )

    viewers = session.query(ViewerProfile).all()
    assert len(viewers) == 1
    assert viewers[0].email == "jamie@example.com"
    assert first.purchase.viewer_id == second.purchase.viewer_id == viewers[0].id


def test_referral_code_tracks_purchased_votes(
    session, make_competition, make_contestant, purchase_service
):
    competition = make_competition()
    contestant = make_contestant(competition)
    session.add(ReferralCode(code="PROMO", owner_name="Promoter"))
    session.commit()

    result = purchase_service.checkout(
        _order(competition, contestant, individual_vote_count=7, referral_code="PROMO")
    )

    referral = session.get(ReferralCode, "PROMO")
    session.refresh(referral)
    assert result.purchase.referral_code == "PROMO"
    assert referral.total_votes_driven == 7
    assert referral.unique_voters == 1


def test_lookup_matches_name_and_email_loosely(
    make_competition, make_contestant, purchase_service
):
    competition = make_competition(title="Talent Night")
    contestant = make_contestant(competition, display_name="Ava")
    purchase_service.checkout(_order(competition, contestant, individual_vote_count=3))
    purchase_service.checkout(_order(competition, contestant, individual_vote_count=4))
    purchase_service.checkout(
        _order(competition, contestant, individual_vote_count=9, buyer_name="Someone Else")
    )

    result = purchase_service.lookup(name="  jamie rivera ", email=" JAMIE@example.COM")

    assert [purchase.vote_count for purchase in result.purchases] == [4, 3]
    assert result.total_votes_purchased == 7
    assert result.total_spent_cents == 700
    assert result.purchases[0].competition.title == "Talent Night"
    assert result.purchases[0].contestant.display_name == "Ava"


def test_lookup_without_match_is_not_found(purchase_service):
    with pytest.raises(NotFoundError) as excinfo:
        purchase_service.lookup(name="Nobody", email="nobody@example.com")
    assert excinfo.value.message == "No purchases found for that name and email"


def test_payment_config_exposes_public_values_only(purchase_service):
    config = purchase_service.payment_config()

    assert config["apiLoginId"] == "test-login"
    assert config["clientKey"] == "client-key"
    assert config["votePriceCents"] == 100
    assert "transactionKey" not in config


def test_seeded_catalogue_matches_defaults(seeded_packages, purchase_service):
    packages = purchase_service.list_packages()

    assert [(p.name, p.total_votes, p.price_cents) for p in packages] == [
        ("Starter Pack", 500, 1000),
        ("Fan Pack", 1300, 1500),
        ("Super Fan Pack", 2600, 3000),
    ]


def test_format_cents():
    assert format_cents(150000) == "$1,500.00"
    assert format_cents(5, "EUR") == "0.05 EUR"
