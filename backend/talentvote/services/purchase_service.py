"""Vote purchases: quote, charge, credit and notify.

A captured charge is never undone here. Once the gateway returns a
transaction id the outcome is written to the payment audit trail in its own
transaction, so a crediting failure leaves a durable reconciliation marker
even though the purchase transaction was rolled back.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from loguru import logger
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from talentvote.core.config import Settings, get_settings
from talentvote.domain import (
    ChargeRequest,
    DomainError,
    InvalidStateError,
    NotFoundError,
    OpaquePayment,
    PaymentError,
    PriceQuote,
    PurchaseAttempt,
    PurchaseReceipt,
    PurchaseState,
    StorageError,
    ValidationError,
)
from talentvote.models import (
    ApplicationStatus,
    Competition,
    Contestant,
    PaymentAuditEvent,
    VotePackage,
    VotePurchase,
    VoteSource,
)
from talentvote.repositories import CompetitionRepository, PurchaseInput, PurchaseRepository

from .notifications import ReceiptNotifier
from .payments import PaymentGateway
from .vote_service import VoteRecorder, calendar_day

EVENT_CHARGE_CAPTURED = "charge_captured"
EVENT_RECONCILIATION_REQUIRED = "reconciliation_required"
EVENT_RECONCILED = "reconciled"


def format_cents(cents: int, currency: str = "USD") -> str:
    amount = f"{cents / 100:,.2f}"
    return f"${amount}" if currency.upper() == "USD" else f"{amount} {currency.upper()}"


@dataclass(slots=True)
class CheckoutOrder:
    competition_id: int
    contestant_id: int
    buyer_name: str
    buyer_email: str
    payment: OpaquePayment
    package_id: int | None = None
    individual_vote_count: int | None = None
    referral_code: str | None = None
    create_account: bool = False
    user_id: str | None = None


@dataclass(slots=True)
class PurchasePlan:
    """Priced line item: what is bought and how many votes it credits."""

    description: str
    votes: int
    quote: PriceQuote
    package_id: int | None = None


@dataclass(slots=True)
class PendingCredit:
    """Everything needed to credit a captured charge, also stored on audit events."""

    transaction_id: str
    competition_id: int
    contestant_id: int
    buyer_name: str
    buyer_email: str
    description: str
    votes: int
    subtotal_cents: int
    tax_cents: int
    package_id: int | None = None
    user_id: str | None = None
    referral_code: str | None = None
    create_account: bool = False

    @property
    def amount_cents(self) -> int:
        return self.subtotal_cents + self.tax_cents

    @property
    def voter_key(self) -> str:
        if self.user_id:
            return f"user:{self.user_id}"
        return f"email:{self.buyer_email.strip().lower()}"

    def to_details(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_event(cls, event: PaymentAuditEvent) -> "PendingCredit":
        details = dict(event.details or {})
        if not event.transaction_id or not details:
            raise ValidationError(f"Audit event {event.id} has no purchase details to credit")
        details["transaction_id"] = event.transaction_id
        return cls(**details)


@dataclass(slots=True)
class CheckoutResult:
    purchase: VotePurchase
    attempt: PurchaseAttempt
    votes_added: int
    receipt_sent: bool
    replayed: bool = False


@dataclass(slots=True)
class LookupResult:
    purchases: list[VotePurchase]
    total_votes_purchased: int
    total_spent_cents: int


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _default_audit_factory() -> sessionmaker[Session]:
    from talentvote.db import SessionLocal

    return SessionLocal


class PurchaseService:
    """Coordinates the gateway, the purchase ledger and the vote recorder."""

    def __init__(
        self,
        session: Session,
        *,
        gateway: PaymentGateway,
        notifier: ReceiptNotifier,
        settings: Settings | None = None,
        audit_session_factory: sessionmaker[Session] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._session = session
        self._gateway = gateway
        self._notifier = notifier
        self._settings = settings or get_settings()
        self._audit_factory = audit_session_factory or _default_audit_factory()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._competitions = CompetitionRepository(session)
        self._purchases = PurchaseRepository(session)
        self._recorder = VoteRecorder(session)

    # ------------------------------------------------------------------
    # Catalogue and pricing

    def list_packages(self) -> list[VotePackage]:
        return self._purchases.list_packages(active_only=True)

    def payment_config(self) -> dict[str, Any]:
        config: dict[str, Any] = dict(self._gateway.public_config())
        config.update(
            {
                "currency": self._settings.currency,
                "votePriceCents": self._settings.vote_price_cents,
                "salesTaxPercent": self._settings.sales_tax_percent,
                "individualVoteMin": self._settings.individual_vote_min,
                "individualVoteMax": self._settings.individual_vote_max,
            }
        )
        return config

    def quote(
        self,
        competition: Competition,
        *,
        package_id: int | None = None,
        individual_vote_count: int | None = None,
    ) -> PurchasePlan:
        if (package_id is None) == (individual_vote_count is None):
            raise ValidationError("Choose either a vote package or an individual vote count")

        tax_percent = self._settings.sales_tax_percent
        if package_id is not None:
            package = self._purchases.get_package(package_id)
            if package is None or not package.is_active:
                raise NotFoundError("Vote package not found")
            return PurchasePlan(
                description=package.name,
                votes=package.total_votes,
                quote=PriceQuote.from_subtotal(package.price_cents, tax_percent),
                package_id=package.id,
            )

        low, high = self._settings.individual_vote_min, self._settings.individual_vote_max
        if not low <= individual_vote_count <= high:
            raise ValidationError(f"Vote count must be between {low:,} and {high:,}")
        unit_price = competition.vote_cost or self._settings.vote_price_cents
        label = "Vote" if individual_vote_count == 1 else "Votes"
        return PurchasePlan(
            description=f"{individual_vote_count:,} {label}",
            votes=individual_vote_count,
            quote=PriceQuote.from_subtotal(unit_price * individual_vote_count, tax_percent),
        )

    # ------------------------------------------------------------------
    # Checkout

    def checkout(self, order: CheckoutOrder) -> CheckoutResult:
        attempt = PurchaseAttempt()
        competition, contestant = self._load_target(order.competition_id, order.contestant_id)
        plan = self.quote(
            competition,
            package_id=order.package_id,
            individual_vote_count=order.individual_vote_count,
        )
        buyer_name = order.buyer_name.strip()
        buyer_email = order.buyer_email.strip()
        if not buyer_name or not buyer_email:
            raise ValidationError("Name and email are required")
        if not order.payment.data_descriptor or not order.payment.data_value:
            raise ValidationError("Payment token is missing")
        attempt.advance(PurchaseState.TOKEN_VALIDATED)

        charge_request = ChargeRequest(
            amount=plan.quote.total,
            currency=self._settings.currency,
            payment=order.payment,
            description=f"{plan.description} for {contestant.display_name}",
            customer_email=buyer_email,
            customer_name=buyer_name,
        )
        try:
            charge = self._gateway.charge(charge_request)
        except PaymentError as exc:
            attempt.fail(exc.message)
            logger.warning(
                "Charge declined for contestant {} in competition {}: {}",
                contestant.id,
                competition.id,
                exc.message,
            )
            raise
        attempt.mark_charged(charge.transaction_id)
        logger.info("Captured charge {} for {}", charge.transaction_id, format_cents(plan.quote.total_cents))

        pending = PendingCredit(
            transaction_id=charge.transaction_id,
            competition_id=competition.id,
            contestant_id=contestant.id,
            buyer_name=buyer_name,
            buyer_email=buyer_email,
            description=plan.description,
            votes=plan.votes,
            subtotal_cents=plan.quote.subtotal_cents,
            tax_cents=plan.quote.tax_cents,
            package_id=plan.package_id,
            user_id=order.user_id,
            referral_code=order.referral_code or None,
            create_account=order.create_account,
        )
        self._audit(EVENT_CHARGE_CAPTURED, pending)

        try:
            purchase, replayed = self._credit(pending)
        except DomainError as exc:
            attempt.fail(exc.message)
            logger.error(
                "Charge {} captured but votes were not credited; reconciliation required",
                pending.transaction_id,
            )
            self._audit(EVENT_RECONCILIATION_REQUIRED, pending, reason=exc.message)
            raise StorageError(
                f"Your payment was captured (transaction {pending.transaction_id}) but your votes "
                "could not be recorded yet. They will be credited shortly."
            ) from exc
        attempt.advance(PurchaseState.VOTES_CREDITED)

        receipt_sent = False
        if not replayed:
            receipt_sent = self._send_receipt(purchase, competition, contestant)
            if receipt_sent:
                attempt.advance(PurchaseState.RECEIPT_SENT)

        return CheckoutResult(
            purchase=purchase,
            attempt=attempt,
            votes_added=0 if replayed else purchase.vote_count,
            receipt_sent=receipt_sent,
            replayed=replayed,
        )

    # ------------------------------------------------------------------
    # Ledger queries

    def lookup(self, *, name: str, email: str) -> LookupResult:
        if not name.strip() or not email.strip():
            raise ValidationError("Name and email are required")
        purchases = self._purchases.find_by_buyer(name=name, email=email)
        if not purchases:
            raise NotFoundError("No purchases found for that name and email")
        return LookupResult(
            purchases=purchases,
            total_votes_purchased=sum(purchase.vote_count for purchase in purchases),
            total_spent_cents=sum(purchase.amount_cents for purchase in purchases),
        )

    def list_user_purchases(self, user_id: str) -> list[VotePurchase]:
        return self._purchases.list_by_user(user_id)

    # ------------------------------------------------------------------
    # Reconciliation

    def pending_reconciliations(self, *, now: datetime | None = None) -> list[PaymentAuditEvent]:
        """Captured charges with no purchase row, past the in-flight grace period."""

        grace = timedelta(minutes=self._settings.reconciliation_grace_minutes)
        cutoff = _as_utc(now or self._clock()) - grace
        return self._purchases.unreconciled_events(captured_before=cutoff)

    def reconcile(self, event: PaymentAuditEvent) -> tuple[VotePurchase, bool]:
        """Credit a captured charge listed by ``pending_reconciliations``."""

        pending = PendingCredit.from_event(event)
        purchase, replayed = self._credit(pending)
        self._audit(EVENT_RECONCILED, pending, reason=f"Resolved audit event {event.id}")
        logger.info("Reconciled transaction {} ({} votes)", pending.transaction_id, purchase.vote_count)
        if not replayed:
            self._send_receipt(purchase, purchase.competition, purchase.contestant)
        return purchase, replayed

    # ------------------------------------------------------------------
    # Internals

    def _load_target(self, competition_id: int, contestant_id: int) -> tuple[Competition, Contestant]:
        competition = self._competitions.get_competition(competition_id)
        if competition is None:
            raise NotFoundError("Competition not found")
        if not competition.is_open_for_voting:
            raise InvalidStateError("Voting is not open for this competition")
        contestant = self._competitions.get_contestant(contestant_id)
        if contestant is None or contestant.competition_id != competition.id:
            raise InvalidStateError("Contestant is not part of this competition")
        if contestant.application_status != ApplicationStatus.APPROVED.value:
            raise InvalidStateError("Contestant is not approved for voting")
        return competition, contestant

    def _credit(self, pending: PendingCredit) -> tuple[VotePurchase, bool]:
        existing = self._purchases.get_by_transaction_id(pending.transaction_id)
        if existing is not None:
            logger.info("Transaction {} already credited; returning existing purchase", pending.transaction_id)
            return existing, True

        competition = self._competitions.get_competition(pending.competition_id)
        contestant = self._competitions.get_contestant(pending.contestant_id)
        if competition is None or contestant is None:
            raise NotFoundError("Competition or contestant no longer exists")

        try:
            viewer_id = None
            if pending.create_account:
                viewer = self._purchases.get_or_create_viewer(
                    email=pending.buyer_email, display_name=pending.buyer_name
                )
                viewer_id = viewer.id
            purchase = self._purchases.record_purchase(
                PurchaseInput(
                    competition_id=pending.competition_id,
                    contestant_id=pending.contestant_id,
                    buyer_name=pending.buyer_name,
                    buyer_email=pending.buyer_email,
                    description=pending.description,
                    vote_count=pending.votes,
                    subtotal_cents=pending.subtotal_cents,
                    tax_cents=pending.tax_cents,
                    amount_cents=pending.amount_cents,
                    transaction_id=pending.transaction_id,
                    package_id=pending.package_id,
                    user_id=pending.user_id,
                    viewer_id=viewer_id,
                    referral_code=pending.referral_code,
                )
            )
            self._recorder.record(
                competition=competition,
                contestant=contestant,
                source=VoteSource.ONLINE,
                quantity=pending.votes,
                vote_day=calendar_day(self._clock(), self._settings),
                voter_key=pending.voter_key,
                user_id=pending.user_id,
                purchase_id=purchase.id,
                ref_code=pending.referral_code,
            )
            self._session.commit()
        except IntegrityError as exc:
            # A concurrent request may have credited the same transaction first.
            self._session.rollback()
            existing = self._purchases.get_by_transaction_id(pending.transaction_id)
            if existing is not None:
                return existing, True
            logger.exception("Purchase insert rejected for transaction {}", pending.transaction_id)
            raise StorageError() from exc
        except SQLAlchemyError as exc:
            self._session.rollback()
            logger.exception("Failed to credit transaction {}", pending.transaction_id)
            raise StorageError() from exc

        self._session.refresh(contestant)
        logger.info(
            "Credited {} votes to contestant {} for transaction {}",
            pending.votes,
            contestant.id,
            pending.transaction_id,
        )
        return purchase, False

    def _audit(self, event_type: str, pending: PendingCredit, *, reason: str | None = None) -> None:
        session = self._audit_factory()
        try:
            PurchaseRepository(session).record_audit_event(
                event_type=event_type,
                transaction_id=pending.transaction_id,
                competition_id=pending.competition_id,
                contestant_id=pending.contestant_id,
                amount_cents=pending.amount_cents,
                reason=reason,
                details=pending.to_details(),
            )
            session.commit()
        except SQLAlchemyError:
            session.rollback()
            # The charge already happened; the log line is the remaining trail.
            logger.exception(
                "Failed to write {} audit event for transaction {} ({} votes, {} cents)",
                event_type,
                pending.transaction_id,
                pending.votes,
                pending.amount_cents,
            )
        finally:
            session.close()

    def _send_receipt(
        self, purchase: VotePurchase, competition: Competition, contestant: Contestant
    ) -> bool:
        receipt = self._build_receipt(purchase, competition, contestant)
        try:
            return self._notifier.send_purchase_receipt(receipt)
        except Exception:  # noqa: BLE001
            logger.exception("Receipt notifier raised for transaction {}", purchase.transaction_id)
            return False

    def _build_receipt(
        self, purchase: VotePurchase, competition: Competition, contestant: Contestant
    ) -> PurchaseReceipt:
        currency = self._settings.currency
        return PurchaseReceipt(
            to=purchase.buyer_email,
            buyer_name=purchase.buyer_name,
            items=((purchase.description, format_cents(purchase.subtotal_cents, currency)),),
            total=format_cents(purchase.amount_cents, currency),
            transaction_id=purchase.transaction_id,
            tax=format_cents(purchase.tax_cents, currency) if purchase.tax_cents else None,
            competition_name=competition.title,
            contestant_name=contestant.display_name,
        )


__all__ = [
    "CheckoutOrder",
    "CheckoutResult",
    "EVENT_CHARGE_CAPTURED",
    "EVENT_RECONCILED",
    "EVENT_RECONCILIATION_REQUIRED",
    "LookupResult",
    "PendingCredit",
    "PurchasePlan",
    "PurchaseService",
    "format_cents",
]
