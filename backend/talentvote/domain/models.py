"""Typed domain representations shared by services, gateways and APIs."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import TYPE_CHECKING

from .errors import InvalidStateError

if TYPE_CHECKING:
    from talentvote.models import Competition, Contestant


@dataclass(frozen=True, slots=True)
class VerifiedIdentity:
    """Identity vouched for by the identity provider."""

    uid: str
    email: str
    level: int = 1


@dataclass(frozen=True, slots=True)
class VoterContext:
    """Who is casting a free vote, resolved per request."""

    ip_address: str
    identity: VerifiedIdentity | None = None

    @property
    def voter_key(self) -> str:
        if self.identity is not None:
            return f"user:{self.identity.uid}"
        return f"ip:{self.ip_address}"

    @property
    def user_id(self) -> str | None:
        return self.identity.uid if self.identity else None


@dataclass(slots=True)
class Eligibility:
    """Outcome of a passed eligibility check."""

    competition: "Competition"
    contestant: "Contestant"
    vote_day: date
    votes_today: int

    @property
    def next_slot(self) -> int:
        return self.votes_today


@dataclass(frozen=True, slots=True)
class PriceQuote:
    """Subtotal, tax and total for a purchase, all in cents."""

    subtotal_cents: int
    tax_cents: int

    @property
    def total_cents(self) -> int:
        return self.subtotal_cents + self.tax_cents

    @property
    def total(self) -> Decimal:
        return (Decimal(self.total_cents) / 100).quantize(Decimal("0.01"))

    @classmethod
    def from_subtotal(cls, subtotal_cents: int, tax_percent: float) -> "PriceQuote":
        tax = (Decimal(subtotal_cents) * Decimal(str(tax_percent)) / Decimal(100)).quantize(
            Decimal("1"), rounding=ROUND_HALF_UP
        )
        return cls(subtotal_cents=subtotal_cents, tax_cents=int(tax))


@dataclass(frozen=True, slots=True)
class OpaquePayment:
    """Client-side tokenized payment data; never raw card details."""

    data_descriptor: str
    data_value: str

    def __repr__(self) -> str:
        return f"OpaquePayment(data_descriptor={self.data_descriptor!r}, data_value=<redacted>)"


@dataclass(frozen=True, slots=True)
class ChargeRequest:
    amount: Decimal
    currency: str
    payment: OpaquePayment
    description: str
    customer_email: str | None = None
    customer_name: str | None = None


@dataclass(frozen=True, slots=True)
class ChargeResult:
    transaction_id: str
    auth_code: str | None = None
    account_number: str | None = None
    account_type: str | None = None


@dataclass(frozen=True, slots=True)
class PurchaseReceipt:
    to: str
    buyer_name: str
    items: tuple[tuple[str, str], ...]
    total: str
    transaction_id: str
    tax: str | None = None
    competition_name: str | None = None
    contestant_name: str | None = None


class PurchaseState(str, Enum):
    INITIATED = "initiated"
    TOKEN_VALIDATED = "token_validated"
    CHARGED = "charged"
    VOTES_CREDITED = "votes_credited"
    RECEIPT_SENT = "receipt_sent"
    FAILED = "failed"


_FORWARD_TRANSITIONS: dict[PurchaseState, PurchaseState] = {
    PurchaseState.INITIATED: PurchaseState.TOKEN_VALIDATED,
    PurchaseState.TOKEN_VALIDATED: PurchaseState.CHARGED,
    PurchaseState.CHARGED: PurchaseState.VOTES_CREDITED,
    PurchaseState.VOTES_CREDITED: PurchaseState.RECEIPT_SENT,
}

TERMINAL_STATES = frozenset({PurchaseState.RECEIPT_SENT, PurchaseState.FAILED})


@dataclass(slots=True)
class PurchaseAttempt:
    """State machine for a single checkout attempt.

    A failed attempt is terminal; retries start a new attempt. Once the charge
    is captured the attempt can still fail (crediting error), but that failure
    is flagged for reconciliation instead of undoing the charge.
    """

    state: PurchaseState = PurchaseState.INITIATED
    transaction_id: str | None = None
    failure_reason: str | None = None
    history: list[tuple[PurchaseState, datetime]] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.history:
            self.history.append((self.state, datetime.now(timezone.utc)))

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def succeeded(self) -> bool:
        return self.state in (PurchaseState.VOTES_CREDITED, PurchaseState.RECEIPT_SENT)

    @property
    def charge_captured(self) -> bool:
        return self.transaction_id is not None

    @property
    def needs_reconciliation(self) -> bool:
        return self.state is PurchaseState.FAILED and self.charge_captured

    def advance(self, target: PurchaseState) -> None:
        if target is PurchaseState.FAILED:
            raise InvalidStateError("Use fail() to mark a purchase attempt as failed")
        expected = _FORWARD_TRANSITIONS.get(self.state)
        if expected is not target:
            raise InvalidStateError(
                f"Cannot move purchase from {self.state.value} to {target.value}"
            )
        self._enter(target)

    def mark_charged(self, transaction_id: str) -> None:
        self.advance(PurchaseState.CHARGED)
        self.transaction_id = transaction_id

    def fail(self, reason: str) -> None:
        if self.is_terminal:
            raise InvalidStateError(f"Purchase attempt already {self.state.value}")
        self.failure_reason = reason
        self._enter(PurchaseState.FAILED)

    def _enter(self, state: PurchaseState) -> None:
        self.state = state
        self.history.append((state, datetime.now(timezone.utc)))


def weighted_total(online_count: int, in_person_count: int, online_vote_weight: int) -> float:
    """Leaderboard score: in-person votes count fully, online votes by weight percent."""

    return in_person_count + online_count * (online_vote_weight / 100)
