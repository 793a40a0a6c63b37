"""Shared repository input and result types."""

from __future__ import annotations

from dataclasses import dataclass

from talentvote.models import Contestant


@dataclass(slots=True)
class PurchaseInput:
    """Values persisted for a single captured purchase."""

    competition_id: int
    contestant_id: int
    buyer_name: str
    buyer_email: str
    description: str
    vote_count: int
    subtotal_cents: int
    tax_cents: int
    amount_cents: int
    transaction_id: str
    package_id: int | None = None
    user_id: str | None = None
    viewer_id: int | None = None
    referral_code: str | None = None


@dataclass(slots=True)
class LeaderboardRow:
    """Contestant standing with raw and weighted totals."""

    contestant: Contestant
    weighted_votes: float
    percentage: float = 0.0
    rank: int = 0


__all__ = ["LeaderboardRow", "PurchaseInput"]
