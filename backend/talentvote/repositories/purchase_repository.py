"""Purchase ledger, package catalogue and payment audit persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import and_, desc, func, or_, select
from sqlalchemy.orm import Session, joinedload

from talentvote.models import (
    PaymentAuditEvent,
    ViewerProfile,
    VotePackage,
    VotePurchase,
)

from .types import PurchaseInput


class PurchaseRepository:
    """Encapsulate vote purchase persistence logic."""

    def __init__(self, session: Session) -> None:
        self._session = session

    # ------------------------------------------------------------------
    # Packages

    def get_package(self, package_id: int) -> VotePackage | None:
        return self._session.get(VotePackage, package_id)

    def list_packages(self, *, active_only: bool = True) -> list[VotePackage]:
        query = select(VotePackage)
        if active_only:
            query = query.where(VotePackage.is_active.is_(True))
        query = query.order_by(VotePackage.position, VotePackage.id)
        return list(self._session.execute(query).scalars().all())

    # ------------------------------------------------------------------
    # Purchases

    def get_by_transaction_id(self, transaction_id: str) -> VotePurchase | None:
        query = select(VotePurchase).where(VotePurchase.transaction_id == transaction_id)
        return self._session.execute(query).scalar_one_or_none()

    def record_purchase(self, payload: PurchaseInput) -> VotePurchase:
        purchase = VotePurchase(
            competition_id=payload.competition_id,
            contestant_id=payload.contestant_id,
            user_id=payload.user_id,
            viewer_id=payload.viewer_id,
            buyer_name=payload.buyer_name,
            buyer_email=payload.buyer_email,
            package_id=payload.package_id,
            description=payload.description,
            vote_count=payload.vote_count,
            subtotal_cents=payload.subtotal_cents,
            tax_cents=payload.tax_cents,
            amount_cents=payload.amount_cents,
            transaction_id=payload.transaction_id,
            referral_code=payload.referral_code,
        )
        self._session.add(purchase)
        self._session.flush()
        return purchase

    def find_by_buyer(self, *, name: str, email: str) -> list[VotePurchase]:
        query = (
            select(VotePurchase)
            .options(joinedload(VotePurchase.competition), joinedload(VotePurchase.contestant))
            .where(
                func.lower(VotePurchase.buyer_email) == email.strip().lower(),
                func.lower(func.trim(VotePurchase.buyer_name)) == name.strip().lower(),
            )
            .order_by(desc(VotePurchase.purchased_at), desc(VotePurchase.id))
        )
        return list(self._session.execute(query).scalars().unique().all())

    def list_by_user(self, user_id: str) -> list[VotePurchase]:
        query = (
            select(VotePurchase)
            .options(joinedload(VotePurchase.competition), joinedload(VotePurchase.contestant))
            .where(VotePurchase.user_id == user_id)
            .order_by(desc(VotePurchase.purchased_at), desc(VotePurchase.id))
        )
        return list(self._session.execute(query).scalars().unique().all())

    # ------------------------------------------------------------------
    # Viewers

    def get_or_create_viewer(self, *, email: str, display_name: str) -> ViewerProfile:
        normalized_email = email.strip().lower()
        query = select(ViewerProfile).where(ViewerProfile.email == normalized_email)
        viewer = self._session.execute(query).scalar_one_or_none()
        if viewer is None:
            viewer = ViewerProfile(email=normalized_email, display_name=display_name.strip())
            self._session.add(viewer)
            self._session.flush()
        elif viewer.display_name != display_name.strip():
            viewer.display_name = display_name.strip()
        return viewer

    # ------------------------------------------------------------------
    # Audit trail

    def record_audit_event(
        self,
        *,
        event_type: str,
        transaction_id: str | None,
        competition_id: int | None = None,
        contestant_id: int | None = None,
        amount_cents: int | None = None,
        reason: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> PaymentAuditEvent:
        event = PaymentAuditEvent(
            event_type=event_type,
            transaction_id=transaction_id,
            competition_id=competition_id,
            contestant_id=contestant_id,
            amount_cents=amount_cents,
            reason=reason,
            details=details,
        )
        self._session.add(event)
        self._session.flush()
        return event

    def unreconciled_events(self, *, captured_before: datetime) -> list[PaymentAuditEvent]:
        """Charges whose transaction never produced a purchase row, one event per transaction.

        Explicit reconciliation markers are always returned. Bare capture events
        only count once they were logged before ``captured_before``, which keeps
        checkouts that are still crediting out of the list.
        """

        credited = select(VotePurchase.transaction_id)
        query = (
            select(PaymentAuditEvent)
            .where(
                or_(
                    PaymentAuditEvent.event_type == "reconciliation_required",
                    and_(
                        PaymentAuditEvent.event_type == "charge_captured",
                        PaymentAuditEvent.logged_at <= captured_before,
                    ),
                ),
                PaymentAuditEvent.transaction_id.is_not(None),
                PaymentAuditEvent.transaction_id.not_in(credited),
            )
            .order_by(PaymentAuditEvent.logged_at, PaymentAuditEvent.id)
        )
        events: dict[str, PaymentAuditEvent] = {}
        for event in self._session.execute(query).scalars():
            # Prefer the explicit marker, it carries the failure reason.
            if event.transaction_id not in events or event.event_type == "reconciliation_required":
                events[event.transaction_id] = event
        return list(events.values())


__all__ = ["PurchaseRepository"]
