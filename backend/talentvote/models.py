from __future__ import annotations

from datetime import date, datetime, timezone
from enum import Enum

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .db import Base


class CompetitionStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    VOTING = "voting"
    COMPLETED = "completed"


class ApplicationStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class VoteSource(str, Enum):
    ONLINE = "online"
    IN_PERSON = "in_person"


class InvitationStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    EXPIRED = "expired"


class UserLevel(int, Enum):
    VIEWER = 1
    TALENT = 2
    HOST = 3
    ADMIN = 4


OPEN_FOR_VOTING = frozenset({CompetitionStatus.ACTIVE.value, CompetitionStatus.VOTING.value})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(Base):
    __tablename__ = "users"

    user_id: Mapped[str] = mapped_column(String, primary_key=True)
    email: Mapped[str] = mapped_column(String, nullable=False, index=True)
    display_name: Mapped[str | None] = mapped_column(String, nullable=True)
    level: Mapped[int] = mapped_column(Integer, nullable=False, default=UserLevel.VIEWER.value)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    last_seen_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class Competition(Base):
    __tablename__ = "competitions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    category: Mapped[str] = mapped_column(String, nullable=False, index=True)
    status: Mapped[str] = mapped_column(
        String, nullable=False, default=CompetitionStatus.DRAFT.value, index=True
    )
    vote_cost: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_votes_per_day: Mapped[int] = mapped_column(Integer, nullable=False, default=10)
    online_vote_weight: Mapped[int] = mapped_column(Integer, nullable=False, default=100)
    in_person_only: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    start_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    end_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_by: Mapped[str | None] = mapped_column(String, ForeignKey("users.user_id"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    contestants: Mapped[list["Contestant"]] = relationship(
        "Contestant", back_populates="competition", cascade="all, delete-orphan"
    )

    @property
    def is_open_for_voting(self) -> bool:
        return self.status in OPEN_FOR_VOTING


class Contestant(Base):
    __tablename__ = "contestants"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    competition_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("competitions.id"), nullable=False, index=True
    )
    talent_profile_id: Mapped[int] = mapped_column(Integer, nullable=False)
    user_id: Mapped[str | None] = mapped_column(String, ForeignKey("users.user_id"), nullable=True)
    display_name: Mapped[str] = mapped_column(String, nullable=False)
    application_status: Mapped[str] = mapped_column(
        String, nullable=False, default=ApplicationStatus.PENDING.value
    )
    vote_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    online_vote_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    in_person_vote_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    applied_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    competition: Mapped[Competition] = relationship("Competition", back_populates="contestants")

    __table_args__ = (
        UniqueConstraint("competition_id", "talent_profile_id", name="uq_contestant_application"),
    )


class Vote(Base):
    """Append-only vote ledger; one row per accepted vote action."""

    __tablename__ = "votes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    contestant_id: Mapped[int] = mapped_column(Integer, ForeignKey("contestants.id"), nullable=False)
    competition_id: Mapped[int] = mapped_column(Integer, ForeignKey("competitions.id"), nullable=False)
    voter_key: Mapped[str | None] = mapped_column(String, nullable=True)
    voter_ip: Mapped[str | None] = mapped_column(String, nullable=True)
    user_id: Mapped[str | None] = mapped_column(String, nullable=True)
    source: Mapped[str] = mapped_column(String, nullable=False, default=VoteSource.ONLINE.value)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    vote_day: Mapped[date] = mapped_column(Date, nullable=False)
    daily_slot: Mapped[int | None] = mapped_column(Integer, nullable=True)
    purchase_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("vote_purchases.id"), nullable=True
    )
    ref_code: Mapped[str | None] = mapped_column(String, nullable=True)
    voted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        # Free votes claim a numbered slot per voter and day; NULL slots
        # (purchased votes) never collide.
        UniqueConstraint(
            "competition_id", "voter_key", "vote_day", "daily_slot", name="uq_vote_daily_slot"
        ),
        Index("ix_votes_competition_voter_day", "competition_id", "voter_key", "vote_day"),
        Index("ix_votes_contestant", "contestant_id"),
    )


class VotePackage(Base):
    __tablename__ = "vote_packages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    vote_count: Mapped[int] = mapped_column(Integer, nullable=False)
    bonus_votes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    price_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    @property
    def total_votes(self) -> int:
        return self.vote_count + self.bonus_votes


class ViewerProfile(Base):
    __tablename__ = "viewer_profiles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    display_name: Mapped[str] = mapped_column(String, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class VotePurchase(Base):
    __tablename__ = "vote_purchases"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    competition_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("competitions.id"), nullable=False, index=True
    )
    contestant_id: Mapped[int] = mapped_column(Integer, ForeignKey("contestants.id"), nullable=False)
    user_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    viewer_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("viewer_profiles.id"), nullable=True
    )
    buyer_name: Mapped[str] = mapped_column(String, nullable=False)
    buyer_email: Mapped[str] = mapped_column(String, nullable=False, index=True)
    package_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("vote_packages.id"), nullable=True
    )
    description: Mapped[str] = mapped_column(String, nullable=False)
    vote_count: Mapped[int] = mapped_column(Integer, nullable=False)
    subtotal_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    tax_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    transaction_id: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    referral_code: Mapped[str | None] = mapped_column(String, nullable=True)
    purchased_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    competition: Mapped[Competition] = relationship("Competition")
    contestant: Mapped[Contestant] = relationship("Contestant")


class PaymentAuditEvent(Base):
    """Durable trail of gateway outcomes, written outside the crediting transaction."""

    __tablename__ = "payment_audit_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_type: Mapped[str] = mapped_column(String, nullable=False, index=True)
    transaction_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    competition_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    contestant_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    amount_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    details: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    logged_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class Invitation(Base):
    __tablename__ = "invitations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    token: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    invited_by: Mapped[str] = mapped_column(String, ForeignKey("users.user_id"), nullable=False)
    invited_email: Mapped[str] = mapped_column(String, nullable=False)
    invited_name: Mapped[str] = mapped_column(String, nullable=False)
    target_level: Mapped[int] = mapped_column(Integer, nullable=False)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String, nullable=False, default=InvitationStatus.PENDING.value)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    accepted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    accepted_by: Mapped[str | None] = mapped_column(String, nullable=True)


class ReferralCode(Base):
    __tablename__ = "referral_codes"

    code: Mapped[str] = mapped_column(String, primary_key=True)
    owner_id: Mapped[str | None] = mapped_column(String, nullable=True)
    owner_name: Mapped[str] = mapped_column(String, nullable=False)
    contestant_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    total_votes_driven: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    unique_voters: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class ReferralVoter(Base):
    __tablename__ = "referral_voters"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(String, ForeignKey("referral_codes.code"), nullable=False)
    voter_key: Mapped[str] = mapped_column(String, nullable=False)

    __table_args__ = (
        Index("ix_referral_voters_code_voter", "code", "voter_key"),
    )
