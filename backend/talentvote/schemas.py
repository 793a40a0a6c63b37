from datetime import date, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from pydantic.alias_generators import to_camel


class ApiModel(BaseModel):
    """Base for API payloads; the browser client speaks camelCase."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class ErrorResponse(ApiModel):
    code: str
    message: str


# ----------------------------------------------------------------------
# Users and invitations


class UserSync(ApiModel):
    display_name: str | None = None
    invite_token: str | None = None


class User(ApiModel):
    user_id: str
    email: str
    display_name: str | None = None
    level: int
    created_at: datetime
    last_seen_at: datetime


class InvitationCreate(ApiModel):
    email: EmailStr
    name: str = Field(min_length=1)
    target_level: int = Field(ge=1, le=4)
    message: str | None = None


class Invitation(ApiModel):
    id: int
    token: str
    invited_by: str
    invited_email: str
    invited_name: str
    target_level: int
    message: str | None = None
    status: str
    created_at: datetime
    accepted_at: datetime | None = None


# ----------------------------------------------------------------------
# Competitions


class CompetitionCreate(ApiModel):
    title: str = Field(min_length=1)
    description: str | None = None
    category: str = Field(min_length=1)
    status: str = "draft"
    vote_cost: int = Field(default=0, ge=0)
    max_votes_per_day: int = Field(default=10, ge=1)
    online_vote_weight: int = Field(default=100, ge=0, le=100)
    in_person_only: bool = False
    start_date: datetime | None = None
    end_date: datetime | None = None


class CompetitionUpdate(ApiModel):
    title: str | None = None
    description: str | None = None
    category: str | None = None
    status: str | None = None
    vote_cost: int | None = Field(default=None, ge=0)
    max_votes_per_day: int | None = Field(default=None, ge=1)
    online_vote_weight: int | None = Field(default=None, ge=0, le=100)
    in_person_only: bool | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None


class Competition(ApiModel):
    id: int
    title: str
    description: str | None = None
    category: str
    status: str
    vote_cost: int
    max_votes_per_day: int
    online_vote_weight: int
    in_person_only: bool
    start_date: datetime | None = None
    end_date: datetime | None = None
    created_by: str | None = None
    created_at: datetime


class Contestant(ApiModel):
    id: int
    competition_id: int
    talent_profile_id: int
    display_name: str
    application_status: str
    vote_count: int
    online_vote_count: int
    in_person_vote_count: int
    applied_at: datetime


class CompetitionDetail(Competition):
    contestants: list[Contestant] = Field(default_factory=list)
    total_votes: int = 0


class ContestantApply(ApiModel):
    talent_profile_id: int
    display_name: str = Field(min_length=1)


class ContestantStatusUpdate(ApiModel):
    status: str


class LeaderboardEntry(ApiModel):
    rank: int
    contestant_id: int
    display_name: str
    vote_count: int
    online_vote_count: int
    in_person_vote_count: int
    weighted_votes: float
    percentage: float


class Leaderboard(ApiModel):
    competition_id: int
    online_vote_weight: int
    total_weighted_votes: float
    entries: list[LeaderboardEntry]


class CompetitionReport(ApiModel):
    competition_id: int
    leaderboard: list[LeaderboardEntry]
    total_votes: int
    online_votes: int
    in_person_votes: int
    purchase_count: int
    purchased_votes: int
    revenue_cents: int


# ----------------------------------------------------------------------
# Votes


class VoteRequest(ApiModel):
    contestant_id: int
    source: str = "online"
    ref_code: str | None = None


class Vote(ApiModel):
    id: int
    competition_id: int
    contestant_id: int
    source: str
    quantity: int
    vote_day: date
    voted_at: datetime


class VoteResponse(ApiModel):
    vote: Vote
    contestant: Contestant
    votes_remaining_today: int


# ----------------------------------------------------------------------
# Purchases


class VotePackage(ApiModel):
    id: int
    name: str
    description: str | None = None
    vote_count: int
    bonus_votes: int
    total_votes: int
    price_cents: int


class CheckoutRequest(ApiModel):
    name: str = Field(min_length=1)
    email: EmailStr
    competition_id: int
    contestant_id: int
    package_id: int | None = None
    individual_vote_count: int | None = None
    data_descriptor: str = Field(min_length=1)
    data_value: str = Field(min_length=1)
    referral_code: str | None = None
    create_account: bool = False

    @field_validator("referral_code", mode="before")
    @classmethod
    def _blank_referral_is_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value


class VotePurchase(ApiModel):
    id: int
    competition_id: int
    contestant_id: int
    competition_title: str | None = None
    contestant_name: str | None = None
    description: str
    vote_count: int
    subtotal_cents: int
    tax_cents: int
    amount_cents: int
    transaction_id: str
    referral_code: str | None = None
    purchased_at: datetime

    @classmethod
    def from_record(cls, record: Any) -> "VotePurchase":
        payload = cls.model_validate(record)
        return payload.model_copy(
            update={
                "competition_title": record.competition.title if record.competition else None,
                "contestant_name": record.contestant.display_name if record.contestant else None,
            }
        )


class CheckoutResponse(ApiModel):
    purchase: VotePurchase
    transaction_id: str
    votes_added: int
    receipt_sent: bool


class LookupRequest(ApiModel):
    name: str = Field(min_length=1)
    email: str = Field(min_length=3)


class LookupResponse(ApiModel):
    purchases: list[VotePurchase]
    total_votes_purchased: int
    total_spent_cents: int
    total_spent: float


class PaymentConfig(ApiModel):
    api_login_id: str | None = None
    client_key: str | None = None
    environment: str
    currency: str
    vote_price_cents: int
    sales_tax_percent: float
    individual_vote_min: int
    individual_vote_max: int
