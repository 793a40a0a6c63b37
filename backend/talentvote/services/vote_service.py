"""Free-vote eligibility and the shared vote recording path."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Callable

from loguru import logger
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from talentvote.core.config import Settings, get_settings
from talentvote.domain import (
    Eligibility,
    InvalidStateError,
    NotFoundError,
    PolicyViolationError,
    RateLimitedError,
    StorageError,
    ValidationError,
    VoterContext,
)
from talentvote.models import (
    ApplicationStatus,
    Competition,
    Contestant,
    Vote,
    VoteSource,
)
from talentvote.repositories import CompetitionRepository, VoteRepository

_SLOT_CONSTRAINT_MARKERS = ("uq_vote_daily_slot", "votes.daily_slot")


class DailySlotConflictError(RateLimitedError):
    """Another request claimed the same free-vote slot first."""


def _is_slot_conflict(exc: IntegrityError) -> bool:
    message = str(exc.orig) if exc.orig is not None else str(exc)
    return any(marker in message for marker in _SLOT_CONSTRAINT_MARKERS)


def calendar_day(now: datetime, settings: Settings) -> date:
    """Day used for the free-vote cap; naive datetimes are taken as UTC."""

    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(settings.vote_day_zone).date()


def parse_vote_source(value: str | VoteSource) -> VoteSource:
    if isinstance(value, VoteSource):
        return value
    try:
        return VoteSource(str(value).strip().lower())
    except ValueError as exc:
        raise ValidationError("Vote source must be 'online' or 'in_person'") from exc


class VoteRecorder:
    """Append a ledger row and bump the contestant counters in one transaction.

    Used by both the free-vote flow and purchase crediting. Nothing is
    committed here; on failure the whole transaction is rolled back so the
    caller never sees a ledger row without its counter update (or the reverse).
    """

    def __init__(self, session: Session) -> None:
        self._session = session
        self._votes = VoteRepository(session)

    def record(
        self,
        *,
        competition: Competition,
        contestant: Contestant,
        source: VoteSource,
        quantity: int,
        vote_day: date,
        voter_key: str | None = None,
        voter_ip: str | None = None,
        user_id: str | None = None,
        daily_slot: int | None = None,
        purchase_id: int | None = None,
        ref_code: str | None = None,
    ) -> Vote:
        if quantity < 1:
            raise ValidationError("Vote quantity must be at least 1")

        competition_id = competition.id
        contestant_id = contestant.id
        max_votes_per_day = competition.max_votes_per_day
        try:
            vote = self._votes.insert_vote(
                competition_id=competition_id,
                contestant_id=contestant_id,
                source=source.value,
                quantity=quantity,
                vote_day=vote_day,
                voter_key=voter_key,
                voter_ip=voter_ip,
                user_id=user_id,
                daily_slot=daily_slot,
                purchase_id=purchase_id,
                ref_code=ref_code,
            )
            self._votes.increment_counters(contestant_id, source.value, quantity)
            if ref_code and voter_key:
                self._votes.track_referral(ref_code, voter_key, quantity)
        except IntegrityError as exc:
            self._session.rollback()
            if daily_slot is not None and _is_slot_conflict(exc):
                raise DailySlotConflictError(max_votes_per_day) from exc
            logger.exception("Vote insert rejected for contestant {}", contestant_id)
            raise StorageError() from exc
        except SQLAlchemyError as exc:
            self._session.rollback()
            logger.exception("Failed to record vote for contestant {}", contestant_id)
            raise StorageError() from exc
        return vote


@dataclass(slots=True)
class VoteOutcome:
    vote: Vote
    contestant: Contestant
    votes_remaining_today: int


class VoteService:
    """Casts free votes once the eligibility rules pass."""

    def __init__(
        self,
        session: Session,
        *,
        settings: Settings | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._session = session
        self._settings = settings or get_settings()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._competitions = CompetitionRepository(session)
        self._votes = VoteRepository(session)
        self._recorder = VoteRecorder(session)

    def vote_day(self, now: datetime) -> date:
        return calendar_day(now, self._settings)

    def check_eligibility(
        self,
        competition_id: int,
        contestant_id: int,
        voter: VoterContext,
        source: VoteSource | str,
        now: datetime | None = None,
    ) -> Eligibility:
        source = parse_vote_source(source)
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

        if competition.in_person_only and source is VoteSource.ONLINE:
            raise PolicyViolationError("This competition only accepts in-person votes")

        vote_day = self.vote_day(now or self._clock())
        votes_today = self._votes.count_free_votes_on_day(competition.id, voter.voter_key, vote_day)
        if votes_today >= competition.max_votes_per_day:
            raise RateLimitedError(competition.max_votes_per_day)

        return Eligibility(
            competition=competition,
            contestant=contestant,
            vote_day=vote_day,
            votes_today=votes_today,
        )

    def cast_free_vote(
        self,
        competition_id: int,
        contestant_id: int,
        voter: VoterContext,
        *,
        source: VoteSource | str = VoteSource.ONLINE,
        ref_code: str | None = None,
    ) -> VoteOutcome:
        source = parse_vote_source(source)
        now = self._clock()

        # A lost slot race gets one fresh look at the count before giving up.
        for attempt in range(2):
            eligibility = self.check_eligibility(competition_id, contestant_id, voter, source, now)
            try:
                vote = self._recorder.record(
                    competition=eligibility.competition,
                    contestant=eligibility.contestant,
                    source=source,
                    quantity=1,
                    vote_day=eligibility.vote_day,
                    voter_key=voter.voter_key,
                    voter_ip=voter.ip_address,
                    user_id=voter.user_id,
                    daily_slot=eligibility.next_slot,
                    ref_code=ref_code,
                )
                self._session.commit()
            except DailySlotConflictError:
                if attempt == 0:
                    logger.info(
                        "Daily slot {} already taken for {}; rechecking",
                        eligibility.next_slot,
                        voter.voter_key,
                    )
                    continue
                logger.warning("Rejected vote from {}: daily slot race lost twice", voter.voter_key)
                raise
            except SQLAlchemyError as exc:
                self._session.rollback()
                logger.exception("Failed to commit vote for contestant {}", contestant_id)
                raise StorageError() from exc
            break

        contestant = eligibility.contestant
        self._session.refresh(contestant)
        remaining = max(eligibility.competition.max_votes_per_day - eligibility.votes_today - 1, 0)
        logger.info(
            "Accepted {} vote for contestant {} in competition {} from {}",
            source.value,
            contestant.id,
            competition_id,
            voter.voter_key,
        )
        return VoteOutcome(vote=vote, contestant=contestant, votes_remaining_today=remaining)


__all__ = [
    "DailySlotConflictError",
    "VoteOutcome",
    "VoteRecorder",
    "VoteService",
    "calendar_day",
    "parse_vote_source",
]
