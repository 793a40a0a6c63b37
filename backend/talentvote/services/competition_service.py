"""Competition management plus the leaderboard and analytics reads."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from loguru import logger
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from talentvote.domain import (
    InvalidStateError,
    NotFoundError,
    PermissionDeniedError,
    StorageError,
    ValidationError,
    VerifiedIdentity,
    weighted_total,
)
from talentvote.models import (
    ApplicationStatus,
    Competition,
    CompetitionStatus,
    Contestant,
    UserLevel,
)
from talentvote.repositories import CompetitionRepository, LeaderboardRow

EDITABLE_FIELDS = frozenset(
    {
        "title",
        "description",
        "category",
        "status",
        "vote_cost",
        "max_votes_per_day",
        "online_vote_weight",
        "in_person_only",
        "start_date",
        "end_date",
    }
)


@dataclass(slots=True)
class CompetitionDetail:
    competition: Competition
    contestants: list[Contestant]
    total_votes: int


@dataclass(slots=True)
class Leaderboard:
    competition: Competition
    rows: list[LeaderboardRow]
    total_weighted_votes: float


@dataclass(slots=True)
class CompetitionReport:
    leaderboard: Leaderboard
    total_votes: int
    online_votes: int
    in_person_votes: int
    purchase_count: int
    purchased_votes: int
    revenue_cents: int


def _validate_fields(fields: dict[str, Any]) -> dict[str, Any]:
    unknown = set(fields) - EDITABLE_FIELDS
    if unknown:
        raise ValidationError(f"Unknown competition fields: {', '.join(sorted(unknown))}")

    cleaned = dict(fields)
    if "status" in cleaned:
        try:
            cleaned["status"] = CompetitionStatus(cleaned["status"]).value
        except ValueError as exc:
            allowed = ", ".join(status.value for status in CompetitionStatus)
            raise ValidationError(f"Status must be one of: {allowed}") from exc
    if "title" in cleaned and not str(cleaned["title"] or "").strip():
        raise ValidationError("Title is required")
    if "category" in cleaned and not str(cleaned["category"] or "").strip():
        raise ValidationError("Category is required")
    if "max_votes_per_day" in cleaned and cleaned["max_votes_per_day"] < 1:
        raise ValidationError("Max votes per day must be at least 1")
    if "online_vote_weight" in cleaned and not 0 <= cleaned["online_vote_weight"] <= 100:
        raise ValidationError("Online vote weight must be between 0 and 100")
    if "vote_cost" in cleaned and cleaned["vote_cost"] < 0:
        raise ValidationError("Vote cost cannot be negative")
    return cleaned


class CompetitionService:
    """Host and admin operations over competitions and their contestants."""

    def __init__(self, session: Session) -> None:
        self._session = session
        self._repo = CompetitionRepository(session)

    # ------------------------------------------------------------------
    # Reads

    def list_competitions(
        self, *, status: str | None = None, category: str | None = None
    ) -> list[Competition]:
        return self._repo.list_competitions(status=status, category=category)

    def get_competition(self, competition_id: int) -> Competition:
        competition = self._repo.get_competition(competition_id)
        if competition is None:
            raise NotFoundError("Competition not found")
        return competition

    def get_detail(self, competition_id: int) -> CompetitionDetail:
        competition = self.get_competition(competition_id)
        return CompetitionDetail(
            competition=competition,
            contestants=self._repo.list_contestants(competition_id),
            total_votes=self._repo.total_votes(competition_id),
        )

    def leaderboard(self, competition_id: int) -> Leaderboard:
        competition = self.get_competition(competition_id)
        contestants = self._repo.list_contestants(
            competition_id, application_status=ApplicationStatus.APPROVED.value
        )
        rows = [
            LeaderboardRow(
                contestant=contestant,
                weighted_votes=weighted_total(
                    contestant.online_vote_count,
                    contestant.in_person_vote_count,
                    competition.online_vote_weight,
                ),
            )
            for contestant in contestants
        ]
        rows.sort(key=lambda row: (-row.weighted_votes, -row.contestant.vote_count, row.contestant.id))

        total = sum(row.weighted_votes for row in rows)
        for position, row in enumerate(rows, start=1):
            row.rank = position
            row.percentage = round(row.weighted_votes / total * 100, 2) if total else 0.0
        return Leaderboard(competition=competition, rows=rows, total_weighted_votes=total)

    def report(self, competition_id: int, actor: VerifiedIdentity) -> CompetitionReport:
        competition = self.get_competition(competition_id)
        self._ensure_manager(competition, actor)
        board = self.leaderboard(competition_id)
        purchase_count, purchased_votes, revenue_cents = self._repo.purchase_totals(competition_id)
        return CompetitionReport(
            leaderboard=board,
            total_votes=sum(row.contestant.vote_count for row in board.rows),
            online_votes=sum(row.contestant.online_vote_count for row in board.rows),
            in_person_votes=sum(row.contestant.in_person_vote_count for row in board.rows),
            purchase_count=purchase_count,
            purchased_votes=purchased_votes,
            revenue_cents=revenue_cents,
        )

    # ------------------------------------------------------------------
    # Mutations

    def create_competition(self, actor: VerifiedIdentity, fields: dict[str, Any]) -> Competition:
        if actor.level < UserLevel.HOST:
            raise PermissionDeniedError("Only hosts can create competitions")
        cleaned = _validate_fields(fields)
        for required in ("title", "category"):
            if required not in cleaned:
                raise ValidationError(f"{required.capitalize()} is required")
        competition = self._repo.create_competition(created_by=actor.uid, **cleaned)
        self._commit("create competition")
        logger.info("Competition {} created by {}", competition.id, actor.uid)
        return competition

    def update_competition(
        self, competition_id: int, actor: VerifiedIdentity, changes: dict[str, Any]
    ) -> Competition:
        competition = self.get_competition(competition_id)
        self._ensure_manager(competition, actor)
        if competition.status == CompetitionStatus.COMPLETED.value and actor.level < UserLevel.ADMIN:
            raise InvalidStateError("Completed competitions can no longer be edited")
        cleaned = _validate_fields(changes)
        self._repo.update_competition(competition, cleaned)
        self._commit("update competition")
        logger.info("Competition {} updated by {}: {}", competition.id, actor.uid, sorted(cleaned))
        return competition

    def apply(
        self,
        competition_id: int,
        actor: VerifiedIdentity,
        *,
        talent_profile_id: int,
        display_name: str,
    ) -> Contestant:
        competition = self.get_competition(competition_id)
        if competition.status == CompetitionStatus.COMPLETED.value:
            raise InvalidStateError("This competition has ended")
        if not display_name.strip():
            raise ValidationError("Display name is required")
        if self._repo.find_application(competition_id, talent_profile_id) is not None:
            raise InvalidStateError("This talent profile has already applied")

        try:
            contestant = self._repo.add_contestant(
                competition_id=competition_id,
                talent_profile_id=talent_profile_id,
                display_name=display_name.strip(),
                user_id=actor.uid,
            )
            self._session.commit()
        except IntegrityError as exc:
            self._session.rollback()
            raise InvalidStateError("This talent profile has already applied") from exc
        except SQLAlchemyError as exc:
            self._session.rollback()
            logger.exception("Failed to save application for competition {}", competition_id)
            raise StorageError() from exc
        return contestant

    def set_contestant_status(
        self, contestant_id: int, actor: VerifiedIdentity, status: str
    ) -> Contestant:
        contestant = self._repo.get_contestant(contestant_id)
        if contestant is None:
            raise NotFoundError("Contestant not found")
        self._ensure_manager(contestant.competition, actor)
        try:
            normalized = ApplicationStatus(status).value
        except ValueError as exc:
            raise ValidationError("Status must be one of: pending, approved, rejected") from exc
        self._repo.set_application_status(contestant, normalized)
        self._commit("update application")
        return contestant

    # ------------------------------------------------------------------
    # Internals

    @staticmethod
    def _ensure_manager(competition: Competition, actor: VerifiedIdentity) -> None:
        if actor.level >= UserLevel.ADMIN:
            return
        if actor.level >= UserLevel.HOST and competition.created_by == actor.uid:
            return
        raise PermissionDeniedError("You do not manage this competition")

    def _commit(self, action: str) -> None:
        try:
            self._session.commit()
        except SQLAlchemyError as exc:
            self._session.rollback()
            logger.exception("Failed to {}", action)
            raise StorageError() from exc


__all__ = [
    "CompetitionDetail",
    "CompetitionReport",
    "CompetitionService",
    "Leaderboard",
]
