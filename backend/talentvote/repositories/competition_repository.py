"""Competition and contestant data access helpers."""

from __future__ import annotations

from typing import Any

from sqlalchemy import asc, desc, func, select
from sqlalchemy.orm import Session

from talentvote.models import Competition, Contestant, VotePurchase


class CompetitionRepository:
    """Encapsulate competition and contestant persistence concerns."""

    def __init__(self, session: Session) -> None:
        self._session = session

    # ------------------------------------------------------------------
    # Mutations

    def create_competition(self, **fields: Any) -> Competition:
        competition = Competition(**fields)
        self._session.add(competition)
        self._session.flush()
        return competition

    def update_competition(self, competition: Competition, changes: dict[str, Any]) -> Competition:
        for key, value in changes.items():
            setattr(competition, key, value)
        self._session.flush()
        return competition

    def add_contestant(
        self,
        *,
        competition_id: int,
        talent_profile_id: int,
        display_name: str,
        user_id: str | None,
    ) -> Contestant:
        contestant = Contestant(
            competition_id=competition_id,
            talent_profile_id=talent_profile_id,
            display_name=display_name,
            user_id=user_id,
        )
        self._session.add(contestant)
        self._session.flush()
        return contestant

    def set_application_status(self, contestant: Contestant, status: str) -> Contestant:
        contestant.application_status = status
        self._session.flush()
        return contestant

    # ------------------------------------------------------------------
    # Queries

    def get_competition(self, competition_id: int) -> Competition | None:
        return self._session.get(Competition, competition_id)

    def list_competitions(
        self,
        *,
        status: str | None = None,
        category: str | None = None,
    ) -> list[Competition]:
        query = select(Competition)
        if status:
            query = query.where(Competition.status == status)
        if category:
            query = query.where(Competition.category == category)
        query = query.order_by(desc(Competition.created_at), desc(Competition.id))
        return list(self._session.execute(query).scalars().all())

    def get_contestant(self, contestant_id: int) -> Contestant | None:
        return self._session.get(Contestant, contestant_id)

    def find_application(self, competition_id: int, talent_profile_id: int) -> Contestant | None:
        query = select(Contestant).where(
            Contestant.competition_id == competition_id,
            Contestant.talent_profile_id == talent_profile_id,
        )
        return self._session.execute(query).scalar_one_or_none()

    def list_contestants(
        self,
        competition_id: int,
        *,
        application_status: str | None = None,
    ) -> list[Contestant]:
        query = select(Contestant).where(Contestant.competition_id == competition_id)
        if application_status:
            query = query.where(Contestant.application_status == application_status)
        query = query.order_by(asc(Contestant.id))
        return list(self._session.execute(query).scalars().all())

    def total_votes(self, competition_id: int) -> int:
        query = select(func.coalesce(func.sum(Contestant.vote_count), 0)).where(
            Contestant.competition_id == competition_id
        )
        return int(self._session.execute(query).scalar_one())

    def purchase_totals(self, competition_id: int) -> tuple[int, int, int]:
        """Return (purchase count, purchased votes, revenue cents) for a competition."""

        query = select(
            func.count(VotePurchase.id),
            func.coalesce(func.sum(VotePurchase.vote_count), 0),
            func.coalesce(func.sum(VotePurchase.amount_cents), 0),
        ).where(VotePurchase.competition_id == competition_id)
        count, votes, revenue = self._session.execute(query).one()
        return int(count), int(votes), int(revenue)


__all__ = ["CompetitionRepository"]
