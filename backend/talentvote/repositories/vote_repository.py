"""Vote ledger persistence helpers.

The ledger row and the contestant counters are always written in the caller's
transaction; nothing here commits.
"""

from __future__ import annotations

from datetime import date

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from talentvote.models import Contestant, ReferralCode, ReferralVoter, Vote, VoteSource


class VoteRepository:
    """Encapsulate vote ledger and counter persistence."""

    def __init__(self, session: Session) -> None:
        self._session = session

    # ------------------------------------------------------------------
    # Queries

    def count_free_votes_on_day(self, competition_id: int, voter_key: str, vote_day: date) -> int:
        query = select(func.count(Vote.id)).where(
            Vote.competition_id == competition_id,
            Vote.voter_key == voter_key,
            Vote.vote_day == vote_day,
            Vote.purchase_id.is_(None),
        )
        return int(self._session.execute(query).scalar_one())

    def ledger_total(self, contestant_id: int) -> int:
        query = select(func.coalesce(func.sum(Vote.quantity), 0)).where(
            Vote.contestant_id == contestant_id
        )
        return int(self._session.execute(query).scalar_one())

    # ------------------------------------------------------------------
    # Mutations

    def insert_vote(
        self,
        *,
        competition_id: int,
        contestant_id: int,
        source: str,
        quantity: int,
        vote_day: date,
        voter_key: str | None,
        voter_ip: str | None,
        user_id: str | None,
        daily_slot: int | None,
        purchase_id: int | None,
        ref_code: str | None,
    ) -> Vote:
        vote = Vote(
            competition_id=competition_id,
            contestant_id=contestant_id,
            source=source,
            quantity=quantity,
            vote_day=vote_day,
            voter_key=voter_key,
            voter_ip=voter_ip,
            user_id=user_id,
            daily_slot=daily_slot,
            purchase_id=purchase_id,
            ref_code=ref_code,
        )
        self._session.add(vote)
        # Flush now so a daily-slot collision surfaces before the counter moves.
        self._session.flush()
        return vote

    def increment_counters(self, contestant_id: int, source: str, quantity: int) -> None:
        values = {"vote_count": Contestant.vote_count + quantity}
        if source == VoteSource.IN_PERSON.value:
            values["in_person_vote_count"] = Contestant.in_person_vote_count + quantity
        else:
            values["online_vote_count"] = Contestant.online_vote_count + quantity
        statement = (
            update(Contestant)
            .where(Contestant.id == contestant_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        self._session.execute(statement)

    def track_referral(self, code: str, voter_key: str, quantity: int) -> bool:
        """Credit a referral code; unknown codes are ignored."""

        referral = self._session.get(ReferralCode, code)
        if referral is None:
            return False

        existing = self._session.execute(
            select(ReferralVoter.id)
            .where(ReferralVoter.code == code, ReferralVoter.voter_key == voter_key)
            .limit(1)
        ).scalar_one_or_none()
        new_voter = existing is None
        if new_voter:
            self._session.add(ReferralVoter(code=code, voter_key=voter_key))

        values = {"total_votes_driven": ReferralCode.total_votes_driven + quantity}
        if new_voter:
            values["unique_voters"] = ReferralCode.unique_voters + 1
        self._session.execute(
            update(ReferralCode)
            .where(ReferralCode.code == code)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return True


__all__ = ["VoteRepository"]
