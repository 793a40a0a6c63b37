"""User and invitation persistence helpers."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import desc, select
from sqlalchemy.orm import Session

from talentvote.models import Invitation, User, utcnow


class UserRepository:
    """Encapsulate application user and invitation persistence."""

    def __init__(self, session: Session) -> None:
        self._session = session

    # ------------------------------------------------------------------
    # Users

    def get_user(self, user_id: str) -> User | None:
        return self._session.get(User, user_id)

    def create_user(self, *, user_id: str, email: str, display_name: str | None, level: int) -> User:
        user = User(user_id=user_id, email=email, display_name=display_name, level=level)
        self._session.add(user)
        self._session.flush()
        return user

    def touch_user(self, user: User, *, email: str, display_name: str | None) -> User:
        user.email = email
        if display_name:
            user.display_name = display_name
        user.last_seen_at = utcnow()
        return user

    # ------------------------------------------------------------------
    # Invitations

    def create_invitation(
        self,
        *,
        token: str,
        invited_by: str,
        invited_email: str,
        invited_name: str,
        target_level: int,
        message: str | None,
        created_at: datetime | None = None,
    ) -> Invitation:
        invitation = Invitation(
            token=token,
            invited_by=invited_by,
            invited_email=invited_email,
            invited_name=invited_name,
            target_level=target_level,
            message=message,
            created_at=created_at or utcnow(),
        )
        self._session.add(invitation)
        self._session.flush()
        return invitation

    def get_invitation_by_token(self, token: str) -> Invitation | None:
        query = select(Invitation).where(Invitation.token == token)
        return self._session.execute(query).scalar_one_or_none()

    def list_invitations_by_sender(self, invited_by: str) -> list[Invitation]:
        query = (
            select(Invitation)
            .where(Invitation.invited_by == invited_by)
            .order_by(desc(Invitation.created_at), desc(Invitation.id))
        )
        return list(self._session.execute(query).scalars().all())

    def set_invitation_status(
        self,
        invitation: Invitation,
        status: str,
        *,
        accepted_by: str | None = None,
        accepted_at: datetime | None = None,
    ) -> Invitation:
        invitation.status = status
        if accepted_by is not None:
            invitation.accepted_by = accepted_by
            invitation.accepted_at = accepted_at or utcnow()
        self._session.flush()
        return invitation


__all__ = ["UserRepository"]
