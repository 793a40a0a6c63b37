"""Application sessions and role invitations.

Identity verification happens upstream; these services only map a verified
identity onto the ``users`` table and apply invitations to it.
"""

from __future__ import annotations

import secrets
from datetime import datetime, timedelta, timezone
from typing import Callable

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from talentvote.core.config import Settings, get_settings
from talentvote.domain import (
    InvalidStateError,
    NotFoundError,
    PermissionDeniedError,
    StorageError,
    ValidationError,
    VerifiedIdentity,
)
from talentvote.models import Invitation, InvitationStatus, User, UserLevel
from talentvote.repositories import UserRepository


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _commit(session: Session, action: str) -> None:
    try:
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        logger.exception("Failed to {}", action)
        raise StorageError() from exc


class InvitationService:
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
        self._users = UserRepository(session)

    def create(
        self,
        inviter: VerifiedIdentity,
        *,
        email: str,
        name: str,
        target_level: int,
        message: str | None = None,
    ) -> Invitation:
        if target_level not in {level.value for level in UserLevel}:
            raise ValidationError("Unknown target level")
        if target_level >= inviter.level:
            raise PermissionDeniedError("You can only invite users to a level below your own")
        if not email.strip() or not name.strip():
            raise ValidationError("Name and email are required")

        invitation = self._users.create_invitation(
            token=secrets.token_hex(16),
            invited_by=inviter.uid,
            invited_email=email.strip().lower(),
            invited_name=name.strip(),
            target_level=target_level,
            message=message,
            created_at=self._clock(),
        )
        _commit(self._session, "create invitation")
        logger.info("Invitation {} created by {} for level {}", invitation.id, inviter.uid, target_level)
        return invitation

    def list_sent(self, inviter: VerifiedIdentity) -> list[Invitation]:
        invitations = self._users.list_invitations_by_sender(inviter.uid)
        for invitation in invitations:
            self._expire_if_stale(invitation)
        return invitations

    def get_by_token(self, token: str) -> Invitation:
        invitation = self._users.get_invitation_by_token(token)
        if invitation is None:
            raise NotFoundError("Invitation not found")
        self._expire_if_stale(invitation)
        return invitation

    def accept(self, token: str, user: User) -> Invitation:
        invitation = self.get_by_token(token)
        if invitation.status == InvitationStatus.EXPIRED.value:
            raise InvalidStateError("This invitation has expired")
        if invitation.status != InvitationStatus.PENDING.value:
            raise InvalidStateError("This invitation has already been used")
        if invitation.invited_email.lower() != (user.email or "").strip().lower():
            raise PermissionDeniedError("This invitation was sent to a different email address")

        self._users.set_invitation_status(
            invitation,
            InvitationStatus.ACCEPTED.value,
            accepted_by=user.user_id,
            accepted_at=self._clock(),
        )
        user.level = max(user.level, invitation.target_level)
        logger.info("User {} accepted invitation {} (level {})", user.user_id, invitation.id, user.level)
        return invitation

    def _expire_if_stale(self, invitation: Invitation) -> None:
        if invitation.status != InvitationStatus.PENDING.value:
            return
        expires_at = _as_utc(invitation.created_at) + timedelta(days=self._settings.invitation_ttl_days)
        if self._clock() >= expires_at:
            self._users.set_invitation_status(invitation, InvitationStatus.EXPIRED.value)
            _commit(self._session, "expire invitation")


class SessionResolver:
    """Maps a verified identity onto an application user, creating it on first sight."""

    def __init__(self, session: Session, *, invitations: InvitationService | None = None) -> None:
        self._session = session
        self._users = UserRepository(session)
        self._invitations = invitations or InvitationService(session)

    def resolve(
        self,
        identity: VerifiedIdentity,
        *,
        display_name: str | None = None,
        invite_token: str | None = None,
    ) -> User:
        user = self._users.get_user(identity.uid)
        if user is None:
            user = self._users.create_user(
                user_id=identity.uid,
                email=identity.email,
                display_name=display_name,
                level=identity.level,
            )
            logger.info("Created user {} at level {}", identity.uid, identity.level)
        else:
            self._users.touch_user(user, email=identity.email, display_name=display_name)
            user.level = max(user.level, identity.level)

        if invite_token:
            self._invitations.accept(invite_token, user)
        _commit(self._session, "sync user")
        return user

    def actor(self, identity: VerifiedIdentity) -> VerifiedIdentity:
        """Return the identity carrying the stored role level."""

        user = self._users.get_user(identity.uid)
        if user is None:
            user = self.resolve(identity)
        return VerifiedIdentity(uid=user.user_id, email=user.email, level=max(user.level, identity.level))


__all__ = ["InvitationService", "SessionResolver"]
