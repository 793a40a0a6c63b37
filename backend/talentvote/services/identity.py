"""Identity-provider boundary: turns a bearer token into a verified identity."""

from __future__ import annotations

from functools import lru_cache
from typing import Protocol

import firebase_admin
from firebase_admin import auth, credentials
from loguru import logger

from talentvote.core.config import Settings
from talentvote.domain import AuthenticationError, VerifiedIdentity


class IdentityVerifier(Protocol):
    def verify(self, token: str) -> VerifiedIdentity:
        """Return the identity behind ``token`` or raise :class:`AuthenticationError`."""


@lru_cache(maxsize=1)
def _firebase_app(credentials_path: str | None, project_id: str | None) -> firebase_admin.App:
    options = {"projectId": project_id} if project_id else None
    credential = credentials.Certificate(credentials_path) if credentials_path else None
    return firebase_admin.initialize_app(credential=credential, options=options)


class FirebaseIdentityVerifier:
    """Delegates signature and expiry checks to the Firebase Admin SDK."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    def verify(self, token: str) -> VerifiedIdentity:
        app = _firebase_app(self._settings.firebase_credentials_path, self._settings.firebase_project_id)
        try:
            decoded = auth.verify_id_token(token, app=app)
        except auth.ExpiredIdTokenError as exc:
            raise AuthenticationError("Token expired") from exc
        except (auth.InvalidIdTokenError, auth.RevokedIdTokenError, ValueError) as exc:
            logger.warning("Rejected identity token: {}", type(exc).__name__)
            raise AuthenticationError("Invalid authentication token") from exc

        level = decoded.get("level")
        return VerifiedIdentity(
            uid=decoded["uid"],
            email=decoded.get("email") or "",
            level=int(level) if isinstance(level, (int, float)) else 1,
        )


__all__ = ["FirebaseIdentityVerifier", "IdentityVerifier"]
