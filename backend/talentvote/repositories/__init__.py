"""Repository abstractions for database interactions."""

from .competition_repository import CompetitionRepository
from .purchase_repository import PurchaseRepository
from .types import LeaderboardRow, PurchaseInput
from .user_repository import UserRepository
from .vote_repository import VoteRepository

__all__ = [
    "CompetitionRepository",
    "LeaderboardRow",
    "PurchaseInput",
    "PurchaseRepository",
    "UserRepository",
    "VoteRepository",
]
