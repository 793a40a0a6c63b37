from __future__ import annotations

from collections.abc import Iterator
from typing import Annotated

from fastapi import Depends, FastAPI, Query, Request, status
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from loguru import logger
from sqlalchemy.orm import Session

from . import schemas
from .core.config import settings
from .db import get_db, init_db
from .domain import (
    AuthenticationError,
    DomainError,
    ErrorCode,
    OpaquePayment,
    PermissionDeniedError,
    VerifiedIdentity,
    VoterContext,
)
from .models import UserLevel
from .repositories import LeaderboardRow
from .services.competition_service import CompetitionService
from .services.identity import FirebaseIdentityVerifier, IdentityVerifier
from .services.notifications import ReceiptNotifier, SmtpReceiptNotifier
from .services.payments import AuthorizeNetGateway, PaymentGateway
from .services.purchase_service import CheckoutOrder, PurchaseService
from .services.session_service import InvitationService, SessionResolver
from .services.vote_service import VoteService

app = FastAPI(title="TalentVote API", version="0.1.0", debug=settings.debug)

STATUS_BY_CODE: dict[ErrorCode, int] = {
    ErrorCode.RATE_LIMITED: status.HTTP_429_TOO_MANY_REQUESTS,
    ErrorCode.POLICY_VIOLATION: status.HTTP_403_FORBIDDEN,
    ErrorCode.INVALID_STATE: status.HTTP_409_CONFLICT,
    ErrorCode.PAYMENT_FAILED: status.HTTP_402_PAYMENT_REQUIRED,
    ErrorCode.STORAGE_FAILURE: status.HTTP_500_INTERNAL_SERVER_ERROR,
    ErrorCode.VALIDATION_FAILED: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorCode.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.AUTHENTICATION_REQUIRED: status.HTTP_401_UNAUTHORIZED,
    ErrorCode.PERMISSION_DENIED: status.HTTP_403_FORBIDDEN,
}


@app.on_event("startup")
def on_startup() -> None:
    """Create tables and seed the vote package catalogue."""

    init_db()


@app.exception_handler(DomainError)
async def handle_domain_error(request: Request, exc: DomainError) -> JSONResponse:
    status_code = STATUS_BY_CODE.get(exc.code, status.HTTP_400_BAD_REQUEST)
    if status_code >= 500:
        logger.error("{} {} failed: {}", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=status_code,
        content=schemas.ErrorResponse(code=exc.code.value, message=exc.message).model_dump(),
    )


@app.get("/healthz", tags=["system"])
def healthcheck() -> dict[str, str]:
    """Basic readiness probe consumed by infrastructure monitors."""

    return {"status": "ok"}


# ----------------------------------------------------------------------
# Dependencies

_bearer = HTTPBearer(auto_error=False)


def _identity_verifier() -> IdentityVerifier:
    return FirebaseIdentityVerifier(settings)


def _optional_identity(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer),
    verifier: IdentityVerifier = Depends(_identity_verifier),
) -> VerifiedIdentity | None:
    """Verify the bearer token when one is sent; anonymous requests yield ``None``."""

    if credentials is None or not credentials.credentials:
        return None
    return verifier.verify(credentials.credentials)


def _require_identity(
    identity: VerifiedIdentity | None = Depends(_optional_identity),
) -> VerifiedIdentity:
    if identity is None:
        raise AuthenticationError("Authentication required")
    return identity


def _current_actor(
    identity: VerifiedIdentity = Depends(_require_identity),
    db: Session = Depends(get_db),
) -> VerifiedIdentity:
    """Identity carrying the role level stored for the user."""

    return SessionResolver(db).actor(identity)


def require_level(level: UserLevel):
    def _dependency(actor: VerifiedIdentity = Depends(_current_actor)) -> VerifiedIdentity:
        if actor.level < level:
            raise PermissionDeniedError("You do not have permission to do that")
        return actor

    return _dependency


def _voter_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for", "")
    first_hop = forwarded.split(",")[0].strip()
    if first_hop:
        return first_hop
    return request.client.host if request.client else "unknown"


def _payment_gateway() -> Iterator[PaymentGateway]:
    with AuthorizeNetGateway(config=settings) as gateway:
        yield gateway


def _receipt_notifier() -> ReceiptNotifier:
    return SmtpReceiptNotifier(settings)


def _vote_service(db: Session = Depends(get_db)) -> VoteService:
    return VoteService(db, settings=settings)


def _purchase_service(
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(_payment_gateway),
    notifier: ReceiptNotifier = Depends(_receipt_notifier),
) -> PurchaseService:
    return PurchaseService(db, gateway=gateway, notifier=notifier, settings=settings)


def _competition_service(db: Session = Depends(get_db)) -> CompetitionService:
    return CompetitionService(db)


def _invitation_service(db: Session = Depends(get_db)) -> InvitationService:
    return InvitationService(db, settings=settings)


def _session_resolver(db: Session = Depends(get_db)) -> SessionResolver:
    return SessionResolver(db, invitations=InvitationService(db, settings=settings))


def _leaderboard_entries(rows: list[LeaderboardRow]) -> list[schemas.LeaderboardEntry]:
    return [
        schemas.LeaderboardEntry(
            rank=row.rank,
            contestant_id=row.contestant.id,
            display_name=row.contestant.display_name,
            vote_count=row.contestant.vote_count,
            online_vote_count=row.contestant.online_vote_count,
            in_person_vote_count=row.contestant.in_person_vote_count,
            weighted_votes=row.weighted_votes,
            percentage=row.percentage,
        )
        for row in rows
    ]


# ----------------------------------------------------------------------
# Sessions and invitations


@app.post("/auth/sync", response_model=schemas.User, tags=["auth"])
def sync_user(
    payload: schemas.UserSync | None = None,
    identity: VerifiedIdentity = Depends(_require_identity),
    resolver: SessionResolver = Depends(_session_resolver),
):
    """Create or refresh the application user for the bearer token."""

    payload = payload or schemas.UserSync()
    return resolver.resolve(
        identity,
        display_name=payload.display_name,
        invite_token=payload.invite_token,
    )


@app.post(
    "/invitations",
    response_model=schemas.Invitation,
    status_code=status.HTTP_201_CREATED,
    tags=["invitations"],
)
def create_invitation(
    payload: schemas.InvitationCreate,
    actor: VerifiedIdentity = Depends(require_level(UserLevel.TALENT)),
    service: InvitationService = Depends(_invitation_service),
):
    return service.create(
        actor,
        email=payload.email,
        name=payload.name,
        target_level=payload.target_level,
        message=payload.message,
    )


@app.get("/invitations", response_model=list[schemas.Invitation], tags=["invitations"])
def list_invitations(
    actor: VerifiedIdentity = Depends(require_level(UserLevel.TALENT)),
    service: InvitationService = Depends(_invitation_service),
):
    """Invitations sent by the caller, with stale ones marked expired."""

    return service.list_sent(actor)


@app.get("/invitations/token/{token}", response_model=schemas.Invitation, tags=["invitations"])
def get_invitation(token: str, service: InvitationService = Depends(_invitation_service)):
    return service.get_by_token(token)


# ----------------------------------------------------------------------
# Competitions


@app.get("/competitions", response_model=list[schemas.Competition], tags=["competitions"])
def list_competitions(
    *,
    status_filter: Annotated[str | None, Query(alias="status", description="Competition status filter")] = None,
    category: Annotated[str | None, Query(description="Category filter")] = None,
    service: CompetitionService = Depends(_competition_service),
):
    return service.list_competitions(status=status_filter, category=category)


@app.post(
    "/competitions",
    response_model=schemas.Competition,
    status_code=status.HTTP_201_CREATED,
    tags=["competitions"],
)
def create_competition(
    payload: schemas.CompetitionCreate,
    actor: VerifiedIdentity = Depends(require_level(UserLevel.HOST)),
    service: CompetitionService = Depends(_competition_service),
):
    return service.create_competition(actor, payload.model_dump())


@app.get("/competitions/{competition_id}", response_model=schemas.CompetitionDetail, tags=["competitions"])
def get_competition(competition_id: int, service: CompetitionService = Depends(_competition_service)):
    """Competition with its contestants and raw vote total."""

    detail = service.get_detail(competition_id)
    payload = schemas.Competition.model_validate(detail.competition)
    return schemas.CompetitionDetail(
        **payload.model_dump(),
        contestants=[schemas.Contestant.model_validate(row) for row in detail.contestants],
        total_votes=detail.total_votes,
    )


@app.patch("/competitions/{competition_id}", response_model=schemas.Competition, tags=["competitions"])
def update_competition(
    competition_id: int,
    payload: schemas.CompetitionUpdate,
    actor: VerifiedIdentity = Depends(_current_actor),
    service: CompetitionService = Depends(_competition_service),
):
    return service.update_competition(competition_id, actor, payload.model_dump(exclude_unset=True))


@app.post(
    "/competitions/{competition_id}/contestants",
    response_model=schemas.Contestant,
    status_code=status.HTTP_201_CREATED,
    tags=["competitions"],
)
def apply_to_competition(
    competition_id: int,
    payload: schemas.ContestantApply,
    actor: VerifiedIdentity = Depends(_current_actor),
    service: CompetitionService = Depends(_competition_service),
):
    return service.apply(
        competition_id,
        actor,
        talent_profile_id=payload.talent_profile_id,
        display_name=payload.display_name,
    )


@app.patch("/contestants/{contestant_id}/status", response_model=schemas.Contestant, tags=["competitions"])
def set_contestant_status(
    contestant_id: int,
    payload: schemas.ContestantStatusUpdate,
    actor: VerifiedIdentity = Depends(_current_actor),
    service: CompetitionService = Depends(_competition_service),
):
    return service.set_contestant_status(contestant_id, actor, payload.status)


@app.get("/competitions/{competition_id}/leaderboard", response_model=schemas.Leaderboard, tags=["analytics"])
def get_leaderboard(competition_id: int, service: CompetitionService = Depends(_competition_service)):
    """Approved contestants ranked by weighted votes."""

    board = service.leaderboard(competition_id)
    return schemas.Leaderboard(
        competition_id=board.competition.id,
        online_vote_weight=board.competition.online_vote_weight,
        total_weighted_votes=board.total_weighted_votes,
        entries=_leaderboard_entries(board.rows),
    )


@app.get("/competitions/{competition_id}/report", response_model=schemas.CompetitionReport, tags=["analytics"])
def get_report(
    competition_id: int,
    actor: VerifiedIdentity = Depends(_current_actor),
    service: CompetitionService = Depends(_competition_service),
):
    report = service.report(competition_id, actor)
    return schemas.CompetitionReport(
        competition_id=competition_id,
        leaderboard=_leaderboard_entries(report.leaderboard.rows),
        total_votes=report.total_votes,
        online_votes=report.online_votes,
        in_person_votes=report.in_person_votes,
        purchase_count=report.purchase_count,
        purchased_votes=report.purchased_votes,
        revenue_cents=report.revenue_cents,
    )


# ----------------------------------------------------------------------
# Voting


@app.post(
    "/competitions/{competition_id}/vote",
    response_model=schemas.VoteResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["votes"],
)
def cast_vote(
    competition_id: int,
    payload: schemas.VoteRequest,
    voter_ip: str = Depends(_voter_ip),
    identity: VerifiedIdentity | None = Depends(_optional_identity),
    service: VoteService = Depends(_vote_service),
):
    """Cast one free vote, subject to the per-day cap."""

    outcome = service.cast_free_vote(
        competition_id,
        payload.contestant_id,
        VoterContext(ip_address=voter_ip, identity=identity),
        source=payload.source,
        ref_code=payload.ref_code,
    )
    return schemas.VoteResponse(
        vote=schemas.Vote.model_validate(outcome.vote),
        contestant=schemas.Contestant.model_validate(outcome.contestant),
        votes_remaining_today=outcome.votes_remaining_today,
    )


# ----------------------------------------------------------------------
# Purchases


@app.get("/shop/packages", response_model=list[schemas.VotePackage], tags=["purchases"])
def list_packages(service: PurchaseService = Depends(_purchase_service)):
    return service.list_packages()


@app.get("/payment-config", response_model=schemas.PaymentConfig, tags=["purchases"])
def get_payment_config(service: PurchaseService = Depends(_purchase_service)):
    """Public values the browser needs to tokenize a card and show prices."""

    return schemas.PaymentConfig.model_validate(service.payment_config())


@app.post(
    "/guest/checkout",
    response_model=schemas.CheckoutResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["purchases"],
)
def guest_checkout(
    payload: schemas.CheckoutRequest,
    identity: VerifiedIdentity | None = Depends(_optional_identity),
    service: PurchaseService = Depends(_purchase_service),
):
    result = service.checkout(
        CheckoutOrder(
            competition_id=payload.competition_id,
            contestant_id=payload.contestant_id,
            buyer_name=payload.name,
            buyer_email=payload.email,
            payment=OpaquePayment(
                data_descriptor=payload.data_descriptor,
                data_value=payload.data_value,
            ),
            package_id=payload.package_id,
            individual_vote_count=payload.individual_vote_count,
            referral_code=payload.referral_code,
            create_account=payload.create_account,
            user_id=identity.uid if identity else None,
        )
    )
    return schemas.CheckoutResponse(
        purchase=schemas.VotePurchase.from_record(result.purchase),
        transaction_id=result.purchase.transaction_id,
        votes_added=result.votes_added,
        receipt_sent=result.receipt_sent,
    )


@app.post("/guest/lookup", response_model=schemas.LookupResponse, tags=["purchases"])
def guest_lookup(
    payload: schemas.LookupRequest,
    service: PurchaseService = Depends(_purchase_service),
):
    """Purchase history matched on name and email; no login required."""

    result = service.lookup(name=payload.name, email=payload.email)
    return schemas.LookupResponse(
        purchases=[schemas.VotePurchase.from_record(row) for row in result.purchases],
        total_votes_purchased=result.total_votes_purchased,
        total_spent_cents=result.total_spent_cents,
        total_spent=result.total_spent_cents / 100,
    )


@app.get("/vote-purchases", response_model=list[schemas.VotePurchase], tags=["purchases"])
def list_my_purchases(
    identity: VerifiedIdentity = Depends(_require_identity),
    service: PurchaseService = Depends(_purchase_service),
):
    return [schemas.VotePurchase.from_record(row) for row in service.list_user_purchases(identity.uid)]
