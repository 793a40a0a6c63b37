from functools import lru_cache
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


_POSTGRES_SCHEMES = {"postgres", "postgresql", "postgresql+psycopg"}


def _psycopg_url(value: str) -> str:
    """Point Postgres URLs at the psycopg driver and require TLS."""

    parsed = urlsplit(value)
    if parsed.scheme.lower() not in _POSTGRES_SCHEMES:
        return value
    query = dict(parse_qsl(parsed.query, keep_blank_values=True))
    query.setdefault("sslmode", "require")
    return urlunsplit(parsed._replace(scheme="postgresql+psycopg", query=urlencode(query)))


class VotePackageConfig(BaseModel):
    """Seed definition for a purchasable vote bundle."""

    name: str
    description: str = ""
    vote_count: int = Field(ge=1)
    bonus_votes: int = Field(default=0, ge=0)
    price_cents: int = Field(ge=0)


def _default_vote_packages() -> list[VotePackageConfig]:
    return [
        VotePackageConfig(
            name="Starter Pack",
            description="500 votes to support your favorite",
            vote_count=500,
            price_cents=1000,
        ),
        VotePackageConfig(
            name="Fan Pack",
            description="1,000 votes + 300 bonus votes",
            vote_count=1000,
            bonus_votes=300,
            price_cents=1500,
        ),
        VotePackageConfig(
            name="Super Fan Pack",
            description="2,000 votes + 600 bonus votes",
            vote_count=2000,
            bonus_votes=600,
            price_cents=3000,
        ),
    ]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    debug: bool = Field(False, description="Enable FastAPI debug mode")
    environment: str = Field(
        default="development",
        description="Runtime environment (development|staging|production)",
    )
    database_url: str = Field(
        default="sqlite:///../data/talentvote.db",
        description="SQLAlchemy compatible database URL",
    )
    production_database_url: str | None = Field(
        default=None,
        description="Pooled Postgres connection string used when ENVIRONMENT=production",
    )
    vote_day_timezone: str = Field(
        default="UTC",
        description="IANA timezone whose calendar day bounds the free-vote cap",
    )
    individual_vote_min: int = Field(default=1, ge=1)
    individual_vote_max: int = Field(default=10_000, ge=1)
    vote_price_cents: int = Field(
        default=100,
        description="Price of a single vote bought outside of a package, in cents",
        ge=0,
    )
    sales_tax_percent: float = Field(
        default=0.0,
        description="Sales tax applied on top of the purchase subtotal",
        ge=0,
        le=100,
    )
    currency: str = Field(default="USD", min_length=3, max_length=3)
    default_vote_packages: list[VotePackageConfig] = Field(
        default_factory=_default_vote_packages,
        description="Vote packages seeded into an empty catalogue",
    )
    authorize_net_api_login_id: str | None = Field(
        default=None,
        description="Merchant API login id for the payment gateway",
    )
    authorize_net_transaction_key: str | None = Field(
        default=None,
        description="Merchant transaction key for the payment gateway",
    )
    authorize_net_public_client_key: str | None = Field(
        default=None,
        description="Public client key handed to the browser tokenization library",
    )
    authorize_net_environment: str = Field(
        default="sandbox",
        description="Payment gateway environment (sandbox|production)",
    )
    payment_gateway_timeout_seconds: float = Field(default=30.0, gt=0)
    firebase_project_id: str | None = Field(
        default=None,
        description="Firebase project used to verify identity tokens",
    )
    firebase_credentials_path: str | None = Field(
        default=None,
        description="Path to a Firebase service account JSON file",
    )
    smtp_host: str | None = Field(default="smtp.gmail.com")
    smtp_port: int = Field(default=587)
    smtp_username: str | None = Field(default=None)
    smtp_password: str | None = Field(default=None)
    smtp_use_tls: bool = Field(default=True, description="Upgrade the SMTP connection with STARTTLS")
    mail_from_address: str | None = Field(default=None)
    mail_from_name: str = Field(default="TalentVote")
    invitation_ttl_days: int = Field(
        default=14,
        description="Days after which a pending invitation is treated as expired",
        ge=1,
    )
    reconciliation_grace_minutes: int = Field(
        default=10,
        description="Minutes before a captured charge without a purchase is handed to reconciliation",
        ge=0,
    )

    @field_validator("vote_day_timezone")
    @classmethod
    def _validate_vote_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"vote_day_timezone '{value}' is not a known IANA timezone") from exc
        return value

    @field_validator("authorize_net_environment")
    @classmethod
    def _validate_gateway_environment(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in {"sandbox", "production"}:
            raise ValueError("AUTHORIZE_NET_ENVIRONMENT must be 'sandbox' or 'production'")
        return normalized

    @property
    def resolved_database_url(self) -> str:
        if self.environment.lower() != "production":
            return _psycopg_url(self.database_url)
        if not self.production_database_url:
            raise ValueError("PRODUCTION_DATABASE_URL must be set when ENVIRONMENT=production")
        return _psycopg_url(self.production_database_url)

    @property
    def vote_day_zone(self) -> ZoneInfo:
        return ZoneInfo(self.vote_day_timezone)

    @property
    def gateway_endpoint(self) -> str:
        if self.authorize_net_environment == "production":
            return "https://api.authorize.net/xml/v1/request.api"
        return "https://apitest.authorize.net/xml/v1/request.api"


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
