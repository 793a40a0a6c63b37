from collections.abc import Generator, Iterator
from contextlib import contextmanager
from pathlib import Path

from loguru import logger
from sqlalchemy import create_engine, func, select
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .core.config import Settings, settings


def build_engine(url: str, *, echo: bool = False) -> Engine:
    """Engine for the vote store; SQLite files get their parent directory created."""

    parsed = make_url(url)
    if parsed.get_backend_name() != "sqlite":
        return create_engine(url, echo=echo, pool_pre_ping=True, pool_recycle=300)

    if parsed.database and parsed.database != ":memory:":
        Path(parsed.database).parent.mkdir(parents=True, exist_ok=True)
    return create_engine(url, echo=echo, connect_args={"check_same_thread": False})


engine = build_engine(settings.resolved_database_url, echo=settings.debug)
# Rows stay readable after commit; handlers serialize them once the service returns.
SessionLocal = sessionmaker(bind=engine, autoflush=True, expire_on_commit=False)
Base = declarative_base()


def seed_vote_packages(session: Session, config: Settings | None = None) -> int:
    """Populate an empty package catalogue from configuration."""

    from .models import VotePackage

    config = config or settings
    existing = session.execute(select(func.count()).select_from(VotePackage)).scalar_one()
    if existing:
        return 0

    for position, package in enumerate(config.default_vote_packages):
        session.add(
            VotePackage(
                name=package.name,
                description=package.description,
                vote_count=package.vote_count,
                bonus_votes=package.bonus_votes,
                price_cents=package.price_cents,
                is_active=True,
                position=position,
            )
        )
    session.flush()
    logger.info("Seeded {} vote packages", len(config.default_vote_packages))
    return len(config.default_vote_packages)


@contextmanager
def session_scope(factory: sessionmaker[Session] | None = None) -> Iterator[Session]:
    session = (factory or SessionLocal)()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def get_db() -> Generator[Session, None, None]:
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


def init_db() -> None:
    from . import models  # noqa: F401

    Base.metadata.create_all(bind=engine)
    with session_scope() as session:
        seed_vote_packages(session)
