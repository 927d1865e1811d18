from __future__ import annotations

from urllib.parse import urlparse, parse_qs, urlencode, urlunparse

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase

from guildmaster.config import get_settings

_POSTGRES_SCHEMES = {"postgres", "postgresql", "postgresql+psycopg2", "postgresql+asyncpg"}


def to_async_url(url: str) -> str:
    """Point a Postgres URL at the asyncpg driver; asyncpg rejects sslmode."""
    parsed = urlparse(url)
    if parsed.scheme not in _POSTGRES_SCHEMES:
        return url
    query_params = parse_qs(parsed.query)
    query_params.pop("sslmode", None)
    return urlunparse(
        parsed._replace(scheme="postgresql+asyncpg", query=urlencode(query_params, doseq=True))
    )


DATABASE_URL = get_settings().database_url

engine = create_async_engine(
    to_async_url(DATABASE_URL),
    echo=False,
    pool_pre_ping=True,
    pool_recycle=300,
    connect_args={"ssl": True} if "sslmode=require" in DATABASE_URL else {},
)

async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


class Base(DeclarativeBase):
    pass


async def get_db():
    async with async_session_maker() as session:
        try:
            yield session
        finally:
            await session.close()


async def init_db():
    import guildmaster.models  # noqa: F401
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
