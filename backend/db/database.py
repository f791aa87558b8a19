"""
Cupid's Arrow Database Configuration
PostgreSQL (asyncpg) or SQLite (aiosqlite) - SQLAlchemy 2.0 Async
"""
import os
import ssl
from urllib.parse import urlparse, parse_qs, urlencode, urlunparse
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase
import logging

logger = logging.getLogger(__name__)

# Get DATABASE_URL from environment
DATABASE_URL = os.environ.get('DATABASE_URL', '')


def convert_url_for_asyncpg(url: str) -> str:
    """Convert standard PostgreSQL URL to asyncpg-compatible format"""
    if not url or not url.startswith(("postgres://", "postgresql://", "postgresql+asyncpg://")):
        return url

    parsed = urlparse(url)

    # asyncpg doesn't support sslmode/channel_binding query params
    query_params = parse_qs(parsed.query)
    query_params.pop('sslmode', None)
    query_params.pop('channel_binding', None)
    new_query = urlencode({k: v[0] for k, v in query_params.items()})

    return urlunparse((
        'postgresql+asyncpg',
        parsed.netloc,
        parsed.path,
        parsed.params,
        new_query,
        parsed.fragment
    ))


def is_sqlite_url(url: str) -> bool:
    return url.startswith("sqlite")


def build_engine(url: str):
    """Create the async engine for a database URL"""
    if is_sqlite_url(url):
        return create_async_engine(url, echo=False)

    # Hosted Postgres requires SSL
    ssl_context = ssl.create_default_context()
    ssl_context.check_hostname = False
    ssl_context.verify_mode = ssl.CERT_NONE

    return create_async_engine(
        url,
        echo=False,
        pool_pre_ping=True,
        pool_size=5,
        max_overflow=10,
        connect_args={"ssl": ssl_context}
    )


def build_session_factory(bind) -> async_sessionmaker:
    return async_sessionmaker(
        bind=bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


if DATABASE_URL:
    DATABASE_URL = convert_url_for_asyncpg(DATABASE_URL)

engine = build_engine(DATABASE_URL) if DATABASE_URL else None

AsyncSessionLocal = build_session_factory(engine) if engine else None


class Base(DeclarativeBase):
    pass


async def get_db():
    """Dependency for getting async database sessions"""
    if not AsyncSessionLocal:
        raise RuntimeError("Database not configured. Set DATABASE_URL environment variable.")

    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


async def init_db(bind=None):
    """Initialize database - create all tables"""
    bind = bind or engine
    if not bind:
        logger.error("Database engine not initialized. Check DATABASE_URL.")
        return

    from .models import Base

    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    logger.info("Database initialized with tables")
