"""Engine and session plumbing for the observed store.

Key exports:
- Base                          - declarative base for custodian-owned tables
- AUDIT_SCHEMA                  - schema holding the change log
- create_engine_from_settings() - async engine configured for the dialect
- create_session_factory()      - async session factory bound to an engine
"""

from sqlalchemy import MetaData
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Session

from datastore_custodian.observability import get_logger
from datastore_custodian.settings import Settings

logger = get_logger(__name__)

AUDIT_SCHEMA = "audit"

# Schemas named by custodian-owned tables. Dialects without schema support
# map them onto the default schema.
MODEL_SCHEMAS: tuple[str, ...] = (AUDIT_SCHEMA,)

_NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "pk": "pk_%(table_name)s",
}


class Base(DeclarativeBase):
    """Declarative base for tables owned by the custodian itself."""

    metadata = MetaData(naming_convention=_NAMING_CONVENTION)


def is_sqlite_url(url: str) -> bool:
    """Return True if a database URL targets SQLite."""
    return make_url(url).get_backend_name() == "sqlite"


def create_engine_from_settings(settings: Settings) -> AsyncEngine:
    """Create the async engine for the observed store.

    Args:
        settings: Service settings.

    Returns:
        An AsyncEngine. On SQLite the custodian schemas are translated to the
        default schema because SQLite has no CREATE SCHEMA.
    """
    url = settings.database_url
    if is_sqlite_url(url):
        engine = create_async_engine(url, echo=False)
        engine = engine.execution_options(
            schema_translate_map={schema: None for schema in MODEL_SCHEMAS}
        )
    else:
        engine = create_async_engine(
            url,
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            pool_timeout=settings.db_pool_timeout,
            echo=False,
            pool_pre_ping=True,
        )

    logger.info(
        "Database engine created",
        dialect=engine.dialect.name,
        database=engine.url.database,
    )
    return engine


def create_session_factory(
    engine: AsyncEngine,
    sync_session_class: type[Session] = Session,
) -> async_sessionmaker[AsyncSession]:
    """Create an async session factory bound to the engine.

    Args:
        engine: The engine sessions connect through.
        sync_session_class: Session class used underneath AsyncSession. The
            capture engine supplies its own subclass so its session-level
            listeners stay scoped to this factory.

    Returns:
        An async_sessionmaker producing AsyncSession instances.
    """
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        sync_session_class=sync_session_class,
        expire_on_commit=False,
        autoflush=False,
    )
