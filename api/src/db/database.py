from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base
from api.src.config import get_settings

settings = get_settings()

_SYNC_SCHEMES = ("postgresql+psycopg2://", "postgresql://", "postgres://")

def async_database_url(url: str) -> str:
    """The API shares the controller's DSN; swap in the asyncpg driver."""
    for scheme in _SYNC_SCHEMES:
        if url.startswith(scheme):
            return "postgresql+asyncpg://" + url[len(scheme):]
    return url

engine = create_async_engine(
    async_database_url(settings.database_url),
    echo=settings.database_echo,
    pool_pre_ping=True,
)

async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

Base = declarative_base()

async def get_db():
    async with async_session() as session:
        try:
            yield session
        finally:
            await session.close()

async def init_db():
    # Register the run and step tables before creating them
    from api.src.models import pipeline  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
