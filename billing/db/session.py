from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from billing.core.config import settings
from billing.db.base import Base


engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.DB_ECHO,
    pool_pre_ping=True,
)

# expire_on_commit=False: ledger rows are handed back to callers after the
# short transaction that produced them has already committed
async_session_factory = async_sessionmaker(
    bind=engine,
    autoflush=False,
    expire_on_commit=False,
)


async def init_db():
    """
    TEMP: Create all tables based on models.
    Schema ownership lives outside this service in production.
    """
    import billing.models  # noqa: F401  register every mapper on Base.metadata

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def dispose_db():
    await engine.dispose()
