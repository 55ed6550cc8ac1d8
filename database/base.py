from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase
from config.settings import settings


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


def serialize_sqlite_transactions(sqlite_engine: AsyncEngine) -> AsyncEngine:
    """
    Take the SQLite write lock when a transaction begins.

    The driver otherwise opens transactions lazily at the first write, so two
    sessions could both read a free calendar before either holds the lock.
    SQLite ignores SELECT ... FOR UPDATE, this is its equivalent.
    """

    @event.listens_for(sqlite_engine.sync_engine, "connect")
    def disable_driver_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(sqlite_engine.sync_engine, "begin")
    def begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return sqlite_engine


# Create async engine
engine = create_async_engine(
    settings.database_url,
    echo=settings.log_level == "DEBUG",
    future=True
)
if engine.url.get_backend_name() == "sqlite":
    serialize_sqlite_transactions(engine)

# Create async session factory
async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False
)


async def init_db(bind=None):
    """Initialize database tables"""
    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
