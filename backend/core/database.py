from sqlmodel import create_engine, SQLModel, Session
from sqlalchemy.pool import QueuePool
from backend.core.config import get_settings

settings = get_settings()


def get_engine(db_url: str = None):
    """Create an engine for SQLite (dev/tests) or PostgreSQL (deployments)."""
    db_url = db_url or settings.database.url

    if db_url.startswith("sqlite"):
        # Worker threads and the API share the engine
        return create_engine(
            db_url,
            echo=False,
            connect_args={"check_same_thread": False}
        )
    return create_engine(
        db_url,
        echo=False,
        poolclass=QueuePool,
        pool_size=8,
        max_overflow=8,
        pool_timeout=10,
        pool_recycle=1800,
        pool_pre_ping=True
    )


engine = get_engine()


def create_db_and_tables(target_engine=None):
    SQLModel.metadata.create_all(target_engine or engine)


def get_session():
    with Session(engine) as session:
        yield session
