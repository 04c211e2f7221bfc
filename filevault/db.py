from collections.abc import Iterator
import logging

from sqlmodel import Session, SQLModel, create_engine
from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlalchemy.pool import QueuePool

from filevault.config import DB_CONNECT_ARGS, DB_URL
from filevault import models  # noqa: F401  (registers tables on SQLModel.metadata)

# Configure engine with connection pooling parameters to handle long-running workers
engine = create_engine(
    DB_URL,
    connect_args=DB_CONNECT_ARGS,
    poolclass=QueuePool,
    pool_size=5,
    max_overflow=10,
    pool_pre_ping=True,  # Verify connections before use
    pool_recycle=3600,   # Recycle connections after 1 hour
    echo=False
)


def init_db(bind=None) -> None:
    SQLModel.metadata.create_all(bind or engine)
    logging.getLogger("filevault").info("event=db_ready url=%s", DB_URL)


def get_session() -> Iterator[Session]:
    with Session(engine) as session:
        yield session


def ensure_connection(bind=None) -> bool:
    """
    Verify that the database connection is alive.
    Used by the health endpoint.
    """
    try:
        with (bind or engine).connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except OperationalError:
        return False
