"""Database connection and session management."""

from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine, Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool


# Base class for all database models
Base = declarative_base()


def create_database_engine(database_url: str,
                           echo: bool = False,
                           connect_args: Optional[dict] = None) -> Engine:
    """Create a database engine with settings suited to the URL's backend."""
    # Default connect args for SQLite
    if connect_args is None:
        if database_url.startswith("sqlite"):
            connect_args = {"check_same_thread": False}
        else:
            connect_args = {}

    # In-memory SQLite needs a single shared connection across threads
    if database_url == "sqlite://" or (database_url.startswith("sqlite") and ":memory:" in database_url):
        return create_engine(
            database_url,
            connect_args=connect_args,
            poolclass=StaticPool,
            echo=echo
        )

    return create_engine(
        database_url,
        echo=echo,
        connect_args=connect_args
    )


class Database:
    """Owns one engine and its session factory."""

    def __init__(self, database_url: str, echo: bool = False, engine: Optional[Engine] = None):
        self.database_url = database_url
        self.engine = engine or create_database_engine(database_url, echo=echo)
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Yield a session that commits on success and rolls back on error."""
        db = self.SessionLocal()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def create_tables(self):
        """Create all database tables."""
        Base.metadata.create_all(bind=self.engine)

    def drop_tables(self):
        """Drop all database tables."""
        Base.metadata.drop_all(bind=self.engine)

    def dispose(self):
        self.engine.dispose()
