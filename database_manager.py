"""Database coordination layer: engine, transactional sessions and schema setup."""

from sqlalchemy import create_engine, text
from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker
from contextlib import contextmanager
from typing import Dict
import logging

from models import Base, Show

logger = logging.getLogger(__name__)


class DatabaseManager:
    """Thread-safe façade over SQLAlchemy sessions."""

    def __init__(self, database_url: str):
        url = make_url(database_url)
        self.is_sqlite = url.get_backend_name() == 'sqlite'

        if self.is_sqlite:
            # Connections are handed between request threads
            self.engine = create_engine(
                database_url,
                connect_args={"check_same_thread": False, "timeout": 30},
                echo=False
            )
        else:
            self.engine = create_engine(
                database_url,
                pool_size=20,
                max_overflow=40,
                pool_pre_ping=True,  # Reconnect if connection lost
                pool_recycle=3600,   # Recycle connections after 1 hour
                echo=False
            )
        self.session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)

        Base.metadata.create_all(self.engine)

    @contextmanager
    def get_session(self):
        """Provide a transactional scope, committing on success and rolling back otherwise."""
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Database error: {e}")
            raise
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def health_check(self) -> Dict:
        """Report database connectivity and show count; used by the /health endpoint."""
        try:
            with self.get_session() as session:
                session.execute(text("SELECT 1"))
                show_count = session.query(Show).count()

                return {
                    "status": "healthy",
                    "database": "connected",
                    "shows": show_count
                }
        except SQLAlchemyError as e:
            logger.error(f"Health check failed: {e}")
            return {
                "status": "unhealthy",
                "database": "disconnected",
                "error": str(e)
            }

    def dispose(self):
        self.engine.dispose()
