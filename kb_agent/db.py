"""Database setup and session utilities for SQLAlchemy.

This module centralizes engine/session initialization, metadata base, and helpers:
- create_session_factory: Builds an engine and a bound sessionmaker for a database URL.
- init_db: Ensures the pgvector extension exists and creates required tables and the
  HNSW index over the articles.embedding column for cosine similarity search.
- session_scope: Context-managed transactional scope for imperative workflows.

The database URL comes from kb_agent.config.Settings.DATABASE_URL.
"""
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

Base = declarative_base()


def create_session_factory(database_url: str) -> sessionmaker:
    """Create an engine and a session factory bound to it.

    Args:
        database_url: SQLAlchemy database URL.

    Returns:
        sessionmaker: Factory producing Sessions on the new engine.
    """
    engine = create_engine(database_url, pool_pre_ping=True, future=True)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True)


def init_db(engine: Engine) -> None:
    """Initialize database extensions, tables, and vector indexes.

    Ensures pgvector extension is available, creates tables from SQLAlchemy metadata,
    and creates the HNSW index over articles.embedding if missing.

    This function is idempotent and safe to run multiple times.
    """
    with engine.connect() as conn:
        conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
        conn.commit()

    # Import models after Base is defined
    from kb_agent import models  # noqa: F401

    Base.metadata.create_all(bind=engine)

    with engine.connect() as conn:
        conn.execute(
            text(
                """
                DO $$
                BEGIN
                    IF NOT EXISTS (
                        SELECT 1 FROM pg_indexes WHERE indexname = 'idx_articles_embedding_hnsw'
                    ) THEN
                        CREATE INDEX idx_articles_embedding_hnsw
                        ON articles USING hnsw (embedding vector_cosine_ops);
                    END IF;
                END$$;
                """
            )
        )
        conn.commit()


@contextmanager
def session_scope(factory: sessionmaker) -> Iterator[Session]:
    """Provide a transactional scope around a series of operations.

    Yields:
        Session: A SQLAlchemy session from the given factory.

    Notes:
        - Commits on successful exit.
        - Rolls back and re-raises on exception.
        - Always closes the session at the end.
    """
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
