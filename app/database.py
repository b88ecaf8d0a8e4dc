import logging
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from app.config import Settings, settings

logger = logging.getLogger(__name__)

Base = declarative_base()


def build_engine(config: Settings) -> Engine:
    """Create the engine used by dispatcher and worker threads."""
    if config.DATABASE_URL.startswith("sqlite"):
        # SQLite ignores pool sizing; connections must be shareable across threads
        return create_engine(
            config.DATABASE_URL,
            echo=config.DB_ECHO,
            connect_args={"check_same_thread": False, "timeout": 30},
        )
    return create_engine(
        config.DATABASE_URL,
        echo=config.DB_ECHO,
        pool_size=config.DB_POOL_SIZE,
        max_overflow=config.DB_MAX_OVERFLOW,
        pool_pre_ping=config.DB_POOL_PRE_PING,
    )


def build_session_factory(bind: Engine) -> sessionmaker:
    return sessionmaker(bind=bind, autoflush=False, autocommit=False, expire_on_commit=False)


engine = build_engine(settings)
SessionLocal = build_session_factory(engine)


@contextmanager
def session_scope(factory: sessionmaker = SessionLocal) -> Iterator[Session]:
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def init_db(bind: Engine = engine):
    """Create tables if not exist"""
    # model modules register their tables on Base.metadata when imported
    import app.models.outbox  # noqa: F401
    import app.models.feed_batch  # noqa: F401
    import app.models.directory  # noqa: F401

    try:
        Base.metadata.create_all(bind)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise


def close_db(bind: Engine = engine):
    """Close database connections"""
    bind.dispose()
    logger.info("Database connections closed")


def check_db_connection(factory: sessionmaker = SessionLocal) -> bool:
    """Check if database is healthy"""
    try:
        with factory() as session:
            session.execute(text("SELECT 1"))
            return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False
