# utils/db.py - Database engine factory
from sqlalchemy import create_engine
from utils.config import config
import logging

logger = logging.getLogger(__name__)

_engine = None


def get_db_engine():
    """Get the shared SQLAlchemy engine, creating it on first use"""
    global _engine

    if _engine is None:
        _engine = create_engine(
            config.database_url,
            echo=config.db_echo,
            pool_pre_ping=config.db_pool_pre_ping,
            future=True
        )
        logger.info(f"Database engine created for {_engine.url.render_as_string(hide_password=True)}")

    return _engine


def reset_db_engine():
    """Dispose the shared engine (used when configuration changes)"""
    global _engine

    if _engine is not None:
        _engine.dispose()
        _engine = None
