# utils/config.py - Environment driven configuration
import os
import logging


def _env_bool(name, default=False):
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


class Config:
    """Runtime settings for the manufacturing engine"""

    def __init__(self):
        self.reload()

    def reload(self):
        """Re-read settings from the environment"""
        self.database_url = os.environ.get('DATABASE_URL', 'sqlite:///manufacturing.db')
        self.db_echo = _env_bool('DB_ECHO', False)
        self.db_pool_pre_ping = _env_bool('DB_POOL_PRE_PING', True)
        self.max_retries = max(1, int(os.environ.get('ENGINE_MAX_RETRIES', '3')))
        self.log_level = os.environ.get('LOG_LEVEL', 'INFO').upper()
        self.finished_good_category = os.environ.get('FINISHED_GOOD_CATEGORY', 'Finished Good')

    def __repr__(self):
        return (f"Config(database_url={self.database_url!r}, "
                f"max_retries={self.max_retries}, log_level={self.log_level!r})")


def configure_logging(level=None):
    """Configure root logging for scripts and workers"""
    logging.basicConfig(
        level=level or config.log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


config = Config()
