"""Environment-driven settings for the booking service."""

import os
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name, default):
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Config:
    """Runtime settings; every attribute can be overridden through the environment."""

    def __init__(self, **overrides):
        self.DATABASE_URL = os.getenv('DATABASE_URL', 'sqlite:///showseats.db')
        self.PORT = int(os.getenv('PORT', 5000))
        self.LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')
        self.HOLD_DURATION_SECONDS = int(os.getenv('HOLD_DURATION_SECONDS', 600))
        self.HOLD_CLEANUP_INTERVAL_SECONDS = float(os.getenv('HOLD_CLEANUP_INTERVAL_SECONDS', 10))
        self.SHOW_LOCK_TIMEOUT_SECONDS = float(os.getenv('SHOW_LOCK_TIMEOUT_SECONDS', 10))
        self.START_HOLD_SWEEPER = _env_bool('START_HOLD_SWEEPER', True)

        for key, value in overrides.items():
            if not hasattr(self, key):
                raise AttributeError(f"unknown config option: {key}")
            setattr(self, key, value)
