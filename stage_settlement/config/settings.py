"""
Settings Configuration

Environment-driven defaults for the settlement engine.
All values are loaded from environment variables once, at import time.
"""
import os

from dotenv import load_dotenv

load_dotenv()


def get_bool_env(key: str, default: bool = False) -> bool:
    """Get a boolean value from environment variable."""
    value = os.getenv(key, str(default)).lower()
    return value in ('true', '1', 'yes', 'on', 'enabled')


def get_float_env(key: str, default: float) -> float:
    """Get a float value from environment variable, falling back on bad input."""
    raw = os.getenv(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def get_int_env(key: str, default: int) -> int:
    """Get an int value from environment variable, falling back on bad input."""
    raw = os.getenv(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


class Settings:
    """
    Settings for the settlement engine.

    Scoring defaults here are the third tier of the scoring config
    fallback chain (project -> system setting -> environment -> static).
    """

    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./stage_settlement.db")

    DEFAULT_STUDENT_RANKING_WEIGHT: float = get_float_env("DEFAULT_STUDENT_RANKING_WEIGHT", 0.7)
    DEFAULT_TEACHER_RANKING_WEIGHT: float = get_float_env("DEFAULT_TEACHER_RANKING_WEIGHT", 0.3)
    DEFAULT_COMMENT_REWARD_PERCENTILE: float = get_float_env("DEFAULT_COMMENT_REWARD_PERCENTILE", 0.0)
    DEFAULT_MAX_COMMENT_SELECTIONS: int = get_int_env("DEFAULT_MAX_COMMENT_SELECTIONS", 3)

    # Upper bound for a single notification push
    NOTIFICATION_TIMEOUT_SECONDS: float = get_float_env("NOTIFICATION_TIMEOUT_SECONDS", 2.0)

    FEATURE_SETTLEMENT_NOTIFICATIONS: bool = get_bool_env("FEATURE_SETTLEMENT_NOTIFICATIONS", True)

    @classmethod
    def as_dict(cls) -> dict:
        """Get all settings as a dictionary."""
        return {
            key: value
            for key, value in cls.__dict__.items()
            if key.isupper()
        }


settings = Settings()
