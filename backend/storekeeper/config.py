# backend/storekeeper/config.py
from __future__ import annotations
import os


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/storekeeper.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///storekeeper.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Sessions
    SESSION_ABSOLUTE_TIMEOUT_HOURS = _env_int("SESSION_ABSOLUTE_TIMEOUT_HOURS", 24)
    SESSION_IDLE_TIMEOUT_HOURS = _env_int("SESSION_IDLE_TIMEOUT_HOURS", 12)

    # Offline sync bounds
    SYNC_MAX_PUSH_ITEMS = _env_int("SYNC_MAX_PUSH_ITEMS", 200)
    SYNC_PULL_LIMIT = _env_int("SYNC_PULL_LIMIT", 500)
    SYNC_MAX_ATTEMPTS = _env_int("SYNC_MAX_ATTEMPTS", 3)
    SYNC_PROCESSING_TIMEOUT_SECONDS = _env_int("SYNC_PROCESSING_TIMEOUT_SECONDS", 300)

    DEFAULT_MIN_STOCK_ALERT = _env_int("DEFAULT_MIN_STOCK_ALERT", 5)

    # bcrypt cost factor
    BCRYPT_ROUNDS = _env_int("BCRYPT_ROUNDS", 12)

    CORS_ALLOWED_ORIGINS = os.environ.get(
        "CORS_ALLOWED_ORIGINS",
        "http://localhost:8081,http://127.0.0.1:8081,http://localhost:19006",
    )


class TestConfig(Config):
    TESTING = True
    SECRET_KEY = "test"
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    LOG_LEVEL = "WARNING"
    BCRYPT_ROUNDS = 4
