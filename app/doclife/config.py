import os
from dataclasses import dataclass

from app.doclife.constants import MAX_CHAIN_DEPTH


@dataclass(frozen=True)
class Settings:
    env: str
    database_url: str
    chain_max_depth: int
    log_level: str


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _getenv_int(name: str, default: int) -> int:
    raw = _getenv(name)
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError as e:
        raise RuntimeError(f"{name} must be an integer, got {raw!r}") from e
    if value < 1:
        raise RuntimeError(f"{name} must be >= 1, got {value}")
    return value


def load_settings() -> Settings:
    return Settings(
        env=_getenv("ENV", "development"),
        database_url=_getenv("DATABASE_URL", "sqlite:///doclife.db"),
        chain_max_depth=_getenv_int("CHAIN_MAX_DEPTH", MAX_CHAIN_DEPTH),
        log_level=_getenv("LOG_LEVEL", "INFO").upper(),
    )


def load_config() -> dict:
    s = load_settings()
    return {
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        "CHAIN_MAX_DEPTH": s.chain_max_depth,
        "LOG_LEVEL": s.log_level,
    }
