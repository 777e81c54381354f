import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str

    wiki_module_timeout: float
    wiki_module_max_workers: int
    wiki_default_page: str


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _getenv_float(name: str, default: float) -> float:
    raw = _getenv(name)
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be a number (got {raw!r}).") from None
    if value <= 0:
        raise RuntimeError(f"{name} must be greater than zero (got {raw!r}).")
    return value


def _getenv_int(name: str, default: int) -> int:
    raw = _getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be an integer (got {raw!r}).") from None


def load_settings() -> Settings:
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=_getenv("ENV", "development"),
        database_url=_getenv("DATABASE_URL", "sqlite:///pubwiki.db"),
        wiki_module_timeout=_getenv_float("WIKI_MODULE_TIMEOUT", 5.0),
        wiki_module_max_workers=_getenv_int("WIKI_MODULE_MAX_WORKERS", 8),
        wiki_default_page=_getenv("WIKI_DEFAULT_PAGE", "FrontPage"),
    )


def load_config() -> dict:
    s = load_settings()
    is_production = s.env in ("prod", "production")
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        # wiki engine
        "WIKI_MODULE_TIMEOUT": s.wiki_module_timeout,
        "WIKI_MODULE_MAX_WORKERS": max(1, s.wiki_module_max_workers),
        "WIKI_DEFAULT_PAGE": s.wiki_default_page,
        # security defaults
        "SESSION_COOKIE_HTTPONLY": True,
        "SESSION_COOKIE_SAMESITE": "Lax",
        "SESSION_COOKIE_SECURE": is_production,  # Require HTTPS in production
        # page bodies are text; 2MB is generous
        "MAX_CONTENT_LENGTH": 2 * 1024 * 1024,
    }
