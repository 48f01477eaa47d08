"""Environment-driven configuration."""

from __future__ import annotations

import dataclasses
import logging
import os
from typing import FrozenSet

_logger = logging.getLogger(__name__)

DEFAULT_CORS_ORIGINS = "http://localhost:3000,http://127.0.0.1:3000,http://localhost:5173,http://127.0.0.1:5173"


def load_dotenv(path: str = ".env") -> None:
    if not os.path.exists(path):
        return

    try:
        with open(path, "r", encoding="utf-8") as env_file:
            for raw_line in env_file:
                line = raw_line.strip()
                if not line or line.startswith("#") or "=" not in line:
                    continue
                key, value = line.split("=", 1)
                key = key.strip()
                value = value.strip().strip("'").strip('"')
                if key:
                    os.environ.setdefault(key, value)
    except OSError:
        _logger.exception("Failed to read %s", path)


def required_env(name: str) -> str:
    value = os.environ.get(name)
    if not value:
        raise RuntimeError(f"{name} is not configured")
    return value


def env_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        _logger.warning("Ignoring non-integer %s=%r", name, raw)
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        _logger.warning("Ignoring non-numeric %s=%r", name, raw)
        return default


@dataclasses.dataclass(frozen=True)
class Settings:
    """Process settings.

    Parameters
    ----------
    database_url : str
        PostgreSQL DSN handed to the psycopg2 pool.
    secret_key : str
        Flask session key, also used to sign email verification and
        password reset tokens.
    run_db_init : bool
        Create/upgrade the schema once at startup.
    cors_allowed_origins : frozenset of str
        Origins allowed to call ``/api/``; ``"*"`` allows any.
    mail_relay_url : str or None
        HTTP endpoint that delivers account emails. When unset, mails are
        only logged.
    token_max_age_seconds : int
        Lifetime of verification and reset links.
    """

    database_url: str
    secret_key: str = "routedesk-dev-secret"
    run_db_init: bool = False
    port: int = 5001
    debug: bool = False
    cors_allowed_origins: FrozenSet[str] = frozenset()
    mail_relay_url: str | None = None
    mail_timeout_seconds: float = 5.0
    public_base_url: str = "http://localhost:5001"
    token_max_age_seconds: int = 60 * 60 * 24
    pool_min: int = 1
    pool_max: int = 10


def load_settings() -> Settings:
    try:
        database_url = os.environ["DATABASE_URL"]
    except KeyError as exc:
        raise RuntimeError("DATABASE_URL environment variable is required") from exc

    secret_key = os.environ.get("SECRET_KEY")
    if not secret_key:
        _logger.warning("SECRET_KEY is not set; using the development key")
        secret_key = Settings.secret_key

    origins = frozenset(
        origin.strip()
        for origin in os.environ.get("CORS_ALLOWED_ORIGINS", DEFAULT_CORS_ORIGINS).split(",")
        if origin.strip()
    )

    return Settings(
        database_url=database_url,
        secret_key=secret_key,
        run_db_init=os.environ.get("RUN_DB_INIT", "0") == "1",
        port=_env_int("PORT", 5001),
        debug=os.environ.get("FLASK_DEBUG", "0") == "1",
        cors_allowed_origins=origins,
        mail_relay_url=os.environ.get("MAIL_RELAY_URL") or None,
        mail_timeout_seconds=_env_float("MAIL_TIMEOUT_SECONDS", 5.0),
        public_base_url=os.environ.get("PUBLIC_BASE_URL", "http://localhost:5001").rstrip("/"),
        token_max_age_seconds=_env_int("TOKEN_MAX_AGE_SECONDS", 60 * 60 * 24),
        pool_min=_env_int("DB_POOL_MIN", 1),
        pool_max=_env_int("DB_POOL_MAX", 10),
    )


load_dotenv()
