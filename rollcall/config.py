# config.py — settings for the rollcall console and its store adapter
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from sqlalchemy.engine.url import URL, make_url

from rollcall.errors import ConfigError

MANAGED_HOST_HINTS = ("neon.tech", "supabase.co", "render.com", "rds", "aws", "azure", "gcp")


@dataclass(frozen=True)
class Settings:
    database_url: str
    probe_timeout: float = 8.0
    commit_timeout: float = 10.0
    lookup_timeout: float = 10.0
    scan_cooldown: float = 3.0
    log_level: str = "INFO"
    log_file: Optional[str] = None


# ---------------------------
# Secrets / env resolution
# ---------------------------
def _streamlit_secret(key: str) -> Optional[str]:
    try:
        import streamlit as st  # type: ignore
        return st.secrets.get(key)  # type: ignore[attr-defined]
    except Exception:
        # No secrets.toml (or not running under Streamlit)
        return None


def _load_dotenv() -> None:
    from dotenv import load_dotenv

    if os.path.exists(".env.local"):
        load_dotenv(".env.local")
    else:
        load_dotenv()


def _installed_driver() -> str:
    try:
        import psycopg2  # noqa: F401
        return "postgresql+psycopg2"
    except ImportError:
        pass
    try:
        import psycopg  # noqa: F401
        return "postgresql+psycopg"
    except ImportError:
        return "postgresql+psycopg2"


def normalize_database_url(url: str, driver: Optional[str] = None) -> str:
    """
    Normalize a Postgres URL:
      - postgres:// → postgresql://
      - pick an installed DBAPI when no driver suffix is given
      - add sslmode=require for common managed hosts if not set
      - add connect_timeout=10 if not set
    Non-Postgres URLs (e.g. sqlite) are returned untouched.
    """
    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql://", 1)

    parsed = make_url(url)
    if parsed.get_backend_name() != "postgresql":
        return url

    if parsed.drivername == "postgresql":
        parsed = parsed.set(drivername=driver or _installed_driver())

    q = dict(parsed.query)
    host = (parsed.host or "").lower()
    needs_ssl = any(x in host for x in MANAGED_HOST_HINTS)
    if needs_ssl and "sslmode" not in {k.lower() for k in q}:
        q["sslmode"] = "require"

    # Faster failures on bad networks
    q.setdefault("connect_timeout", "10")

    parsed = parsed.set(query=q)
    return parsed.render_as_string(hide_password=False)


def _database_url(env: Mapping[str, str], use_secrets: bool = False) -> str:
    url = (use_secrets and _streamlit_secret("DATABASE_URL")) or env.get("DATABASE_URL") or env.get("PG_URL")

    # Compose from PG* if still missing (handles special chars in password)
    if not url:
        host = env.get("PGHOST")
        user = env.get("PGUSER")
        pwd = env.get("PGPASSWORD")
        db = env.get("PGDATABASE")
        if all([host, user, pwd, db]):
            url = URL.create(
                drivername="postgresql",
                username=user,
                password=pwd,
                host=host,
                port=int(env.get("PGPORT", "5432")),
                database=db,
            ).render_as_string(hide_password=False)
        else:
            raise ConfigError(
                "DATABASE_URL is missing. Set DATABASE_URL (or PGHOST/PGUSER/PGPASSWORD/PGDATABASE[/PGPORT]) "
                "in Streamlit secrets, the environment, or .env/.env.local."
            )
    return normalize_database_url(url)


def _float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = env.get(key)
    if raw is None or not str(raw).strip():
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{key} must be a number, got {raw!r}")


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """Build Settings from secrets, .env(.local) and the environment."""
    use_secrets = env is None
    if env is None:
        _load_dotenv()
        env = os.environ

    return Settings(
        database_url=_database_url(env, use_secrets),
        probe_timeout=_float(env, "ROLLCALL_PROBE_TIMEOUT", 8.0),
        commit_timeout=_float(env, "ROLLCALL_COMMIT_TIMEOUT", 10.0),
        lookup_timeout=_float(env, "ROLLCALL_LOOKUP_TIMEOUT", 10.0),
        scan_cooldown=_float(env, "ROLLCALL_SCAN_COOLDOWN", 3.0),
        log_level=(env.get("ROLLCALL_LOG_LEVEL") or "INFO").upper(),
        log_file=env.get("ROLLCALL_LOG_FILE") or None,
    )
