import logging
import os
import re
from pathlib import Path
from typing import Optional
from urllib.parse import parse_qs, urlparse

from dotenv import load_dotenv
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

_ROOT = Path(__file__).resolve().parents[1]
load_dotenv(_ROOT / ".env", override=False)
load_dotenv(Path(__file__).resolve().parent / ".env", override=False)

logger = logging.getLogger(__name__)

# Checked in order; the first non-empty value wins
DATABASE_URL_ENV_PRIORITY = ("DATABASE_URL", "NEON_DATABASE_URL", "POSTGRES_URL")

Base = declarative_base()

_engine: Optional[Engine] = None
_session_factory: Optional[sessionmaker] = None


# Returns (env var name, url) for the first configured connection string
def get_database_url_candidate() -> tuple[Optional[str], str]:
    for name in DATABASE_URL_ENV_PRIORITY:
        value = (os.getenv(name) or "").strip()
        if value:
            return name, value
    return None, ""


def resolve_database_url() -> str:
    source, url = get_database_url_candidate()
    if not url:
        raise RuntimeError("DATABASE_URL (or NEON_DATABASE_URL/POSTGRES_URL) must be set.")
    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql+psycopg2://", 1)
    if url.startswith("postgresql") and "sslmode=" not in url.lower():
        logger.warning("db.config: %s has no sslmode parameter; managed Postgres usually needs sslmode=require", source)
    return url


# Splits a connection string into the parts that are safe to log or return to a caller
def describe_database_url(url: str) -> Optional[dict]:
    if not isinstance(url, str) or not url.strip():
        return None
    try:
        parsed = urlparse(url.strip())
    except ValueError:
        return None
    params = parse_qs(parsed.query)
    return {
        "protocol": parsed.scheme or None,
        "host": parsed.hostname or None,
        "port": str(parsed.port) if parsed.port else None,
        "database": parsed.path.lstrip("/") or None,
        "hasSslMode": "sslmode" in params,
        "sslMode": (params.get("sslmode") or [None])[0],
        "userPresent": bool(parsed.username),
    }


def redact_database_message(message: Optional[str]) -> Optional[str]:
    if not isinstance(message, str) or not message.strip():
        return None
    redacted = re.sub(r"postgres(?:ql)?(\+\w+)?://[^@\s]+@", "postgresql://[redacted]@", message.strip(), flags=re.IGNORECASE)
    redacted = re.sub(r"password=([^\s;]+)", "password=[redacted]", redacted, flags=re.IGNORECASE)
    return redacted[:5000]


_SUGGESTIONS = (
    (("password authentication failed",), "Verify the database username and password embedded in DATABASE_URL."),
    (("does not exist",), "Confirm the referenced database and tables exist (run `alembic upgrade head`)."),
    (("no pg_hba.conf entry", "ip address"), "Update the database connection policy or IP allow list to permit this service."),
    (("timeout", "timed out"), "Check database status and network connectivity, then retry the request."),
    (("could not translate host name", "connection refused"), "Verify the database hostname and that outbound network access is permitted."),
)


def _suggest(message: str, parsed: Optional[dict]) -> Optional[str]:
    lowered = message.lower()
    for needles, suggestion in _SUGGESTIONS:
        if any(n in lowered for n in needles):
            return suggestion
    if parsed and (parsed.get("protocol") or "").startswith("postgres") and not parsed.get("hasSslMode"):
        return "Append ?sslmode=require to DATABASE_URL for TLS-required managed Postgres."
    return None


# Safe-to-return context for a failed database call: redacted message, connection shape, suggestion
def describe_database_error(error: BaseException) -> dict:
    source, url = get_database_url_candidate()
    parsed = describe_database_url(url) if url else None
    message = redact_database_message(str(error)) or error.__class__.__name__
    details: dict = {"message": message}
    if parsed:
        details["connection"] = {
            "source": source,
            "host": parsed["host"],
            "database": parsed["database"],
            "sslMode": parsed["sslMode"],
        }
        suggestion = _suggest(message, parsed)
    else:
        suggestion = "Set DATABASE_URL (or NEON_DATABASE_URL/POSTGRES_URL) before retrying the request."
    if suggestion:
        details["suggestion"] = suggestion
    return details


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        url = resolve_database_url()
        connect_args = {"connect_timeout": 5} if url.startswith("postgresql") else {}
        _engine = create_engine(url, pool_pre_ping=True, connect_args=connect_args)
    return _engine


def get_session_factory() -> sessionmaker:
    global _session_factory
    if _session_factory is None:
        _session_factory = sessionmaker(autocommit=False, autoflush=False, bind=get_engine())
    return _session_factory


def SessionLocal() -> Session:
    return get_session_factory()()


# Drops the cached engine/session factory (tests, or after the URL changes)
def reset_engine() -> None:
    global _engine, _session_factory
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _session_factory = None


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
