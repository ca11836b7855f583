from logging.config import fileConfig
import os
import re
import sys
from pathlib import Path

from dotenv import load_dotenv
from sqlalchemy import create_engine, pool
from alembic import context

# Ensure project root is on sys.path so `import ComplianceBackend...` works from any CWD
PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

load_dotenv(Path(PROJECT_ROOT) / ".env", override=False)

from ComplianceBackend.database import DATABASE_URL_ENV_PRIORITY, Base, resolve_database_url  # noqa: E402
# Import all models so Alembic autogenerate can see tables in Base.metadata.
import ComplianceBackend.models  # noqa: F401,E402

# Alembic Config object
config = context.config


# Prefer explicit alembic.ini URL (or a ${VAR} placeholder), otherwise the app's URL resolution
def _get_migration_url() -> str:
    url = (config.get_main_option("sqlalchemy.url") or "").strip()
    if url:
        m = re.fullmatch(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}", url)
        if not m:
            return url
        # The app's own variables go through resolve_database_url for the postgres:// rewrite
        env_val = "" if m.group(1) in DATABASE_URL_ENV_PRIORITY else (os.getenv(m.group(1)) or "")
        if env_val:
            return env_val
        # Unresolved placeholder falls through to DATABASE_URL / NEON_DATABASE_URL / POSTGRES_URL
    return resolve_database_url()


if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


# Runs migrations in "offline" mode (generates SQL without a live DB connection)
def run_migrations_offline() -> None:
    context.configure(
        url=_get_migration_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        compare_type=True,
        compare_server_default=True,
    )

    with context.begin_transaction():
        context.run_migrations()


# Runs migrations in "online" mode (executes against a live DB connection)
def run_migrations_online() -> None:
    connectable = create_engine(_get_migration_url(), poolclass=pool.NullPool)

    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            compare_type=True,
            compare_server_default=True,
        )

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
