"""Apply Alembic migrations once the database accepts connections.

Used by deploys before the API starts serving so the remote store schema is
current. ``--sql`` renders the upgrade as SQL instead of touching a database.
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
import time
from pathlib import Path
from typing import Optional

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError, SQLAlchemyError

LOGGER = logging.getLogger("ipma.migrations")
BACKEND_ROOT = Path(__file__).resolve().parent.parent
DEFAULT_CONFIG = BACKEND_ROOT / "alembic.ini"
DEFAULT_TIMEOUT = int(os.getenv("IPMA_DB_MIGRATION_TIMEOUT", "60"))
DEFAULT_POLL_INTERVAL = float(os.getenv("IPMA_DB_MIGRATION_POLL_INTERVAL", "3"))


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Upgrade the IPMA prep schema when the database is ready.")
    parser.add_argument("--revision", default=os.getenv("IPMA_DB_MIGRATION_REVISION", "head"))
    parser.add_argument(
        "--timeout",
        type=int,
        default=DEFAULT_TIMEOUT,
        help=f"Seconds to wait for the database (default: {DEFAULT_TIMEOUT}).",
    )
    parser.add_argument(
        "--poll-interval",
        type=float,
        default=DEFAULT_POLL_INTERVAL,
        help=f"Seconds between readiness probes (default: {DEFAULT_POLL_INTERVAL}).",
    )
    parser.add_argument("--config", default=str(DEFAULT_CONFIG))
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--sql", action="store_true", help="Print the upgrade SQL instead of applying it.")
    mode.add_argument("--check", action="store_true", help="Exit 3 when the schema is behind the target.")
    return parser.parse_args(argv)


def get_alembic_config(config_path: str = str(DEFAULT_CONFIG)) -> Config:
    config = Config(config_path)
    config.set_main_option("script_location", str(BACKEND_ROOT / "alembic"))
    return config


def resolve_database_url(config: Config) -> str:
    """The ini url wins; otherwise IPMA_DATABASE_URL is copied into the config."""
    configured = config.get_main_option("sqlalchemy.url")
    if configured:
        return configured
    env_url = os.getenv("IPMA_DATABASE_URL")
    if not env_url:
        raise RuntimeError("IPMA_DATABASE_URL must be set before running migrations.")
    config.set_main_option("sqlalchemy.url", env_url)
    return env_url


def _probe(engine: Engine) -> None:
    with engine.connect() as connection:
        connection.execute(text("SELECT 1"))


def wait_for_database(database_url: str, *, timeout: int, poll_interval: float) -> None:
    """Probe with ``SELECT 1`` until it succeeds or ``timeout`` elapses."""
    deadline = time.monotonic() + timeout
    last_error: Optional[Exception] = None
    engine = create_engine(database_url, future=True, pool_pre_ping=True)
    try:
        while time.monotonic() < deadline:
            try:
                _probe(engine)
            except OperationalError as exc:
                last_error = exc
                LOGGER.warning("Database not ready yet: %s", exc)
            except SQLAlchemyError as exc:
                last_error = exc
                LOGGER.error("Database error during readiness probe: %s", exc)
                break
            else:
                LOGGER.info("Database is reachable.")
                return
            time.sleep(poll_interval)
    finally:
        engine.dispose()

    raise RuntimeError("Database did not become ready in time.") from last_error


def current_revision(database_url: str) -> Optional[str]:
    engine = create_engine(database_url, future=True)
    try:
        with engine.connect() as connection:
            return MigrationContext.configure(connection).get_current_revision()
    finally:
        engine.dispose()


def is_up_to_date(config: Config, revision: str = "head") -> bool:
    target = ScriptDirectory.from_config(config).get_revision(revision)
    current = current_revision(resolve_database_url(config))
    LOGGER.info("Schema revision %s, target %s", current or "<empty>", target.revision if target else None)
    return target is not None and current == target.revision


def run_migrations(
    revision: str,
    *,
    timeout: int,
    poll_interval: float,
    config: Optional[Config] = None,
) -> None:
    config = config or get_alembic_config()
    database_url = resolve_database_url(config)
    LOGGER.info("Upgrading schema to %s (timeout=%ss poll=%ss)", revision, timeout, poll_interval)
    wait_for_database(database_url, timeout=timeout, poll_interval=poll_interval)
    command.upgrade(config, revision)
    LOGGER.info("Schema is at %s.", revision)


def main(argv: Optional[list[str]] = None) -> int:
    logging.basicConfig(
        level=os.getenv("IPMA_DB_MIGRATION_LOG_LEVEL", "INFO"),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    args = parse_args(argv)
    config = get_alembic_config(args.config)
    try:
        if args.sql:
            resolve_database_url(config)
            command.upgrade(config, args.revision, sql=True)
            return 0
        if args.check:
            return 0 if is_up_to_date(config, args.revision) else 3
        run_migrations(args.revision, timeout=args.timeout, poll_interval=args.poll_interval, config=config)
    except Exception as exc:  # noqa: BLE001
        LOGGER.exception("Migration run failed: %s", exc)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
