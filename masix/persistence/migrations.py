from __future__ import annotations

from pathlib import Path

from alembic import command
from alembic.config import Config

from masix.config.settings import get_settings


def run_migrations(database_url: str | None = None) -> None:
    """Apply DB migrations up to head."""
    script_location = Path(__file__).resolve().parent / "alembic"
    if not script_location.exists():
        raise RuntimeError(f"Alembic script location not found: {script_location}")

    config = Config()
    config.set_main_option("script_location", str(script_location))
    config.set_main_option("sqlalchemy.url", database_url or get_settings().database_url)
    # env.py must not call logging.config.fileConfig() over the JSON logger.
    config.config_file_name = None
    command.upgrade(config, "head")
