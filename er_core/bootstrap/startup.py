from __future__ import annotations

import logging
import traceback
from pathlib import Path

from alembic import command
from alembic.config import Config

logger = logging.getLogger(__name__)

MIGRATIONS_SUBDIR = Path("infrastructure") / "db" / "migrations"


def check_startup_prerequisites(root_dir: Path, db_file: Path) -> bool:
    if not (root_dir / "alembic.ini").exists():
        logger.error("alembic.ini is missing in %s; check the installation", root_dir)
        return False
    migrations_dir = root_dir / MIGRATIONS_SUBDIR
    if not migrations_dir.exists():
        logger.error("Migrations directory %s is missing; check the installation", migrations_dir)
        return False
    try:
        db_file.parent.mkdir(parents=True, exist_ok=True)
        test_file = db_file.parent / ".write_test"
        test_file.write_text("ok", encoding="utf-8")
        test_file.unlink(missing_ok=True)
    except OSError:
        logger.exception("Database directory %s is not writable", db_file.parent)
        return False
    return True


def run_migrations(root_dir: Path, database_url: str, log_dir: Path, db_file: Path) -> bool:
    try:
        cfg = Config(str(root_dir / "alembic.ini"))
        cfg.set_main_option("script_location", str(root_dir / MIGRATIONS_SUBDIR))
        cfg.set_main_option("sqlalchemy.url", database_url)
        command.upgrade(cfg, "head")
        return True
    except Exception:  # noqa: BLE001
        logger.exception("Failed to run migrations")
        try:
            error_path = log_dir / "migration_error.log"
            error_path.parent.mkdir(parents=True, exist_ok=True)
            with error_path.open("a", encoding="utf-8") as handle:
                handle.write("\n--- Migration error ---\n")
                handle.write(f"DB: {db_file}\n")
                handle.write(f"Migrations: {root_dir / MIGRATIONS_SUBDIR}\n")
                handle.write(traceback.format_exc())
        except OSError:
            logger.exception("Failed to write migration error log")
        return False


def initialize_database(
    *,
    root_dir: Path,
    db_file: Path,
    database_url: str,
    log_dir: Path,
) -> bool:
    if not check_startup_prerequisites(root_dir, db_file):
        return False
    return run_migrations(root_dir, database_url, log_dir, db_file)
