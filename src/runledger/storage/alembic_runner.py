"""Utilities to run Alembic migrations programmatically."""

from __future__ import annotations

import threading
from pathlib import Path

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from sqlalchemy import create_engine
from sqlalchemy.pool import NullPool

RUN_STATE_BRANCH = "run_state"
CONTROL_BRANCH = "control"

# alembic.context and alembic.op are module-global proxies; one upgrade per process at a time.
_UPGRADE_LOCK = threading.Lock()


def upgrade_head(db_path: Path, *, branch: str = RUN_STATE_BRANCH) -> None:
    """Apply Alembic migrations of one branch up to its head for a SQLite database."""

    root_dir = Path(__file__).resolve().parents[3]
    alembic_ini = root_dir / "alembic.ini"
    alembic_dir = root_dir / "alembic"

    config = Config(str(alembic_ini))
    config.set_main_option("script_location", str(alembic_dir))
    config.set_main_option("version_locations", str(alembic_dir / "versions"))
    config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")

    with _UPGRADE_LOCK:
        if is_at_head(config, db_path=db_path, branch=branch):
            return
        command.upgrade(config, f"{branch}@head")


def is_at_head(config: Config, *, db_path: Path, branch: str) -> bool:
    """Whether the database already carries the head revision of ``branch``."""

    if not db_path.is_file():
        return False
    script = ScriptDirectory.from_config(config)
    branch_heads = {revision.revision for revision in script.get_revisions(f"{branch}@head")}
    engine = create_engine(f"sqlite:///{db_path}", poolclass=NullPool)
    try:
        with engine.connect() as connection:
            current = set(MigrationContext.configure(connection).get_current_heads())
    finally:
        engine.dispose()
    return bool(branch_heads) and branch_heads <= current
