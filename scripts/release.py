"""
Release phase: migrate, verify, seed.

Refuses to run without DATABASE_URL (and against SQLite when ENV=production),
upgrades the schema to head, checks every table the lifecycle engine needs is
present, then seeds permissions/roles/admin. Seeding never overwrites an
existing password.

Usage:
  python scripts/release.py
"""

from __future__ import annotations

import os
import sys
from pathlib import Path


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _require_env(name: str) -> str:
    v = (os.environ.get(name) or "").strip()
    if not v:
        raise RuntimeError(f"Missing required environment variable {name}.")
    return v


def _alembic_config(db_url: str):
    from alembic.config import Config

    cfg = Config(str(ROOT / "alembic.ini"))
    cfg.set_main_option("script_location", str(ROOT / "migrations"))
    cfg.set_main_option("sqlalchemy.url", db_url)
    return cfg


def missing_tables(db_url: str) -> list[str]:
    from sqlalchemy import inspect as sa_inspect

    from app.riskdocs import REQUIRED_TABLES
    from app.riskdocs.db import make_engine

    engine = make_engine(db_url)
    try:
        insp = sa_inspect(engine)
        return [t for t in REQUIRED_TABLES if not insp.has_table(t)]
    finally:
        engine.dispose()


def run_release() -> None:
    db_url = _require_env("DATABASE_URL")
    env = (os.environ.get("ENV") or "").strip().lower()
    if env in ("prod", "production") and db_url.startswith("sqlite"):
        raise RuntimeError("Refusing to run release on sqlite DATABASE_URL in production. Set DATABASE_URL to Postgres.")

    print(f"=== riskdocs release start (ENV={env or '(unset)'}) ===", flush=True)

    from alembic import command

    command.upgrade(_alembic_config(db_url), "head")
    print("Migrations at head.", flush=True)

    missing = missing_tables(db_url)
    if missing:
        raise RuntimeError(f"Schema verification failed after migration; missing tables: {', '.join(missing)}")
    print("Schema verified.", flush=True)

    from scripts import init_db

    init_db.seed_only(database_url=db_url)
    print("Seed complete.", flush=True)
    print("=== riskdocs release done ===", flush=True)


def main() -> None:
    run_release()


if __name__ == "__main__":
    main()
