"""
Release phase: migrate the schema to head, then seed permissions/roles/admin.

Refuses to run without DATABASE_URL, and against sqlite when ENV=production.

Usage:
  python scripts/release.py [--skip-seed]
"""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _database_url() -> str:
    url = (os.environ.get("DATABASE_URL") or "").strip()
    if not url:
        raise RuntimeError("DATABASE_URL must be set for the release phase.")
    env = (os.environ.get("ENV") or "").strip().lower()
    if env in ("prod", "production") and url.startswith("sqlite"):
        raise RuntimeError("Refusing to release a production deploy onto sqlite. Point DATABASE_URL at Postgres.")
    return url


def migrate(db_url: str) -> None:
    from alembic import command
    from alembic.config import Config

    cfg = Config(str(ROOT / "alembic.ini"))
    cfg.set_main_option("script_location", str(ROOT / "migrations"))
    cfg.set_main_option("sqlalchemy.url", db_url.replace("%", "%%"))
    command.upgrade(cfg, "head")


def run_release(*, seed: bool = True) -> None:
    db_url = _database_url()
    print("=== pubwiki release ===", flush=True)

    print("Upgrading schema to head...", flush=True)
    migrate(db_url)

    if seed:
        from scripts import init_db

        print("Seeding permissions, roles and admin user...", flush=True)
        init_db.seed_only(database_url=db_url)
    print("=== release done ===", flush=True)


def main() -> None:
    parser = argparse.ArgumentParser(description="Run migrations and seed data.")
    parser.add_argument("--skip-seed", action="store_true", help="only run migrations")
    args = parser.parse_args()
    run_release(seed=not args.skip_seed)


if __name__ == "__main__":
    main()
