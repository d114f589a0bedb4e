"""
Lineage integrity sweep.

Runs the chain checker over every lineage (or the ids given on the command
line) and exits 1 if any lineage reports a violation. Intended for cron or a
post-deploy job; it never repairs anything.

Usage:
  python scripts/check_integrity.py [LINEAGE_ID ...]
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from sqlalchemy import select

from app.riskdocs.modules.documents.models import Lineage
from app.riskdocs.modules.documents.versioning import check_lineage_integrity
from scripts._db_utils import script_session


def run_check(database_url: str, lineage_ids: list[str] | None = None) -> dict[str, list[str]]:
    failures: dict[str, list[str]] = {}
    with script_session(database_url) as s:
        ids = lineage_ids or list(s.execute(select(Lineage.id).order_by(Lineage.created_at.asc())).scalars())
        for lineage_id in ids:
            problems = check_lineage_integrity(s, lineage_id)
            if problems:
                failures[lineage_id] = problems
        print(f"Checked {len(ids)} lineage(s); {len(failures)} with violations.", flush=True)
    return failures


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Check document lineage integrity.")
    parser.add_argument("lineage_ids", nargs="*", help="Lineage ids to check (default: all)")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    db_url = (os.environ.get("DATABASE_URL") or "sqlite:///riskdocs.db").strip()
    failures = run_check(db_url, args.lineage_ids or None)
    for lineage_id, problems in failures.items():
        for p in problems:
            print(f"[{lineage_id}] {p}", flush=True)
    return 1 if failures else 0


if __name__ == "__main__":
    sys.exit(main())
