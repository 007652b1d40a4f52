#!/usr/bin/env python
"""
Record chain audit.

Walks every culture/grow version chain and reports gaps, out-of-order
timestamps, missing reasons and missing amendment log entries.

Usage:
    python scripts/verify_records.py
    python scripts/verify_records.py --entity-type culture
    python scripts/verify_records.py --group 3f2a...   # one record

Exit status is 1 when any chain has problems.

Environment:
    DATABASE_URL: database connection string
"""
from __future__ import annotations

import argparse
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from sqlalchemy import select

from app.mycolab.models import RecordGroup
from app.mycolab.modules.records.history import verify_chain
from scripts._db_utils import resolve_database_url, script_session


def run(*, database_url: str | None = None, entity_type: str | None = None, group_id: str | None = None) -> int:
    bad = 0
    checked = 0
    with script_session(resolve_database_url(database_url)) as s:
        stmt = select(RecordGroup.id).order_by(RecordGroup.created_at.asc())
        if entity_type:
            stmt = stmt.where(RecordGroup.entity_type == entity_type)
        if group_id:
            stmt = stmt.where(RecordGroup.id == group_id)
        for gid in s.execute(stmt).scalars():
            checked += 1
            problems = verify_chain(s, gid)
            if problems:
                bad += 1
                print(f"[FAIL] {gid}")
                for p in problems:
                    print(f"       - {p}")
        s.rollback()

    print(f"Checked {checked} record(s); {bad} with problems.")
    return 1 if bad else 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Verify record version chains")
    parser.add_argument("--entity-type", choices=("culture", "grow"), help="Only check one entity type")
    parser.add_argument("--group", help="Only check one record group id")
    args = parser.parse_args()
    sys.exit(run(entity_type=args.entity_type, group_id=args.group))


if __name__ == "__main__":
    main()
