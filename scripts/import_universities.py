from __future__ import annotations

import argparse
from dataclasses import asdict
import json
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from votemap.db import get_connection  # noqa: E402
from votemap.jobs.university_import import build_school_records, import_universities, read_register_rows  # noqa: E402
from votemap.services.repository import PostgresRepository  # noqa: E402


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Import the university register (xlsx/csv) into the schools table.")
    parser.add_argument("path", help="Register file path (.xlsx or .csv, first row is the header)")
    parser.add_argument("--dry-run", action="store_true", help="Parse and map only. Do not write DB.")
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    path = Path(args.path)
    if not path.exists():
        raise SystemExit(f"[FAIL] register file not found: {path}")

    if args.dry_run:
        records = build_school_records(read_register_rows(path))
        unresolved = sum(1 for record in records if not record["sigungu_code"])
        print(json.dumps({"dry_run": True, "records": len(records), "unresolved_sigungu": unresolved}, ensure_ascii=False))
        return 0

    with get_connection() as conn:
        result = import_universities(PostgresRepository(conn), path)
    print(json.dumps(asdict(result), ensure_ascii=False))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
