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
from votemap.jobs.region_backfill import BACKFILL_PAGE_SIZE, backfill_school_regions, backfill_vote_regions  # noqa: E402
from votemap.services.repository import PostgresRepository  # noqa: E402


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Fill missing school and vote region codes.")
    parser.add_argument("--page-size", type=int, default=BACKFILL_PAGE_SIZE)
    parser.add_argument("--skip-schools", action="store_true", help="Do not resolve school region codes.")
    parser.add_argument("--skip-votes", action="store_true", help="Do not copy school codes onto votes.")
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    report: dict[str, dict] = {}
    with get_connection() as conn:
        repo = PostgresRepository(conn)
        if not args.skip_schools:
            report["schools"] = asdict(backfill_school_regions(repo, page_size=args.page_size))
        if not args.skip_votes:
            report["votes"] = asdict(backfill_vote_regions(repo, page_size=args.page_size))
    print(json.dumps(report, ensure_ascii=False))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
