from __future__ import annotations

import logging
from dataclasses import dataclass

from votemap.services.schools import plan_region_fields, region_fields_differ

logger = logging.getLogger(__name__)

BACKFILL_PAGE_SIZE = 1000


@dataclass
class SchoolBackfillResult:
    scanned: int = 0
    updated: int = 0


@dataclass
class VoteBackfillResult:
    scanned: int = 0
    updated: int = 0
    unresolved: int = 0


def backfill_school_regions(repo, *, page_size: int = BACKFILL_PAGE_SIZE) -> SchoolBackfillResult:
    # collect before writing: updated rows drop out of the missing-region filter
    schools: list[dict] = []
    offset = 0
    while True:
        page = repo.fetch_schools_missing_region(offset=offset, limit=page_size)
        schools.extend(page)
        if len(page) < page_size:
            break
        offset += page_size

    result = SchoolBackfillResult(scanned=len(schools))
    for school in schools:
        planned = plan_region_fields(school)
        if not region_fields_differ(school, planned):
            continue
        repo.update_school_region(
            school["id"],
            sido_code=planned.sido_code,
            sigungu_code=planned.sigungu_code,
            sigungu_name=planned.sigungu_name,
        )
        result.updated += 1

    logger.info("backfill_school_regions scanned=%s updated=%s", result.scanned, result.updated)
    return result


def backfill_vote_regions(repo, *, page_size: int = BACKFILL_PAGE_SIZE) -> VoteBackfillResult:
    result = VoteBackfillResult()
    offset = 0
    while True:
        page = repo.fetch_votes_with_school_regions(offset=offset, limit=page_size)
        for vote in page:
            result.scanned += 1
            next_sido_code = vote.get("school_sido_code") or vote.get("sido_code")
            next_sigungu_code = vote.get("school_sigungu_code") or vote.get("sigungu_code")
            if not next_sido_code or not next_sigungu_code:
                result.unresolved += 1
                continue
            if vote.get("sido_code") == next_sido_code and vote.get("sigungu_code") == next_sigungu_code:
                continue
            repo.update_vote_region(vote["id"], sido_code=next_sido_code, sigungu_code=next_sigungu_code)
            result.updated += 1
        if len(page) < page_size:
            break
        offset += page_size

    logger.info(
        "backfill_vote_regions scanned=%s updated=%s unresolved=%s",
        result.scanned,
        result.updated,
        result.unresolved,
    )
    return result
