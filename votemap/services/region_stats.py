from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable

from votemap.services.errors import TopicNotFoundError, TopicOptionsIncompleteError

logger = logging.getLogger(__name__)

REGION_LEVELS = ("sido", "sigungu")
DEFAULT_PAGE_SIZE = 1000
WINNERS = {"A", "B", "TIE"}


@dataclass
class RegionVoteStat:
    total: int = 0
    count_a: int = 0
    count_b: int = 0
    winner: str = "TIE"


@dataclass
class RegionStats:
    topic_id: str
    level: str
    stats_by_code: dict[str, RegionVoteStat] = field(default_factory=dict)
    source: str = "aggregate"

    @property
    def count_a(self) -> int:
        return sum(stat.count_a for stat in self.stats_by_code.values())

    @property
    def count_b(self) -> int:
        return sum(stat.count_b for stat in self.stats_by_code.values())

    @property
    def total_votes(self) -> int:
        return self.count_a + self.count_b


def decide_winner(count_a: int, count_b: int) -> str:
    if count_a > count_b:
        return "A"
    if count_b > count_a:
        return "B"
    return "TIE"


def _normalize_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _normalize_code(value: Any) -> str | None:
    text = str(value).strip() if value is not None else ""
    return text or None


def build_stats_from_aggregate_rows(rows: Iterable[dict[str, Any]]) -> dict[str, RegionVoteStat]:
    stats: dict[str, RegionVoteStat] = {}
    for row in rows:
        region_code = _normalize_code(row.get("region"))
        if not region_code:
            continue
        winner = row.get("winner")
        stats[region_code] = RegionVoteStat(
            total=_normalize_int(row.get("total")),
            count_a=_normalize_int(row.get("count_a")),
            count_b=_normalize_int(row.get("count_b")),
            winner=winner if winner in WINNERS else "TIE",
        )
    return stats


def _row_region_code(row: dict[str, Any], level: str) -> str | None:
    if level == "sigungu":
        return _normalize_code(row.get("sigungu_code")) or _normalize_code(row.get("school_sigungu_code"))
    return _normalize_code(row.get("sido_code")) or _normalize_code(row.get("school_sido_code"))


def build_stats_from_vote_rows(
    rows: Iterable[dict[str, Any]],
    *,
    level: str,
    option_a: str,
    option_b: str,
) -> dict[str, RegionVoteStat]:
    stats: dict[str, RegionVoteStat] = {}
    for row in rows:
        region_code = _row_region_code(row, level)
        if not region_code:
            continue
        stat = stats.setdefault(region_code, RegionVoteStat())
        stat.total += 1
        if row.get("option_key") == option_a:
            stat.count_a += 1
        elif row.get("option_key") == option_b:
            stat.count_b += 1
        stat.winner = decide_winner(stat.count_a, stat.count_b)
    return stats


def fetch_all_topic_votes(repo, topic_id: str, *, page_size: int = DEFAULT_PAGE_SIZE) -> list[dict[str, Any]]:
    collected: list[dict[str, Any]] = []
    offset = 0
    while True:
        page = repo.fetch_topic_votes_page(topic_id, offset=offset, limit=page_size)
        collected.extend(page)
        if len(page) < page_size:
            break
        offset += page_size
    return collected


def _option_keys_by_position(repo, topic_id: str) -> tuple[str, str]:
    options = repo.fetch_topic_options([topic_id])
    by_position = {row.get("position"): row.get("option_key") for row in options}
    option_a, option_b = by_position.get(1), by_position.get(2)
    if not option_a or not option_b:
        raise TopicOptionsIncompleteError(f"topic {topic_id} has no A/B option pair")
    return option_a, option_b


def get_region_stats(
    repo,
    topic_id: str,
    level: str = "sido",
    *,
    page_size: int = DEFAULT_PAGE_SIZE,
) -> RegionStats:
    if level not in REGION_LEVELS:
        raise ValueError(f"unsupported region level: {level}")
    if repo.get_topic(topic_id) is None:
        raise TopicNotFoundError(f"topic {topic_id} not found")

    aggregate_rows = repo.fetch_region_vote_stats(topic_id, level)
    if aggregate_rows:
        stats = build_stats_from_aggregate_rows(aggregate_rows)
        if stats:
            return RegionStats(topic_id=topic_id, level=level, stats_by_code=stats, source="aggregate")

    logger.info("region_stats_scan_fallback topic_id=%s level=%s", topic_id, level)
    rows = fetch_all_topic_votes(repo, topic_id, page_size=page_size)
    if not rows:
        return RegionStats(topic_id=topic_id, level=level, source="scan")
    option_a, option_b = _option_keys_by_position(repo, topic_id)
    stats = build_stats_from_vote_rows(rows, level=level, option_a=option_a, option_b=option_b)
    return RegionStats(topic_id=topic_id, level=level, stats_by_code=stats, source="scan")
