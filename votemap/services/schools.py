from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from votemap.models.schemas import SchoolItem
from votemap.services.regions import (
    normalize_korean_name,
    resolve_sido_code,
    resolve_sido_code_from_address,
    resolve_sigungu_code,
)

logger = logging.getLogger(__name__)

MAIN_CAMPUS_MARKER = "본교"
LOCAL_SOURCE = "local_xls"
LOCAL_LEVELS = ("university", "graduate")
DIRECTORY_LEVELS = ("middle", "high")


@dataclass(frozen=True)
class EnsuredSchool:
    school_id: str
    aggregate_school_id: str
    school_row: dict[str, Any]
    sido_code: str | None
    sigungu_code: str | None


@dataclass(frozen=True)
class PlannedRegion:
    sido_code: str | None
    sigungu_code: str | None
    sigungu_name: str | None


def aggregate_school_id_for(row: dict[str, Any]) -> str:
    return row.get("parent_school_id") or row["id"]


def plan_region_fields(existing: dict[str, Any] | None, item: SchoolItem | None = None) -> PlannedRegion:
    """Stored values win, then caller-supplied values, then whatever the resolver finds."""
    existing = existing or {}

    def pick(field: str) -> Any:
        value = existing.get(field)
        if value is None and item is not None:
            value = getattr(item, field)
        return value

    address = pick("address")
    sido_code = pick("sido_code")
    if sido_code is None:
        sido_name = (item.sido_name if item is not None else None) or existing.get("sido_name")
        sido_code = resolve_sido_code(sido_name) or resolve_sido_code_from_address(address)

    stored_sigungu_code = pick("sigungu_code")
    stored_sigungu_name = pick("sigungu_name")
    if stored_sigungu_code is not None and stored_sigungu_name is not None:
        return PlannedRegion(sido_code, stored_sigungu_code, stored_sigungu_name)

    resolved = resolve_sigungu_code(sido_code=sido_code, sigungu_name=stored_sigungu_name, address=address)
    return PlannedRegion(
        sido_code=sido_code,
        sigungu_code=stored_sigungu_code if stored_sigungu_code is not None else resolved.code,
        sigungu_name=stored_sigungu_name if stored_sigungu_name is not None else resolved.name,
    )


def region_fields_differ(row: dict[str, Any], planned: PlannedRegion) -> bool:
    return (
        row.get("sido_code") != planned.sido_code
        or row.get("sigungu_code") != planned.sigungu_code
        or row.get("sigungu_name") != planned.sigungu_name
    )


def effective_region_codes(repo, row: dict[str, Any]) -> tuple[str | None, str | None]:
    """Region codes a vote from this campus carries; a resolved parent campus takes precedence."""
    own = (row.get("sido_code"), row.get("sigungu_code"))
    parent_id = row.get("parent_school_id")
    if not parent_id:
        return own

    parent = repo.get_school(parent_id)
    if not parent or not parent.get("sido_code"):
        return own
    parent_sigungu = parent.get("sigungu_code")
    if parent_sigungu is None and own[0] == parent["sido_code"]:
        parent_sigungu = own[1]
    return parent["sido_code"], parent_sigungu


def _ensured(repo, row: dict[str, Any]) -> EnsuredSchool:
    sido_code, sigungu_code = effective_region_codes(repo, row)
    return EnsuredSchool(
        school_id=row["id"],
        aggregate_school_id=aggregate_school_id_for(row),
        school_row=row,
        sido_code=sido_code,
        sigungu_code=sigungu_code,
    )


def ensure_school(repo, item: SchoolItem) -> EnsuredSchool:
    existing = repo.find_school_by_key(item.source, item.school_code)
    if existing:
        planned = plan_region_fields(existing, item)
        if not region_fields_differ(existing, planned):
            return _ensured(repo, existing)

        updated = repo.update_school_region(
            existing["id"],
            sido_code=planned.sido_code,
            sigungu_code=planned.sigungu_code,
            sigungu_name=planned.sigungu_name,
        )
        logger.info(
            "school_region_backfilled school_id=%s sido_code=%s sigungu_code=%s",
            existing["id"],
            planned.sido_code,
            planned.sigungu_code,
        )
        return _ensured(repo, updated)

    planned = plan_region_fields(None, item)
    inserted = repo.insert_school(
        {
            "source": item.source,
            "school_code": item.school_code,
            "school_name": item.school_name,
            "school_level": item.school_level,
            "campus_type": item.campus_type,
            "parent_school_id": item.parent_school_id,
            "sido_name": item.sido_name,
            "sido_code": planned.sido_code,
            "sigungu_name": planned.sigungu_name,
            "sigungu_code": planned.sigungu_code,
            "address": item.address,
            "is_active": item.is_active,
        }
    )
    return _ensured(repo, inserted)


def get_school_identity(repo, school_id: str) -> EnsuredSchool | None:
    row = repo.get_school(school_id)
    if not row:
        return None
    return _ensured(repo, row)


def is_main_campus(campus_type: str | None) -> bool:
    return MAIN_CAMPUS_MARKER in (campus_type or "")


def plan_parent_links(rows: list[dict[str, Any]]) -> list[tuple[str, str]]:
    """(school_id, parent_id) pairs whose stored parent link is missing or stale."""
    groups: dict[str, list[dict[str, Any]]] = {}
    for row in rows:
        base_name = normalize_korean_name(row.get("school_name"))
        if base_name:
            groups.setdefault(base_name, []).append(row)

    links: list[tuple[str, str]] = []
    for members in groups.values():
        root = next((row for row in members if is_main_campus(row.get("campus_type"))), None)
        if root is None:
            root = next((row for row in members if not row.get("campus_type")), members[0])

        for row in members:
            if row["id"] == root["id"] or is_main_campus(row.get("campus_type")):
                continue
            if row.get("parent_school_id") == root["id"]:
                continue
            links.append((row["id"], root["id"]))
    return links


def reconcile_parent_links(repo, source: str = LOCAL_SOURCE) -> int:
    rows = repo.fetch_schools_by_source(source)
    links = plan_parent_links(rows)
    for school_id, parent_id in links:
        repo.update_school_parent(school_id, parent_id)
    logger.info("school_parent_links_reconciled source=%s scanned=%s updated=%s", source, len(rows), len(links))
    return len(links)


def school_item_from_row(row: dict[str, Any]) -> SchoolItem:
    return SchoolItem(
        id=row.get("id"),
        source=row["source"],
        school_code=row["school_code"],
        school_name=row["school_name"],
        school_level=row["school_level"],
        campus_type=row.get("campus_type"),
        parent_school_id=row.get("parent_school_id"),
        sido_name=row.get("sido_name"),
        sido_code=row.get("sido_code"),
        sigungu_name=row.get("sigungu_name"),
        sigungu_code=row.get("sigungu_code"),
        address=row.get("address"),
        is_active=bool(row.get("is_active", True)),
    )


def search_schools(repo, directory, *, query: str, level: str = "all", limit: int = 10) -> list[SchoolItem]:
    query = query.strip()
    if not query:
        return []

    local_levels = [lv for lv in LOCAL_LEVELS if level in {"all", lv}]
    directory_levels = [lv for lv in DIRECTORY_LEVELS if level in {"all", lv}]

    local_items = [school_item_from_row(row) for row in repo.search_local_schools(query, local_levels, limit)]
    directory_items = directory.search(query, levels=directory_levels, limit=limit) if directory_levels else []

    deduped: dict[str, SchoolItem] = {}
    for item in [*local_items, *directory_items]:
        deduped[f"{item.source}:{item.school_code}"] = item
    return list(deduped.values())[:limit]
