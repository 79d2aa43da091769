from __future__ import annotations

import csv
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable

from openpyxl import load_workbook

from votemap.services.regions import resolve_sido_code, resolve_sigungu_code
from votemap.services.schools import LOCAL_SOURCE, reconcile_parent_links

logger = logging.getLogger(__name__)

UNIVERSITY_KIND = "대학"
GRADUATE_MARKER = "대학원"
CLOSED_STATUS = "폐교"
SCHOOL_CODE_WIDTH = 7
UPSERT_BATCH_SIZE = 200


@dataclass
class ImportResult:
    imported: int
    parent_links_updated: int
    source_path: str


def _cell_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value).strip()


def format_school_code(value: Any) -> str:
    raw = _cell_text(value)
    if raw.isdigit() and len(raw) < SCHOOL_CODE_WIDTH:
        return raw.zfill(SCHOOL_CODE_WIDTH)
    return raw


def build_school_record(row: dict[str, Any]) -> dict[str, Any] | None:
    """One register row -> schools upsert payload; None for non-university or incomplete rows."""
    if _cell_text(row.get("학교구분")) != UNIVERSITY_KIND:
        return None

    school_code = format_school_code(row.get("학교코드"))
    school_name = _cell_text(row.get("학교명"))
    if not school_code or not school_name:
        return None

    sido_name = _cell_text(row.get("지역")) or None
    address = _cell_text(row.get("주소")) or None
    sido_code = resolve_sido_code(sido_name)
    sigungu = resolve_sigungu_code(sido_code=sido_code, address=address)
    return {
        "source": LOCAL_SOURCE,
        "school_code": school_code,
        "school_name": school_name,
        "school_level": "graduate" if GRADUATE_MARKER in _cell_text(row.get("학제")) else "university",
        "campus_type": _cell_text(row.get("본분교")) or None,
        "parent_school_id": None,
        "sido_name": sido_name,
        "sido_code": sido_code,
        "sigungu_name": sigungu.name,
        "sigungu_code": sigungu.code,
        "address": address,
        "is_active": _cell_text(row.get("학교상태")) != CLOSED_STATUS,
    }


def _read_xlsx_rows(path: Path) -> list[dict[str, Any]]:
    wb = load_workbook(filename=str(path), read_only=True, data_only=True)
    try:
        ws = wb.worksheets[0]
        rows = list(ws.iter_rows(values_only=True))
    finally:
        wb.close()
    if not rows:
        return []
    headers = [_cell_text(h) for h in rows[0]]
    return [dict(zip(headers, values)) for values in rows[1:]]


def _read_csv_rows(path: Path) -> list[dict[str, Any]]:
    with path.open(encoding="utf-8-sig", newline="") as fp:
        return list(csv.DictReader(fp))


def read_register_rows(path: str | Path) -> list[dict[str, Any]]:
    resolved = Path(path)
    if resolved.suffix.lower() == ".csv":
        return _read_csv_rows(resolved)
    return _read_xlsx_rows(resolved)


def build_school_records(rows: Iterable[dict[str, Any]]) -> list[dict[str, Any]]:
    records: dict[str, dict[str, Any]] = {}
    for row in rows:
        record = build_school_record(row)
        if record:
            records[record["school_code"]] = record
    return list(records.values())


def import_universities(repo, path: str | Path) -> ImportResult:
    records = build_school_records(read_register_rows(path))
    if not records:
        raise ValueError(f"no university rows found in {path}")

    for start in range(0, len(records), UPSERT_BATCH_SIZE):
        repo.upsert_schools(records[start : start + UPSERT_BATCH_SIZE])

    updated_links = reconcile_parent_links(repo, LOCAL_SOURCE)
    logger.info("university_import imported=%s parent_links_updated=%s", len(records), updated_links)
    return ImportResult(imported=len(records), parent_links_updated=updated_links, source_path=str(path))
