from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, Iterable

from votemap.config import get_settings

logger = logging.getLogger(__name__)

DEFAULT_GAZETTEER_PATH = Path(__file__).resolve().parents[1] / "data" / "municipalities.json"

# Statistical (SGIS 2013) sido codes, the prefix used by the municipality gazetteer.
SIDO_CODE_MAP: dict[str, str] = {
    "서울": "11",
    "서울특별시": "11",
    "서울시": "11",
    "부산": "21",
    "부산광역시": "21",
    "대구": "22",
    "대구광역시": "22",
    "인천": "23",
    "인천광역시": "23",
    "광주": "24",
    "광주광역시": "24",
    "대전": "25",
    "대전광역시": "25",
    "울산": "26",
    "울산광역시": "26",
    "세종": "29",
    "세종시": "29",
    "세종특별자치시": "29",
    "경기": "31",
    "경기도": "31",
    "강원": "32",
    "강원도": "32",
    "강원특별자치도": "32",
    "충북": "33",
    "충청북도": "33",
    "충남": "34",
    "충청남도": "34",
    "전북": "35",
    "전라북도": "35",
    "전북특별자치도": "35",
    "전남": "36",
    "전라남도": "36",
    "경북": "37",
    "경상북도": "37",
    "경남": "38",
    "경상남도": "38",
    "제주": "39",
    "제주도": "39",
    "제주특별자치도": "39",
}

# (sido code, current name, former or alternate spellings)
SIGUNGU_ALIASES: tuple[tuple[str, str, tuple[str, ...]], ...] = (
    ("23", "미추홀구", ("남구", "인천남구", "인천미추홀구")),
    ("31", "여주시", ("여주군",)),
    ("34", "당진시", ("당진군",)),
)

DISTRICT_SUFFIX = "구"

_PARENTHESIZED_RE = re.compile(r"\(.*?\)")
_WHITESPACE_RE = re.compile(r"\s+")


@dataclass(frozen=True)
class Municipality:
    code: str
    name: str
    normalized_name: str


@dataclass(frozen=True)
class SigunguResolution:
    code: str | None
    name: str | None

    @property
    def resolved(self) -> bool:
        return self.code is not None


def normalize_korean_name(value: str | None) -> str:
    """'서울 (특별시)' -> '서울'; whitespace anywhere is dropped."""
    if not value:
        return ""
    text = _PARENTHESIZED_RE.sub("", str(value))
    return _WHITESPACE_RE.sub("", text).strip()


def resolve_sido_code(sido_name: str | None) -> str | None:
    key = normalize_korean_name(sido_name)
    if not key:
        return None
    return SIDO_CODE_MAP.get(key)


def resolve_sido_code_from_address(address: str | None) -> str | None:
    tokens = (address or "").split()
    if not tokens:
        return None
    return resolve_sido_code(tokens[0])


def extract_sigungu_candidates(address: str | None) -> list[str]:
    tokens = [token.strip() for token in (address or "").split() if token.strip()]
    if len(tokens) < 2:
        return []

    second = tokens[1]
    third = tokens[2] if len(tokens) > 2 else ""
    candidates = [second]
    if third and third.endswith(DISTRICT_SUFFIX):
        joined = f"{second}{third}"
        if joined not in candidates:
            candidates.append(joined)
    return candidates


def expand_sigungu_aliases(candidate: str, sido_code: str | None = None) -> list[str]:
    normalized = normalize_korean_name(candidate)
    expanded = [normalized] if normalized else []
    for alias_sido_code, current_name, former_names in SIGUNGU_ALIASES:
        if sido_code and alias_sido_code != sido_code:
            continue
        names = [normalize_korean_name(current_name), *(normalize_korean_name(n) for n in former_names)]
        if normalized not in names:
            continue
        for name in names:
            if name and name not in expanded:
                expanded.append(name)
    return expanded


def _parse_municipalities(payload: Any) -> tuple[Municipality, ...]:
    if isinstance(payload, dict):
        raw_items = [feature.get("properties") or {} for feature in payload.get("features") or []]
    elif isinstance(payload, list):
        raw_items = payload
    else:
        raw_items = []

    rows: list[Municipality] = []
    for item in raw_items:
        if not isinstance(item, dict):
            continue
        code = str(item.get("code") or "").strip()
        name = str(item.get("name") or "").strip()
        normalized = normalize_korean_name(name)
        if code and name and normalized:
            rows.append(Municipality(code=code, name=name, normalized_name=normalized))
    return tuple(rows)


def load_municipalities(path: str | Path) -> tuple[Municipality, ...]:
    raw = Path(path).read_text(encoding="utf-8")
    return _parse_municipalities(json.loads(raw))


@lru_cache(maxsize=None)
def _cached_gazetteer(path: str) -> tuple[Municipality, ...]:
    rows = load_municipalities(path)
    logger.info("gazetteer_loaded path=%s municipalities=%s", path, len(rows))
    return rows


def _configured_gazetteer_path() -> Path:
    try:
        configured = get_settings().gazetteer_path
    except Exception:  # noqa: BLE001
        configured = None
    return Path(configured) if configured else DEFAULT_GAZETTEER_PATH


def get_gazetteer() -> tuple[Municipality, ...]:
    """Parsed once per process; the file is static reference data."""
    return _cached_gazetteer(str(_configured_gazetteer_path()))


def _find_in_pool(pool: list[Municipality], candidate: str) -> Municipality | None:
    for item in pool:
        if item.normalized_name == candidate:
            return item
    for item in pool:
        if item.normalized_name.endswith(candidate) or candidate.endswith(item.normalized_name):
            return item
    return None


def resolve_sigungu_code(
    *,
    sido_code: str | None = None,
    sigungu_name: str | None = None,
    address: str | None = None,
    gazetteer: Iterable[Municipality] | None = None,
) -> SigunguResolution:
    entries = get_gazetteer() if gazetteer is None else gazetteer
    sido_code = sido_code or resolve_sido_code_from_address(address)
    pool = [item for item in entries if not sido_code or item.code.startswith(sido_code)]

    raw_candidates = ([sigungu_name] if sigungu_name else []) + extract_sigungu_candidates(address)
    candidates = [c for c in (normalize_korean_name(raw) for raw in raw_candidates) if c]
    if not candidates:
        return SigunguResolution(code=None, name=sigungu_name or None)

    for candidate in candidates:
        for expanded in expand_sigungu_aliases(candidate, sido_code):
            matched = _find_in_pool(pool, expanded)
            if matched:
                return SigunguResolution(code=matched.code, name=matched.name)

    return SigunguResolution(code=None, name=sigungu_name or candidates[0])
