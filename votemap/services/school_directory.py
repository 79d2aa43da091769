from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlencode, urlparse, urlunparse
from urllib.request import urlopen

from votemap.models.schemas import SchoolItem
from votemap.services.regions import resolve_sido_code, resolve_sigungu_code
from votemap.services.schools import MAIN_CAMPUS_MARKER

logger = logging.getLogger(__name__)

NEIS_LEVEL_BY_KIND = {
    "중학교": "middle",
    "고등학교": "high",
}


def _append_params(url: str, params: dict[str, str]) -> str:
    parsed = urlparse(url)
    extra = urlencode(params)
    query = f"{parsed.query}&{extra}" if parsed.query else extra
    return urlunparse((parsed.scheme, parsed.netloc, parsed.path, parsed.params, query, parsed.fragment))


def _norm_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


@dataclass(frozen=True)
class SchoolDirectoryConfig:
    endpoint_url: str
    api_key: str | None
    timeout_sec: float = 4.0
    max_retries: int = 1
    cache_ttl_sec: int = 300


class SchoolDirectoryService:
    """Middle/high school lookups against the NEIS open API.

    The directory is a secondary source: every failure mode collapses to an
    empty result so the local source can still answer the search.
    """

    def __init__(self, config: SchoolDirectoryConfig):
        self.config = config
        self._lock = threading.Lock()
        self._cache: dict[str, tuple[float, list[dict[str, Any]]]] = {}

    def is_configured(self) -> bool:
        return bool(self.config.endpoint_url and self.config.api_key)

    def search(self, query: str, *, levels: list[str], limit: int) -> list[SchoolItem]:
        if not levels or not self.is_configured() or not _norm_text(query):
            return []

        page_size = min(max(limit * 3, 20), 100)
        try:
            rows = self.fetch_rows(query.strip(), page_size)
        except Exception as exc:  # noqa: BLE001
            logger.warning("school_directory_unavailable error=%s", exc)
            return []

        items: list[SchoolItem] = []
        for row in rows:
            item = self._to_item(row)
            if item is None or item.school_level not in levels:
                continue
            items.append(item)
        return items[:limit]

    def fetch_rows(self, query: str, page_size: int) -> list[dict[str, Any]]:
        cache_key = f"{query}|{page_size}"
        now = time.time()
        with self._lock:
            hit = self._cache.get(cache_key)
            if hit and hit[0] > now:
                return hit[1]

        rows = self._fetch_with_retry(query, page_size)
        with self._lock:
            self._cache[cache_key] = (time.time() + max(1, self.config.cache_ttl_sec), rows)
        return rows

    def _fetch_with_retry(self, query: str, page_size: int) -> list[dict[str, Any]]:
        attempts = max(1, self.config.max_retries + 1)
        last_exc: Exception | None = None
        for attempt in range(attempts):
            try:
                return self._fetch_once(query, page_size)
            except Exception as exc:  # noqa: BLE001
                last_exc = exc
                if attempt + 1 >= attempts or not self._is_retryable(exc):
                    break
                time.sleep(min(1.0, 0.25 * (2**attempt)))
        raise RuntimeError(f"school directory fetch failed: {last_exc}") from last_exc

    @staticmethod
    def _is_retryable(exc: Exception) -> bool:
        msg = str(exc).lower()
        if "http error 5" in msg or "timed out" in msg or "temporary failure" in msg:
            return True
        return isinstance(exc, TimeoutError)

    def _fetch_once(self, query: str, page_size: int) -> list[dict[str, Any]]:
        params = {
            "KEY": self.config.api_key or "",
            "Type": "json",
            "pIndex": "1",
            "pSize": str(page_size),
            "SCHUL_NM": query,
        }
        url = _append_params(self.config.endpoint_url, params)
        with urlopen(url, timeout=self.config.timeout_sec) as resp:
            charset = resp.headers.get_content_charset() or "utf-8"
            raw_text = resp.read().decode(charset, "replace")
        return self._parse_rows(raw_text)

    @staticmethod
    def _parse_rows(raw_text: str) -> list[dict[str, Any]]:
        payload = json.loads(raw_text)
        if not isinstance(payload, dict):
            return []
        # {"schoolInfo": [{"head": [...]}, {"row": [...]}]}; "no data" answers carry only RESULT.
        sections = payload.get("schoolInfo")
        if not isinstance(sections, list):
            return []
        for section in sections:
            if isinstance(section, dict) and isinstance(section.get("row"), list):
                return [row for row in section["row"] if isinstance(row, dict)]
        return []

    @staticmethod
    def _to_item(row: dict[str, Any]) -> SchoolItem | None:
        level = NEIS_LEVEL_BY_KIND.get(_norm_text(row.get("SCHUL_KND_SC_NM")) or "")
        school_code = _norm_text(row.get("SD_SCHUL_CODE"))
        school_name = _norm_text(row.get("SCHUL_NM"))
        if not level or not school_code or not school_name:
            return None

        sido_name = _norm_text(row.get("LCTN_SC_NM"))
        address = _norm_text(row.get("ORG_RDNMA"))
        sido_code = resolve_sido_code(sido_name)
        sigungu = resolve_sigungu_code(sido_code=sido_code, address=address)
        return SchoolItem(
            source="nais",
            school_code=school_code,
            school_name=school_name,
            school_level=level,
            campus_type=MAIN_CAMPUS_MARKER,
            parent_school_id=None,
            sido_name=sido_name,
            sido_code=sido_code,
            sigungu_name=sigungu.name,
            sigungu_code=sigungu.code,
            address=address,
            is_active=True,
        )
