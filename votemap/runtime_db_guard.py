from __future__ import annotations

import logging
import os
from threading import Lock

from votemap.db import SCHEMA_PATH, run_schema

logger = logging.getLogger(__name__)

_TRUTHY = {"1", "true", "yes", "y", "on"}
_FALSY = {"0", "false", "no", "n", "off"}
# undefined_table, undefined_column, undefined_function
_SCHEMA_MISMATCH_SQLSTATE = {"42P01", "42703", "42883"}

_schema_heal_lock = Lock()
_schema_healed_once = False

DB_BOOTSTRAP_STATE: dict[str, object] = {
    "enabled": False,
    "attempted": False,
    "ok": None,
    "detail": None,
}


def _parse_bool_env(value: str | None) -> bool | None:
    if value is None:
        return None
    token = value.strip().lower()
    if token in _TRUTHY:
        return True
    if token in _FALSY:
        return False
    return None


def should_auto_apply_schema_on_startup() -> bool:
    explicit = _parse_bool_env(os.getenv("AUTO_APPLY_SCHEMA_ON_STARTUP"))
    if explicit is not None:
        return explicit
    return (os.getenv("APP_ENV") or "").strip().lower() in {"dev", "local"}


def apply_schema_bootstrap() -> dict[str, object]:
    enabled = should_auto_apply_schema_on_startup()
    DB_BOOTSTRAP_STATE.update(enabled=enabled, attempted=enabled, ok=None, detail="disabled")
    if not enabled:
        return DB_BOOTSTRAP_STATE

    try:
        run_schema(SCHEMA_PATH)
    except Exception as exc:  # noqa: BLE001
        DB_BOOTSTRAP_STATE.update(ok=False, detail=f"{type(exc).__name__}: {exc}")
        return DB_BOOTSTRAP_STATE

    DB_BOOTSTRAP_STATE.update(ok=True, detail="schema applied")
    return DB_BOOTSTRAP_STATE


def is_schema_mismatch_sqlstate(sqlstate: str | None) -> bool:
    return sqlstate in _SCHEMA_MISMATCH_SQLSTATE


def heal_schema_once() -> bool:
    """Re-apply db/schema.sql at most once per process."""
    global _schema_healed_once  # noqa: PLW0603

    with _schema_heal_lock:
        if _schema_healed_once:
            return False
        logger.warning("schema_auto_heal applying %s", SCHEMA_PATH.name)
        run_schema(SCHEMA_PATH)
        _schema_healed_once = True
        return True
