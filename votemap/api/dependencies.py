from functools import lru_cache

from fastapi import Depends, Header, HTTPException
import psycopg

from votemap.config import get_settings
from votemap.db import DatabaseConfigurationError, DatabaseConnectionError, get_connection
from votemap.runtime_db_guard import heal_schema_once, is_schema_mismatch_sqlstate
from votemap.services.auth import AuthConfig, AuthUser, SupabaseAuthClient
from votemap.services.region_stats import DEFAULT_PAGE_SIZE
from votemap.services.repository import PostgresRepository
from votemap.services.school_directory import SchoolDirectoryConfig, SchoolDirectoryService
from votemap.services.votes import VotePolicy


def get_repository():
    try:
        with get_connection() as conn:
            yield PostgresRepository(conn)
    except DatabaseConfigurationError as exc:
        raise HTTPException(status_code=503, detail="database is not configured") from exc
    except DatabaseConnectionError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    except psycopg.Error as exc:
        if is_schema_mismatch_sqlstate(getattr(exc, "sqlstate", None)):
            try:
                healed = heal_schema_once()
            except Exception:  # noqa: BLE001
                healed = False
            if healed:
                raise HTTPException(status_code=503, detail="database schema auto-healed; retry request") from exc
            raise HTTPException(status_code=503, detail="database schema mismatch detected") from exc
        raise HTTPException(status_code=503, detail=f"database query failed ({exc.sqlstate or 'unknown'})") from exc


@lru_cache(maxsize=1)
def get_school_directory() -> SchoolDirectoryService:
    try:
        settings = get_settings()
        cfg = SchoolDirectoryConfig(
            endpoint_url=settings.neis_endpoint_url,
            api_key=settings.neis_api_key,
            timeout_sec=settings.neis_timeout_sec,
            max_retries=settings.neis_max_retries,
            cache_ttl_sec=settings.neis_cache_ttl_sec,
        )
    except Exception:  # noqa: BLE001
        cfg = SchoolDirectoryConfig(endpoint_url="", api_key=None)
    return SchoolDirectoryService(cfg)


@lru_cache(maxsize=1)
def get_auth_client() -> SupabaseAuthClient:
    try:
        settings = get_settings()
        cfg = AuthConfig(
            base_url=settings.supabase_url,
            api_key=settings.supabase_anon_key,
            timeout_sec=settings.auth_timeout_sec,
        )
    except Exception:  # noqa: BLE001
        cfg = AuthConfig(base_url=None, api_key=None)
    return SupabaseAuthClient(cfg)


def get_vote_policy() -> VotePolicy:
    try:
        emails = get_settings().unlimited_vote_email_set()
    except Exception:  # noqa: BLE001
        emails = frozenset()
    return VotePolicy(unlimited_vote_emails=emails)


def get_region_stats_page_size() -> int:
    try:
        return max(1, int(get_settings().region_stats_page_size))
    except Exception:  # noqa: BLE001
        return DEFAULT_PAGE_SIZE


def get_current_user(
    authorization: str | None = Header(default=None),
    auth_client: SupabaseAuthClient = Depends(get_auth_client),
) -> AuthUser | None:
    return auth_client.resolve_user(authorization)


def require_user(user: AuthUser | None = Depends(get_current_user)) -> AuthUser:
    if user is None:
        raise HTTPException(status_code=401, detail="login required")
    return user
