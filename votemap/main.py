import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import psycopg

from votemap.api.routes import router as api_router
from votemap.db import DatabaseConfigurationError, DatabaseConnectionError, get_connection
from votemap.runtime_db_guard import DB_BOOTSTRAP_STATE, apply_schema_bootstrap, heal_schema_once, is_schema_mismatch_sqlstate
from votemap.services.errors import (
    AuthRequiredError,
    DuplicateVoteError,
    TopicNotFoundError,
    VoteDomainError,
)

DEFAULT_CORS_ALLOW_ORIGINS = "http://127.0.0.1:3000,http://localhost:3000"

DOMAIN_ERROR_STATUS = {
    AuthRequiredError: 401,
    TopicNotFoundError: 404,
    DuplicateVoteError: 409,
}

logger = logging.getLogger(__name__)


def _resolve_cors_allow_origins() -> list[str]:
    raw = os.getenv("CORS_ALLOW_ORIGINS", DEFAULT_CORS_ALLOW_ORIGINS)
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


@asynccontextmanager
async def lifespan(_: FastAPI):
    state = apply_schema_bootstrap()
    logger.info(
        "startup_schema_bootstrap enabled=%s attempted=%s ok=%s detail=%s",
        state.get("enabled"),
        state.get("attempted"),
        state.get("ok"),
        state.get("detail"),
    )
    yield


app = FastAPI(title="Vote Map Backend", version="0.1.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=_resolve_cors_allow_origins(),
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(api_router)


@app.exception_handler(VoteDomainError)
def handle_vote_domain_error(_, exc: VoteDomainError):  # noqa: ANN001
    status_code = DOMAIN_ERROR_STATUS.get(type(exc), 400)
    return JSONResponse(status_code=status_code, content={"detail": str(exc), "code": exc.code})


@app.exception_handler(psycopg.Error)
def handle_psycopg_error(_, exc: psycopg.Error):  # noqa: ANN001
    detail = "database query failed"
    sqlstate = getattr(exc, "sqlstate", None)

    if is_schema_mismatch_sqlstate(sqlstate):
        try:
            healed = heal_schema_once()
        except Exception as heal_exc:  # noqa: BLE001
            logger.exception("schema_auto_heal_failed: %s", heal_exc)
            healed = False
        detail = "database schema auto-healed; retry request" if healed else "database schema mismatch detected"
    elif sqlstate:
        detail = f"database query failed ({sqlstate})"

    return JSONResponse(status_code=503, content={"detail": detail})


@app.get("/health")
def health_check():
    return {"status": "ok"}


@app.get("/health/db")
def health_db_check():
    try:
        with get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT COUNT(*)::int AS topic_count FROM vote_topics")
                row = cur.fetchone() or {}
    except (DatabaseConfigurationError, DatabaseConnectionError) as exc:
        reason = (
            "database_not_configured"
            if isinstance(exc, DatabaseConfigurationError)
            else "database_connection_failed"
        )
        return JSONResponse(
            status_code=503,
            content={"status": "degraded", "db": "error", "reason": reason, "detail": str(exc), "bootstrap": DB_BOOTSTRAP_STATE},
        )
    except psycopg.Error as exc:
        return JSONResponse(
            status_code=503,
            content={
                "status": "degraded",
                "db": "error",
                "reason": "database_query_failed",
                "sqlstate": exc.sqlstate,
                "bootstrap": DB_BOOTSTRAP_STATE,
            },
        )

    return {"status": "ok", "db": "ok", "topic_count": row.get("topic_count", 0), "bootstrap": DB_BOOTSTRAP_STATE}
