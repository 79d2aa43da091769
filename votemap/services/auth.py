from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Callable

import httpx

logger = logging.getLogger(__name__)

_BEARER_RE = re.compile(r"^Bearer\s+(.+)$", re.IGNORECASE)

RequestFn = Callable[[str, dict[str, str], float], httpx.Response]


def default_request_fn(url: str, headers: dict[str, str], timeout: float) -> httpx.Response:
    return httpx.get(url, headers=headers, timeout=timeout)


@dataclass(frozen=True)
class AuthUser:
    id: str
    email: str | None = None


@dataclass(frozen=True)
class AuthConfig:
    base_url: str | None
    api_key: str | None
    timeout_sec: float = 3.0


def parse_bearer_token(authorization: str | None) -> str | None:
    matched = _BEARER_RE.match((authorization or "").strip())
    if not matched:
        return None
    return matched.group(1).strip() or None


class SupabaseAuthClient:
    """Looks up the user behind an access token; any failure means 'anonymous'."""

    def __init__(self, config: AuthConfig, request_fn: RequestFn = default_request_fn):
        self.config = config
        self.request_fn = request_fn

    def is_configured(self) -> bool:
        return bool(self.config.base_url and self.config.api_key)

    def resolve_user(self, authorization: str | None) -> AuthUser | None:
        token = parse_bearer_token(authorization)
        if not token or not self.is_configured():
            return None
        try:
            payload = self._fetch_user(token)
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("auth_user_lookup_failed error=%s", type(exc).__name__)
            return None

        user_id = str(payload.get("id") or "").strip() if isinstance(payload, dict) else ""
        if not user_id:
            return None
        email = str(payload.get("email") or "").strip().lower() or None
        return AuthUser(id=user_id, email=email)

    def _fetch_user(self, token: str) -> dict:
        url = f"{(self.config.base_url or '').rstrip('/')}/auth/v1/user"
        headers = {
            "apikey": self.config.api_key or "",
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
        }
        response = self.request_fn(url, headers, self.config.timeout_sec)
        response.raise_for_status()
        return response.json()
