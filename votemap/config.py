from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    database_url: str
    supabase_url: str | None = None
    supabase_anon_key: str | None = None
    auth_timeout_sec: float = 3.0
    app_env: str = "dev"
    neis_api_key: str | None = None
    neis_endpoint_url: str = "https://open.neis.go.kr/hub/schoolInfo"
    neis_timeout_sec: float = 4.0
    neis_max_retries: int = 1
    neis_cache_ttl_sec: int = 300
    gazetteer_path: str | None = None
    # comma separated, compared lower-cased
    unlimited_vote_emails: str = ""
    region_stats_page_size: int = 1000

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    def unlimited_vote_email_set(self) -> frozenset[str]:
        return parse_email_list(self.unlimited_vote_emails)


def parse_email_list(raw: str | None) -> frozenset[str]:
    return frozenset(item.strip().lower() for item in (raw or "").split(",") if item.strip())


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
