from __future__ import annotations

import os
from dataclasses import dataclass, field

CENSUS_API_BASE_URL = "https://api.census.gov/data"
INSTANT_API_BASE_URL = "https://api.instantdb.com"


class MissingConfigurationError(RuntimeError):
    pass


def _env(*keys: str) -> str | None:
    for key in keys:
        value = os.getenv(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _env_float(key: str, default: float) -> float:
    raw = _env(key)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise MissingConfigurationError(f"{key} must be a number, got {raw!r}") from exc


def _env_bool(key: str, default: bool) -> bool:
    raw = _env(key)
    if raw is None:
        return default
    return raw.lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class CensusApiConfig:
    api_key: str | None = None
    base_url: str = CENSUS_API_BASE_URL
    timeout: float = 30.0
    retries: int = 0


@dataclass(frozen=True)
class StoreConfig:
    app_id: str
    admin_token: str
    base_url: str = INSTANT_API_BASE_URL
    timeout: float = 30.0


@dataclass(frozen=True)
class Settings:
    census: CensusApiConfig
    store: StoreConfig | None
    log_json: bool = True
    log_level: str = "INFO"
    cors_origins: list[str] = field(default_factory=lambda: ["*"])

    @classmethod
    def from_env(cls) -> "Settings":
        timeout = _env_float("HTTP_TIMEOUT_SECONDS", 30.0)
        census = CensusApiConfig(
            api_key=_env("CENSUS_API_KEY"),
            timeout=timeout,
        )

        app_id = _env("INSTANT_APP_ID", "VITE_INSTANT_APP_ID", "NEXT_PUBLIC_INSTANT_APP_ID")
        admin_token = _env("INSTANT_APP_ADMIN_TOKEN", "INSTANT_ADMIN_TOKEN")
        store = None
        if app_id and admin_token:
            store = StoreConfig(
                app_id=app_id,
                admin_token=admin_token,
                base_url=_env("INSTANT_API_BASE_URL") or INSTANT_API_BASE_URL,
                timeout=timeout,
            )

        raw_origins = _env("CORS_ORIGINS") or "*"
        origins = [origin.strip() for origin in raw_origins.split(",") if origin.strip()]

        return cls(
            census=census,
            store=store,
            log_json=_env_bool("LOG_JSON", True),
            log_level=_env("LOG_LEVEL") or "INFO",
            cors_origins=origins or ["*"],
        )

    def require_store(self) -> StoreConfig:
        if self.store is None:
            raise MissingConfigurationError(
                "Missing store credentials: set INSTANT_APP_ID and INSTANT_APP_ADMIN_TOKEN."
            )
        return self.store
