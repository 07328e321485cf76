from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # MongoDB
    mongo_uri: str = "mongodb://localhost:27017"
    mongo_db: str = "cookie_pool"
    mongo_max_pool_size: int = 10

    # Browser worker
    browser_backend: str = "remote"
    browser_endpoint: str = "http://localhost:8800"
    browser_http_timeout: float = 150.0
    browser_max_retries: int = 2

    # Proxies (host:port or full URLs); a JSON list in the environment
    proxies: list[str] = []
    proxy_failure_ttl: float = 600.0

    # Pool scheduler
    pool_min_size: int = 500
    pool_max_size: int = 700
    pool_max_concurrent: int = 3
    pool_visit_interval: float = 2.0
    pool_visit_jitter: float = 1.5
    pool_visit_floor: float = 1.0
    pool_cleanup_interval: float = 300.0
    pool_continuous_refresh: bool = True
    pool_autostart: bool = True

    # Acquisition sessions
    acquisition_timeout: float = 120.0
    acquisition_max_attempts: int = 4
    acquisition_retry_base_delay: float = 2.0
    acquisition_retry_max_delay: float = 30.0
    validation_retries: int = 3
    validation_retry_delay: float = 8.0
    min_domain_entries: int = 3
    min_payload_bytes: int = 2048
    rotate_targets_on_retry: bool = True

    # Artifact store
    artifact_default_ttl: float = 24 * 3600.0
    artifact_expiry_policy: str = "earliest"  # or "extend"
    artifact_quality_floor: int = 20
    artifact_invalid_grace: float = 24 * 3600.0
    anti_reuse_window: float = 300.0
    primary_token_markers: list[str] = ["token", "session", "auth"]

    # Attempt tracker
    refresh_interval: float = 30 * 60.0
    backoff_base: float = 5 * 60.0
    backoff_max: float = 3600.0
    stuck_after: float = 30 * 60.0
    attempt_history_max_age: float = 30 * 24 * 3600.0

    # Logging
    log_level: str = "INFO"


settings = Settings()
