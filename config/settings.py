"""Configuration management using pydantic-settings."""
from pathlib import Path
from typing import Any, Dict, Literal, Optional
from urllib.parse import urlsplit

from pydantic import model_validator
from pydantic_settings import BaseSettings


# Per-environment API tunables, used when the environment doesn't override them
ENVIRONMENT_PRESETS: Dict[str, Dict[str, Any]] = {
    "development": {
        "strapi_url": "http://localhost:1338",
        "strapi_port": 1338,
        "api_timeout_seconds": 8.0,
        "api_retry_interval_seconds": 5.0,
        "api_max_retries": 5,
    },
    "staging": {
        "strapi_url": "http://staging-api.tributestream.com",
        "strapi_port": 1338,
        "api_timeout_seconds": 8.0,
        "api_retry_interval_seconds": 15.0,
        "api_max_retries": 2,
    },
    "production": {
        "strapi_url": "https://miraculous-morning-0acdf6e165.strapiapp.com",
        "strapi_port": 443,
        "api_timeout_seconds": 5.0,
        "api_retry_interval_seconds": 30.0,
        "api_max_retries": 1,
    },
}


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    environment: Literal["development", "staging", "production"] = "production"

    # Content API
    strapi_url: Optional[str] = None
    strapi_port: Optional[int] = None
    api_timeout_seconds: Optional[float] = None
    api_retry_interval_seconds: Optional[float] = None
    api_max_retries: Optional[int] = None

    # Availability monitor
    enable_backend_check: bool = True
    probe_path: str = "/api/tributes"

    # Cache settings
    cache_enabled: bool = True
    cache_directory: Path = Path("./cache")
    cache_default_ttl_seconds: float = 60.0
    api_cache_ttl_seconds: float = 600.0
    storage_quota_bytes: int = 5 * 1024 * 1024

    # Data loader
    loader_max_batch_size: int = 100
    loader_cache_ttl_seconds: float = 60.0

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

    @model_validator(mode="before")
    @classmethod
    def _apply_environment_preset(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        env = str(data.get("environment") or "production").lower()
        preset = ENVIRONMENT_PRESETS.get(env, ENVIRONMENT_PRESETS["production"])
        for field_name, value in preset.items():
            if data.get(field_name) is None:
                data[field_name] = value
        return data

    @model_validator(mode="after")
    def _validate_urls(self) -> "Settings":
        if not self.strapi_url:
            raise ValueError("Strapi URL is required")
        if self.environment == "production" and "localhost" in self.strapi_url:
            raise ValueError("Production environment cannot use localhost for Strapi URL")
        return self

    @property
    def cache_db_path(self) -> Path:
        """SQLite file backing the durable cache tier."""
        return self.cache_directory / "tributestream-cache.db"

    def get_strapi_url(self) -> str:
        """
        Full Strapi URL, with the port appended when needed.

        The port is left off when the URL already names one or when it is
        the default for the URL's scheme.
        """
        url = self.strapi_url.rstrip("/")
        parts = urlsplit(url)
        if parts.port is not None:
            return url
        if (parts.scheme, self.strapi_port) in (("http", 80), ("https", 443)):
            return url
        if self.strapi_port is None:
            return url
        return f"{url}:{self.strapi_port}"

    @property
    def probe_url(self) -> str:
        """URL hit by the availability monitor."""
        return f"{self.get_strapi_url()}{self.probe_path}"


settings = Settings()
