"""Configuration management for the archive backend.

Provides:
- Config: base class with dict/JSON round-tripping
- Known CDN and challenge constants shared by both downloaders
- AppConfig: application settings loaded from environment variables
"""

import json
import os as _os
from pathlib import Path
from typing import Any, Dict


# ── CDN / site constants ─────────────────────────────────────────────────────
# Each CDN validates hotlinks against its own site origin, so the referer
# depends on which host serves the file.

DEFAULT_CDN_REFERER = "https://lurl.cc/"
CDN_REFERERS: dict[str, str] = {
    "myppt.cc": "https://myppt.cc/",
    "lurl.cc": "https://lurl.cc/",
}

AGE_COOKIE_NAME = "over18_years"
AGE_COOKIE_VALUE = "true"

CHALLENGE_HOSTS = ("challenges.cloudflare.com",)

VIDEO_EXTENSIONS = frozenset({".mp4", ".mov", ".webm", ".avi"})
RECORD_TYPES = frozenset({"video", "image"})
TYPE_FOLDERS = {"video": "videos", "image": "images"}


def _env_bool(name: str, default: str) -> bool:
    return _os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Config:
    """Base configuration class for organizing application settings."""

    def __init__(self):
        pass

    def to_dict(self) -> Dict[str, Any]:
        """Convert config to a JSON-friendly dictionary."""
        return {k: v for k, v in self.__dict__.items() if not k.startswith("_")}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Config":
        """Create config from dictionary, overriding defaults."""
        config = cls()
        for key, value in data.items():
            setattr(config, key, value)
        return config

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str, sort_keys=True)


class AppConfig(Config):
    """Application-level configuration loaded from environment variables.

    All env vars have sensible defaults so the service works out of the
    box without any configuration.

    Environment variables:
        ARCHIVE_DATA_DIR: Root of records.jsonl, quota.jsonl and media folders
            (default: data/archive)
        APP_PORT: API server port (default: 8000)
        APP_HOST: API server bind address (default: 127.0.0.1)
        APP_LOG_FORMAT: Logging format, "text" or "json" (default: text)
        APP_LOG_LEVEL: Root log level (default: INFO)
        APP_CORS_ORIGINS: Comma-separated allowed origins (default: *)
        PUBLIC_FILES_PREFIX: URL prefix for backup files (default: /files)
        FREE_QUOTA: Free recoveries per new visitor (default: 3)
        BYPASS_CONCURRENCY: Pages fetched together per retry group (default: 4)
        PLAYWRIGHT_HEADLESS: Run the bypass browser headless (default: 1)
        NAV_TIMEOUT_MS: Share-page navigation timeout (default: 20000)
        CHALLENGE_TIMEOUT_MS: Challenge auto-resolve wait (default: 15000)
        DIRECT_TIMEOUT: Per-strategy HTTP timeout in seconds (default: 60)
        MIN_PAYLOAD_BYTES: Smallest payload accepted from a page fetch (default: 1000)
    """

    def __init__(self) -> None:
        super().__init__()
        self.data_dir = Path(_os.getenv("ARCHIVE_DATA_DIR", "data/archive"))
        self.api_port = int(_os.getenv("APP_PORT", "8000"))
        self.api_host = _os.getenv("APP_HOST", "127.0.0.1")
        self.log_format = _os.getenv("APP_LOG_FORMAT", "text")
        self.log_level = _os.getenv("APP_LOG_LEVEL", "INFO").upper()
        raw_origins = _os.getenv("APP_CORS_ORIGINS", "*")
        self.cors_origins: list[str] = (
            ["*"] if raw_origins == "*"
            else [o.strip() for o in raw_origins.split(",") if o.strip()]
        )
        self.files_prefix = _os.getenv("PUBLIC_FILES_PREFIX", "/files").rstrip("/")
        self.free_quota = int(_os.getenv("FREE_QUOTA", "3"))
        self.bypass_concurrency = max(1, int(_os.getenv("BYPASS_CONCURRENCY", "4")))
        self.headless = _env_bool("PLAYWRIGHT_HEADLESS", "1")
        self.nav_timeout_ms = int(_os.getenv("NAV_TIMEOUT_MS", "20000"))
        self.challenge_timeout_ms = int(_os.getenv("CHALLENGE_TIMEOUT_MS", "15000"))
        self.direct_timeout = float(_os.getenv("DIRECT_TIMEOUT", "60"))
        self.min_payload_bytes = int(_os.getenv("MIN_PAYLOAD_BYTES", "1000"))

    @property
    def records_file(self) -> Path:
        return self.data_dir / "records.jsonl"

    @property
    def quota_file(self) -> Path:
        return self.data_dir / "quota.jsonl"

    @classmethod
    def from_env(cls) -> "AppConfig":
        """Create an AppConfig instance populated from environment variables."""
        return cls()
