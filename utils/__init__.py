"""Shared utilities for the archive backend."""

# Common utilities
from utils.common import (
    elapsed,
    format_bytes,
    new_record_id,
    sanitize_filename,
    slugify_share_url,
    to_base36,
    utc_now_iso,
)

# Configuration
from utils.config import AppConfig, Config

# Errors
from utils.errors import (
    ArchiveError,
    InvalidInputError,
    QuotaExhaustedError,
    RecordNotFoundError,
)

__all__ = [
    # Common
    "elapsed",
    "format_bytes",
    "new_record_id",
    "sanitize_filename",
    "slugify_share_url",
    "to_base36",
    "utc_now_iso",
    # Config
    "AppConfig",
    "Config",
    # Errors
    "ArchiveError",
    "InvalidInputError",
    "QuotaExhaustedError",
    "RecordNotFoundError",
]
