"""Configuration management with validation.

All values are validated at load time so that a misconfigured operator
fails before it issues a single call against the CTFd API.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_REQUEST_TIMEOUT_SECONDS = 30
MIN_REQUEST_TIMEOUT_SECONDS = 1
MAX_REQUEST_TIMEOUT_SECONDS = 600

# Size limits for files read from disk
MAX_SPEC_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max challenge spec
MAX_STATE_FILE_SIZE_BYTES = 10 * 1024 * 1024  # 10MB max state snapshot
DEFAULT_MAX_UPLOAD_SIZE_BYTES = 50 * 1024 * 1024  # CTFd default upload limit
MAX_UPLOAD_SIZE_LIMIT_BYTES = 1024 * 1024 * 1024

API_PATH_PREFIX = "/api/v1"

# Input validation patterns
VALID_URL_PATTERN = r"^https?://[^\s/$.?#][^\s]*$"


@dataclass(frozen=True)
class Config:
    """Operator configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-pass.
    """

    # Required fields
    ctfd_url: str
    api_key: str = field(repr=False)

    # Paths
    specs_dir: Path = field(default_factory=lambda: Path("./challenges"))
    state_dir: Path = field(default_factory=lambda: Path("./.ctfd-state"))

    # Timing
    request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS

    # Uploads
    max_upload_size_bytes: int = DEFAULT_MAX_UPLOAD_SIZE_BYTES

    # Logging
    enable_json_logging: bool = True

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        import re

        errors: list[str] = []

        if not self.ctfd_url:
            errors.append("CTFD_URL is required")
        elif not re.match(VALID_URL_PATTERN, self.ctfd_url):
            errors.append(f"CTFD_URL must be an http(s) URL: {self.ctfd_url}")

        if not self.api_key:
            errors.append("CTFD_API_KEY is required")

        if not (
            MIN_REQUEST_TIMEOUT_SECONDS
            <= self.request_timeout_seconds
            <= MAX_REQUEST_TIMEOUT_SECONDS
        ):
            errors.append(
                f"REQUEST_TIMEOUT must be between {MIN_REQUEST_TIMEOUT_SECONDS} "
                f"and {MAX_REQUEST_TIMEOUT_SECONDS} seconds"
            )

        if not (1 <= self.max_upload_size_bytes <= MAX_UPLOAD_SIZE_LIMIT_BYTES):
            errors.append(
                f"MAX_UPLOAD_SIZE_BYTES must be between 1 and {MAX_UPLOAD_SIZE_LIMIT_BYTES}"
            )

        if not self.specs_dir.exists():
            errors.append(f"Specs directory does not exist: {self.specs_dir}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def api_base_url(self) -> str:
        """Base URL of the CTFd REST API."""
        return self.ctfd_url.rstrip("/") + API_PATH_PREFIX

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            CTFD_URL: Base URL of the CTFd instance (e.g. https://ctf.example.com)
            CTFD_API_KEY: Admin access token used as "Authorization: Token <key>"
            SPECS_DIR: Directory of challenge YAML specs (default: ./challenges)
            STATE_DIR: Directory for last-applied snapshots (default: ./.ctfd-state)
            REQUEST_TIMEOUT: Per-request timeout in seconds (default: 30)
            MAX_UPLOAD_SIZE_BYTES: Largest local file accepted for upload (default: 50MB)
            ENABLE_JSON_LOGGING: Emit JSON log lines on stdout (default: true)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        return cls(
            ctfd_url=os.environ.get("CTFD_URL", ""),
            api_key=os.environ.get("CTFD_API_KEY", ""),
            specs_dir=Path(os.environ.get("SPECS_DIR", "./challenges")),
            state_dir=Path(os.environ.get("STATE_DIR", "./.ctfd-state")),
            request_timeout_seconds=get_int("REQUEST_TIMEOUT", DEFAULT_REQUEST_TIMEOUT_SECONDS),
            max_upload_size_bytes=get_int("MAX_UPLOAD_SIZE_BYTES", DEFAULT_MAX_UPLOAD_SIZE_BYTES),
            enable_json_logging=get_bool("ENABLE_JSON_LOGGING", True),
        )
