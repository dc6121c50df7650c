"""Configuration for the repository HTTP client."""

from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    """Immutable transport settings loaded from environment variables."""

    api_endpoint: str = "http://localhost:8080/server"
    timeout: int = 120
    log_level: str = "WARNING"
    csrf_header: str = "X-XSRF-TOKEN"

    @classmethod
    def from_env(cls) -> Settings:
        api_endpoint = os.getenv("DOCVAULT_API_ENDPOINT", "http://localhost:8080/server").rstrip("/")
        timeout = int(os.getenv("DOCVAULT_TIMEOUT", "120"))
        log_level = os.getenv("DOCVAULT_LOG_LEVEL", "WARNING").upper()
        csrf_header = os.getenv("DOCVAULT_CSRF_HEADER", "X-XSRF-TOKEN")
        return cls(
            api_endpoint=api_endpoint,
            timeout=timeout,
            log_level=log_level,
            csrf_header=csrf_header,
        )

    @property
    def base_url(self) -> str:
        return f"{self.api_endpoint}/api"

    @property
    def headers(self) -> dict[str, str]:
        # no default Content-Type: httpx sets it per body (json, multipart, uri-list)
        return {"Accept": "application/json"}
