"""
Typed failures raised by the analysis engine.
"""
from __future__ import annotations

from typing import Optional


class EngineError(Exception):
    """Base class for failures that end an analysis in error status."""
    kind = "engine_error"

    def __init__(self, url: str, message: str) -> None:
        super().__init__(message)
        self.url = url
        self.message = message


class InvalidURLError(EngineError):
    """Target is not an absolute http/https URL. No request was made."""
    kind = "invalid_url"


class FetchError(EngineError):
    """Transport failure on the primary fetch (DNS, connection, timeout)."""
    kind = "fetch_error"


class HTTPStatusError(EngineError):
    """Primary fetch answered with a non-2xx status."""
    kind = "http_status"

    def __init__(self, url: str, status_code: int, message: Optional[str] = None) -> None:
        super().__init__(url, message or f"HTTP status {status_code} for {url}")
        self.status_code = status_code


class ParseError(EngineError):
    """Document could not be parsed, even leniently."""
    kind = "parse_error"
