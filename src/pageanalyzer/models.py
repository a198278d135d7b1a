"""
Data structures shared by the analysis pipeline.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

from pageanalyzer.errors import EngineError

UNKNOWN_VERSION = "Unknown"


class AnalysisStatus(str, Enum):
    """Terminal status of one analysis."""
    DONE = "done"
    ERROR = "error"


class LinkKind(str, Enum):
    INTERNAL = "internal"
    EXTERNAL = "external"


@dataclass(frozen=True, slots=True)
class EngineConfig:
    """
    Options recognised by the engine.

    Args:
        timeout_s: Overall budget for one analysis; also the primary fetch timeout.
        probe_timeout_s: Timeout for a single link probe.
        max_concurrent_probes: Upper bound on probes in flight for one analysis.
        user_agent: User-Agent header sent on every outbound request.
    """
    timeout_s: float = 30.0
    probe_timeout_s: float = 5.0
    max_concurrent_probes: int = 10
    user_agent: str = "PageAnalyzer/1.0"

    def __post_init__(self) -> None:
        if self.timeout_s <= 0:
            raise ValueError(f"timeout_s must be positive, got {self.timeout_s}")
        if self.probe_timeout_s <= 0:
            raise ValueError(f"probe_timeout_s must be positive, got {self.probe_timeout_s}")
        if self.max_concurrent_probes < 1:
            raise ValueError(f"max_concurrent_probes must be at least 1, got {self.max_concurrent_probes}")
        if not self.user_agent:
            raise ValueError("user_agent must not be empty")


@dataclass(frozen=True, slots=True)
class FetchedPage:
    """Body and final location of a successful primary fetch."""
    body: bytes
    final_url: str
    content_type: str = ""

    @property
    def looks_like_html(self) -> bool:
        """True when the server declared an HTML type, or declared nothing."""
        return not self.content_type or "html" in self.content_type


@dataclass(frozen=True, slots=True)
class HeadingHistogram:
    h1: int = 0
    h2: int = 0
    h3: int = 0
    h4: int = 0
    h5: int = 0
    h6: int = 0

    def total(self) -> int:
        return self.h1 + self.h2 + self.h3 + self.h4 + self.h5 + self.h6

    def to_dict(self) -> Dict[str, int]:
        return {
            "h1": self.h1, "h2": self.h2, "h3": self.h3,
            "h4": self.h4, "h5": self.h5, "h6": self.h6,
        }


@dataclass(frozen=True, slots=True)
class ProbeOutcome:
    """
    Result of probing one link.

    A reply carries its status code. Transport failures and timeouts leave
    ``status_code`` as None, which is the unreachable outcome.
    """
    status_code: Optional[int] = None
    error: Optional[str] = None

    @property
    def is_unreachable(self) -> bool:
        return self.status_code is None

    @property
    def is_broken(self) -> bool:
        return self.status_code is None or self.status_code >= 400

    @classmethod
    def unreachable(cls, error: Optional[str] = None) -> "ProbeOutcome":
        return cls(status_code=None, error=error)


@dataclass(frozen=True, slots=True)
class LinkRecord:
    """A resolved hyperlink with fragment and query removed."""
    url: str
    kind: LinkKind
    outcome: Optional[ProbeOutcome] = None

    @property
    def is_internal(self) -> bool:
        return self.kind is LinkKind.INTERNAL

    @property
    def is_probe_eligible(self) -> bool:
        return self.url.startswith(("http://", "https://"))

    @property
    def is_broken(self) -> bool:
        return self.outcome is not None and self.outcome.is_broken


@dataclass(frozen=True, slots=True)
class AnalysisResult:
    """Finished analysis of one page. Never mutated after assembly."""
    url: str
    status: AnalysisStatus
    html_version: str = UNKNOWN_VERSION
    title: str = ""
    headings: HeadingHistogram = field(default_factory=HeadingHistogram)
    internal_links: int = 0
    external_links: int = 0
    broken_links: Tuple[LinkRecord, ...] = ()
    has_login_form: bool = False
    error: Optional[str] = None

    @classmethod
    def failed(cls, url: str, error: EngineError) -> "AnalysisResult":
        """Error result with every structural field left at its default."""
        return cls(url=url, status=AnalysisStatus.ERROR, error=str(error))

    @property
    def is_done(self) -> bool:
        return self.status is AnalysisStatus.DONE

    def to_dict(self) -> Dict[str, object]:
        """Serialisable payload; unreachable links are reported with status code 0."""
        inaccessible: List[Dict[str, object]] = [
            {
                "url": link.url,
                "status_code": (link.outcome.status_code or 0) if link.outcome else 0,
            }
            for link in self.broken_links
        ]
        return {
            "url": self.url,
            "status": self.status.value,
            "html_version": self.html_version,
            "page_title": self.title,
            "heading_counts": self.headings.to_dict(),
            "internal_links": self.internal_links,
            "external_links": self.external_links,
            "inaccessible_links": inaccessible,
            "has_login_form": self.has_login_form,
            "error": self.error,
        }
