"""
Single-page analyzer: fetches a URL, reports its doctype, title, heading counts,
login-form presence and link mix, and probes every outbound link for breakage.
"""
from pageanalyzer.core import analyze_many, analyze_url
from pageanalyzer.errors import (
    EngineError,
    FetchError,
    HTTPStatusError,
    InvalidURLError,
    ParseError,
)
from pageanalyzer.models import (
    AnalysisResult,
    AnalysisStatus,
    EngineConfig,
    HeadingHistogram,
    LinkKind,
    LinkRecord,
    ProbeOutcome,
)

__version__ = "1.0.0"
__all__ = [
    "analyze_url",
    "analyze_many",
    "AnalysisResult",
    "AnalysisStatus",
    "EngineConfig",
    "HeadingHistogram",
    "LinkKind",
    "LinkRecord",
    "ProbeOutcome",
    "EngineError",
    "InvalidURLError",
    "FetchError",
    "HTTPStatusError",
    "ParseError",
]
