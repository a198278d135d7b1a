"""
Command-line interface for the page analyzer.
"""
from __future__ import annotations

import argparse
import json
import logging
import sys
from collections import Counter
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Sequence, Tuple
from urllib.parse import urlparse

from pageanalyzer.core import analyze_many
from pageanalyzer.errors import EngineError
from pageanalyzer.models import AnalysisResult, EngineConfig

Outcome = Tuple[AnalysisResult, Optional[EngineError]]


def configure_logging(verbose: bool) -> None:
    """Send library logging to stderr; quiet unless --verbose."""
    logging.basicConfig(
        level=logging.INFO if verbose else logging.ERROR,
        stream=sys.stderr,
        format="%(asctime)s - %(levelname)s - [%(name)s] - %(message)s",
    )


def print_scan_line(result: AnalysisResult, error: Optional[EngineError]) -> None:
    """Print single analysis result line."""
    if error is not None:
        sys.stderr.write(f"  ✗ ERROR {result.url}: {error}\n")
    else:
        sys.stderr.write(f"  → {result.html_version} {result.url} ({len(result.broken_links)} broken links)\n")
    sys.stderr.flush()


def print_summary(outcomes: Sequence[Outcome]) -> None:
    """Print analysis summary to stderr."""
    done = [result for result, _ in outcomes if result.is_done]
    error_kinds = Counter(error.kind for _, error in outcomes if error is not None)

    sys.stderr.write("=" * 50 + "\n")
    sys.stderr.write("ANALYSIS SUMMARY\n")
    sys.stderr.write("=" * 50 + "\n\n")

    sys.stderr.write(f"Pages analyzed:         {len(outcomes)}\n")
    sys.stderr.write(f"Completed:              {len(done)}\n")
    sys.stderr.write(f"Broken links found:     {sum(len(r.broken_links) for r in done)}\n")
    sys.stderr.write(f"Pages with login form:  {sum(1 for r in done if r.has_login_form)}\n\n")

    if error_kinds:
        sys.stderr.write("Errors by type:\n")
        for kind, count in sorted(error_kinds.items()):
            sys.stderr.write(f"  {kind}: {count}\n")
    else:
        sys.stderr.write("No errors encountered.\n")

    sys.stderr.write("\n")


def generate_output_path(urls: Sequence[str]) -> Path:
    """Generate output path: analyses/{hostname}_{datetime}.json"""
    hostname = "bulk"
    if len(urls) == 1:
        try:
            hostname = urlparse(urls[0]).hostname or "unknown"
        except ValueError:
            hostname = "unknown"
    hostname_safe = hostname.replace(".", "_")
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")

    out_dir = Path("analyses")
    out_dir.mkdir(exist_ok=True)

    return out_dir / f"{hostname_safe}_{timestamp}.json"


def to_payload(outcomes: Sequence[Outcome]) -> List[dict]:
    payload = []
    for result, error in outcomes:
        item = result.to_dict()
        item["error_kind"] = error.kind if error is not None else None
        if error is not None and getattr(error, "status_code", None) is not None:
            item["error_status_code"] = error.status_code
        payload.append(item)
    return payload


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Analyze web pages: doctype, title, headings, login forms and link health."
    )
    parser.add_argument("urls", nargs="+", metavar="URL", help="Page URL(s) to analyze (e.g. https://example.com)")
    parser.add_argument("--timeout", type=float, default=30.0, help="Overall time budget per page in seconds (default: 30)")
    parser.add_argument("--probe-timeout", type=float, default=5.0, help="Timeout per link probe in seconds (default: 5)")
    parser.add_argument("--max-probes", type=int, default=10, help="Maximum concurrent link probes per page (default: 10)")
    parser.add_argument("--user-agent", default="PageAnalyzer/1.0", help="User-Agent header")
    parser.add_argument("--workers", type=int, default=4, help="Pages analyzed concurrently (default: 4)")
    parser.add_argument("--out", help="Output file path, or '-' for stdout (default: auto-generated in analyses/)")
    parser.add_argument("--pretty", action="store_true", help="Pretty-print JSON")
    parser.add_argument("--verbose", action="store_true", help="Show progress and summary")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry point for the analyzer CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = EngineConfig(
            timeout_s=args.timeout,
            probe_timeout_s=args.probe_timeout,
            max_concurrent_probes=args.max_probes,
            user_agent=args.user_agent,
        )
    except ValueError as e:
        parser.error(str(e))
    if args.workers < 1:
        parser.error("--workers must be at least 1")

    configure_logging(args.verbose)

    if args.verbose:
        sys.stderr.write(f"Analyzing {len(args.urls)} page(s)\n\n")

    outcomes = analyze_many(
        args.urls,
        config=config,
        max_workers=args.workers,
        on_result=print_scan_line if args.verbose else None,
    )

    if args.verbose:
        sys.stderr.write("\n")
        print_summary(outcomes)

    json_text = json.dumps(to_payload(outcomes), ensure_ascii=False, indent=2 if args.pretty else None)

    if args.out == "-":
        print(json_text)
    else:
        output_path = Path(args.out) if args.out else generate_output_path(args.urls)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_text(json_text, encoding="utf-8")
        if args.verbose:
            sys.stderr.write(f"Results written to: {output_path}\n")

    return 0 if all(result.is_done for result, _ in outcomes) else 1


if __name__ == "__main__":
    raise SystemExit(main())
