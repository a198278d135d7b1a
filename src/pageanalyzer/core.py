"""
Core analysis pipeline: fetch one page, inspect its markup, probe its links.
"""
from __future__ import annotations

import logging
import re
import time
from collections import Counter
from concurrent.futures import ThreadPoolExecutor, as_completed
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import replace
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple
from urllib.parse import urljoin, urlsplit, urlunsplit

import requests
from bs4 import BeautifulSoup
from bs4.builder import ParserRejectedMarkup

from pageanalyzer.errors import (
    EngineError,
    FetchError,
    HTTPStatusError,
    InvalidURLError,
    ParseError,
)
from pageanalyzer.models import (
    UNKNOWN_VERSION,
    AnalysisResult,
    AnalysisStatus,
    EngineConfig,
    FetchedPage,
    HeadingHistogram,
    LinkKind,
    LinkRecord,
    ProbeOutcome,
)

logger = logging.getLogger(__name__)

HEADING_TAGS: Tuple[str, ...] = ("h1", "h2", "h3", "h4", "h5", "h6")

# Substrings of an input's name attribute that mark a login form (case-sensitive)
LOGIN_NAME_MARKERS: Tuple[str, ...] = ("user", "email", "login", "pass")

# Servers that refuse HEAD get a second chance with a streamed GET
HEAD_FALLBACK_CODES: frozenset[int] = frozenset((405, 501))

REDIRECT_CODES: frozenset[int] = frozenset((301, 302, 303, 307, 308))
MAX_REDIRECTS = 10

BODY_CHUNK_BYTES = 16384

DOCTYPE_SCAN_BYTES = 1024


def _public_doctype(public_id: bytes) -> re.Pattern[bytes]:
    return re.compile(
        rb"<!DOCTYPE\s+html\s+PUBLIC\s+[\"']" + re.escape(public_id) + rb"[\"']",
        re.IGNORECASE,
    )


# Ordered (pattern, label) table; first match wins, so specific ids come first
DOCTYPE_PATTERNS: Tuple[Tuple[re.Pattern[bytes], str], ...] = (
    (_public_doctype(b"-//W3C//DTD XHTML 1.0 Strict//EN"), "XHTML 1.0 Strict"),
    (_public_doctype(b"-//W3C//DTD XHTML 1.0 Transitional//EN"), "XHTML 1.0 Transitional"),
    (_public_doctype(b"-//W3C//DTD XHTML 1.0 Frameset//EN"), "XHTML 1.0 Frameset"),
    (_public_doctype(b"-//W3C//DTD XHTML 1.1//EN"), "XHTML 1.1"),
    (_public_doctype(b"-//W3C//DTD HTML 4.01 Transitional//EN"), "HTML 4.01 Transitional"),
    (_public_doctype(b"-//W3C//DTD HTML 4.01 Frameset//EN"), "HTML 4.01 Frameset"),
    (_public_doctype(b"-//W3C//DTD HTML 4.01//EN"), "HTML 4.01"),
    (re.compile(rb"<!DOCTYPE\s+html\s*>", re.IGNORECASE), "HTML5"),
    (re.compile(rb"<!DOCTYPE\s+html\s+SYSTEM\s+[\"']about:legacy-compat[\"']\s*>", re.IGNORECASE), "HTML5"),
)

Structure = Tuple[str, HeadingHistogram, bool]


def validate_target(url: str) -> str:
    """Return the stripped target if it is an absolute http(s) URL with a usable host."""
    if not url or not isinstance(url, str) or not url.strip():
        raise InvalidURLError(str(url), "Target URL is empty")
    url = url.strip()
    try:
        parsed = urlsplit(url)
        hostname = parsed.hostname
    except ValueError as e:
        raise InvalidURLError(url, f"Invalid target URL {url!r}: {e}") from e

    if parsed.scheme.lower() not in ("http", "https"):
        raise InvalidURLError(url, f"Target URL must use http or https: {url!r}")
    if not hostname:
        raise InvalidURLError(url, f"Target URL has no host: {url!r}")
    if any(ch.isspace() or ord(ch) < 32 for ch in parsed.netloc):
        raise InvalidURLError(url, f"Target URL host contains invalid characters: {url!r}")
    return url


def _request_within(
    session: requests.Session,
    method: str,
    url: str,
    deadline: float,
    stream: bool = False,
) -> requests.Response:
    """
    Send a request, following redirects by hand so that every hop is bounded
    by the time left before ``deadline``.

    Raises requests.Timeout once the deadline passes and
    requests.TooManyRedirects after MAX_REDIRECTS hops.
    """
    current_url = url
    for _ in range(MAX_REDIRECTS + 1):
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise requests.Timeout(f"{method} {url} ran out of time")

        resp = session.request(method, current_url, timeout=remaining, allow_redirects=False, stream=stream)
        location = resp.headers.get("location")
        if resp.status_code not in REDIRECT_CODES or not location:
            return resp

        resp.close()
        current_url = urljoin(current_url, location)

    raise requests.TooManyRedirects(f"Exceeded {MAX_REDIRECTS} redirects for {url}")


def fetch_page(
    url: str,
    config: EngineConfig,
    session: Optional[requests.Session] = None,
    deadline: Optional[float] = None,
) -> FetchedPage:
    """
    GET the page body within the overall time budget.

    ``deadline`` is a ``time.monotonic()`` value; it defaults to
    ``config.timeout_s`` from now.

    Raises:
        InvalidURLError: requests refused the URL before sending anything.
        FetchError: DNS, connection, timeout or redirect failures.
        HTTPStatusError: the final response is not 2xx.
    """
    if deadline is None:
        deadline = time.monotonic() + config.timeout_s
    if session is None:
        with requests.Session() as own_session:
            own_session.headers["User-Agent"] = config.user_agent
            own_session.max_redirects = MAX_REDIRECTS
            return fetch_page(url, config, session=own_session, deadline=deadline)

    try:
        resp = _request_within(session, "GET", url, deadline, stream=True)
    except requests.exceptions.InvalidURL as e:
        raise InvalidURLError(url, f"Invalid target URL {url!r}: {e}") from e
    except requests.RequestException as e:
        raise FetchError(url, f"Failed to fetch {url}: {e}") from e

    try:
        if not 200 <= resp.status_code < 300:
            raise HTTPStatusError(url, resp.status_code)

        chunks: List[bytes] = []
        for chunk in resp.iter_content(chunk_size=BODY_CHUNK_BYTES):
            chunks.append(chunk)
            if time.monotonic() > deadline:
                raise FetchError(url, f"Timed out reading {url} after {config.timeout_s}s")
    except requests.RequestException as e:
        raise FetchError(url, f"Failed to read {url}: {e}") from e
    finally:
        resp.close()

    return FetchedPage(
        body=b"".join(chunks),
        final_url=resp.url or url,
        content_type=(resp.headers.get("content-type") or "").lower(),
    )


def detect_version(
    raw: bytes,
    patterns: Sequence[Tuple[re.Pattern[bytes], str]] = DOCTYPE_PATTERNS,
) -> str:
    """
    Guess the HTML version from the doctype near the start of the document.

    This is a pattern match on the leading bytes, not a DOCTYPE parser.
    Unusual formatting yields "Unknown".
    """
    head = raw[:DOCTYPE_SCAN_BYTES]
    for pattern, label in patterns:
        if pattern.search(head):
            return label
    return UNKNOWN_VERSION


def parse_document(raw: bytes, url: str = "") -> BeautifulSoup:
    """Parse markup leniently; only markup the tree builder rejects outright fails."""
    try:
        return BeautifulSoup(raw, "lxml")
    except ParserRejectedMarkup as e:
        raise ParseError(url, f"Failed to parse HTML for {url}: {e}") from e


def extract_structure(soup: BeautifulSoup) -> Structure:
    """Return (title, heading histogram, login form present)."""
    title_tag = soup.find("title")
    title = title_tag.get_text().strip() if title_tag else ""

    counts = Counter(tag.name for tag in soup.find_all(HEADING_TAGS))
    headings = HeadingHistogram(**{name: counts.get(name, 0) for name in HEADING_TAGS})

    return title, headings, has_login_form(soup)


def _is_login_input(field) -> bool:
    if (field.get("type") or "").strip().lower() == "password":
        return True
    name = field.get("name") or ""
    return any(marker in name for marker in LOGIN_NAME_MARKERS)


def has_login_form(soup: BeautifulSoup) -> bool:
    found = False
    for form in soup.find_all("form"):
        for field in form.find_all("input"):
            if _is_login_input(field):
                found = True
                break
    return found


def normalize_link(href: str, base: str) -> Optional[str]:
    """
    Resolve href against base and drop query and fragment.

    Returns None (and logs) when the reference cannot be resolved.
    """
    try:
        parts = urlsplit(urljoin(base, href))
        parts.port  # raises on a malformed port
    except ValueError as e:
        logger.warning("Skipping unresolvable link %r on %s: %s", href, base, e)
        return None
    return urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))


def classify_links(soup: BeautifulSoup, base_url: str) -> List[LinkRecord]:
    """Classify every <a href> as internal or external, in document order."""
    base_host = urlsplit(base_url).hostname
    records: List[LinkRecord] = []

    for anchor in soup.find_all("a", href=True):
        href = anchor["href"].strip()
        if not href or href == "#":
            continue

        link = normalize_link(href, base_url)
        if link is None:
            continue

        kind = LinkKind.INTERNAL if urlsplit(link).hostname == base_host else LinkKind.EXTERNAL
        records.append(LinkRecord(url=link, kind=kind))

    return records


def probe_link(url: str, config: EngineConfig) -> ProbeOutcome:
    """
    HEAD the link; transport failures become the unreachable outcome.

    Redirect hops and the GET fallback all share one ``probe_timeout_s``
    budget. A reply that arrives after the budget is spent counts as
    unreachable.
    """
    deadline = time.monotonic() + config.probe_timeout_s
    try:
        with requests.Session() as session:
            session.headers["User-Agent"] = config.user_agent
            session.max_redirects = MAX_REDIRECTS
            resp = _request_within(session, "HEAD", url, deadline)
            resp.close()
            status = resp.status_code

            if status in HEAD_FALLBACK_CODES:
                resp = _request_within(session, "GET", url, deadline, stream=True)
                resp.close()
                status = resp.status_code
    except requests.RequestException as e:
        logger.debug("Link %s unreachable: %s", url, e)
        return ProbeOutcome.unreachable(str(e))

    if time.monotonic() > deadline:
        logger.debug("Link %s answered after its %ss budget", url, config.probe_timeout_s)
        return ProbeOutcome.unreachable(f"no reply within {config.probe_timeout_s}s")
    return ProbeOutcome(status_code=status)


def probe_links(
    urls: Iterable[str],
    config: EngineConfig,
    deadline: Optional[float] = None,
) -> Dict[str, ProbeOutcome]:
    """
    Probe every distinct URL concurrently and return one outcome per URL.

    Workers only return values; outcomes are recorded by the calling thread
    as futures complete. Returns once every probe has finished, or once the
    ``deadline`` (a ``time.monotonic()`` value) passes, in which case the
    outstanding links are recorded as unreachable.
    """
    pending = list(dict.fromkeys(urls))
    if not pending:
        return {}

    outcomes: Dict[str, ProbeOutcome] = {}
    pool = ThreadPoolExecutor(
        max_workers=min(config.max_concurrent_probes, len(pending)),
        thread_name_prefix="link-probe",
    )
    try:
        futures = {pool.submit(probe_link, url, config): url for url in pending}
        remaining = None if deadline is None else max(0.0, deadline - time.monotonic())

        try:
            for future in as_completed(futures, timeout=remaining):
                url = futures[future]
                try:
                    outcomes[url] = future.result()
                except Exception as e:
                    logger.warning("Probe for %s failed: %s", url, e)
                    outcomes[url] = ProbeOutcome.unreachable(str(e))
        except FuturesTimeoutError:
            abandoned = [url for url in pending if url not in outcomes]
            logger.warning("Analysis deadline reached with %d probe(s) outstanding", len(abandoned))
            for url in abandoned:
                outcomes[url] = ProbeOutcome.unreachable("abandoned at analysis deadline")
    finally:
        pool.shutdown(wait=False, cancel_futures=True)

    return outcomes


def assemble_result(
    url: str,
    html_version: str,
    structure: Structure,
    links: Sequence[LinkRecord],
    outcomes: Dict[str, ProbeOutcome],
) -> AnalysisResult:
    """Merge the pipeline outputs into a finished result with status done."""
    title, headings, login_form = structure
    internal = sum(1 for link in links if link.is_internal)

    broken: List[LinkRecord] = []
    seen = set()
    for link in links:
        if not link.is_probe_eligible or link.url in seen:
            continue
        seen.add(link.url)
        outcome = outcomes[link.url]
        if outcome.is_broken:
            broken.append(replace(link, outcome=outcome))

    return AnalysisResult(
        url=url,
        status=AnalysisStatus.DONE,
        html_version=html_version,
        title=title,
        headings=headings,
        internal_links=internal,
        external_links=len(links) - internal,
        broken_links=tuple(broken),
        has_login_form=login_form,
    )


def analyze_url(
    target: str,
    config: Optional[EngineConfig] = None,
) -> Tuple[AnalysisResult, Optional[EngineError]]:
    """
    Analyze a single page.

    Args:
        target: Absolute http(s) URL of the page.
        config: Engine options; defaults to ``EngineConfig()``.

    Returns:
        Tuple of (result, error). On success the result has status done and
        error is None. Otherwise the result has status error with default
        structural fields, and error is the typed failure.
    """
    config = config or EngineConfig()
    deadline = time.monotonic() + config.timeout_s
    url = target

    try:
        url = validate_target(target)

        logger.debug("Fetching %s", url)
        page = fetch_page(url, config, deadline=deadline)
        if not page.looks_like_html:
            logger.warning("%s is served as %r; parsing it as HTML anyway", url, page.content_type)

        logger.debug("Parsing %s (%d bytes)", page.final_url, len(page.body))
        html_version = detect_version(page.body)
        soup = parse_document(page.body, url)
        structure = extract_structure(soup)

        logger.debug("Classifying links on %s", page.final_url)
        links = classify_links(soup, page.final_url)

        eligible = [link.url for link in links if link.is_probe_eligible]
        logger.debug("Probing %d link(s) from %s", len(set(eligible)), url)
        outcomes = probe_links(eligible, config, deadline=deadline)
    except EngineError as e:
        logger.warning("Analysis of %s failed: %s", url, e)
        return AnalysisResult.failed(url, e), e

    result = assemble_result(url, html_version, structure, links, outcomes)
    logger.info(
        "Analyzed %s: %d internal, %d external, %d broken",
        url, result.internal_links, result.external_links, len(result.broken_links),
    )
    return result, None


def analyze_many(
    targets: Iterable[str],
    config: Optional[EngineConfig] = None,
    max_workers: int = 4,
    on_result: Optional[Callable[[AnalysisResult, Optional[EngineError]], None]] = None,
) -> List[Tuple[AnalysisResult, Optional[EngineError]]]:
    """
    Run independent analyses concurrently.

    Results come back in input order. ``on_result`` is called from the
    calling thread as each analysis finishes.
    """
    targets = list(targets)
    if not targets:
        return []
    if max_workers < 1:
        raise ValueError(f"max_workers must be at least 1, got {max_workers}")

    results: Dict[int, Tuple[AnalysisResult, Optional[EngineError]]] = {}
    with ThreadPoolExecutor(max_workers=min(max_workers, len(targets))) as pool:
        futures = {pool.submit(analyze_url, target, config): i for i, target in enumerate(targets)}
        for future in as_completed(futures):
            outcome = future.result()
            results[futures[future]] = outcome
            if on_result is not None:
                on_result(*outcome)

    return [results[i] for i in range(len(targets))]
