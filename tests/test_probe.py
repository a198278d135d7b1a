import threading
import time

import pytest
import requests

from conftest import FakeResponse
from pageanalyzer.core import probe_link, probe_links
from pageanalyzer.models import EngineConfig, ProbeOutcome


@pytest.fixture
def config():
    return EngineConfig(probe_timeout_s=2.0, max_concurrent_probes=4, user_agent="ProbeTest/0.1")


def test_probe_records_status_codes(fake_http, config):
    fake_http.route("HEAD", "https://a.example/ok", FakeResponse(200))
    fake_http.route("HEAD", "https://a.example/moved", FakeResponse(301))
    fake_http.route("HEAD", "https://a.example/gone", FakeResponse(404))
    fake_http.route("HEAD", "https://a.example/boom", FakeResponse(500))

    outcomes = probe_links(
        ["https://a.example/ok", "https://a.example/moved", "https://a.example/gone", "https://a.example/boom"],
        config,
    )

    assert outcomes["https://a.example/ok"] == ProbeOutcome(200)
    assert not outcomes["https://a.example/moved"].is_broken
    assert outcomes["https://a.example/gone"].is_broken
    assert outcomes["https://a.example/boom"].status_code == 500


def test_probe_sends_head_with_user_agent_and_timeout(fake_http, config):
    probe_link("https://a.example/", config)

    method, url, headers, kwargs = fake_http.calls[0]
    assert (method, url) == ("HEAD", "https://a.example/")
    assert headers["User-Agent"] == "ProbeTest/0.1"
    assert 0 < kwargs["timeout"] <= 2.0
    assert kwargs["allow_redirects"] is False


def test_timeout_is_unreachable(fake_http, config):
    fake_http.route("HEAD", "https://slow.example/", requests.Timeout("read timed out"))

    outcome = probe_link("https://slow.example/", config)

    assert outcome.is_unreachable
    assert outcome.is_broken
    assert outcome.status_code is None
    assert "timed out" in outcome.error


def test_connection_error_is_unreachable(fake_http, config):
    fake_http.route("HEAD", "https://nxdomain.example/", requests.ConnectionError("Name or service not known"))
    assert probe_link("https://nxdomain.example/", config).is_unreachable


def test_head_not_allowed_falls_back_to_get(fake_http, config):
    fake_http.route("HEAD", "https://nohead.example/", FakeResponse(405))
    get_resp = FakeResponse(200)
    fake_http.route("GET", "https://nohead.example/", get_resp)

    outcome = probe_link("https://nohead.example/", config)

    assert outcome == ProbeOutcome(200)
    assert fake_http.methods_for("https://nohead.example/") == ["HEAD", "GET"]
    assert get_resp.closed
    assert fake_http.calls[1][3]["stream"] is True


def test_fallback_get_failure_is_recorded(fake_http, config):
    fake_http.route("HEAD", "https://nohead.example/", FakeResponse(405))
    fake_http.route("GET", "https://nohead.example/", FakeResponse(403))

    assert probe_link("https://nohead.example/", config).status_code == 403


def test_every_distinct_link_gets_exactly_one_outcome(fake_http, config):
    urls = [f"https://a.example/{i % 7}" for i in range(20)]

    outcomes = probe_links(urls, config)

    assert sorted(outcomes) == sorted(set(urls))
    assert len(fake_http.calls) == 7


def test_empty_input(fake_http, config):
    assert probe_links([], config) == {}
    assert fake_http.calls == []


def test_unexpected_worker_exception_is_unreachable(fake_http, config):
    def explode(url, kwargs):
        raise RuntimeError("socket exploded")

    fake_http.route("HEAD", "https://a.example/bad", explode)

    outcomes = probe_links(["https://a.example/bad", "https://a.example/good"], config)

    assert outcomes["https://a.example/bad"].is_unreachable
    assert outcomes["https://a.example/good"].status_code == 200


def test_concurrency_is_bounded(fake_http):
    config = EngineConfig(max_concurrent_probes=3)
    lock = threading.Lock()
    active = {"now": 0, "peak": 0}

    def slow(url, kwargs):
        with lock:
            active["now"] += 1
            active["peak"] = max(active["peak"], active["now"])
        time.sleep(0.02)
        with lock:
            active["now"] -= 1
        return FakeResponse(200, url)

    urls = [f"https://a.example/{i}" for i in range(12)]
    for url in urls:
        fake_http.route("HEAD", url, slow)

    outcomes = probe_links(urls, config)

    assert len(outcomes) == 12
    assert 1 <= active["peak"] <= 3


def test_deadline_abandons_outstanding_probes(fake_http, config):
    release = threading.Event()

    def hang(url, kwargs):
        release.wait(5)
        return FakeResponse(200, url)

    fake_http.route("HEAD", "https://hang.example/", hang)

    try:
        started = time.monotonic()
        outcomes = probe_links(
            ["https://hang.example/", "https://a.example/fast"],
            config,
            deadline=time.monotonic() + 0.2,
        )
        elapsed = time.monotonic() - started
    finally:
        release.set()

    assert elapsed < 2
    assert outcomes["https://a.example/fast"] == ProbeOutcome(200)
    assert outcomes["https://hang.example/"].is_unreachable
    assert "deadline" in outcomes["https://hang.example/"].error


def test_redirect_chain_shares_one_time_budget(fake_http):
    config = EngineConfig(probe_timeout_s=1.0)

    def hop(url, kwargs):
        time.sleep(0.4)
        n = int(url.rsplit("/r", 1)[1])
        return FakeResponse(302, url, headers={"location": f"/r{n + 1}"})

    for n in range(6):
        fake_http.route("HEAD", f"https://chain.example/r{n}", hop)

    started = time.monotonic()
    outcome = probe_link("https://chain.example/r0", config)
    elapsed = time.monotonic() - started

    assert outcome.is_unreachable
    assert elapsed < 1.6
    assert all(kwargs["timeout"] <= 1.0 for _, _, _, kwargs in fake_http.calls)


def test_redirects_are_followed_to_final_status(fake_http, config):
    fake_http.route("HEAD", "https://a.example/old", FakeResponse(308, headers={"location": "https://b.example/new"}))
    fake_http.route("HEAD", "https://b.example/new", FakeResponse(404))

    assert probe_link("https://a.example/old", config).status_code == 404


def test_slow_fallback_get_counts_against_link_budget(fake_http):
    config = EngineConfig(probe_timeout_s=0.3)

    def slow_get(url, kwargs):
        time.sleep(0.5)
        return FakeResponse(200, url)

    fake_http.route("HEAD", "https://nohead.example/", FakeResponse(405))
    fake_http.route("GET", "https://nohead.example/", slow_get)

    outcome = probe_link("https://nohead.example/", config)

    assert outcome.is_unreachable
    assert fake_http.calls[1][3]["timeout"] < 0.3
