import threading
import time

import pytest

from pageanalyzer import core


class FakeResponse:
    def __init__(self, status_code=200, url="", body=b"", headers=None, chunks=None, delay=0.0):
        self.status_code = status_code
        self.url = url
        self.content = body
        self.headers = headers or {"content-type": "text/html; charset=utf-8"}
        self.chunks = chunks if chunks is not None else [body]
        self.delay = delay
        self.closed = False

    def iter_content(self, chunk_size=1):
        for chunk in self.chunks:
            if self.delay:
                time.sleep(self.delay)
            yield chunk

    def close(self):
        self.closed = True


class FakeHttp:
    """
    Stands in for requests.Session. Routes are keyed by (method, url); a route
    may be a FakeResponse, an exception instance to raise, or a callable
    taking (url, kwargs). Unrouted requests answer 200.
    """

    def __init__(self):
        self.routes = {}
        self.calls = []
        self._lock = threading.Lock()

    def route(self, method, url, handler):
        self.routes[(method, url)] = handler

    def page(self, url, body, status_code=200, final_url=None):
        self.route("GET", url, FakeResponse(status_code, final_url or url, body))

    def dispatch(self, method, url, headers, kwargs):
        with self._lock:
            self.calls.append((method, url, dict(headers), kwargs))
        handler = self.routes.get((method, url))
        if handler is None:
            return FakeResponse(200, url)
        if isinstance(handler, BaseException):
            raise handler
        if callable(handler):
            return handler(url, kwargs)
        return handler

    def methods_for(self, url):
        return [method for method, called_url, _, _ in self.calls if called_url == url]


class _Session:
    def __init__(self, http):
        self._http = http
        self.headers = {}
        self.max_redirects = 30

    def request(self, method, url, **kwargs):
        return self._http.dispatch(method, url, self.headers, kwargs)

    def close(self):
        pass

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


@pytest.fixture
def fake_http(monkeypatch):
    http = FakeHttp()
    monkeypatch.setattr(core.requests, "Session", lambda: _Session(http))
    return http
