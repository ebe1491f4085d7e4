"""Shared fixtures: a scripted stand-in for requests.Session and a fake clock."""

import pytest
import requests


class FakeResponse:
    def __init__(self, status=200, json_data=None, headers=None, text=''):
        self.status_code = status
        self._json = json_data
        self.headers = headers or {}
        self.text = text

    def json(self):
        if self._json is None:
            raise ValueError("No JSON object could be decoded")
        return self._json

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Error", response=self)


class FakeSession:
    """Answers GET requests from a url -> response (or exception) table."""

    def __init__(self, routes=None):
        self.routes = dict(routes or {})
        self.calls = []

    def add(self, url, response):
        self.routes[url] = response

    def get(self, url, headers=None, timeout=None, **kwargs):
        self.calls.append({'url': url, 'headers': dict(headers or {}), 'timeout': timeout})
        result = self.routes.get(url)
        if result is None:
            raise requests.ConnectionError(f"No route to {url}")
        if isinstance(result, Exception):
            raise result
        return result

    def urls(self):
        return [call['url'] for call in self.calls]


class FakeClock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def session():
    return FakeSession()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def json_response():
    """Factory for JSON responses: json_response({...}, status=200, headers={})."""
    def _make(data, status=200, headers=None):
        return FakeResponse(status=status, json_data=data, headers=headers)
    return _make


@pytest.fixture
def text_response():
    def _make(text, status=200):
        return FakeResponse(status=status, text=text)
    return _make
