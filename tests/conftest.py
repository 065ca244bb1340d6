import pytest
import requests

from catalog_backend.records import ArtworkType, CatalogRecord

CONTRACT = "0xb932a70a57673d89f4acffbe830e8ed7f75fb9e0"


class FakeResponse:
    def __init__(self, status_code=200, json_data=None, text=""):
        self.status_code = status_code
        self._json = json_data
        self.text = text

    def json(self):
        if self._json is None:
            raise ValueError("no JSON")
        return self._json


class FakeSession:
    """Stands in for requests.Session; answers from a url -> response map."""

    def __init__(self, get_routes=None, head_routes=None):
        self.headers = {}
        self.get_routes = get_routes or {}
        self.head_routes = head_routes or {}
        self.calls = []

    def _answer(self, routes, url):
        for prefix, answer in routes.items():
            if url.startswith(prefix):
                if isinstance(answer, Exception):
                    raise answer
                return answer
        raise requests.ConnectionError(f"no route for {url}")

    def get(self, url, params=None, timeout=None, headers=None):
        self.calls.append(("GET", url, dict(params or {}), dict(headers or {})))
        return self._answer(self.get_routes, url)

    def head(self, url, timeout=None, allow_redirects=False):
        self.calls.append(("HEAD", url, {}, {"timeout": timeout}))
        return self._answer(self.head_routes, url)

    def urls(self, method=None):
        return [c[1] for c in self.calls if method is None or c[0] == method]


def make_record(record_id=0, **kwargs):
    fields = {"title": f"Artwork {record_id}", "type": ArtworkType.UNIQUE}
    fields.update(kwargs)
    return CatalogRecord(record_id=record_id, **fields)


@pytest.fixture
def record_factory():
    return make_record
