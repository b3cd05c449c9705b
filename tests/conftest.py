# tests/conftest.py
import sys
import os

ROOT_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
sys.path.insert(0, ROOT_DIR)

import copy

import httpx
import pytest
from httpx import ASGITransport, AsyncClient
from pymongo.errors import ServerSelectionTimeoutError

from api.auth import InvalidToken
from api.main import app, build_pipeline
from ingest.config import Settings


def _matches(doc, query):
    for k, v in (query or {}).items():
        docv = doc.get(k)
        if isinstance(v, dict):
            if docv is None:
                return False
            if "$lt" in v and not docv < v["$lt"]:
                return False
            if "$gte" in v and not docv >= v["$gte"]:
                return False
        elif docv != v:
            return False
    return True


class FakeCollection:
    """In-memory stand-in for the subset of a Motor collection the app uses."""

    def __init__(self, docs=None):
        self.docs = [copy.deepcopy(d) for d in (docs or [])]
        self.indexes = []

    def _find(self, q):
        for d in self.docs:
            if _matches(d, q):
                return d
        return None

    async def find_one(self, q):
        doc = self._find(q)
        return copy.deepcopy(doc) if doc else None

    async def replace_one(self, q, doc, upsert=False):
        existing = self._find(q)
        if existing is not None:
            self.docs.remove(existing)
        elif not upsert:
            return {"matched_count": 0}
        self.docs.append(copy.deepcopy(doc))
        return {"matched_count": 1 if existing else 0}

    async def update_one(self, q, u, upsert=False):
        doc = self._find(q)
        if doc is None:
            if not upsert:
                return {"matched_count": 0}
            doc = {k: v for k, v in q.items() if not isinstance(v, dict)}
            doc.update(u.get("$setOnInsert", {}))
            self.docs.append(doc)
        for k, v in u.get("$set", {}).items():
            doc[k] = v
        for k, v in u.get("$inc", {}).items():
            doc[k] = doc.get(k, 0) + v
        return {"matched_count": 1}

    async def find_one_and_update(self, q, u, return_document=None):
        doc = self._find(q)
        if doc is None:
            return None
        for k, v in u.get("$set", {}).items():
            doc[k] = v
        for k, v in u.get("$inc", {}).items():
            doc[k] = doc.get(k, 0) + v
        return copy.deepcopy(doc)

    async def create_index(self, keys, **kwargs):
        self.indexes.append((keys, kwargs))
        return kwargs.get("name")


class BrokenCollection:
    """Collection whose every call fails like an unreachable server."""

    def __getattr__(self, name):
        async def fail(*args, **kwargs):
            raise ServerSelectionTimeoutError("no servers available")

        return fail


class FakeDB(dict):
    def __missing__(self, name):
        coll = FakeCollection()
        self[name] = coll
        return coll


class FakeVerifier:
    def __init__(self, tokens=None, error=None):
        self.tokens = tokens or {"good-token": "user-1", "other-token": "user-2"}
        self.error = error

    async def verify(self, token):
        if self.error is not None:
            raise self.error
        if token not in self.tokens:
            raise InvalidToken()
        return self.tokens[token]


class FakeClock:
    """Monotonic clock whose sleep advances time instantly."""

    def __init__(self, start=1000.0):
        self.now = start
        self.sleeps = []

    def __call__(self):
        return self.now

    async def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


def _html_page(title=None, image=None, price=None, currency=None, description=None, extra=""):
    meta = []
    if title:
        meta.append(f'<meta property="og:title" content="{title}">')
    if image:
        meta.append(f'<meta property="og:image" content="{image}">')
    if description:
        meta.append(f'<meta property="og:description" content="{description}">')
    ld = ""
    if price is not None:
        ld = (
            '<script type="application/ld+json">'
            '{"@context": "https://schema.org", "@type": "Product", "name": "LD name", '
            f'"offers": {{"@type": "Offer", "price": "{price}", "priceCurrency": "{currency}"}}}}'
            "</script>"
        )
    return f"<html><head>{''.join(meta)}{ld}</head><body>{extra}</body></html>"


@pytest.fixture
def settings():
    return Settings(
        diffbot_token="diffbot-test",
        brightdata_api_key="bright-test",
        brightdata_amazon_dataset_id="gd_amazon",
        brightdata_walmart_dataset_id="gd_walmart",
        request_timeout=30.0,
    )


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def fake_db():
    return FakeDB()


@pytest.fixture
def routes():
    """Map of "METHOD host/path" to a response factory, filled in by each test."""
    return {}


@pytest.fixture
def http_client(routes):
    calls = []

    def handler(request):
        key = f"{request.method} {request.url.host}{request.url.path}"
        calls.append(request)
        if key not in routes:
            return httpx.Response(404, text="not found")
        route = routes[key]
        return route(request) if callable(route) else route

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    client.calls = calls
    return client


@pytest.fixture
def pipeline(fake_db, http_client, settings, fake_clock):
    p = build_pipeline(fake_db, http_client, settings)
    p.stages.dataset.clock = fake_clock
    p.stages.dataset.sleep = fake_clock.sleep
    return p


@pytest.fixture
def make_page():
    return _html_page


@pytest.fixture
def verifier():
    return FakeVerifier()


@pytest.fixture
def auth_headers():
    return {"Authorization": "Bearer good-token"}


@pytest.fixture
def broken_collection():
    return BrokenCollection()


@pytest.fixture
async def client(pipeline, settings, verifier):
    app.state.settings = settings
    app.state.verifier = verifier
    app.state.pipeline = pipeline

    # Use AsyncClient with FastAPI app using ASGITransport
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
