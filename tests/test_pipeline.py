# tests/test_pipeline.py
import asyncio

import httpx
import pytest

from ingest.errors import ExtractionFailed, InvalidUrlError, RateLimited, UpstreamTimeout
from ingest.models import PreviewSource, ProductPreview, StageResult
from ingest.normalize import normalize_url
from ingest.pipeline import ExtractionStages, PipelineState

BRIGHTDATA = "api.brightdata.com/datasets/v3"
DIFFBOT = "GET api.diffbot.com/v3/analyze"

AMAZON_RECORD = {
    "title": "Logitech M510 Wireless Mouse",
    "final_price": 24.99,
    "currency": "USD",
    "image_url": "https://m.media-amazon.com/images/I/m510.jpg",
    "feature_bullets": ["Comfortable shape", "2 year battery"],
}


def amazon_dataset_routes(routes, record=AMAZON_RECORD):
    routes[f"POST {BRIGHTDATA}/trigger"] = httpx.Response(200, json={"snapshot_id": "s_1"})
    routes[f"GET {BRIGHTDATA}/progress/s_1"] = httpx.Response(200, json={"status": "completed"})
    routes[f"GET {BRIGHTDATA}/snapshot/s_1"] = httpx.Response(200, json=[record])


def hosts_called(http_client):
    return [request.url.host for request in http_client.calls]


@pytest.mark.asyncio
async def test_complete_page_stops_after_html_stage(pipeline, routes, http_client, make_page, fake_db):
    routes["GET example.com/x"] = httpx.Response(
        200,
        text=make_page(title="Widget", image="https://cdn.example.com/w.jpg", price="19.99", currency="USD"),
    )

    preview, state = await pipeline.ingest("user-1", "https://Example.com/x/?utm_source=ad")

    assert state is PipelineState.RESPOND_FRESH
    assert preview.url == "https://example.com/x"
    assert preview.title == "Widget"
    assert preview.price == 19.99
    assert preview.source == "html"
    assert preview.confidence >= 0.85
    assert hosts_called(http_client) == ["example.com"]

    n = normalize_url("https://example.com/x")
    (doc,) = fake_db["product_previews"].docs
    assert doc["_id"] == n.hash
    assert doc["normalizedUrl"] == "https://example.com/x"


@pytest.mark.asyncio
async def test_amazon_escalates_to_dataset_service(pipeline, routes, http_client, make_page, fake_clock):
    routes["GET www.amazon.com/dp/B003NR57BY"] = httpx.Response(
        200, text=make_page(title="Amazon.com: Logitech M510 Wireless Mouse")
    )
    routes[DIFFBOT] = httpx.Response(503, text="unavailable")
    amazon_dataset_routes(routes)

    preview, state = await pipeline.ingest(
        "user-1", "https://www.amazon.com/Logitech-M510/dp/B003NR57BY/ref=sr_1_1?tag=aff-20&th=1"
    )

    assert state is PipelineState.RESPOND_FRESH
    assert preview.url == "https://www.amazon.com/dp/B003NR57BY"
    assert preview.title == "Logitech M510 Wireless Mouse"
    assert preview.price == 24.99
    assert preview.currency == "USD"
    assert preview.image == "https://m.media-amazon.com/images/I/m510.jpg"
    assert preview.source == "dataset-service"
    assert preview.confidence >= 0.85
    assert "Structured service request failed (503)" in preview.warnings
    assert fake_clock.sleeps == [3.0]
    assert hosts_called(http_client)[:2] == ["www.amazon.com", "api.diffbot.com"]


@pytest.mark.asyncio
async def test_strong_structured_result_skips_dataset_on_other_hosts(pipeline, routes, http_client, make_page):
    routes["GET shop.example.com/lamp"] = httpx.Response(200, text=make_page(title="Lamp"))
    routes[DIFFBOT] = httpx.Response(
        200,
        json={"objects": [{"title": "Desk Lamp", "offerPrice": "$34.50", "offerCurrency": "USD",
                           "images": [{"url": "https://img.example.com/1.jpg"}]}]},
    )

    preview, _ = await pipeline.ingest("user-1", "shop.example.com/lamp")

    assert preview.title == "Desk Lamp"
    assert preview.price == 34.5
    assert preview.source == "structured-service"
    assert "api.brightdata.com" not in hosts_called(http_client)


@pytest.mark.asyncio
async def test_cache_hit_skips_extraction(pipeline, routes, http_client, make_page):
    routes["GET example.com/x"] = httpx.Response(
        200,
        text=make_page(title="Widget", image="https://cdn.example.com/w.jpg", price="19.99", currency="USD"),
    )
    first, _ = await pipeline.ingest("user-1", "https://example.com/x")
    calls_after_first = len(http_client.calls)

    second, state = await pipeline.ingest("user-2", "https://example.com/x?fbclid=abc")

    assert state is PipelineState.RESPOND_CACHED
    assert second == first
    assert len(http_client.calls) == calls_after_first


@pytest.mark.asyncio
async def test_weak_cached_entry_is_re_enriched(pipeline, routes, http_client, make_page):
    routes["GET example.com/x"] = httpx.Response(200, text=make_page(title="Only a title"))
    _, state = await pipeline.ingest("user-1", "https://example.com/x")
    assert state is PipelineState.RESPOND_FRESH

    _, state = await pipeline.ingest("user-1", "https://example.com/x")
    assert state is PipelineState.RESPOND_FRESH
    assert hosts_called(http_client).count("example.com") == 2


@pytest.mark.asyncio
async def test_nothing_extracted_fails_and_is_not_cached(pipeline, fake_db):
    with pytest.raises(ExtractionFailed):
        await pipeline.ingest("user-1", "https://example.com/missing")

    assert fake_db["product_previews"].docs == []


@pytest.mark.asyncio
async def test_invalid_url_consumes_no_quota(pipeline, fake_db, http_client):
    with pytest.raises(InvalidUrlError):
        await pipeline.ingest("user-1", "not a url")

    assert fake_db["product_ingest_rate_limits"].docs == []
    assert http_client.calls == []


@pytest.mark.asyncio
async def test_quota_exhausted(pipeline, http_client):
    pipeline.rate_limiter.limit = 1
    with pytest.raises(ExtractionFailed):
        await pipeline.ingest("user-1", "https://example.com/a")
    calls = len(http_client.calls)

    with pytest.raises(RateLimited):
        await pipeline.ingest("user-1", "https://example.com/b")
    assert len(http_client.calls) == calls


@pytest.mark.asyncio
async def test_slow_extraction_times_out(pipeline):
    class SlowStages:
        async def run(self, normalized, hostname, on_state=None):
            await asyncio.sleep(1)

    pipeline.stages = SlowStages()
    pipeline.request_timeout = 0.01

    with pytest.raises(UpstreamTimeout):
        await pipeline.ingest("user-1", "https://example.com/x")


class StubStage:
    def __init__(self, result):
        self.result = result

    async def extract(self, url, hostname=""):
        return self.result


@pytest.mark.asyncio
async def test_stage_warnings_are_kept_when_the_stage_returns_a_preview():
    url = "https://example.com/x"
    html = StubStage(StageResult(ProductPreview(url=url, title="Lamp"), []))
    structured = StubStage(
        StageResult(
            ProductPreview(url=url, price=10, currency="USD", source=PreviewSource.STRUCTURED_SERVICE),
            ["Structured service ignored a malformed image"],
        )
    )
    stages = ExtractionStages(html, structured, dataset=None)

    preview = await stages.run(url, "example.com")

    assert preview.price == 10
    assert "Structured service ignored a malformed image" in preview.warnings
    assert preview.warnings.count("Structured service ignored a malformed image") == 1
