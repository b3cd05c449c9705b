# tests/test_structured_service.py
import httpx
import pytest

from ingest.config import Settings
from ingest.structured_service import StructuredServiceExtractor

URL = "https://shop.example.com/item/42"

ANALYZE_RESPONSE = {
    "objects": [
        {
            "type": "product",
            "pageUrl": "https://shop.example.com/item/42?ref=canon",
            "title": "Desk Lamp",
            "text": "A bright LED desk lamp.",
            "offerPrice": "$34.50",
            "offerCurrency": "USD",
            "availability": "InStock",
            "images": [{"url": "https://img.example.com/1.jpg"}, {"url": "https://img.example.com/2.jpg"}],
        }
    ]
}


def make_client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_maps_first_object(settings):
    seen = {}

    def handler(request):
        seen["params"] = dict(request.url.params)
        return httpx.Response(200, json=ANALYZE_RESPONSE)

    async with make_client(handler) as client:
        result = await StructuredServiceExtractor(client, settings).extract(URL)

    preview = result.preview
    assert seen["params"] == {"token": "diffbot-test", "url": URL}
    assert preview.url == URL
    assert preview.canonical_url == "https://shop.example.com/item/42?ref=canon"
    assert preview.title == "Desk Lamp"
    assert preview.description == "A bright LED desk lamp."
    assert preview.price == 34.5
    assert preview.currency == "USD"
    assert preview.image == "https://img.example.com/1.jpg"
    assert preview.images == ["https://img.example.com/1.jpg", "https://img.example.com/2.jpg"]
    assert preview.availability == "InStock"
    assert preview.source == "structured-service"
    assert result.warnings == []


@pytest.mark.asyncio
async def test_unconfigured_returns_none_without_network_call():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200, json=ANALYZE_RESPONSE)

    async with make_client(handler) as client:
        result = await StructuredServiceExtractor(client, Settings()).extract(URL)

    assert result.preview is None
    assert result.warnings == ["Structured extraction service not configured"]
    assert calls == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response,warning",
    [
        (httpx.Response(502, text="bad gateway"), "Structured service request failed (502)"),
        (httpx.Response(200, json={"objects": []}), "Structured service returned no objects"),
        (httpx.Response(200, text="<html>"), "Structured service returned invalid JSON"),
    ],
)
async def test_soft_failures(settings, response, warning):
    async with make_client(lambda request: response) as client:
        result = await StructuredServiceExtractor(client, settings).extract(URL)

    assert result.preview is None
    assert result.warnings == [warning]


@pytest.mark.asyncio
async def test_timeout_is_soft(settings):
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    async with make_client(handler) as client:
        result = await StructuredServiceExtractor(client, settings).extract(URL)

    assert result.preview is None
    assert result.warnings == ["Structured service timed out after 20s"]
