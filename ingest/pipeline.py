# ingest/pipeline.py
import asyncio
import json
import logging
import sys
from enum import Enum

import httpx

from .config import get_settings, is_restricted_host
from .dataset_service import DatasetServiceExtractor
from .errors import ExtractionFailed, InvalidUrlError, RateLimited, UpstreamTimeout
from .html_extractor import HtmlExtractor
from .normalize import normalize_url
from .scoring import (
    STAGE2_THRESHOLD,
    STAGE3_THRESHOLD,
    merge_previews,
    needs_better_data,
    score_preview,
)
from .structured_service import StructuredServiceExtractor

logger = logging.getLogger("ingest")
logger.setLevel(logging.INFO)
if not logger.handlers:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s"))
    logger.addHandler(handler)


class PipelineState(str, Enum):
    RATE_LIMIT = "rate_limit"
    CACHE_LOOKUP = "cache_lookup"
    STAGE1 = "stage1"
    STAGE2 = "stage2"
    STAGE3 = "stage3"
    FINALIZE = "finalize"
    RESPOND_CACHED = "respond_cached"
    RESPOND_FRESH = "respond_fresh"


def _summary(preview):
    return (
        f"title={preview.title!r} price={preview.price} "
        f"currency={preview.currency} confidence={preview.confidence}"
    )


def _apply_stage(preview, result):
    if result.preview is None:
        merged = merge_previews(preview)
    else:
        merged = merge_previews(preview, result.preview)
    extra = [w for w in result.warnings if w not in merged.warnings]
    if extra:
        merged = merged.model_copy(update={"warnings": list(merged.warnings) + extra})
    return score_preview(merged)


def enter(state):
    logger.debug(f"Pipeline state -> {state.value}")


class ExtractionStages:
    """
    The escalating chain of extraction stages.

    Stage 1 (HTML) always runs. Stage 2 (structured service) runs while the
    preview still needs better data at the 0.75 threshold. Stage 3 (dataset
    service) runs only for restricted hosts that still need better data at
    0.95. Each stage's result is merged into the running preview and
    rescored.
    """

    def __init__(self, html, structured, dataset):
        self.html = html
        self.structured = structured
        self.dataset = dataset

    async def run(self, normalized, hostname, on_state=None):
        on_state = on_state or (lambda state: None)

        on_state(PipelineState.STAGE1)
        stage1 = await self.html.extract(normalized, hostname)
        preview = score_preview(merge_previews(stage1.preview))
        logger.info(f"Stage 1 result for {normalized}: {_summary(preview)}")

        if needs_better_data(preview, STAGE2_THRESHOLD):
            on_state(PipelineState.STAGE2)
            stage2 = await self.structured.extract(normalized)
            preview = _apply_stage(preview, stage2)
            logger.info(f"Stage 2 result for {normalized}: {_summary(preview)}")

        if is_restricted_host(hostname) and needs_better_data(preview, STAGE3_THRESHOLD):
            on_state(PipelineState.STAGE3)
            # polling is not cancelled by the request timeout once started
            stage3 = await asyncio.shield(self.dataset.extract(normalized, hostname))
            preview = _apply_stage(preview, stage3)
            logger.info(f"Stage 3 result for {normalized}: {_summary(preview)}")

        return preview


class PreviewPipeline:
    """
    Orchestrates a preview request after the caller has been authenticated.

    Flow: normalize URL -> rate limit -> cache lookup -> extraction stages ->
    finalize (cache and respond). Request-level failures are raised as
    ``PreviewError`` subclasses; stage failures only add warnings.
    """

    def __init__(self, stages, cache, rate_limiter, request_timeout=120.0):
        self.stages = stages
        self.cache = cache
        self.rate_limiter = rate_limiter
        self.request_timeout = request_timeout

    async def ingest(self, user_id, raw_url):
        """
        Produce a preview for ``raw_url`` on behalf of ``user_id``.

        Args:
            user_id (str): Verified identifier of the caller
            raw_url (str): URL exactly as submitted

        Returns:
            tuple[ProductPreview, PipelineState]: scored preview and the
                terminal state (RESPOND_CACHED or RESPOND_FRESH)

        Raises:
            InvalidUrlError: ``raw_url`` is not a URL (no quota consumed)
            RateLimited: the caller's hourly quota is spent
            UpstreamTimeout: extraction exceeded the request timeout
            ExtractionFailed: no stage produced a title, image or price
        """
        try:
            normalized = normalize_url(raw_url)
        except InvalidUrlError:
            logger.info(f"Rejected invalid URL {raw_url!r}")
            raise

        enter(PipelineState.RATE_LIMIT)
        if not await self.rate_limiter.check_and_increment(user_id):
            logger.info(f"Rate limit exceeded for user {user_id}")
            raise RateLimited()

        enter(PipelineState.CACHE_LOOKUP)
        cached = await self.cache.get(normalized.hash)
        if cached is not None:
            logger.info(f"Cache hit for {normalized.normalized}")
            enter(PipelineState.RESPOND_CACHED)
            return score_preview(cached), PipelineState.RESPOND_CACHED
        logger.info(f"Cache miss for {normalized.normalized}, extracting")

        try:
            preview = await asyncio.wait_for(
                self.stages.run(normalized.normalized, normalized.hostname, on_state=enter),
                timeout=self.request_timeout,
            )
        except asyncio.TimeoutError:
            logger.error(f"Extraction timed out for {normalized.normalized}")
            raise UpstreamTimeout()

        enter(PipelineState.FINALIZE)
        if not preview.has_core_data():
            logger.error(f"Failed to extract any data for {normalized.normalized}")
            raise ExtractionFailed()

        await self.cache.put(normalized.hash, normalized.normalized, preview)
        logger.info(f"Final result for {normalized.normalized}: {_summary(preview)}")
        enter(PipelineState.RESPOND_FRESH)
        return preview, PipelineState.RESPOND_FRESH


def build_stages(client, settings):
    return ExtractionStages(
        html=HtmlExtractor(client, timeout=settings.html_fetch_timeout),
        structured=StructuredServiceExtractor(client, settings),
        dataset=DatasetServiceExtractor(client, settings),
    )


# convenience script: run the stages for one URL, no auth/cache/rate limit
async def main(raw_url):
    settings = get_settings()
    normalized = normalize_url(raw_url)
    async with httpx.AsyncClient() as client:
        preview = await build_stages(client, settings).run(
            normalized.normalized, normalized.hostname
        )
    print(json.dumps(preview.to_document(), indent=2))


if __name__ == "__main__":
    if len(sys.argv) != 2:
        print("usage: python -m ingest.pipeline <url>")
        sys.exit(2)
    asyncio.run(main(sys.argv[1]))
