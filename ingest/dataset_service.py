# ingest/dataset_service.py
import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import httpx

from .models import PreviewSource, ProductPreview, StageResult
from .utils import first_non_empty, parse_price

logger = logging.getLogger("ingest.dataset")

# Buy-box/current/sale/offer prices first, MSRP/list/retail/"was" last.
PRICE_FIELDS = (
    "buybox_price_value",
    "buybox_price",
    "final_price",
    "current_price",
    "current_price_value",
    "sale_price",
    "offer_price",
    "price",
    "price_value",
    "price_raw",
    "price_str",
    "buybox_price_str",
    "initial_price",
    "original_price",
    "list_price",
    "list_price_value",
    "retail_price",
    "retail_price_value",
    "was_price",
    "was_price_value",
)
CURRENCY_FIELDS = (
    "buybox_currency",
    "price_currency",
    "currency",
    "currency_symbol",
    "price_symbol",
    "current_price_currency",
    "list_price_currency",
)
TITLE_FIELDS = ("title", "name", "product_name")
DESCRIPTION_FIELDS = ("description", "summary", "about", "product_description")
BULLET_FIELDS = ("feature_bullets", "bullet_points", "features")
IMAGE_FIELDS = (
    "main_image",
    "image",
    "images",
    "image_url",
    "hero_image",
    "main_image_highres",
    "image_highres",
    "primary_image",
)
AVAILABILITY_FIELDS = ("availability", "stock_status", "availability_message", "buybox_availability")
CANONICAL_FIELDS = ("url", "product_url", "link")

BULLET_SEPARATOR = " • "


class JobState(str, Enum):
    TRIGGERING = "triggering"
    POLLING = "polling"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    FAILED = "failed"


@dataclass
class SnapshotJob:
    """
    State of one data-collection job: trigger -> poll -> completed | timeout.

    Transitions only look at the timestamps handed in, so the job can be
    driven by any clock.
    """

    poll_interval: float
    ceiling: float
    state: JobState = JobState.TRIGGERING
    snapshot_id: Optional[str] = None
    started_at: Optional[float] = None
    polls: int = 0
    last_status: Optional[str] = None

    def triggered(self, snapshot_id, now):
        self.snapshot_id = snapshot_id
        self.started_at = now
        self.state = JobState.POLLING

    def trigger_failed(self):
        self.state = JobState.FAILED

    def elapsed(self, now):
        return now - self.started_at

    def remaining(self, now):
        return self.ceiling - self.elapsed(now)

    def should_poll(self, now):
        """True if another poll fits under the ceiling; times the job out otherwise."""
        if self.state is not JobState.POLLING:
            return False
        if self.elapsed(now) >= self.ceiling:
            self.state = JobState.TIMED_OUT
            return False
        return True

    def observe(self, status, now):
        self.polls += 1
        self.last_status = status
        if status == "completed":
            self.state = JobState.COMPLETED
        elif self.elapsed(now) >= self.ceiling:
            self.state = JobState.TIMED_OUT


def _text(value):
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _first_text(record, fields):
    return first_non_empty(*[_text(record.get(f)) for f in fields])


def extract_price(record):
    """
    Pick a price from a dataset record.

    Known price fields are tried in priority order. When none of them holds a
    number, the median of every other numeric ``*price*`` field is used,
    which keeps a single outlier field from deciding the result.
    """
    for field in PRICE_FIELDS:
        value = parse_price(record.get(field))
        if value is not None:
            return value

    others = []
    for key, raw in record.items():
        if key in PRICE_FIELDS or "price" not in key.lower():
            continue
        value = parse_price(raw)
        if value is not None:
            others.append(value)
    if not others:
        return None
    others.sort()
    return others[len(others) // 2]


def extract_description(record):
    prose = _first_text(record, DESCRIPTION_FIELDS)
    if prose:
        return prose
    for field in BULLET_FIELDS:
        bullets = record.get(field)
        if isinstance(bullets, list):
            parts = [b.strip() for b in bullets if isinstance(b, str) and b.strip()]
            if parts:
                return BULLET_SEPARATOR.join(parts)
    return None


def _image_list(record):
    images = record.get("images")
    if not isinstance(images, list):
        return []
    return [i for i in images if isinstance(i, str) and i]


def extract_image(record):
    for field in IMAGE_FIELDS:
        if field == "images":
            images = _image_list(record)
            if images:
                return images[0]
            continue
        value = _text(record.get(field))
        if value:
            return value
    return None


def map_record(record, url):
    images = _image_list(record)
    return ProductPreview(
        url=url,
        canonical_url=_first_text(record, CANONICAL_FIELDS),
        title=_first_text(record, TITLE_FIELDS),
        description=extract_description(record),
        price=extract_price(record),
        currency=_first_text(record, CURRENCY_FIELDS),
        image=extract_image(record),
        images=images or None,
        availability=_first_text(record, AVAILABILITY_FIELDS),
        source=PreviewSource.DATASET_SERVICE,
    )


class DatasetServiceExtractor:
    """
    Stage 3: asynchronous dataset collection for bot-protected retailers.

    The job is triggered for the URL against the retailer's dataset, polled
    every ``poll_interval`` seconds until it completes or ``ceiling`` seconds
    pass, and the first record of the result set is mapped to a preview.
    Every failure returns a ``None`` preview with a warning.

    ``clock`` and ``sleep`` default to ``time.monotonic``/``asyncio.sleep``
    and can be swapped for a fake clock in tests.
    """

    def __init__(self, client, settings, clock=time.monotonic, sleep=asyncio.sleep):
        self.client = client
        self.settings = settings
        self.api_key = settings.brightdata_api_key
        self.api_url = settings.brightdata_api_url.rstrip("/")
        self.poll_interval = settings.dataset_poll_interval
        self.ceiling = settings.dataset_poll_ceiling
        self.call_timeout = settings.dataset_call_timeout
        self.clock = clock
        self.sleep = sleep

    @property
    def headers(self):
        return {"Authorization": f"Bearer {self.api_key}"}

    async def _trigger(self, dataset_id, url, job, warnings):
        try:
            resp = await self.client.post(
                f"{self.api_url}/trigger",
                params={"dataset_id": dataset_id, "format": "json"},
                json=[{"url": url}],
                headers=self.headers,
                timeout=self.call_timeout,
            )
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.warning(f"Dataset trigger error for {url}: {e!r}")
            warnings.append(f"Dataset service trigger error: {e!r}")
            job.trigger_failed()
            return

        if resp.status_code >= 400:
            warnings.append(f"Dataset service trigger failed ({resp.status_code})")
            job.trigger_failed()
            return

        try:
            payload = resp.json()
        except ValueError:
            payload = None
        snapshot_id = None
        if isinstance(payload, dict):
            snapshot_id = payload.get("snapshot_id") or payload.get("id")
        if not snapshot_id:
            warnings.append("Dataset service snapshot id missing")
            job.trigger_failed()
            return

        job.triggered(str(snapshot_id), self.clock())
        logger.info(f"Dataset job {snapshot_id} triggered for {url}")

    async def _fetch_status(self, snapshot_id):
        try:
            resp = await self.client.get(
                f"{self.api_url}/progress/{snapshot_id}",
                headers=self.headers,
                timeout=self.call_timeout,
            )
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.warning(f"Dataset progress error for {snapshot_id}: {e!r}")
            return None
        if resp.status_code >= 400:
            return None
        try:
            payload = resp.json()
        except ValueError:
            return None
        return payload.get("status") if isinstance(payload, dict) else None

    async def _poll_once(self, job):
        remaining = job.remaining(self.clock())
        if remaining <= 0:
            return None
        try:
            return await asyncio.wait_for(
                self._fetch_status(job.snapshot_id), timeout=min(self.call_timeout, remaining)
            )
        except asyncio.TimeoutError:
            logger.warning(f"Dataset progress call for {job.snapshot_id} hit the ceiling")
            return None

    async def _wait_for_snapshot(self, job):
        """Poll until the job completes; no poll or sleep runs past the ceiling."""
        while job.should_poll(self.clock()):
            await self.sleep(min(self.poll_interval, job.remaining(self.clock())))
            status = await self._poll_once(job)
            job.observe(status, self.clock())
            logger.info(f"Dataset job {job.snapshot_id} poll {job.polls}: {status}")

    async def _download(self, snapshot_id, warnings):
        try:
            resp = await self.client.get(
                f"{self.api_url}/snapshot/{snapshot_id}",
                params={"format": "json"},
                headers=self.headers,
                timeout=self.call_timeout,
            )
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            warnings.append(f"Dataset service download error: {e!r}")
            return None
        if resp.status_code >= 400:
            warnings.append(f"Dataset service download failed ({resp.status_code})")
            return None
        try:
            data = resp.json()
        except ValueError:
            warnings.append("Dataset service returned invalid JSON")
            return None
        if isinstance(data, list):
            data = data[0] if data else None
        if not isinstance(data, dict) or not data:
            warnings.append("Dataset service returned empty dataset")
            return None
        return data

    async def extract(self, url, hostname):
        """
        Run a dataset job for ``url`` and map its first record.

        Args:
            url (str): Normalized product URL
            hostname (str): Lower-cased hostname, selects the dataset

        Returns:
            StageResult: preview tagged "dataset-service", or None with
                warnings when the host is not configured, the trigger fails,
                the job does not complete in time, or the download is empty
        """
        warnings = []
        dataset_id = self.settings.dataset_id_for(hostname)
        if not self.api_key or not dataset_id:
            warnings.append("Dataset service not configured for this host")
            return StageResult(None, warnings)

        job = SnapshotJob(poll_interval=self.poll_interval, ceiling=self.ceiling)
        await self._trigger(dataset_id, url, job, warnings)
        if job.state is JobState.FAILED:
            return StageResult(None, warnings)

        await self._wait_for_snapshot(job)
        if job.state is not JobState.COMPLETED:
            logger.warning(
                f"Dataset job {job.snapshot_id} not completed after {job.polls} polls"
            )
            warnings.append("Dataset service did not complete in time")
            return StageResult(None, warnings)

        record = await self._download(job.snapshot_id, warnings)
        if record is None:
            return StageResult(None, warnings)

        return StageResult(map_record(record, url), warnings)
