# api/main.py
import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ingest.cache import PreviewCache
from ingest.config import get_settings
from ingest.db import (
    API_TOKENS_COLLECTION,
    PREVIEWS_COLLECTION,
    RATE_LIMITS_COLLECTION,
    close_client,
    ensure_indexes,
    get_db,
)
from ingest.errors import BadRequest
from ingest.pipeline import PipelineState, PreviewPipeline, build_stages

from .auth import TokenVerifier, get_current_user
from .errors import register_error_handlers
from .rate_limit import RateLimiter

logger = logging.getLogger("api")
logger.setLevel(logging.INFO)

CACHE_HEADER = "X-Preview-Cache"


def build_pipeline(db, client, settings):
    """Wire the pipeline's collaborators from a database and an HTTP client."""
    return PreviewPipeline(
        stages=build_stages(client, settings),
        cache=PreviewCache(db[PREVIEWS_COLLECTION], ttl_days=settings.cache_ttl_days),
        rate_limiter=RateLimiter(db[RATE_LIMITS_COLLECTION], limit=settings.rate_limit_per_hour),
        request_timeout=settings.request_timeout,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    db = get_db()
    await ensure_indexes(db)
    client = httpx.AsyncClient()
    app.state.settings = settings
    app.state.verifier = TokenVerifier(db[API_TOKENS_COLLECTION])
    app.state.pipeline = build_pipeline(db, client, settings)
    logger.info(f"Product preview API started ({settings.env})")
    try:
        yield
    finally:
        await client.aclose()
        close_client()


app = FastAPI(title="Product Preview API", version="1.0", lifespan=lifespan)

register_error_handlers(app)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)


async def read_url(request: Request):
    """
    Pull the ``url`` field out of the JSON request body.

    Raises:
        BadRequest: body is not JSON, or ``url`` is missing or not a string
    """
    try:
        body = await request.json()
    except ValueError:
        raise BadRequest("Invalid JSON")
    url = body.get("url") if isinstance(body, dict) else None
    if not url or not isinstance(url, str):
        raise BadRequest("Missing url")
    return url


@app.get("/health")
def healthcheck(request: Request):
    settings = getattr(request.app.state, "settings", None) or get_settings()
    return {"status": "ok", "env": settings.env}


@app.post("/products/ingest")
async def ingest_product(request: Request, user_id: str = Depends(get_current_user)):
    """
    Return a normalized product preview for a pasted URL.

    Request body: ``{"url": "<product url>"}`` with a bearer credential in
    the Authorization header.

    Returns:
        JSONResponse: the ProductPreview with unset fields omitted; the
            ``X-Preview-Cache`` header says whether it came from the cache

    Errors:
        401 missing/invalid credential, 400 bad JSON or URL, 429 hourly
        quota spent, 408 upstream timeout, 500 nothing usable extracted or
        infrastructure failure
    """
    url = await read_url(request)
    preview, state = await request.app.state.pipeline.ingest(user_id, url)
    cache_status = "hit" if state is PipelineState.RESPOND_CACHED else "miss"
    return JSONResponse(preview.to_document(), headers={CACHE_HEADER: cache_status})


# Run uvicorn externally or here
if __name__ == "__main__":
    import uvicorn

    uvicorn.run("api.main:app", host="0.0.0.0", port=get_settings().api_port, reload=True)
