# api/errors.py
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pymongo.errors import PyMongoError

from ingest.errors import InternalError, PreviewError

logger = logging.getLogger("api")


async def preview_error_handler(request: Request, exc: PreviewError):
    return JSONResponse({"error": exc.message}, status_code=exc.status_code)


async def store_error_handler(request: Request, exc: PyMongoError):
    logger.exception(f"Document store failure on {request.url.path}")
    err = InternalError()
    return JSONResponse({"error": err.message}, status_code=err.status_code)


def register_error_handlers(app: FastAPI):
    """
    Attach the error handlers that turn pipeline failures into responses.

    Every ``PreviewError`` becomes ``{"error": <message>}`` with the status
    code of its class (400, 401, 408, 429 or 500). Document store failures
    become a generic 500. No diagnostic detail reaches the response body.

    Args:
        app (FastAPI): The FastAPI application instance to configure
    """
    app.add_exception_handler(PreviewError, preview_error_handler)
    app.add_exception_handler(PyMongoError, store_error_handler)
