# ingest/errors.py


class PreviewError(Exception):
    """
    Base class for request-level failures of the preview pipeline.

    Every subclass carries the HTTP status code it maps to and a short
    message that is safe to show to the caller. Stage-level problems never
    use these classes; they are downgraded to warnings on the preview.
    """

    status_code = 500
    message = "Internal error"

    def __init__(self, message=None):
        if message is not None:
            self.message = message
        super().__init__(self.message)


class Unauthorized(PreviewError):
    status_code = 401
    message = "Unauthorized"


class BadRequest(PreviewError):
    status_code = 400
    message = "Bad request"


class InvalidUrlError(BadRequest):
    message = "Invalid URL"


class RateLimited(PreviewError):
    status_code = 429
    message = "Rate limit exceeded. Please try again later."


class ExtractionFailed(PreviewError):
    status_code = 500
    message = "Unable to retrieve product data"


class UpstreamTimeout(PreviewError):
    status_code = 408
    message = "Upstream fetch timed out"


class InternalError(PreviewError):
    status_code = 500
    message = "Internal error"
