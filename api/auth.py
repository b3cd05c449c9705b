# api/auth.py
import hashlib
import logging
from typing import Optional

from fastapi import Depends, Header, Request

from ingest.errors import InternalError, Unauthorized

logger = logging.getLogger("api")


class InvalidToken(Exception):
    pass


def hash_token(token):
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class TokenVerifier:
    """
    Resolve bearer tokens to user ids through the ``api_tokens`` collection.

    Tokens are stored by SHA-256 digest, never in clear text. A record
    looks like ``{"_id": <digest>, "user_id": "...", "revoked": false}``.
    """

    def __init__(self, collection):
        self.collection = collection

    async def verify(self, token):
        doc = await self.collection.find_one({"_id": hash_token(token)})
        if not doc or doc.get("revoked") or not doc.get("user_id"):
            raise InvalidToken()
        return str(doc["user_id"])


def get_token_verifier(request: Request):
    return request.app.state.verifier


async def get_current_user(
    authorization: Optional[str] = Header(default=None),
    verifier=Depends(get_token_verifier),
) -> str:
    """
    Validate the bearer credential and return the caller's user id.

    FastAPI dependency used by the ingest endpoint. Runs before the request
    body is read, so unauthenticated calls never reach URL validation or
    rate limiting.

    Args:
        authorization (str, optional): ``Authorization`` header value
        verifier: Identity verifier from ``app.state``

    Returns:
        str: Stable user identifier

    Raises:
        Unauthorized: header missing, not a Bearer credential, or rejected
        InternalError: the identity provider itself failed
    """
    if not authorization or not authorization.lower().startswith("bearer "):
        raise Unauthorized()
    token = authorization.split(" ", 1)[1].strip()
    if not token:
        raise Unauthorized()
    try:
        return await verifier.verify(token)
    except InvalidToken:
        raise Unauthorized()
    except Exception as exc:
        logger.exception("Auth verification failed")
        raise InternalError("Auth verification failed") from exc
