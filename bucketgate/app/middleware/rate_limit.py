"""Filling bucket rate limiting middleware.

Each request is checked against its client's bucket before it runs, and
drains the bucket by the number of milliseconds it took to serve once it has
run. Expensive requests therefore cost more than cheap ones.
"""

import hashlib
from typing import Callable, Optional

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from bucketgate.app.core.logging import get_log_context, get_logger
from bucketgate.app.exceptions import BucketGateException, Throttled
from bucketgate.app.services.filling_bucket import BucketCreator, get_bucket_creator

logger = get_logger(__name__)

# Only this many leading characters of a bearer token are hashed
MAX_API_KEY_LENGTH = 512


def get_client_key(request: Request) -> str:
    """Get the bucket identity for the request.

    Uses the bearer token if available, otherwise falls back to the client
    IP address. Both are hashed with SHA-256 so raw credentials never end up
    in Redis key names.

    Args:
        request: Incoming request

    Returns:
        Bucket identity string
    """
    auth = request.headers.get("Authorization", "")
    if auth.startswith("Bearer "):
        api_key = auth[7:].strip()
        if len(api_key) > MAX_API_KEY_LENGTH:
            api_key = api_key[:MAX_API_KEY_LENGTH]
        key_hash = hashlib.sha256(api_key.encode()).hexdigest()[:32]
        return f"apikey:{key_hash}"

    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        client_ip = forwarded.split(",")[0].strip()
    else:
        client_ip = request.client.host if request.client else "unknown"
    ip_hash = hashlib.sha256(client_ip.encode()).hexdigest()[:32]
    return f"ip:{ip_hash}"


def throttled_response(exc: Throttled) -> JSONResponse:
    """Build the 429 response for a throttled request."""
    return JSONResponse(
        status_code=429,
        content={
            "error": "rate_limit_exceeded",
            "message": exc.message,
            "retry_after": exc.retry_in_seconds,
        },
        headers=exc.headers(),
    )


class FillingBucketMiddleware(BaseHTTPMiddleware):
    """Middleware enforcing a filling bucket per client.

    Adds X-Ratelimit-Cost, X-Ratelimit-Level and X-Ratelimit-Capacity headers
    to every response. Throttled requests get a 429 with Retry-After.

    The cost is measured up to the point the endpoint returns its response,
    since the headers carry the level after the drain and must be sent before
    the body. Time spent streaming a StreamingResponse body afterwards is not
    charged.
    """

    def __init__(
        self,
        app,
        fill_rate: int,
        capacity: int,
        creator: Optional[BucketCreator] = None,
        key_func: Optional[Callable[[Request], str]] = None,
    ):
        super().__init__(app)
        self.fill_rate = fill_rate
        self.capacity = capacity
        self._creator = creator
        self._key_func = key_func or get_client_key

    @property
    def creator(self) -> BucketCreator:
        if self._creator is None:
            self._creator = get_bucket_creator()
        return self._creator

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        """Process request with rate limiting."""
        bucket = self.creator.setup_bucket(
            key=self._key_func(request),
            fill_rate=self.fill_rate,
            capacity=self.capacity,
        )

        try:
            await bucket.throttle_check()
        except Throttled as exc:
            return throttled_response(exc)

        response: Optional[Response] = None

        async def serve() -> None:
            nonlocal response
            response = await call_next(request)

        state = await bucket.drain_timed(serve)
        response.headers.update(state.headers())
        return response


def register_exception_handlers(app: FastAPI) -> None:
    """Map bucketgate exceptions raised from route code to HTTP responses."""

    @app.exception_handler(Throttled)
    async def throttled_handler(request: Request, exc: Throttled) -> JSONResponse:
        """Handle Throttled and return HTTP 429 response."""
        return throttled_response(exc)

    @app.exception_handler(BucketGateException)
    async def bucketgate_error_handler(request: Request, exc: BucketGateException) -> JSONResponse:
        """Handle other bucketgate errors with their own status code."""
        if exc.status_code >= 500:
            logger.error(
                f"Rate limiter failure: {exc.message}",
                extra=get_log_context(path=request.url.path, method=request.method),
            )
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": type(exc).__name__, "message": exc.message},
        )
