"""Custom exceptions for bucketgate."""

import math
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from bucketgate.app.services.filling_bucket.models import BucketState


class BucketGateException(Exception):
    """Base class for bucketgate exceptions with HTTP status code.

    All custom exceptions should inherit from this class and define
    their specific status_code for consistent HTTP response handling.
    """
    status_code: int = 500

    def __init__(self, message: str = "Rate limiter error"):
        self.message = message
        super().__init__(message)


class InvalidArgumentError(BucketGateException, ValueError):
    """Raised for bad bucket parameters or drain amounts.

    Detected locally, before any call to the store. Never retried.
    Maps to HTTP 400 Bad Request.
    """
    status_code = 400


class ScriptHashMismatchError(BucketGateException):
    """Raised when Redis registers the bucket script under an unexpected SHA.

    The routine stored on the server is not the one this client computed
    its fingerprint from, so nothing it returns can be trusted.
    """
    status_code = 500

    def __init__(self, expected_sha: str, actual_sha: str):
        self.expected_sha = expected_sha
        self.actual_sha = actual_sha
        super().__init__(
            f"Bucket script registered as {actual_sha}, expected {expected_sha}"
        )


class RoutineUnknownError(BucketGateException):
    """Raised when Redis still does not know the script after reloading it.

    Maps to HTTP 503 Service Unavailable.
    """
    status_code = 503

    def __init__(self, sha: str):
        self.sha = sha
        super().__init__(f"Bucket script {sha} unknown to Redis after SCRIPT LOAD")


def compute_retry_in_seconds(bucket_state: "BucketState", margin: int = 3) -> int:
    """Seconds until an empty bucket is worth retrying.

    Time to refill from the current level up to capacity, rounded up, plus
    a safety margin. Overestimates on purpose.
    """
    deficit = abs(bucket_state.capacity - bucket_state.level)
    return math.ceil(deficit / bucket_state.fill_rate) + margin


class Throttled(BucketGateException):
    """Raised when a throttle check finds the bucket empty.

    Carries the bucket state that triggered it and the number of seconds
    the caller should wait, for error tracking and for building the
    Retry-After header of a 429 response.
    Maps to HTTP 429 Too Many Requests.
    """
    status_code = 429

    def __init__(self, bucket_state: "BucketState", retry_in_seconds: int):
        self.bucket_state = bucket_state
        self.retry_in_seconds = retry_in_seconds
        super().__init__(
            f"Throttled, please lower your temper and try again in {retry_in_seconds} seconds"
        )

    def headers(self) -> dict[str, str]:
        """Telemetry headers for a 429 response."""
        headers = self.bucket_state.headers()
        headers["X-Ratelimit-Retry-After"] = str(self.retry_in_seconds)
        headers["Retry-After"] = str(self.retry_in_seconds)
        return headers
