"""
Error taxonomy for the ingestion engine.

Fetch errors are raised by the collector and either converted into data at the
per-source boundary (refresh path) or recorded on the job (backfill path).
Engine errors are raised by the control interface for bad operator input.
"""


class FetchError(Exception):
    """Base class for everything that can go wrong fetching one page."""

    kind = "fetch_error"


class TransportError(FetchError):
    """Timeout, refused connection, DNS failure."""

    kind = "transport"


class UpstreamError(FetchError):
    """The source answered with a non-2xx status."""

    kind = "upstream"

    def __init__(self, status_code: int, message: str | None = None):
        self.status_code = status_code
        super().__init__(message or f"HTTP {status_code}")


class RedirectError(UpstreamError):
    """The endpoint redirected (forum moved or shut down)."""

    kind = "redirect"

    def __init__(self, status_code: int, location: str | None = None):
        self.location = location
        target = f" to {location}" if location else ""
        super().__init__(status_code, f"HTTP {status_code}: forum moved{target}")


class RateLimitedError(UpstreamError):
    """HTTP 429. ``retry_after`` is the server's hint in seconds, if any."""

    kind = "rate_limited"

    def __init__(self, retry_after: float | None = None):
        self.retry_after = retry_after
        super().__init__(429, "Rate limited")


class NotJsonError(FetchError):
    kind = "not_json"

    def __init__(self, content_type: str = ""):
        self.content_type = content_type
        super().__init__("Invalid response (not JSON)")


class MalformedPayloadError(FetchError):
    kind = "malformed"


class SourceNotFoundError(LookupError):
    pass


class JobNotFoundError(LookupError):
    pass


class InvalidTransitionError(ValueError):
    """A backfill job was asked to move to a state its current state forbids."""

    def __init__(self, job_id: int, current: str, target: str):
        self.job_id = job_id
        self.current = current
        self.target = target
        super().__init__(f"Job {job_id} cannot go from {current} to {target}")
