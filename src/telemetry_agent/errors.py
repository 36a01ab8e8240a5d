"""
Custom exceptions for the telemetry pipeline.

Transport failures are classified so the retry manager can decide between
retrying, dropping, and holding a batch.
"""


class TelemetryError(Exception):
    """Base error for the telemetry pipeline."""

    pass


class EventValidationError(TelemetryError, ValueError):
    """Event failed schema validation; it is dropped before queueing."""

    pass


class TransportError(TelemetryError):
    """Base error for a failed batch send."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class TransientTransportError(TransportError):
    """Network errors, timeouts and 5xx/429 responses. Retried with backoff."""

    pass


class BatchRejectedError(TransportError):
    """Server refused the payload (400 and other non-auth 4xx). Never retried."""

    pass


class AuthenticationError(TransportError):
    """Server refused the credentials (401/403). Held until re-authenticated."""

    pass


def map_http_status(status_code: int, detail: str = "") -> TransportError:
    msg = f"HTTP {status_code}" + (f": {detail[:200]}" if detail else "")
    if status_code in (401, 403):
        return AuthenticationError(msg, status_code)
    if status_code in (408, 429) or status_code >= 500:
        return TransientTransportError(msg, status_code)
    if 400 <= status_code < 500:
        return BatchRejectedError(msg, status_code)
    return TransientTransportError(f"unexpected status {msg}", status_code)
