"""
Pipeline Errors

Exception taxonomy shared by every component.  Each error carries a short,
user-facing ``message``; the HTTP layer returns only that message, never the
underlying technical detail.
"""

from __future__ import annotations


class PashuCareError(Exception):
    """Base class for all pipeline errors."""

    status_code = 500
    default_message = "Something went wrong. Please try again."

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class InputValidationError(PashuCareError):
    """Malformed or oversized input.  Rejected immediately, never queued."""

    status_code = 422
    default_message = "The submitted symptoms could not be read."


class UpstreamUnavailable(PashuCareError):
    """The AI or facility service is unreachable, slow or misbehaving."""

    status_code = 503
    default_message = (
        "The diagnosis service is temporarily unavailable. Please try again "
        "in a few minutes."
    )


class CircuitOpenError(UpstreamUnavailable):
    """The circuit breaker refused the call without a network attempt."""


class AIResponseInvalid(UpstreamUnavailable):
    """The AI service answered, but the payload failed schema validation."""


class DataIntegrityError(PashuCareError):
    """A knowledge-base or facility file failed structural validation."""

    status_code = 500
    default_message = "Reference data failed validation; previous data kept."


class QueueExhausted(PashuCareError):
    """A queued request used up its retry budget."""

    status_code = 409
    default_message = (
        "We could not complete this diagnosis. Please check your connection "
        "and submit it again."
    )
