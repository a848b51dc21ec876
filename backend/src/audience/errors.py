"""Domain exceptions raised by the metrics engine."""
from datetime import date


class AudienceError(Exception):
    """Base class for all metrics engine errors."""


class UnauthorizedError(AudienceError):
    """Cron trigger caller presented neither the platform header nor the shared secret."""


class InvalidInputError(AudienceError):
    """Malformed date, range or segment parameters."""

    def __init__(self, message: str, field: str | None = None, value: object = None, code: str = "invalid_input"):
        super().__init__(message)
        self.field = field
        self.value = value
        self.code = code


class MissingCapability(AudienceError):
    """
    An optional table or feature is absent.

    Never propagated to callers: the engine logs it and falls back to the
    documented degraded formula.
    """

    def __init__(self, capability: str):
        super().__init__(f"Optional capability unavailable: {capability}")
        self.capability = capability


class SegmentComputationFailure(AudienceError):
    """One (day, segment) computation failed; sibling segments are unaffected."""

    def __init__(self, metric_date: date, segment: str, cause: BaseException):
        super().__init__(f"{segment} on {metric_date.isoformat()} failed: {cause!r}")
        self.metric_date = metric_date
        self.segment = segment
        self.cause = cause


class PipelineFailure(AudienceError):
    """The weekly pipeline aborted; ``cause`` is the original error."""

    def __init__(self, stage: str, cause: BaseException):
        super().__init__(str(cause) or type(cause).__name__)
        self.stage = stage
        self.cause = cause
