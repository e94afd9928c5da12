from django.core.management.base import CommandError


class ReportError(Exception):
    """Base class for failures confined to a single report request."""


class DecodeError(ReportError):
    """The request body is not a well-formed ``{"csp-report": {...}}`` document."""


class PayloadTooLarge(ReportError):
    def __init__(self, size, limit):
        super().__init__(f"Report body of {size} bytes exceeds limit of {limit} bytes")
        self.size = size
        self.limit = limit


class ListenError(CommandError):
    """The collector could not bind or serve its listening socket."""
