import logging

from django.conf import settings
from django.http import (
    HttpResponse,
    HttpResponseBadRequest,
    HttpResponseNotAllowed,
)
from django.utils.decorators import method_decorator
from django.views import View
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_GET
from prometheus_client import CONTENT_TYPE_LATEST

from .exceptions import DecodeError, PayloadTooLarge
from .reports import decode_report, normalize_report, resolve_host

logger = logging.getLogger(__name__)

# Default maximum size for a CSP report body (in bytes)
DEFAULT_MAX_REPORT_SIZE = 8 * 1024


class HttpResponsePayloadTooLarge(HttpResponse):
    status_code = 413


def get_max_report_size():
    return getattr(settings, "CSP_REPORT_MAX_SIZE", DEFAULT_MAX_REPORT_SIZE)


def read_report_body(request, limit):
    """
    Read at most ``limit`` bytes of the request body.

    Raises PayloadTooLarge when the declared or actual length exceeds the
    limit, and DecodeError when the client goes away mid-read.
    """
    content_length = request.META.get("CONTENT_LENGTH")
    try:
        declared = int(content_length) if content_length else 0
    except ValueError:
        declared = 0
    if declared > limit:
        raise PayloadTooLarge(declared, limit)

    try:
        body = request.read(limit + 1)
    except OSError as e:
        # UnreadablePostError: the connection was severed
        raise DecodeError(f"Failed to read report body: {e}") from e
    if len(body) > limit:
        raise PayloadTooLarge(len(body), limit)
    return body


@method_decorator(csrf_exempt, name="dispatch")
class CSPReportView(View):
    """
    Accepts ``{"csp-report": {...}}`` POSTs and records them in ``metrics``.

    ``metrics`` is a ReportMetrics instance passed in through ``as_view()``.
    """

    metrics = None

    def dispatch(self, request, *args, **kwargs):
        # Raw Host header; get_host() validation is not applied
        request_host = request.META.get("HTTP_HOST") or request.META.get("SERVER_NAME", "")
        self.host = resolve_host(request.headers, request_host)
        return super().dispatch(request, *args, **kwargs)

    def http_method_not_allowed(self, request, *args, **kwargs):
        logger.warning(
            "Invalid request method",
            extra={"method": request.method, "host": self.host, "path": request.path},
        )
        self.metrics.record_error()
        return HttpResponseNotAllowed(["POST"], content="Method not allowed")

    def options(self, request, *args, **kwargs):
        return self.http_method_not_allowed(request, *args, **kwargs)

    def post(self, request, *args, **kwargs):
        limit = get_max_report_size()
        try:
            report = decode_report(read_report_body(request, limit))
        except PayloadTooLarge as e:
            logger.warning(
                "CSP report too large",
                extra={"content_length": e.size, "limit": e.limit, "host": self.host},
            )
            self.metrics.record_error()
            return HttpResponsePayloadTooLarge("Payload too large")
        except DecodeError as e:
            logger.error("Failed to decode JSON", extra={"error": str(e), "host": self.host})
            self.metrics.record_error()
            return HttpResponseBadRequest("Invalid JSON")

        normalized = normalize_report(
            report,
            self.host,
            canonicalize=self.metrics.policy.canonicalizes_document_uri,
        )
        self.metrics.record(normalized)
        logger.info("CSP violation report received", extra=normalized.log_fields())
        return HttpResponse(status=200)


def metrics_view_for(metrics):
    """Build a GET view that serves ``metrics`` in the Prometheus text format."""

    @require_GET
    def metrics_view(request):
        return HttpResponse(metrics.exposition(), content_type=CONTENT_TYPE_LATEST)

    return metrics_view
