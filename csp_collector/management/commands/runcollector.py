import logging

from django.apps import apps
from django.conf import settings
from django.core.management.base import BaseCommand
from django.core.servers.basehttp import get_internal_wsgi_application, run
from prometheus_client import start_http_server

from csp_collector.exceptions import ListenError

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    help = "Serve the CSP report endpoint, and optionally the metrics listener."

    def add_arguments(self, parser):
        parser.add_argument("--addr", default="0.0.0.0", help="Address to bind to.")
        parser.add_argument("--port", type=int, help="Report listener port (defaults to PORT).")
        parser.add_argument(
            "--metrics-port",
            type=int,
            help="Separate metrics listener port (defaults to METRICS_PORT).",
        )

    def handle(self, *args, **options):
        addr = options["addr"]
        port = options["port"] or getattr(settings, "PORT", 8080)
        metrics_port = options["metrics_port"] or getattr(settings, "METRICS_PORT", None)
        metrics = apps.get_app_config("csp_collector").metrics

        if getattr(settings, "ENABLE_METRICS", False) and metrics_port:
            logger.info("Starting metrics server", extra={"port": metrics_port})
            try:
                start_http_server(metrics_port, addr=addr, registry=metrics.registry)
            except OSError as e:
                logger.error("Metrics server failed to start", extra={"port": metrics_port, "error": str(e)})
                raise ListenError(f"Metrics server failed to start on port {metrics_port}: {e}") from e

        logger.info(
            "Starting CSP report collector",
            extra={"port": port, "label_policy": metrics.policy.value},
        )
        try:
            run(addr, port, get_internal_wsgi_application(), threading=True)
        except OSError as e:
            logger.error("Main server failed to start", extra={"port": port, "error": str(e)})
            raise ListenError(f"Main server failed to start on port {port}: {e}") from e
