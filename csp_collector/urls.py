from django.apps import apps
from django.conf import settings
from django.urls import path

from .views import CSPReportView, metrics_view_for

metrics = apps.get_app_config("csp_collector").metrics

urlpatterns = [
    path("report", CSPReportView.as_view(metrics=metrics), name="csp_report"),
]

# Single-port mode; with METRICS_PORT set the exposition gets its own listener
if getattr(settings, "ENABLE_METRICS", False) and not getattr(settings, "METRICS_PORT", None):
    urlpatterns.append(path("metrics", metrics_view_for(metrics), name="metrics"))
