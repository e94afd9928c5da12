from django.apps import AppConfig
from django.conf import settings
from django.core.exceptions import ImproperlyConfigured

from .metrics import LabelPolicy, ReportMetrics

DEFAULT_LABEL_POLICY = LabelPolicy.MINIMAL.value


class CspCollectorConfig(AppConfig):
    name = "csp_collector"
    verbose_name = "CSP Report Collector"

    metrics = None

    def ready(self):
        policy_name = getattr(settings, "CSP_LABEL_POLICY", DEFAULT_LABEL_POLICY)
        try:
            policy = LabelPolicy(policy_name)
        except ValueError:
            choices = ", ".join(p.value for p in LabelPolicy)
            raise ImproperlyConfigured(
                f"CSP_LABEL_POLICY must be one of {choices}, got {policy_name!r}"
            ) from None
        self.metrics = ReportMetrics(policy)
