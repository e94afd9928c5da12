"""
Prometheus aggregation of CSP reports.

Which metrics exist, and which report fields become their labels, is decided
once per process by a LabelPolicy. The policies trade dimensional detail for
label cardinality:

- ``minimal``: directive and host only. Bounded by the directive set times
  the number of deployed hosts.
- ``host``: adds the blocked URI, a status-code histogram and a referrer
  counter, all scoped by host. Blocked URIs and referrers are client
  supplied and unbounded in principle.
- ``document``: scopes everything by the canonicalized document URI and adds
  per-blocked-URI detail. Canonicalization only removes query strings and
  fragments, so a large site still produces one series per page.
"""

import enum
from dataclasses import dataclass

from prometheus_client import CollectorRegistry, Counter, Histogram, generate_latest

# HTTP status-code class boundaries
STATUS_CODE_BUCKETS = (200, 300, 400, 500)


class LabelPolicy(enum.Enum):
    MINIMAL = "minimal"
    HOST = "host"
    DOCUMENT = "document"

    @property
    def canonicalizes_document_uri(self):
        return self is LabelPolicy.DOCUMENT


@dataclass(frozen=True)
class MetricDeclaration:
    name: str
    documentation: str
    # (label name, NormalizedReport attribute) in label order
    labels: tuple
    histogram: bool = False
    requires_referrer: bool = False

    @property
    def labelnames(self):
        return tuple(label for label, _ in self.labels)

    def label_values(self, report):
        return tuple(getattr(report, attr) for _, attr in self.labels)


ERRORS = MetricDeclaration(
    "csp_reports_errors_total",
    "Total number of errors processing CSP reports",
    (),
)

POLICY_METRICS = {
    LabelPolicy.MINIMAL: (
        MetricDeclaration(
            "csp_reports_total",
            "Total number of CSP violation reports received",
            (("violated_directive", "violated_directive"), ("host", "host")),
        ),
    ),
    LabelPolicy.HOST: (
        MetricDeclaration(
            "csp_reports_total",
            "Total number of CSP violation reports received",
            (
                ("violated_directive", "violated_directive"),
                ("host", "host"),
                ("blocked_uri", "blocked_uri"),
            ),
        ),
        MetricDeclaration(
            "csp_reports_status_codes",
            "Status codes distribution for CSP violation reports",
            (("host", "host"),),
            histogram=True,
        ),
        MetricDeclaration(
            "csp_reports_referrers_total",
            "Total number of CSP violations by referrer",
            (("host", "host"), ("referrer", "referrer")),
            requires_referrer=True,
        ),
    ),
    LabelPolicy.DOCUMENT: (
        MetricDeclaration(
            "csp_reports_total",
            "Total number of CSP violation reports received",
            (
                ("violated_directive", "violated_directive"),
                ("document_uri", "document_uri"),
                ("blocked_uri", "blocked_uri"),
            ),
        ),
        MetricDeclaration(
            "csp_reports_status_codes",
            "Status codes distribution for CSP violation reports",
            (("document_uri", "document_uri"),),
            histogram=True,
        ),
        MetricDeclaration(
            "csp_reports_referrers_total",
            "Total number of CSP violations by referrer",
            (("document_uri", "document_uri"), ("referrer", "referrer")),
            requires_referrer=True,
        ),
        MetricDeclaration(
            "csp_reports_blocked_uris_total",
            "Total number of blocked URIs by directive",
            (
                ("document_uri", "document_uri"),
                ("violated_directive", "violated_directive"),
                ("blocked_uri", "blocked_uri"),
            ),
        ),
        MetricDeclaration(
            "csp_reports_detailed_uri_total",
            "Total number of CSP violations with full URI details",
            (
                ("base_uri", "document_uri"),
                ("full_uri", "blocked_uri"),
                ("violated_directive", "violated_directive"),
            ),
        ),
    ),
}


class ReportMetrics:
    """The counters and histograms for one collector instance, in their own registry."""

    def __init__(self, policy=LabelPolicy.MINIMAL, registry=None):
        self.policy = policy
        self.registry = registry if registry is not None else CollectorRegistry()
        self.declarations = POLICY_METRICS[policy]
        self.errors = Counter(ERRORS.name, ERRORS.documentation, registry=self.registry)
        self._metrics = [
            (declaration, self._build(declaration)) for declaration in self.declarations
        ]

    def _build(self, declaration):
        if declaration.histogram:
            return Histogram(
                declaration.name,
                declaration.documentation,
                declaration.labelnames,
                buckets=STATUS_CODE_BUCKETS,
                registry=self.registry,
            )
        return Counter(
            declaration.name,
            declaration.documentation,
            declaration.labelnames,
            registry=self.registry,
        )

    def record(self, report):
        for declaration, metric in self._metrics:
            if declaration.requires_referrer and not report.referrer:
                continue
            child = metric.labels(*declaration.label_values(report))
            if declaration.histogram:
                child.observe(report.status_code)
            else:
                child.inc()

    def record_error(self):
        self.errors.inc()

    def exposition(self):
        return generate_latest(self.registry)
