import importlib
import json
import logging
from concurrent.futures import ThreadPoolExecutor
from unittest import mock

from django.apps import apps
from django.core.exceptions import ImproperlyConfigured
from django.core.management import call_command
from django.http import UnreadablePostError
from django.test import RequestFactory, SimpleTestCase, override_settings
from django.urls import clear_url_caches

from . import urls as collector_urls
from .exceptions import DecodeError, ListenError
from .log import CustomJsonFormatter
from .metrics import LabelPolicy, ReportMetrics
from .reports import (
    CSPReport,
    canonicalize_uri,
    decode_report,
    normalize_report,
    resolve_host,
)
from .views import CSPReportView, metrics_view_for


def make_report(**overrides):
    report = {
        "document-uri": "https://example.com/page?session=abc#top",
        "referrer": "https://example.com/",
        "violated-directive": "script-src 'self'",
        "effective-directive": "script-src",
        "original-policy": "script-src 'self'; report-uri /report",
        "blocked-uri": "https://evil.com/malicious.js",
        "status-code": 200,
    }
    report.update(overrides)
    return {"csp-report": report}


class ReportCollectorTestCase(SimpleTestCase):
    policy = LabelPolicy.MINIMAL

    def setUp(self):
        self.factory = RequestFactory()
        self.metrics = ReportMetrics(self.policy)
        self.view = CSPReportView.as_view(metrics=self.metrics)

    def post(self, data, **extra):
        if not isinstance(data, (str, bytes)):
            data = json.dumps(data)
        extra.setdefault("HTTP_HOST", "b.internal")
        request = self.factory.post(
            "/report", data=data, content_type="application/csp-report", **extra
        )
        return self.view(request)

    def sample(self, name, labels=None):
        return self.metrics.registry.get_sample_value(name, labels or {})

    def samples(self, name):
        """Samples of a metric family, without the _created series."""
        for family in self.metrics.registry.collect():
            if family.name == name:
                return [s for s in family.samples if not s.name.endswith("_created")]
        return []

    def errors(self):
        return self.sample("csp_reports_errors_total")


class DecodeReportTests(SimpleTestCase):
    def test_decode_full_report(self):
        """Test that every known field is decoded"""
        report = decode_report(json.dumps(make_report()).encode())
        self.assertEqual(report.document_uri, "https://example.com/page?session=abc#top")
        self.assertEqual(report.referrer, "https://example.com/")
        self.assertEqual(report.violated_directive, "script-src 'self'")
        self.assertEqual(report.effective_directive, "script-src")
        self.assertEqual(report.original_policy, "script-src 'self'; report-uri /report")
        self.assertEqual(report.blocked_uri, "https://evil.com/malicious.js")
        self.assertEqual(report.status_code, 200)

    def test_missing_fields_take_zero_values(self):
        """Test that omitted and null fields are empty rather than errors"""
        report = decode_report(b'{"csp-report": {"blocked-uri": "inline", "referrer": null}}')
        self.assertEqual(report, CSPReport(blocked_uri="inline"))

    def test_missing_envelope_is_empty_report(self):
        self.assertEqual(decode_report(b"{}"), CSPReport())
        self.assertEqual(decode_report(b'{"csp-report": null}'), CSPReport())

    def test_status_code_range_limits(self):
        report = decode_report(b'{"csp-report": {"status-code": 9223372036854775807}}')
        self.assertEqual(report.status_code, 2**63 - 1)
        report = decode_report(b'{"csp-report": {"status-code": -9223372036854775808}}')
        self.assertEqual(report.status_code, -(2**63))

    def test_unknown_fields_are_ignored(self):
        report = decode_report(b'{"csp-report": {"line-number": 42, "disposition": "enforce"}}')
        self.assertEqual(report, CSPReport())

    def test_malformed_bodies_are_rejected(self):
        """Test that structurally invalid bodies raise DecodeError"""
        bodies = [
            b'{"csp-report": {"document-uri": "https://exa',
            b'[{"csp-report": {}}]',
            b"not valid json",
            b"\xff\xfe\x00garbage",
            b'"csp-report"',
            b'{"csp-report": "script-src"}',
            b'{"csp-report": {"document-uri": 5}}',
            b'{"csp-report": {"status-code": "200"}}',
            b'{"csp-report": {"status-code": 200.5}}',
            b'{"csp-report": {"status-code": true}}',
            b'{"csp-report": {"status-code": 1' + b"0" * 400 + b"}}",
            b'{"csp-report": {"status-code": 9223372036854775808}}',
            b'{"csp-report": {}, "sample-rate": NaN}',
            b'{"csp-report": {"line-number": Infinity}}',
            b"",
        ]
        for body in bodies:
            with self.subTest(body=body):
                with self.assertRaises(DecodeError):
                    decode_report(body)


class HostAndURIResolutionTests(SimpleTestCase):
    def test_forwarded_host_wins(self):
        self.assertEqual(
            resolve_host({"X-Forwarded-Host": "a.example"}, "b.internal"), "a.example"
        )

    def test_request_host_without_forwarded_host(self):
        self.assertEqual(resolve_host({}, "b.internal"), "b.internal")
        self.assertEqual(resolve_host({"X-Forwarded-Host": ""}, "b.internal"), "b.internal")

    def test_canonicalize_strips_query_and_fragment(self):
        self.assertEqual(
            canonicalize_uri("https://site.example/page?x=1#frag"),
            "https://site.example/page",
        )

    def test_canonicalize_returns_unparseable_input_unchanged(self):
        self.assertEqual(canonicalize_uri("http://[broken/page?x=1"), "http://[broken/page?x=1")

    def test_canonicalize_is_idempotent(self):
        for raw in [
            "https://site.example/page?x=1#frag",
            "https://site.example",
            "inline",
            "about:blank",
            "file:///tmp/page.html?x",
            "",
        ]:
            with self.subTest(raw=raw):
                once = canonicalize_uri(raw)
                self.assertEqual(canonicalize_uri(once), once)

    def test_normalize_keeps_raw_document_uri(self):
        report = CSPReport(document_uri="https://site.example/page?x=1")
        normalized = normalize_report(report, "a.example", canonicalize=True)
        self.assertEqual(normalized.document_uri, "https://site.example/page")
        self.assertEqual(normalized.raw_document_uri, "https://site.example/page?x=1")
        self.assertEqual(normalized.log_fields()["document_uri"], "https://site.example/page?x=1")

        normalized = normalize_report(report, "a.example")
        self.assertEqual(normalized.document_uri, "https://site.example/page?x=1")


class MinimalPolicyTests(ReportCollectorTestCase):
    policy = LabelPolicy.MINIMAL

    def test_valid_report_is_counted(self):
        """Test that a valid report is counted by directive and host"""
        response = self.post(make_report(), HTTP_X_FORWARDED_HOST="a.example")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.content, b"")
        self.assertEqual(
            self.sample(
                "csp_reports_total",
                {"violated_directive": "script-src 'self'", "host": "a.example"},
            ),
            1,
        )
        self.assertEqual(self.errors(), 0)

    def test_request_host_is_used_without_forwarded_host(self):
        self.post(make_report())
        self.assertEqual(
            self.sample(
                "csp_reports_total",
                {"violated_directive": "script-src 'self'", "host": "b.internal"},
            ),
            1,
        )

    def test_backend_host_names_are_not_validated(self):
        """Test that Host values Django would reject are still accepted verbatim"""
        response = self.post(
            make_report(), HTTP_HOST="csp_collector:8080", HTTP_X_FORWARDED_HOST="a.example"
        )
        self.assertEqual(response.status_code, 200)

        response = self.post(make_report(), HTTP_HOST="svc_name:8080")
        self.assertEqual(response.status_code, 200)

        self.assertEqual(
            self.sample(
                "csp_reports_total",
                {"violated_directive": "script-src 'self'", "host": "a.example"},
            ),
            1,
        )
        self.assertEqual(
            self.sample(
                "csp_reports_total",
                {"violated_directive": "script-src 'self'", "host": "svc_name:8080"},
            ),
            1,
        )
        self.assertEqual(self.errors(), 0)

    def test_only_declared_metrics_exist(self):
        self.post(make_report())
        names = {family.name for family in self.metrics.registry.collect()}
        self.assertEqual(names, {"csp_reports", "csp_reports_errors"})

    def test_repeated_reports_keep_counting(self):
        for _ in range(3):
            self.post(make_report())
        self.assertEqual(
            self.sample(
                "csp_reports_total",
                {"violated_directive": "script-src 'self'", "host": "b.internal"},
            ),
            3,
        )

    def test_empty_report_is_accepted(self):
        """Test that a report with no fields is recorded under empty labels"""
        response = self.post({"csp-report": {}})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(
            self.sample("csp_reports_total", {"violated_directive": "", "host": "b.internal"}),
            1,
        )

    def test_success_is_logged_with_all_fields(self):
        with self.assertLogs("csp_collector.views", level="INFO") as logs:
            self.post(make_report(), HTTP_X_FORWARDED_HOST="a.example")

        (record,) = logs.records
        self.assertEqual(record.levelname, "INFO")
        self.assertEqual(record.document_uri, "https://example.com/page?session=abc#top")
        self.assertEqual(record.blocked_uri, "https://evil.com/malicious.js")
        self.assertEqual(record.violated_directive, "script-src 'self'")
        self.assertEqual(record.effective_directive, "script-src")
        self.assertEqual(record.original_policy, "script-src 'self'; report-uri /report")
        self.assertEqual(record.host, "a.example")
        self.assertEqual(record.referrer, "https://example.com/")
        self.assertEqual(record.status_code, 200)


class HostPolicyTests(ReportCollectorTestCase):
    policy = LabelPolicy.HOST

    def test_report_is_counted_by_host(self):
        self.post(make_report(), HTTP_X_FORWARDED_HOST="a.example")

        self.assertEqual(
            self.sample(
                "csp_reports_total",
                {
                    "violated_directive": "script-src 'self'",
                    "host": "a.example",
                    "blocked_uri": "https://evil.com/malicious.js",
                },
            ),
            1,
        )
        self.assertEqual(
            self.sample("csp_reports_status_codes_count", {"host": "a.example"}), 1
        )
        self.assertEqual(
            self.sample("csp_reports_status_codes_sum", {"host": "a.example"}), 200
        )
        self.assertEqual(
            self.sample(
                "csp_reports_referrers_total",
                {"host": "a.example", "referrer": "https://example.com/"},
            ),
            1,
        )

    def test_status_code_buckets(self):
        """Test that status codes land in their HTTP class buckets"""
        self.post(make_report(**{"status-code": 404}))

        buckets = {
            s.labels["le"]: s.value
            for s in self.samples("csp_reports_status_codes")
            if s.name == "csp_reports_status_codes_bucket"
        }
        self.assertEqual(
            buckets,
            {"200.0": 0, "300.0": 0, "400.0": 0, "500.0": 1, "+Inf": 1},
        )

    def test_out_of_range_status_code_is_rejected(self):
        """Test that an unrepresentable status code is a decode error, not a partial record"""
        body = json.dumps(make_report()).replace('"status-code": 200', '"status-code": 1' + "0" * 400)

        with self.assertLogs("csp_collector.views", level="ERROR"):
            response = self.post(body)

        self.assertEqual(response.status_code, 400)
        self.assertEqual(self.errors(), 1)
        self.assertEqual(self.samples("csp_reports"), [])
        self.assertEqual(self.samples("csp_reports_status_codes"), [])

    def test_empty_referrer_is_not_counted(self):
        self.post(make_report(referrer=""))
        self.assertEqual(self.samples("csp_reports_referrers"), [])

    def test_referrer_counted_once(self):
        self.post(make_report(referrer="https://r.example"))
        referrers = self.samples("csp_reports_referrers")
        self.assertEqual(len(referrers), 1)
        self.assertEqual(referrers[0].labels, {"host": "b.internal", "referrer": "https://r.example"})
        self.assertEqual(referrers[0].value, 1)


class DocumentPolicyTests(ReportCollectorTestCase):
    policy = LabelPolicy.DOCUMENT

    def test_report_is_counted_by_canonical_document(self):
        self.post(make_report())
        self.post(make_report(**{"document-uri": "https://example.com/page?session=def"}))

        self.assertEqual(
            self.sample(
                "csp_reports_total",
                {
                    "violated_directive": "script-src 'self'",
                    "document_uri": "https://example.com/page",
                    "blocked_uri": "https://evil.com/malicious.js",
                },
            ),
            2,
        )
        self.assertEqual(
            self.sample(
                "csp_reports_status_codes_count", {"document_uri": "https://example.com/page"}
            ),
            2,
        )
        self.assertEqual(
            self.sample(
                "csp_reports_referrers_total",
                {"document_uri": "https://example.com/page", "referrer": "https://example.com/"},
            ),
            2,
        )
        self.assertEqual(
            self.sample(
                "csp_reports_blocked_uris_total",
                {
                    "document_uri": "https://example.com/page",
                    "violated_directive": "script-src 'self'",
                    "blocked_uri": "https://evil.com/malicious.js",
                },
            ),
            2,
        )
        self.assertEqual(
            self.sample(
                "csp_reports_detailed_uri_total",
                {
                    "base_uri": "https://example.com/page",
                    "full_uri": "https://evil.com/malicious.js",
                    "violated_directive": "script-src 'self'",
                },
            ),
            2,
        )

    def test_host_is_not_a_label(self):
        self.post(make_report(), HTTP_X_FORWARDED_HOST="a.example")
        for sample in self.samples("csp_reports"):
            self.assertNotIn("host", sample.labels)

    def test_log_keeps_raw_document_uri(self):
        with self.assertLogs("csp_collector.views", level="INFO") as logs:
            self.post(make_report())
        self.assertEqual(logs.records[0].document_uri, "https://example.com/page?session=abc#top")


class RequestErrorTests(ReportCollectorTestCase):
    policy = LabelPolicy.DOCUMENT

    def assertOnlyErrorCounted(self):
        self.assertEqual(self.errors(), 1)
        for name in [
            "csp_reports",
            "csp_reports_status_codes",
            "csp_reports_referrers",
            "csp_reports_blocked_uris",
            "csp_reports_detailed_uri",
        ]:
            self.assertEqual(self.samples(name), [], name)

    def test_wrong_methods_are_rejected(self):
        """Test that anything but POST gets 405 and one error"""
        for method in ["get", "put", "patch", "delete", "head", "options"]:
            with self.subTest(method=method):
                self.setUp()
                if method in ("get", "head"):
                    request = getattr(self.factory, method)("/report", HTTP_HOST="b.internal")
                else:
                    request = getattr(self.factory, method)(
                        "/report",
                        data=json.dumps(make_report()),
                        content_type="application/json",
                        HTTP_HOST="b.internal",
                    )
                with self.assertLogs("csp_collector.views", level="WARNING") as logs:
                    response = self.view(request)

                self.assertEqual(response.status_code, 405)
                self.assertEqual(response["Allow"], "POST")
                self.assertEqual(response.content, b"Method not allowed")
                self.assertOnlyErrorCounted()
                self.assertEqual(logs.records[0].method, method.upper())
                self.assertEqual(logs.records[0].host, "b.internal")
                self.assertEqual(logs.records[0].path, "/report")

    def test_invalid_json_is_rejected(self):
        """Test that undecodable bodies get 400 and one error"""
        for body in [
            '{"csp-report": {"document-uri": "https://exa',
            "[1, 2, 3]",
            "not valid json",
            b"\x00\x01\x02",
        ]:
            with self.subTest(body=body):
                self.setUp()
                with self.assertLogs("csp_collector.views", level="ERROR") as logs:
                    response = self.post(body, HTTP_X_FORWARDED_HOST="a.example")

                self.assertEqual(response.status_code, 400)
                self.assertEqual(response.content, b"Invalid JSON")
                self.assertOnlyErrorCounted()
                self.assertEqual(logs.records[0].host, "a.example")
                self.assertTrue(logs.records[0].error)

    @override_settings(CSP_REPORT_MAX_SIZE=100)
    def test_too_large_report_is_rejected(self):
        """Test that oversized reports get 413 and one error"""
        response = self.post(make_report(**{"document-uri": "x" * 1000}))

        self.assertEqual(response.status_code, 413)
        self.assertEqual(response.content, b"Payload too large")
        self.assertOnlyErrorCounted()

    @override_settings(CSP_REPORT_MAX_SIZE=100)
    def test_declared_content_length_is_checked(self):
        request = self.factory.post(
            "/report", data="{}", content_type="application/json", HTTP_HOST="b.internal"
        )
        request.META["CONTENT_LENGTH"] = "150"

        response = self.view(request)

        self.assertEqual(response.status_code, 413)
        self.assertOnlyErrorCounted()

    def test_severed_connection_is_a_decode_error(self):
        request = self.factory.post(
            "/report",
            data=json.dumps(make_report()),
            content_type="application/json",
            HTTP_HOST="b.internal",
        )
        with mock.patch.object(
            request, "read", side_effect=UnreadablePostError("connection reset")
        ):
            with self.assertLogs("csp_collector.views", level="ERROR"):
                response = self.view(request)

        self.assertEqual(response.status_code, 400)
        self.assertOnlyErrorCounted()


class ConcurrencyTests(ReportCollectorTestCase):
    policy = LabelPolicy.HOST

    def test_concurrent_reports_are_not_lost(self):
        count = 200
        requests = [
            self.factory.post(
                "/report",
                data=json.dumps(make_report()),
                content_type="application/json",
                HTTP_HOST="b.internal",
            )
            for _ in range(count)
        ]
        with ThreadPoolExecutor(max_workers=16) as executor:
            statuses = list(executor.map(lambda r: self.view(r).status_code, requests))

        self.assertEqual(statuses, [200] * count)
        self.assertEqual(
            self.sample(
                "csp_reports_total",
                {
                    "violated_directive": "script-src 'self'",
                    "host": "b.internal",
                    "blocked_uri": "https://evil.com/malicious.js",
                },
            ),
            count,
        )
        self.assertEqual(
            self.sample("csp_reports_status_codes_count", {"host": "b.internal"}), count
        )


class MetricsEndpointTests(SimpleTestCase):
    def setUp(self):
        self.factory = RequestFactory()
        self.metrics = ReportMetrics(LabelPolicy.MINIMAL)
        self.view = metrics_view_for(self.metrics)

    def test_exposition(self):
        self.metrics.record_error()
        response = self.view(self.factory.get("/metrics"))

        self.assertEqual(response.status_code, 200)
        self.assertTrue(response["Content-Type"].startswith("text/plain"))
        self.assertIn(b"csp_reports_errors_total 1.0", response.content)

    def test_post_not_allowed(self):
        response = self.view(self.factory.post("/metrics"))
        self.assertEqual(response.status_code, 405)

    def test_registries_are_isolated(self):
        other = ReportMetrics(LabelPolicy.MINIMAL)
        other.record_error()
        self.assertEqual(self.metrics.registry.get_sample_value("csp_reports_errors_total"), 0)


class AppConfigTests(SimpleTestCase):
    def test_default_policy(self):
        config = apps.get_app_config("csp_collector")
        self.assertIs(config.metrics.policy, LabelPolicy.MINIMAL)

    @override_settings(CSP_LABEL_POLICY="everything")
    def test_unknown_policy_is_rejected(self):
        config = apps.get_app_config("csp_collector")
        with self.assertRaises(ImproperlyConfigured):
            config.ready()


class RunCollectorCommandTests(SimpleTestCase):
    command = "csp_collector.management.commands.runcollector"

    def setUp(self):
        patcher = mock.patch(f"{self.command}.get_internal_wsgi_application")
        self.wsgi_application = patcher.start()
        self.addCleanup(patcher.stop)

    def test_bind_failure_is_fatal(self):
        with mock.patch(f"{self.command}.run", side_effect=OSError("Address already in use")):
            with self.assertLogs(self.command, level="ERROR"):
                with self.assertRaises(ListenError):
                    call_command("runcollector", port=8080)

    @override_settings(ENABLE_METRICS=True, METRICS_PORT=9090)
    def test_metrics_listener_in_dual_port_mode(self):
        metrics = apps.get_app_config("csp_collector").metrics
        with mock.patch(f"{self.command}.run") as run, mock.patch(
            f"{self.command}.start_http_server"
        ) as start_http_server:
            call_command("runcollector", port=8080)

        start_http_server.assert_called_once_with(9090, addr="0.0.0.0", registry=metrics.registry)
        run.assert_called_once_with(
            "0.0.0.0", 8080, self.wsgi_application.return_value, threading=True
        )

    @override_settings(ENABLE_METRICS=False, METRICS_PORT=9090)
    def test_no_metrics_listener_when_disabled(self):
        with mock.patch(f"{self.command}.run"), mock.patch(
            f"{self.command}.start_http_server"
        ) as start_http_server:
            call_command("runcollector", port=8080)

        start_http_server.assert_not_called()


class URLConfTests(SimpleTestCase):
    def setUp(self):
        self.metrics = apps.get_app_config("csp_collector").metrics
        self.addCleanup(self.reload_urls)

    def reload_urls(self):
        importlib.reload(collector_urls)
        clear_url_caches()

    def test_report_route_uses_app_metrics(self):
        self.reload_urls()
        labels = {"violated_directive": "script-src 'self'", "host": "testserver"}
        before = self.metrics.registry.get_sample_value("csp_reports_total", labels) or 0

        response = self.client.post(
            "/report", data=json.dumps(make_report()), content_type="application/csp-report"
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(
            self.metrics.registry.get_sample_value("csp_reports_total", labels), before + 1
        )

    @override_settings(ENABLE_METRICS=True, METRICS_PORT=None)
    def test_metrics_route_in_single_port_mode(self):
        self.reload_urls()
        response = self.client.get("/metrics")

        self.assertEqual(response.status_code, 200)
        self.assertIn(b"csp_reports_errors_total", response.content)

    @override_settings(ENABLE_METRICS=False, METRICS_PORT=None)
    def test_no_metrics_route_when_disabled(self):
        self.reload_urls()
        self.assertEqual(self.client.get("/metrics").status_code, 404)

    @override_settings(ENABLE_METRICS=True, METRICS_PORT=9090)
    def test_no_metrics_route_in_dual_port_mode(self):
        self.reload_urls()
        self.assertEqual(self.client.get("/metrics").status_code, 404)


class JsonLoggingTests(SimpleTestCase):
    def test_record_is_one_json_object(self):
        formatter = CustomJsonFormatter(fmt="%(message)s")
        record = logging.makeLogRecord(
            {
                "name": "csp_collector.views",
                "levelno": logging.INFO,
                "levelname": "INFO",
                "msg": "CSP violation report received",
                "host": "a.example",
                "status_code": 200,
            }
        )

        output = json.loads(formatter.format(record))

        self.assertEqual(output["message"], "CSP violation report received")
        self.assertEqual(output["level"], "INFO")
        self.assertEqual(output["logger"], "csp_collector.views")
        self.assertEqual(output["host"], "a.example")
        self.assertEqual(output["status_code"], 200)
        self.assertIn("timestamp", output)
