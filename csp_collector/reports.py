import json
from dataclasses import dataclass
from urllib.parse import urlsplit, urlunsplit

from .exceptions import DecodeError

REPORT_ENVELOPE_KEY = "csp-report"

# Wire key -> CSPReport attribute
STRING_FIELDS = {
    "document-uri": "document_uri",
    "referrer": "referrer",
    "violated-directive": "violated_directive",
    "effective-directive": "effective_directive",
    "original-policy": "original_policy",
    "blocked-uri": "blocked_uri",
}
STATUS_CODE_FIELD = "status-code"

# Range of a signed 64-bit integer
STATUS_CODE_MIN = -(2**63)
STATUS_CODE_MAX = 2**63 - 1


@dataclass(frozen=True)
class CSPReport:
    document_uri: str = ""
    referrer: str = ""
    violated_directive: str = ""
    effective_directive: str = ""
    original_policy: str = ""
    blocked_uri: str = ""
    status_code: int = 0


@dataclass(frozen=True)
class NormalizedReport:
    """
    A decoded report attributed to a host.

    ``document_uri`` is the value used for metric labels and may be
    canonicalized; ``raw_document_uri`` is always the value the browser sent.
    """

    host: str
    document_uri: str
    raw_document_uri: str
    referrer: str
    violated_directive: str
    effective_directive: str
    original_policy: str
    blocked_uri: str
    status_code: int

    def log_fields(self):
        return {
            "document_uri": self.raw_document_uri,
            "blocked_uri": self.blocked_uri,
            "violated_directive": self.violated_directive,
            "effective_directive": self.effective_directive,
            "original_policy": self.original_policy,
            "host": self.host,
            "referrer": self.referrer,
            "status_code": self.status_code,
        }


def reject_constant(name):
    raise DecodeError(f"Invalid JSON constant: {name}")


def decode_report(body):
    """
    Decode a raw request body into a CSPReport.

    Missing or null fields take their zero value. Any structural problem
    (bad encoding, bad JSON, wrong types) raises DecodeError.
    """
    try:
        data = json.loads(
            body.decode("utf-8") if isinstance(body, bytes) else body,
            parse_constant=reject_constant,
        )
    except UnicodeDecodeError as e:
        raise DecodeError(f"Report body is not valid UTF-8: {e}") from e
    except json.JSONDecodeError as e:
        raise DecodeError(str(e)) from e

    if not isinstance(data, dict):
        raise DecodeError(f"Expected a JSON object, got {type(data).__name__}")

    report = data.get(REPORT_ENVELOPE_KEY)
    if report is None:
        return CSPReport()
    if not isinstance(report, dict):
        raise DecodeError(
            f"Expected '{REPORT_ENVELOPE_KEY}' to be an object, got {type(report).__name__}"
        )

    fields = {}
    for key, attr in STRING_FIELDS.items():
        value = report.get(key)
        if value is None:
            continue
        if not isinstance(value, str):
            raise DecodeError(f"Field '{key}' must be a string")
        fields[attr] = value

    status_code = report.get(STATUS_CODE_FIELD)
    if status_code is not None:
        # bool is an int subclass; floats like 200.0 are not integers on the wire
        if isinstance(status_code, bool) or not isinstance(status_code, int):
            raise DecodeError(f"Field '{STATUS_CODE_FIELD}' must be an integer")
        if not STATUS_CODE_MIN <= status_code <= STATUS_CODE_MAX:
            raise DecodeError(f"Field '{STATUS_CODE_FIELD}' is out of range")
        fields["status_code"] = status_code

    return CSPReport(**fields)


def resolve_host(headers, request_host):
    """
    Return the host a report is attributed to.

    ``X-Forwarded-Host`` wins when present and non-empty. The header is taken
    as already sanitized by the reverse proxy in front of the collector; if it
    is not, every distinct value becomes a new ``host`` label.
    """
    forwarded_host = headers.get("X-Forwarded-Host")
    if forwarded_host:
        return forwarded_host
    return request_host


def canonicalize_uri(raw):
    """Strip the query string and fragment from ``raw``, or return it unchanged if it does not parse."""
    try:
        parts = urlsplit(raw)
    except ValueError:
        return raw
    return urlunsplit(parts._replace(query="", fragment=""))


def normalize_report(report, host, canonicalize=False):
    document_uri = report.document_uri
    if canonicalize:
        document_uri = canonicalize_uri(document_uri)
    return NormalizedReport(
        host=host,
        document_uri=document_uri,
        raw_document_uri=report.document_uri,
        referrer=report.referrer,
        violated_directive=report.violated_directive,
        effective_directive=report.effective_directive,
        original_policy=report.original_policy,
        blocked_uri=report.blocked_uri,
        status_code=report.status_code,
    )
