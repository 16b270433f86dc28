"""
Intrusion detectors over the API exchange log.

Each detector reads GroundTruthRecords (the attack.type column is ignored)
and emits one DetectionRecord per exchange, in order, so the metrics engine
can correlate the streams by position:

    SignatureDetector      known attack patterns in path, request and response
    SpecificationDetector  deviations from the protocol: unknown endpoints,
                           oversized fields, lifecycle order, field formats
    HybridDetector         specification first, signature when it passes

RateLimitDetector aggregates the same log into five-minute timeframes per
client and endpoint and flags sustained or bursty traffic.
"""

import json
import logging
import math
import os
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Pattern, Sequence, Tuple
from urllib.parse import urlsplit

from .fields import check_api_tran_id, validate_payload
from .flow import FlowMachine, Phase, phase_for
from .logs import (
    DetectionRecord,
    GroundTruthRecord,
    RateLimitRecord,
    compact_json,
    load_ground_truth,
    parse_timestamp,
    utc_iso,
    write_detections,
    write_rate_limits,
)
from .rate_limit import RateLimiter
from .util import parse_json_or_empty

logger = logging.getLogger(__name__)


# Known attack signatures by category
SECURITY_PATTERNS: Dict[str, List[Pattern]] = {
    "sqlInjection": [
        re.compile(r"""('|"|`)\s*(OR|AND)\s*[0-9]+\s*=\s*[0-9]+""", re.I),
        re.compile(r"""('|"|`)\s*(OR|AND)\s*('|"|`)[^'"]*('|"|`)\s*=\s*('|"|`)""", re.I),
        re.compile(r";\s*DROP\s+TABLE", re.I),
        re.compile(r"UNION\s+(ALL\s+)?SELECT", re.I),
        re.compile(r"SELECT\s+.*\s+FROM\s+information_schema", re.I),
        re.compile(r"ALTER\s+TABLE", re.I),
        re.compile(r"INSERT\s+INTO", re.I),
        re.compile(r"DELETE\s+FROM", re.I),
        re.compile(r"WAITFOR\s+DELAY", re.I),
        re.compile(r"SLEEP\s*\(", re.I),
        re.compile(r"BENCHMARK\s*\(", re.I),
        re.compile(r"EXEC\s*(xp_|sp_)", re.I),
    ],
    "xss": [
        re.compile(r"<script.*?>.*?</script>", re.I),
        re.compile(r"javascript:", re.I),
        re.compile(r"on(error|load|click|mouseover|focus|blur|keydown|keypress|keyup|dblclick|change)\s*=", re.I),
        re.compile(r"alert\s*\(", re.I),
        re.compile(r"eval\s*\(", re.I),
        re.compile(r"document\.(cookie|location|write|referrer)", re.I),
        re.compile(r"window\.(location|open)", re.I),
        re.compile(r"<img.*?src=.*?onerror=.*?>", re.I),
    ],
    "xxe": [
        re.compile(r"<!DOCTYPE.*?SYSTEM", re.I),
        re.compile(r"<!ENTITY.*?SYSTEM", re.I),
        re.compile(r"<!\[CDATA\[.*?\]\]>", re.I),
    ],
    "commandInjection": [
        re.compile(r"\s*\|\s*(\w+)"),
        re.compile(r"`.*?`"),
        re.compile(r"\$\(.*?\)"),
        re.compile(r"&&[\s\w/]+"),
        re.compile(r"\|\|[\s\w/]+"),
    ],
    "directoryTraversal": [
        re.compile(r"\.\./"),
        re.compile(r"\.\.\\"),
        re.compile(r"%2e%2e[/\\]", re.I),
        re.compile(r"\.\.%(2f|5c)", re.I),
        re.compile(r"%252e%252e[/\\]", re.I),
    ],
    "fileUpload": [
        re.compile(r"\.(php|asp|aspx|exe|jsp|jspx|sh|bash|csh|bat|cmd|dll|jar|war)$", re.I),
    ],
    "cookieInjection": [re.compile(r"document\.cookie.*?=", re.I)],
    "maliciousHeaders": [re.compile(r"X-Forwarded-Host:\s*[^.]+\.[^.]+\.[^.]+", re.I)],
    "ssrf": [
        re.compile(r"127\.0\.0\.1"),
        re.compile(r"0\.0\.0\.0"),
        re.compile(r"::1"),
        re.compile(r"192\.168\."),
        re.compile(r"172\.(1[6-9]|2[0-9]|3[0-1])\."),
        re.compile(r"169\.254\."),
        re.compile(r"%00|\\x00|\\u0000", re.I),
    ],
}

# Endpoints outside the consent lifecycle that are still part of the service
AUXILIARY_ENDPOINTS = {("GET", "/health"), ("POST", "/mgmts/oauth/revoke")}

# Largest protocol field (signed_consent) is 10000 characters
MAX_FIELD_BYTES = 10000

SESSION_TIMEOUT_SECONDS = 30 * 60


@dataclass
class DetectionResult:
    detected: bool
    reason: str


def request_path(url: str) -> str:
    return urlsplit(url).path or ""


def request_document(record: GroundTruthRecord) -> Dict[str, Any]:
    """The request as stored in detector logs."""
    return {
        "method": record.request_method,
        "url": record.request_url,
        "x-api-tran-id": record.request_id,
        "clientId": record.client_id,
        "attack-type": record.attack_type,
        "body": parse_json_or_empty(record.request_body),
    }


def response_document(record: GroundTruthRecord) -> Dict[str, Any]:
    return {"status": record.response_status, "body": parse_json_or_empty(record.response_body)}


class Detector(ABC):
    """Base class: classifies one exchange at a time."""

    detection_type = ""

    @abstractmethod
    def detect(self, record: GroundTruthRecord) -> DetectionResult:
        pass

    def reset(self) -> None:
        """Forget any per-client state."""

    def run(self, records: Iterable[GroundTruthRecord]) -> List[DetectionRecord]:
        self.reset()
        out = []
        for i, record in enumerate(records):
            result = self.detect(record)
            out.append(DetectionRecord(
                index=i,
                timestamp=record.timestamp,
                detection_type=self.detection_type,
                detected="true" if result.detected else "false",
                reason=result.reason,
                request=compact_json(request_document(record)),
                response=compact_json(response_document(record)),
            ))
        logger.info(
            "%s detector flagged %d of %d exchanges",
            self.detection_type, sum(1 for r in out if r.is_positive), len(out),
        )
        return out


class SignatureDetector(Detector):
    detection_type = "Signature"

    def __init__(self, patterns: Optional[Dict[str, List[Pattern]]] = None):
        self._patterns = patterns if patterns is not None else SECURITY_PATTERNS

    def detect(self, record: GroundTruthRecord) -> DetectionResult:
        parts = urlsplit(record.request_url)
        haystacks = [
            parts.path + ("?" + parts.query if parts.query else ""),
            record.request_body,
            record.response_body,
        ]
        for category, patterns in self._patterns.items():
            for pattern in patterns:
                if any(h and pattern.search(h) for h in haystacks):
                    return DetectionResult(True, f"Signature match: {category} pattern detected: {pattern.pattern}")
        return DetectionResult(False, "No known attack signatures detected")


class _Session:
    def __init__(self, last_seen: Optional[float]):
        self.machine = FlowMachine()
        self.last_seen = last_seen


def _oversized_fields(body: Any) -> List[str]:
    if not isinstance(body, dict):
        return []
    fields = []
    for key, value in body.items():
        text = value if isinstance(value, str) else json.dumps(value, ensure_ascii=False)
        if len(text.encode("utf-8")) > MAX_FIELD_BYTES:
            fields.append(key)
    return fields


class SpecificationDetector(Detector):
    """
    Flags exchanges that deviate from the protocol.

    Lifecycle order is tracked per client with a FlowMachine. A session
    expires after 30 minutes without traffic; the machine only advances on
    a 2xx response.
    """

    detection_type = "Specification"

    def __init__(self, session_timeout: int = SESSION_TIMEOUT_SECONDS):
        self._session_timeout = session_timeout
        self._sessions: Dict[str, _Session] = {}

    def reset(self) -> None:
        self._sessions = {}

    def _session(self, client: str, now: Optional[float]) -> _Session:
        session = self._sessions.get(client)
        if session is not None and now is not None and session.last_seen is not None:
            if now - session.last_seen > self._session_timeout:
                session = None
        if session is None:
            session = _Session(now)
            self._sessions[client] = session
        elif now is not None:
            session.last_seen = now
        return session

    def detect(self, record: GroundTruthRecord) -> DetectionResult:
        if not record.request_url.strip():
            return DetectionResult(True, "Missing URL in request")

        method = record.request_method.upper()
        path = request_path(record.request_url).rstrip("/") or "/"
        phase = phase_for(method, path)
        if phase is None:
            if (method, path) in AUXILIARY_ENDPOINTS:
                return DetectionResult(False, "Request conforms to specification")
            return DetectionResult(True, f"Unknown endpoint or method: {path} {method}")

        body = parse_json_or_empty(record.request_body)
        oversized = _oversized_fields(body)
        if oversized:
            return DetectionResult(True, f"Payload size exceeded in fields: {', '.join(oversized)}")

        client = record.client_id or "anonymous"
        session = self._session(client, parse_timestamp(record.timestamp))
        if _succeeded(record):
            decision = session.machine.advance(phase)
        else:
            # a refused call is judged but does not move the session
            decision = FlowMachine(session.machine.state).advance(phase)
        if not decision.admitted:
            return DetectionResult(True, f"Sequence violation: {decision.detail}")

        tran_id = check_api_tran_id(record.request_id, required=phase == Phase.SUPPORT002)
        if not tran_id.passed():
            return DetectionResult(True, f"Request specification violation: {tran_id.field} {tran_id.detail}")

        if isinstance(body, dict):
            check = validate_payload(phase, body)
            if not check.passed():
                return DetectionResult(True, f"Request specification violation: {check.field} {check.detail}")

        return DetectionResult(False, "Request conforms to specification")


def _succeeded(record: GroundTruthRecord) -> bool:
    return record.response_status.strip().startswith("2")


class HybridDetector(Detector):
    detection_type = "Hybrid"

    def __init__(
        self,
        specification: Optional[SpecificationDetector] = None,
        signature: Optional[SignatureDetector] = None
    ):
        self._specification = specification or SpecificationDetector()
        self._signature = signature or SignatureDetector()

    def reset(self) -> None:
        self._specification.reset()
        self._signature.reset()

    def detect(self, record: GroundTruthRecord) -> DetectionResult:
        result = self._specification.detect(record)
        if result.detected:
            return result
        return self._signature.detect(record)


# ============================================================
# Rate limit anomalies
# ============================================================

ENDPOINT_RATE_LIMITS: Dict[str, int] = {
    "/mgmts/oauth/token": 10,
    "/oauth/token": 10,
    "/ca/sign_request": 20,
    "/ca/sign_result": 20,
    "/ca/sign_verification": 30,
    "/mgmts/orgs": 30,
}
DEFAULT_RATE_LIMIT = 20
CLIENT_RATE_LIMIT = 20
TIMEFRAME_SECONDS = 300
SUSTAINED_FACTOR = 0.8


@dataclass
class _Timeframe:
    start: float
    client_id: str
    endpoint: str
    count: int = 0
    client_peak: int = 0
    endpoint_peak: int = 0


class RateLimitDetector:
    """
    Replays request timestamps through sliding one-minute windows.

    A timeframe is anomalous when its average rate exceeds 80% of the
    applicable limit, or when any one-minute window inside it exceeded the
    client or endpoint limit.
    """

    def __init__(
        self,
        endpoint_limits: Optional[Dict[str, int]] = None,
        default_limit: int = DEFAULT_RATE_LIMIT,
        client_limit: int = CLIENT_RATE_LIMIT,
        timeframe_seconds: int = TIMEFRAME_SECONDS
    ):
        self._endpoint_limits = endpoint_limits if endpoint_limits is not None else ENDPOINT_RATE_LIMITS
        self._default_limit = default_limit
        self._client_limit = client_limit
        self._timeframe = timeframe_seconds

    def endpoint_limit(self, endpoint: str) -> int:
        return self._endpoint_limits.get(endpoint, self._default_limit)

    @staticmethod
    def client_key(record: GroundTruthRecord) -> str:
        if record.client_id:
            return record.client_id
        if record.request_id:
            return record.request_id[:10]
        return "unknown-client"

    def run(self, records: Iterable[GroundTruthRecord]) -> List[RateLimitRecord]:
        # limits only size the windows here; hit() counts every request
        client_windows = RateLimiter(self._client_limit)
        endpoint_windows = RateLimiter(self._default_limit)
        frames: Dict[Tuple[str, str, float], _Timeframe] = {}

        for record in records:
            ts = parse_timestamp(record.timestamp)
            if ts is None:
                continue
            client = self.client_key(record)
            endpoint = request_path(record.request_url) or "unknown-endpoint"
            start = math.floor(ts / self._timeframe) * self._timeframe
            frame = frames.setdefault((client, endpoint, start), _Timeframe(start, client, endpoint))
            frame.count += 1
            frame.client_peak = max(frame.client_peak, client_windows.hit(client, ts))
            frame.endpoint_peak = max(frame.endpoint_peak, endpoint_windows.hit(f"{endpoint}:{client}", ts))

        out = []
        for frame in sorted(frames.values(), key=lambda f: (f.start, f.client_id, f.endpoint)):
            out.append(self._classify(frame))
        logger.info("rate limit detector: %d anomalous of %d timeframes", sum(1 for r in out if r.is_anomaly), len(out))
        return out

    def _classify(self, frame: _Timeframe) -> RateLimitRecord:
        endpoint_limit = self.endpoint_limit(frame.endpoint)
        applicable = min(self._client_limit, endpoint_limit)
        per_minute = frame.count / (self._timeframe / 60)

        is_anomaly = False
        reason = "Normal traffic pattern"
        if per_minute > applicable * SUSTAINED_FACTOR:
            is_anomaly = True
            reason = f"High sustained traffic: {per_minute:.1f} req/min (limit: {applicable} req/min)"
        if frame.client_peak > self._client_limit:
            is_anomaly = True
            reason = (
                f"Client rate limit exceeded: {frame.client_peak} requests in one minute "
                f"(limit: {self._client_limit})"
            )
        if frame.endpoint_peak > endpoint_limit:
            is_anomaly = True
            reason = (
                f"Endpoint rate limit exceeded: {frame.endpoint_peak} requests in one minute "
                f"to {frame.endpoint} (limit: {endpoint_limit})"
            )

        return RateLimitRecord(
            start_time=utc_iso(frame.start),
            end_time=utc_iso(frame.start + self._timeframe),
            is_anomaly=is_anomaly,
            reason=reason,
            request_count=frame.count,
            client_id=frame.client_id,
            endpoint=frame.endpoint,
        )


# ============================================================
# Batch entry point
# ============================================================

DETECTION_LOG_FILES = {
    "signature": "signature_detection_logs.csv",
    "specification": "specification_detection_logs.csv",
    "hybrid": "hybrid_detection_logs.csv",
}
RATE_LIMIT_LOG_FILE = "rate_limit_logs.csv"


def run_detectors(api_log_path: str, out_dir: str, max_records: Optional[int] = None) -> Dict[str, str]:
    """
    Run every detector over an API exchange log.

    Returns:
        Mapping of stream name ("signature", "specification", "hybrid",
        "rate_limit") to the CSV file written under out_dir
    """
    records: Sequence[GroundTruthRecord] = load_ground_truth(api_log_path, max_records)
    detectors: Dict[str, Detector] = {
        "signature": SignatureDetector(),
        "specification": SpecificationDetector(),
        "hybrid": HybridDetector(),
    }
    written = {}
    for name, detector in detectors.items():
        path = os.path.join(out_dir, DETECTION_LOG_FILES[name])
        write_detections(path, detector.run(records))
        written[name] = path

    path = os.path.join(out_dir, RATE_LIMIT_LOG_FILE)
    write_rate_limits(path, RateLimitDetector().run(records))
    written["rate_limit"] = path
    return written
