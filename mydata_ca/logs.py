"""
CSV log streams.

Three formats, each with a header row:

    API exchange log (ground truth)
        index,timestamp,attack.type,request.id,request.method,request.url,
        request.clientId,request.body,response.status,response.body
    detector log (one per detector)
        timestamp,detectionType,detected,reason,request,response
    rate-limit log
        startTime,endTime,isAnomaly,reason,requestCount,clientId,endpoint

Readers tag each record with its ordinal index, skip blank lines and keep
short rows (missing trailing fields read as ""). An unreadable file raises
LogLoadError; there is no partial result.
"""

import csv
import json
import logging
import os
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .errors import LogLoadError
from .util import parse_json_or_empty

logger = logging.getLogger(__name__)

API_LOG_HEADER = [
    "index", "timestamp", "attack.type", "request.id", "request.method",
    "request.url", "request.clientId", "request.body", "response.status", "response.body",
]
DETECTION_LOG_HEADER = ["timestamp", "detectionType", "detected", "reason", "request", "response"]
RATE_LIMIT_LOG_HEADER = [
    "startTime", "endTime", "isAnomaly", "reason", "requestCount", "clientId", "endpoint",
]

# Accepted spellings per ground-truth field; first present column wins
GROUND_TRUTH_COLUMNS = {
    "timestamp": ("timestamp",),
    "attack_type": ("attack.type", "attackType", "attack_type"),
    "request_id": ("request.id", "requestId", "request_id"),
    "request_method": ("request.method", "requestMethod", "method"),
    "request_url": ("request.url", "requestUrl", "url"),
    "client_id": ("request.clientId", "clientId", "client_id"),
    "request_body": ("request.body", "requestBody"),
    "response_status": ("response.status", "responseStatus", "status"),
    "response_body": ("response.body", "responseBody"),
}

UNKNOWN_ATTACK_TYPE = "Unknown"


def utc_iso(epoch: float) -> str:
    """Epoch seconds to an ISO 8601 UTC string with millisecond precision."""
    return datetime.fromtimestamp(epoch, tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


def parse_timestamp(value: str) -> Optional[float]:
    """ISO 8601 (trailing Z allowed) or numeric epoch seconds to epoch seconds."""
    if not value:
        return None
    value = value.strip()
    try:
        return float(value)
    except ValueError:
        pass
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


# ============================================================
# Records
# ============================================================

@dataclass
class GroundTruthRecord:
    """One API exchange; attack_type empty means benign."""
    index: int
    timestamp: str = ""
    attack_type: str = ""
    request_id: str = ""
    request_method: str = ""
    request_url: str = ""
    client_id: str = ""
    request_body: str = ""
    response_status: str = ""
    response_body: str = ""

    @property
    def is_attack(self) -> bool:
        return bool(self.attack_type.strip())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "timestamp": self.timestamp,
            "attack_type": self.attack_type,
            "request_method": self.request_method,
            "request_url": self.request_url,
            "response_status": self.response_status,
        }

    def to_row(self) -> List[str]:
        return [
            str(self.index), self.timestamp, self.attack_type, self.request_id,
            self.request_method, self.request_url, self.client_id,
            self.request_body, self.response_status, self.response_body,
        ]


@dataclass
class DetectionRecord:
    """One detector verdict. `detected` keeps the raw text from the log."""
    index: int
    timestamp: str = ""
    detection_type: str = ""
    detected: str = ""
    reason: str = ""
    request: str = ""
    response: str = ""

    @property
    def is_positive(self) -> bool:
        return self.detected.strip().lower() == "true"

    def _request_doc(self) -> Dict[str, Any]:
        doc = parse_json_or_empty(self.request)
        return doc if isinstance(doc, dict) else {}

    @property
    def attack_type(self) -> str:
        return self._request_doc().get("attack-type") or UNKNOWN_ATTACK_TYPE

    @property
    def request_id(self) -> str:
        return self._request_doc().get("x-api-tran-id") or ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "timestamp": self.timestamp,
            "detection_type": self.detection_type,
            "detected": self.is_positive,
            "reason": self.reason,
            "attack_type": self.attack_type,
        }

    def to_row(self) -> List[str]:
        return [
            self.timestamp, self.detection_type, self.detected,
            self.reason, self.request, self.response,
        ]


@dataclass
class RateLimitRecord:
    start_time: str
    end_time: str
    is_anomaly: bool
    reason: str
    request_count: int
    client_id: str
    endpoint: str

    def to_row(self) -> List[str]:
        return [
            self.start_time, self.end_time, "true" if self.is_anomaly else "false",
            self.reason, str(self.request_count), self.client_id, self.endpoint,
        ]


# ============================================================
# Readers
# ============================================================

def read_rows(path: str, max_records: Optional[int] = None) -> List[Dict[str, str]]:
    """
    Read a headed CSV file into dicts.

    Raises:
        LogLoadError: if the file is missing or not parseable as CSV
    """
    rows: List[Dict[str, str]] = []
    try:
        with open(path, "r", encoding="utf-8-sig", newline="") as f:
            reader = csv.DictReader(f, restval="")
            for row in reader:
                if not any((v or "").strip() for k, v in row.items() if k is not None and isinstance(v, str)):
                    continue
                rows.append({k: (v or "") for k, v in row.items() if k is not None})
                if max_records is not None and len(rows) >= max_records:
                    break
    except OSError as e:
        raise LogLoadError(path, e.strerror or str(e)) from e
    except (csv.Error, UnicodeDecodeError) as e:
        raise LogLoadError(path, str(e)) from e
    logger.debug("read %d rows from %s", len(rows), path)
    return rows


def _column(row: Dict[str, str], names: Sequence[str]) -> str:
    for name in names:
        if name in row:
            return row[name]
    return ""


def load_ground_truth(path: str, max_records: Optional[int] = None) -> List[GroundTruthRecord]:
    return [
        GroundTruthRecord(
            index=i,
            **{attr: _column(row, names) for attr, names in GROUND_TRUTH_COLUMNS.items()}
        )
        for i, row in enumerate(read_rows(path, max_records))
    ]


def load_detections(path: str, max_records: Optional[int] = None) -> List[DetectionRecord]:
    return [
        DetectionRecord(
            index=i,
            timestamp=row.get("timestamp", ""),
            detection_type=row.get("detectionType", ""),
            detected=row.get("detected", ""),
            reason=row.get("reason", ""),
            request=row.get("request", ""),
            response=row.get("response", ""),
        )
        for i, row in enumerate(read_rows(path, max_records))
    ]


def load_rate_limits(path: str, max_records: Optional[int] = None) -> List[RateLimitRecord]:
    records = []
    for row in read_rows(path, max_records):
        try:
            count = int(row.get("requestCount") or 0)
        except ValueError:
            count = 0
        records.append(RateLimitRecord(
            start_time=row.get("startTime", ""),
            end_time=row.get("endTime", ""),
            is_anomaly=row.get("isAnomaly", "").strip().lower() == "true",
            reason=row.get("reason", ""),
            request_count=count,
            client_id=row.get("clientId", ""),
            endpoint=row.get("endpoint", ""),
        ))
    return records


# ============================================================
# Writers
# ============================================================

def write_csv(path: str, header: Sequence[str], rows: Iterable[Sequence[str]]) -> int:
    """Write a complete CSV file, replacing any existing one. Returns the row count."""
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    count = 0
    with open(path, "w", encoding="utf-8", newline="") as f:
        writer = csv.writer(f)
        writer.writerow(header)
        for row in rows:
            writer.writerow(row)
            count += 1
    return count


def write_detections(path: str, records: Iterable[DetectionRecord]) -> int:
    return write_csv(path, DETECTION_LOG_HEADER, (r.to_row() for r in records))


def write_rate_limits(path: str, records: Iterable[RateLimitRecord]) -> int:
    return write_csv(path, RATE_LIMIT_LOG_HEADER, (r.to_row() for r in records))


def compact_json(obj: Any) -> str:
    return json.dumps(obj, separators=(",", ":"), ensure_ascii=False, default=str)


class ApiLogWriter:
    """
    Appends API exchanges to the ground-truth CSV.

    Thread-safe. The header is written when the file is new or empty, and the
    index continues from the rows already present.
    """

    def __init__(self, path: str):
        self._path = path
        self._lock = threading.Lock()
        self._next_index: Optional[int] = None

    @property
    def path(self) -> str:
        return self._path

    def _prepare(self) -> None:
        directory = os.path.dirname(self._path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        if not os.path.exists(self._path) or os.path.getsize(self._path) == 0:
            write_csv(self._path, API_LOG_HEADER, [])
            self._next_index = 0
        else:
            self._next_index = len(read_rows(self._path))

    def append(
        self,
        timestamp: str,
        attack_type: str,
        request_id: str,
        method: str,
        url: str,
        client_id: str,
        request_body: Any,
        status: int,
        response_body: Any
    ) -> int:
        """Append one exchange and return its index."""
        with self._lock:
            if self._next_index is None:
                self._prepare()
            index = self._next_index
            record = GroundTruthRecord(
                index=index,
                timestamp=timestamp,
                attack_type=attack_type or "",
                request_id=request_id or "",
                request_method=method,
                request_url=url,
                client_id=client_id or "",
                request_body=request_body if isinstance(request_body, str) else compact_json(request_body),
                response_status=str(status),
                response_body=response_body if isinstance(response_body, str) else compact_json(response_body),
            )
            with open(self._path, "a", encoding="utf-8", newline="") as f:
                csv.writer(f).writerow(record.to_row())
            self._next_index = index + 1
            return index
