"""
Detector tests: signatures, protocol conformance, the hybrid order and the
rate-limit timeframes.
"""

import json
import os
import shutil
import tempfile
import unittest

from mydata_ca import new_api_tran_id
from mydata_ca.detectors import (
    HybridDetector,
    RateLimitDetector,
    SignatureDetector,
    SpecificationDetector,
    run_detectors,
)
from mydata_ca.logs import ApiLogWriter, GroundTruthRecord, load_detections, read_rows, utc_iso

from factories import sign_request_payload

BASE = 1700000100  # a multiple of the 300 second timeframe


def exchange(method, path, body=None, status="200", client="client-1", request_id=None, ts=BASE, index=0):
    return GroundTruthRecord(
        index=index,
        timestamp=utc_iso(ts),
        request_id=new_api_tran_id() if request_id is None else request_id,
        request_method=method,
        request_url="http://testserver" + path,
        client_id=client,
        request_body=json.dumps(body if body is not None else {}),
        response_status=status,
        response_body='{"rsp_code":"00000","rsp_msg":"success"}',
    )


def token_body(scope):
    return {"grant_type": "client_credentials", "client_id": "client-1", "client_secret": "****cret", "scope": scope}


def lifecycle_prefix():
    return [
        exchange("POST", "/mgmts/oauth/token", token_body("manage")),
        exchange("GET", "/mgmts/orgs"),
        exchange("POST", "/oauth/token", token_body("ca")),
        exchange("POST", "/ca/sign_request", sign_request_payload()),
    ]


class TestSignatureDetector(unittest.TestCase):

    def setUp(self):
        self.detector = SignatureDetector()

    def test_sql_injection_in_body(self):
        record = exchange("POST", "/ca/sign_request", {"real_name": "x' OR 1=1 --"})
        result = self.detector.detect(record)
        self.assertTrue(result.detected)
        self.assertIn("sqlInjection", result.reason)

    def test_xss_in_query(self):
        record = exchange("GET", "/mgmts/orgs?name=<script>alert(1)</script>")
        result = self.detector.detect(record)
        self.assertTrue(result.detected)
        self.assertIn("xss", result.reason)

    def test_traversal_in_path(self):
        self.assertTrue(self.detector.detect(exchange("GET", "/static/../../etc/passwd")).detected)

    def test_benign_exchange(self):
        result = self.detector.detect(exchange("POST", "/ca/sign_request", sign_request_payload()))
        self.assertFalse(result.detected)
        self.assertEqual(result.reason, "No known attack signatures detected")


class TestSpecificationDetector(unittest.TestCase):

    def setUp(self):
        self.detector = SpecificationDetector()

    def run_all(self, records):
        return [r.is_positive for r in self.detector.run(records)]

    def test_conforming_lifecycle(self):
        self.assertEqual(self.run_all(lifecycle_prefix()), [False, False, False, False])

    def test_unknown_endpoint(self):
        result = self.detector.detect(exchange("GET", "/admin"))
        self.assertTrue(result.detected)
        self.assertIn("Unknown endpoint", result.reason)

    def test_wrong_method(self):
        self.assertTrue(self.detector.detect(exchange("GET", "/ca/sign_request")).detected)

    def test_missing_url(self):
        record = exchange("GET", "/mgmts/orgs")
        record.request_url = ""
        self.assertEqual(self.detector.detect(record).reason, "Missing URL in request")

    def test_auxiliary_endpoints(self):
        self.assertFalse(self.detector.detect(exchange("GET", "/health")).detected)
        self.assertFalse(self.detector.detect(exchange("POST", "/mgmts/oauth/revoke")).detected)

    def test_sequence_violation(self):
        result = self.detector.detect(exchange("POST", "/ca/sign_request", sign_request_payload()))
        self.assertTrue(result.detected)
        self.assertIn("Sequence violation", result.reason)

    def test_refused_call_does_not_advance(self):
        records = [
            exchange("POST", "/mgmts/oauth/token", token_body("manage"), status="401"),
            exchange("GET", "/mgmts/orgs"),
        ]
        self.assertEqual(self.run_all(records), [False, True])

    def test_sessions_are_per_client(self):
        records = [
            exchange("POST", "/mgmts/oauth/token", token_body("manage"), client="client-1"),
            exchange("GET", "/mgmts/orgs", client="client-2"),
        ]
        self.assertEqual(self.run_all(records), [False, True])

    def test_session_timeout(self):
        records = [
            exchange("POST", "/mgmts/oauth/token", token_body("manage"), ts=BASE),
            exchange("GET", "/mgmts/orgs", ts=BASE + 31 * 60),
        ]
        self.assertEqual(self.run_all(records), [False, True])

    def test_org_search_needs_tran_id(self):
        records = [
            exchange("POST", "/mgmts/oauth/token", token_body("manage")),
            exchange("GET", "/mgmts/orgs", request_id=""),
        ]
        detections = self.detector.run(records)
        self.assertTrue(detections[1].is_positive)
        self.assertIn("x-api-tran-id", detections[1].reason)

    def test_payload_format(self):
        records = lifecycle_prefix()
        records[3] = exchange("POST", "/ca/sign_request", sign_request_payload(phone_num="01012345678"))
        detections = self.detector.run(records)
        self.assertTrue(detections[3].is_positive)
        self.assertIn("phone_num", detections[3].reason)

    def test_oversized_field(self):
        result = self.detector.detect(exchange("POST", "/mgmts/oauth/token", {"client_secret": "A" * 10001}))
        self.assertTrue(result.detected)
        self.assertIn("client_secret", result.reason)

    def test_run_keeps_order_and_request_document(self):
        detections = self.detector.run(lifecycle_prefix())
        self.assertEqual([d.index for d in detections], [0, 1, 2, 3])
        self.assertEqual(detections[0].detection_type, "Specification")
        request = json.loads(detections[0].request)
        self.assertEqual(request["clientId"], "client-1")
        self.assertEqual(request["body"]["scope"], "manage")


class TestHybridDetector(unittest.TestCase):

    def test_specification_reason_first(self):
        record = exchange("GET", "/admin?q=' OR 1=1")
        result = HybridDetector().detect(record)
        self.assertTrue(result.detected)
        self.assertIn("Unknown endpoint", result.reason)

    def test_signature_when_specification_passes(self):
        records = [exchange("POST", "/mgmts/oauth/token", dict(token_body("manage"), client_id="c; DROP TABLE x"))]
        detections = HybridDetector().run(records)
        self.assertTrue(detections[0].is_positive)
        self.assertIn("Signature match", detections[0].reason)

    def test_clean_traffic(self):
        detections = HybridDetector().run(lifecycle_prefix())
        self.assertFalse(any(d.is_positive for d in detections))


class TestRateLimitDetector(unittest.TestCase):

    def test_normal_traffic(self):
        records = [exchange("GET", "/mgmts/orgs", ts=BASE + i * 10) for i in range(3)]
        frames = RateLimitDetector().run(records)
        self.assertEqual(len(frames), 1)
        self.assertFalse(frames[0].is_anomaly)
        self.assertEqual(frames[0].reason, "Normal traffic pattern")
        self.assertEqual(frames[0].request_count, 3)
        self.assertEqual(frames[0].start_time, utc_iso(BASE))
        self.assertEqual(frames[0].end_time, utc_iso(BASE + 300))

    def test_client_burst(self):
        records = [exchange("GET", "/mgmts/orgs", ts=BASE + i) for i in range(25)]
        frame = RateLimitDetector().run(records)[0]
        self.assertTrue(frame.is_anomaly)
        self.assertIn("Client rate limit exceeded", frame.reason)

    def test_endpoint_burst_wins(self):
        records = [exchange("POST", "/oauth/token", ts=BASE + i) for i in range(12)]
        frame = RateLimitDetector().run(records)[0]
        self.assertTrue(frame.is_anomaly)
        self.assertIn("Endpoint rate limit exceeded", frame.reason)

    def test_sustained_traffic(self):
        # 18 requests a minute for five minutes: under every one-minute limit
        records = [exchange("POST", "/ca/sign_request", ts=BASE + i * 10.0 / 3) for i in range(90)]
        frames = RateLimitDetector().run(records)
        self.assertEqual(len(frames), 1)
        self.assertTrue(frames[0].is_anomaly)
        self.assertIn("High sustained traffic", frames[0].reason)

    def test_frames_split_by_client_and_time(self):
        records = [
            exchange("GET", "/mgmts/orgs", client="a", ts=BASE),
            exchange("GET", "/mgmts/orgs", client="b", ts=BASE + 1),
            exchange("GET", "/mgmts/orgs", client="a", ts=BASE + 301),
        ]
        frames = RateLimitDetector().run(records)
        self.assertEqual([(f.client_id, f.request_count) for f in frames], [("a", 1), ("b", 1), ("a", 1)])

    def test_client_key_fallbacks(self):
        record = exchange("GET", "/mgmts/orgs", client="", request_id="ABCDEFGHIJKLMNOPQRSTUVWXY")
        self.assertEqual(RateLimitDetector.client_key(record), "ABCDEFGHIJ")
        record.request_id = ""
        self.assertEqual(RateLimitDetector.client_key(record), "unknown-client")

    def test_unparseable_timestamps_skipped(self):
        record = exchange("GET", "/mgmts/orgs")
        record.timestamp = "yesterday"
        self.assertEqual(RateLimitDetector().run([record]), [])


class TestRunDetectors(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.tmp, ignore_errors=True)

    def test_writes_every_stream(self):
        api_log = os.path.join(self.tmp, "api_logs.csv")
        writer = ApiLogWriter(api_log)
        for record in lifecycle_prefix():
            writer.append(
                record.timestamp, "", record.request_id, record.request_method, record.request_url,
                record.client_id, record.request_body, int(record.response_status), record.response_body,
            )

        written = run_detectors(api_log, os.path.join(self.tmp, "out"))
        self.assertEqual(set(written), {"signature", "specification", "hybrid", "rate_limit"})
        for path in written.values():
            self.assertTrue(os.path.exists(path))

        hybrid = load_detections(written["hybrid"])
        self.assertEqual(len(hybrid), 4)
        self.assertEqual(hybrid[0].detection_type, "Hybrid")
        self.assertEqual(len(read_rows(written["rate_limit"])), 4)


if __name__ == "__main__":
    unittest.main(verbosity=2)
