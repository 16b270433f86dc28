"""
Detection metrics tests.

Covers the confusion matrix, the derived ratios, correlation modes and the
failure semantics of the analysis run.
"""

import json
import os
import shutil
import tempfile
import unittest

from mydata_ca import (
    ConfusionMatrix,
    DetectionMetricsEngine,
    LogLoadError,
    LogPaths,
    compute_metrics,
)
from mydata_ca.logs import API_LOG_HEADER, DETECTION_LOG_HEADER, write_csv


def ground_truth_row(index, attack_type="", request_id=""):
    return [str(index), "2025-02-12T07:08:57.000Z", attack_type, request_id, "POST",
            "http://testserver/ca/sign_request", "client-1", "{}", "200", "{}"]


def detection_row(detected, request_id=""):
    request = json.dumps({"x-api-tran-id": request_id, "attack-type": ""})
    return ["2025-02-12T07:08:58.000Z", "Hybrid", detected, "reason", request, "{}"]


class LogDirTestCase(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.tmp, ignore_errors=True)

    def write_logs(self, gt_rows, detector_rows):
        paths = LogPaths(
            ground_truth=os.path.join(self.tmp, "api_logs.csv"),
            signature=os.path.join(self.tmp, "signature.csv"),
            specification=os.path.join(self.tmp, "specification.csv"),
            hybrid=os.path.join(self.tmp, "hybrid.csv"),
        )
        write_csv(paths.ground_truth, API_LOG_HEADER, gt_rows)
        for name in ("signature", "specification", "hybrid"):
            write_csv(getattr(paths, name), DETECTION_LOG_HEADER, detector_rows)
        return paths


class TestComputeMetrics(unittest.TestCase):

    def test_all_zero_matrix(self):
        metrics = compute_metrics(ConfusionMatrix())
        self.assertEqual(metrics.to_dict(), {"accuracy": 0.0, "precision": 0.0, "recall": 0.0, "f1": 0.0})

    def test_no_positives(self):
        metrics = compute_metrics(ConfusionMatrix(true_negative=5))
        self.assertEqual(metrics.accuracy, 1.0)
        self.assertEqual(metrics.precision, 0.0)
        self.assertEqual(metrics.recall, 0.0)
        self.assertEqual(metrics.f1, 0.0)

    def test_perfect_detector(self):
        metrics = compute_metrics(ConfusionMatrix(true_positive=3, true_negative=2))
        self.assertEqual((metrics.accuracy, metrics.precision, metrics.recall, metrics.f1), (1.0, 1.0, 1.0, 1.0))

    def test_ranges(self):
        for tp in range(3):
            for fp in range(3):
                for tn in range(3):
                    for fn in range(3):
                        m = compute_metrics(ConfusionMatrix(tp, fp, tn, fn))
                        for value in m.to_dict().values():
                            self.assertGreaterEqual(value, 0.0)
                            self.assertLessEqual(value, 1.0)

    def test_add(self):
        matrix = ConfusionMatrix()
        matrix.add(actual=True, predicted=True)
        matrix.add(actual=False, predicted=True)
        matrix.add(actual=True, predicted=False)
        matrix.add(actual=False, predicted=False)
        self.assertEqual(matrix.to_dict(), {
            "true_positive": 1, "false_positive": 1, "true_negative": 1, "false_negative": 1,
        })


class TestDetectionMetricsEngine(LogDirTestCase):

    def test_four_correlated_rows(self):
        # rows 1 and 3 are attacks; the detectors flag rows 1 and 2
        paths = self.write_logs(
            [ground_truth_row(0, "sqlInjection"), ground_truth_row(1), ground_truth_row(2, "xss"), ground_truth_row(3)],
            [detection_row("true"), detection_row("true"), detection_row("false"), detection_row("false")],
        )
        summary = DetectionMetricsEngine().analyze(paths)

        for name in ("signature", "specification", "hybrid"):
            matrix = summary.matrices[name]
            self.assertEqual(matrix.true_positive, 1)
            self.assertEqual(matrix.false_positive, 1)
            self.assertEqual(matrix.false_negative, 1)
            self.assertEqual(matrix.true_negative, 1)
            metrics = summary.metrics[name]
            self.assertAlmostEqual(metrics.precision, 0.5)
            self.assertAlmostEqual(metrics.recall, 0.5)
            self.assertAlmostEqual(metrics.f1, 0.5)
            self.assertAlmostEqual(metrics.accuracy, 0.5)

        self.assertEqual(summary.total_records, 4)
        self.assertEqual(summary.attack_count, 2)
        self.assertEqual(summary.missed_attacks, 1)
        self.assertEqual(summary.detected_counts["hybrid"], 2)

    def test_matrix_total_is_shorter_stream(self):
        paths = self.write_logs(
            [ground_truth_row(i, "xss" if i % 2 else "") for i in range(7)],
            [detection_row("true" if i % 3 else "false") for i in range(4)],
        )
        summary = DetectionMetricsEngine().analyze(paths)
        for matrix in summary.matrices.values():
            self.assertEqual(matrix.total, 4)

    def test_detected_flag_parsing(self):
        paths = self.write_logs(
            [ground_truth_row(i, "xss") for i in range(3)],
            [detection_row(" TRUE "), detection_row("yes"), detection_row("1")],
        )
        summary = DetectionMetricsEngine().analyze(paths)
        self.assertEqual(summary.matrices["hybrid"].true_positive, 1)
        self.assertEqual(summary.matrices["hybrid"].false_negative, 2)

    def test_max_records(self):
        paths = self.write_logs(
            [ground_truth_row(i, "xss") for i in range(10)],
            [detection_row("true") for _ in range(10)],
        )
        summary = DetectionMetricsEngine(max_records=3).analyze(paths)
        self.assertEqual(summary.total_records, 3)
        self.assertEqual(summary.matrices["signature"].total, 3)

    def test_recent_records_newest_first(self):
        paths = self.write_logs(
            [ground_truth_row(i, "xss") for i in range(8)],
            [detection_row("true") for _ in range(8)],
        )
        summary = DetectionMetricsEngine().analyze(paths)
        self.assertEqual([r["index"] for r in summary.recent_attacks], [7, 6, 5, 4, 3])
        self.assertEqual(len(summary.recent_detections["hybrid"]), 5)
        self.assertEqual(summary.recent_detections["hybrid"][0]["index"], 7)

    def test_request_id_correlation_survives_gaps(self):
        ids = ["ID%023d" % i for i in range(4)]
        gt = [ground_truth_row(i, "xss" if i in (0, 2) else "", ids[i]) for i in range(4)]
        # the detector log lost the second exchange
        detections = [detection_row("true", ids[0]), detection_row("true", ids[2]), detection_row("false", ids[3])]
        paths = self.write_logs(gt, detections)

        by_id = DetectionMetricsEngine(correlate="request_id").analyze(paths).matrices["hybrid"]
        self.assertEqual(by_id.to_dict(), {
            "true_positive": 2, "false_positive": 0, "true_negative": 1, "false_negative": 0,
        })

        by_position = DetectionMetricsEngine().analyze(paths).matrices["hybrid"]
        self.assertEqual(by_position.total, 3)
        self.assertNotEqual(by_position.to_dict(), by_id.to_dict())

    def test_unknown_correlation(self):
        with self.assertRaises(ValueError):
            DetectionMetricsEngine(correlate="timestamp")

    def test_missing_log_fails_whole_run(self):
        paths = self.write_logs([ground_truth_row(0)], [detection_row("false")])
        os.remove(paths.specification)
        with self.assertRaises(LogLoadError) as ctx:
            DetectionMetricsEngine().analyze(paths)
        self.assertEqual(ctx.exception.path, paths.specification)

    def test_summary_to_dict(self):
        paths = self.write_logs([ground_truth_row(0, "xss")], [detection_row("true")])
        data = DetectionMetricsEngine().analyze(paths).to_dict()
        self.assertEqual(data["confusion_matrices"]["hybrid"]["true_positive"], 1)
        self.assertEqual(data["metrics"]["hybrid"]["f1"], 1.0)
        json.dumps(data)


if __name__ == "__main__":
    unittest.main(verbosity=2)
