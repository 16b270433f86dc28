"""
Detection performance metrics.

Scores the three detector streams (signature, specification, hybrid) against
the ground-truth API exchange log:

1. Load the four CSV streams concurrently, each capped at max_records.
2. Correlate detector records with ground truth, by ordinal position (default)
   or by the x-api-tran-id recorded in both streams.
3. Count TP/FP/TN/FN per detector. Ground truth is an attack when attack.type
   is non-empty; a detector is positive when `detected` is "true"
   (trimmed, case-insensitive).
4. Derive accuracy, precision, recall and F1. Each is 0 when its denominator
   is 0, so every value lies in [0, 1].

A log that cannot be read aborts the whole analysis with LogLoadError.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .logs import DetectionRecord, GroundTruthRecord, load_detections, load_ground_truth

logger = logging.getLogger(__name__)

DETECTORS = ("signature", "specification", "hybrid")
DEFAULT_MAX_RECORDS = 10000
RECENT_LIMIT = 5

CORRELATE_POSITION = "position"
CORRELATE_REQUEST_ID = "request_id"


@dataclass
class ConfusionMatrix:
    true_positive: int = 0
    false_positive: int = 0
    true_negative: int = 0
    false_negative: int = 0

    @property
    def total(self) -> int:
        return self.true_positive + self.false_positive + self.true_negative + self.false_negative

    def add(self, actual: bool, predicted: bool) -> None:
        if actual and predicted:
            self.true_positive += 1
        elif predicted:
            self.false_positive += 1
        elif actual:
            self.false_negative += 1
        else:
            self.true_negative += 1

    def to_dict(self) -> Dict[str, int]:
        return {
            "true_positive": self.true_positive,
            "false_positive": self.false_positive,
            "true_negative": self.true_negative,
            "false_negative": self.false_negative,
        }


@dataclass
class DetectionMetrics:
    accuracy: float = 0.0
    precision: float = 0.0
    recall: float = 0.0
    f1: float = 0.0

    def to_dict(self) -> Dict[str, float]:
        return {
            "accuracy": self.accuracy,
            "precision": self.precision,
            "recall": self.recall,
            "f1": self.f1,
        }


def _ratio(numerator: float, denominator: float) -> float:
    return numerator / denominator if denominator else 0.0


def compute_metrics(matrix: ConfusionMatrix) -> DetectionMetrics:
    tp, fp, fn = matrix.true_positive, matrix.false_positive, matrix.false_negative
    precision = _ratio(tp, tp + fp)
    recall = _ratio(tp, tp + fn)
    return DetectionMetrics(
        accuracy=_ratio(tp + matrix.true_negative, matrix.total),
        precision=precision,
        recall=recall,
        f1=_ratio(2 * precision * recall, precision + recall),
    )


@dataclass
class LogPaths:
    ground_truth: str
    signature: str
    specification: str
    hybrid: str

    def detector_paths(self) -> Dict[str, str]:
        return {name: getattr(self, name) for name in DETECTORS}


@dataclass
class AnalysisSummary:
    total_records: int
    attack_count: int
    detected_counts: Dict[str, int]
    missed_attacks: int
    recent_attacks: List[Dict[str, Any]]
    recent_detections: Dict[str, List[Dict[str, Any]]]
    matrices: Dict[str, ConfusionMatrix] = field(default_factory=dict)
    metrics: Dict[str, DetectionMetrics] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_records": self.total_records,
            "attack_count": self.attack_count,
            "detected_counts": dict(self.detected_counts),
            "missed_attacks": self.missed_attacks,
            "recent_attacks": self.recent_attacks,
            "recent_detections": self.recent_detections,
            "confusion_matrices": {k: m.to_dict() for k, m in self.matrices.items()},
            "metrics": {k: m.to_dict() for k, m in self.metrics.items()},
        }


class DetectionMetricsEngine:
    """
    Offline evaluator for the three detector logs.

    Example:
        engine = DetectionMetricsEngine()
        summary = engine.analyze(LogPaths(
            ground_truth="logs/api_logs.csv",
            signature="logs/signature_detection_logs.csv",
            specification="logs/specification_detection_logs.csv",
            hybrid="logs/hybrid_detection_logs.csv",
        ))
        print(summary.metrics["hybrid"].f1)
    """

    def __init__(
        self,
        max_records: int = DEFAULT_MAX_RECORDS,
        correlate: str = CORRELATE_POSITION,
        recent_limit: int = RECENT_LIMIT
    ):
        if correlate not in (CORRELATE_POSITION, CORRELATE_REQUEST_ID):
            raise ValueError(f"unknown correlation mode: {correlate}")
        self.max_records = max_records
        self.correlate_by = correlate
        self.recent_limit = recent_limit

    def load(self, paths: LogPaths) -> Tuple[List[GroundTruthRecord], Dict[str, List[DetectionRecord]]]:
        """Load all four streams concurrently. Any LogLoadError propagates after all loads finish."""
        with ThreadPoolExecutor(max_workers=1 + len(DETECTORS)) as pool:
            gt_future = pool.submit(load_ground_truth, paths.ground_truth, self.max_records)
            futures = {
                name: pool.submit(load_detections, path, self.max_records)
                for name, path in paths.detector_paths().items()
            }
        ground_truth = gt_future.result()
        streams = {name: f.result() for name, f in futures.items()}
        logger.info(
            "loaded %d ground-truth records; %s",
            len(ground_truth),
            ", ".join(f"{name}={len(recs)}" for name, recs in streams.items()),
        )
        return ground_truth, streams

    def correlate(
        self,
        ground_truth: Sequence[GroundTruthRecord],
        detections: Sequence[DetectionRecord]
    ) -> List[Tuple[GroundTruthRecord, DetectionRecord]]:
        """Pair ground-truth and detector records."""
        if self.correlate_by == CORRELATE_REQUEST_ID:
            by_id: Dict[str, DetectionRecord] = {}
            for record in detections:
                if record.request_id:
                    by_id.setdefault(record.request_id, record)
            return [(gt, by_id[gt.request_id]) for gt in ground_truth if gt.request_id in by_id]
        return list(zip(ground_truth, detections))

    def confusion_matrix(
        self,
        ground_truth: Sequence[GroundTruthRecord],
        detections: Sequence[DetectionRecord]
    ) -> ConfusionMatrix:
        matrix = ConfusionMatrix()
        for gt, detection in self.correlate(ground_truth, detections):
            matrix.add(gt.is_attack, detection.is_positive)
        return matrix

    def summarize(
        self,
        ground_truth: Sequence[GroundTruthRecord],
        streams: Dict[str, Sequence[DetectionRecord]]
    ) -> AnalysisSummary:
        matrices = {name: self.confusion_matrix(ground_truth, streams.get(name, [])) for name in DETECTORS}

        missed = sum(
            1 for gt, detection in self.correlate(ground_truth, streams.get("hybrid", []))
            if gt.is_attack and not detection.is_positive
        )

        attacks = [gt for gt in ground_truth if gt.is_attack]
        recent_detections = {}
        detected_counts = {}
        for name in DETECTORS:
            positives = [r for r in streams.get(name, []) if r.is_positive]
            detected_counts[name] = len(positives)
            recent_detections[name] = [r.to_dict() for r in reversed(positives[-self.recent_limit:])]

        return AnalysisSummary(
            total_records=len(ground_truth),
            attack_count=len(attacks),
            detected_counts=detected_counts,
            missed_attacks=missed,
            recent_attacks=[gt.to_dict() for gt in reversed(attacks[-self.recent_limit:])],
            recent_detections=recent_detections,
            matrices=matrices,
            metrics={name: compute_metrics(m) for name, m in matrices.items()},
        )

    def analyze(self, paths: LogPaths) -> AnalysisSummary:
        ground_truth, streams = self.load(paths)
        return self.summarize(ground_truth, streams)
