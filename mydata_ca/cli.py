#!/usr/bin/env python3
"""
MyData CA Command Line Interface

Usage:
    mydata-ca detect --api-log <file> --out-dir <dir>
    mydata-ca analyze --api-log <file> --log-dir <dir> [--correlate request_id]
    mydata-ca keygen --output <file>
    mydata-ca new-id {cert_tx_id,tx_id,api_tran_id}
"""

import argparse
import json
import logging
import os
import sys


def save_json(data: dict, path: str):
    """Save JSON to file."""
    with open(path, 'w', encoding='utf-8') as f:
        json.dump(data, f, indent=2, ensure_ascii=False)


def cmd_detect(args):
    """Run the detectors over an API exchange log."""
    from mydata_ca.detectors import run_detectors
    from mydata_ca.errors import LogLoadError

    try:
        written = run_detectors(args.api_log, args.out_dir, max_records=args.max_records)
    except LogLoadError as e:
        print(f"✗ {e}", file=sys.stderr)
        return 2

    for name, path in written.items():
        print(f"{name:>14}: {path}")
    return 0


def cmd_analyze(args):
    """Score the detector logs against ground truth."""
    from mydata_ca.detectors import DETECTION_LOG_FILES
    from mydata_ca.errors import LogLoadError
    from mydata_ca.metrics import DetectionMetricsEngine, LogPaths, DETECTORS

    def detector_path(name):
        explicit = getattr(args, name)
        return explicit or os.path.join(args.log_dir, DETECTION_LOG_FILES[name])

    paths = LogPaths(
        ground_truth=args.api_log,
        signature=detector_path("signature"),
        specification=detector_path("specification"),
        hybrid=detector_path("hybrid"),
    )
    engine = DetectionMetricsEngine(max_records=args.max_records, correlate=args.correlate)

    try:
        summary = engine.analyze(paths)
    except LogLoadError as e:
        print(f"✗ {e}", file=sys.stderr)
        return 2

    if args.output:
        save_json(summary.to_dict(), args.output)
        print(f"Summary saved to: {args.output}", file=sys.stderr)

    if args.json:
        print(json.dumps(summary.to_dict(), indent=2, ensure_ascii=False))
        return 0

    print(f"Records: {summary.total_records}   Attacks: {summary.attack_count}   "
          f"Missed by hybrid: {summary.missed_attacks}")
    print()
    print(f"{'detector':<14}{'TP':>6}{'FP':>6}{'TN':>6}{'FN':>6}"
          f"{'acc':>8}{'prec':>8}{'recall':>8}{'f1':>8}")
    for name in DETECTORS:
        m = summary.matrices[name]
        r = summary.metrics[name]
        print(f"{name:<14}{m.true_positive:>6}{m.false_positive:>6}{m.true_negative:>6}{m.false_negative:>6}"
              f"{r.accuracy:>8.3f}{r.precision:>8.3f}{r.recall:>8.3f}{r.f1:>8.3f}")
    return 0


def cmd_keygen(args):
    """Generate a CA Ed25519 signing key."""
    from mydata_ca.signing import ConsentSigner

    signer = ConsentSigner.generate(kid=args.key_id)
    if args.output:
        signer.write_key_file(args.output)
        print(f"Signing key saved to: {args.output}", file=sys.stderr)
    else:
        print(json.dumps(signer.key_document(), indent=2))
    print(f"Public key ({signer.kid}): {signer.public_key_b64}", file=sys.stderr)
    return 0


def cmd_new_id(args):
    """Print freshly generated identifiers."""
    from mydata_ca import ids

    generators = {
        "cert_tx_id": ids.new_cert_tx_id,
        "tx_id": ids.new_tx_id,
        "api_tran_id": ids.new_api_tran_id,
    }
    for _ in range(args.count):
        print(generators[args.kind]())
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mydata-ca",
        description="MyData CA conformance and detection tools",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  mydata-ca detect --api-log logs/api_logs.csv --out-dir logs/
  mydata-ca analyze --api-log logs/api_logs.csv --log-dir logs/
  mydata-ca keygen -o secrets/ca_signing_key.json
  mydata-ca new-id tx_id -n 3
        """
    )
    parser.add_argument("--log-level", default=os.getenv("LOG_LEVEL", "WARNING"), help="Logging level")
    default_max = int(os.getenv("DETECTION_MAX_RECORDS", "10000"))

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # detect
    detect_parser = subparsers.add_parser("detect", help="Run detectors over an API exchange log")
    detect_parser.add_argument("-a", "--api-log", required=True, help="API exchange (ground truth) CSV")
    detect_parser.add_argument("-d", "--out-dir", required=True, help="Directory for detector logs")
    detect_parser.add_argument("-m", "--max-records", type=int, default=default_max, help="Record cap")

    # analyze
    analyze_parser = subparsers.add_parser("analyze", help="Compute detection metrics")
    analyze_parser.add_argument("-a", "--api-log", required=True, help="API exchange (ground truth) CSV")
    analyze_parser.add_argument("-d", "--log-dir", default=".", help="Directory holding detector logs")
    analyze_parser.add_argument("--signature", help="Signature detector log (overrides --log-dir)")
    analyze_parser.add_argument("--specification", help="Specification detector log (overrides --log-dir)")
    analyze_parser.add_argument("--hybrid", help="Hybrid detector log (overrides --log-dir)")
    analyze_parser.add_argument("-c", "--correlate", choices=["position", "request_id"], default="position")
    analyze_parser.add_argument("-m", "--max-records", type=int, default=default_max, help="Record cap")
    analyze_parser.add_argument("-o", "--output", help="Write the JSON summary to a file")
    analyze_parser.add_argument("--json", action="store_true", help="Print the JSON summary")

    # keygen
    keygen_parser = subparsers.add_parser("keygen", help="Generate CA signing key")
    keygen_parser.add_argument("-o", "--output", help="Output file for the key")
    keygen_parser.add_argument("-k", "--key-id", default="ca-ed25519-1", help="Key identifier")

    # new-id
    id_parser = subparsers.add_parser("new-id", help="Generate identifiers")
    id_parser.add_argument("kind", choices=["cert_tx_id", "tx_id", "api_tran_id"])
    id_parser.add_argument("-n", "--count", type=int, default=1)

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(level=getattr(logging, str(args.log_level).upper(), logging.WARNING))

    commands = {
        "detect": cmd_detect,
        "analyze": cmd_analyze,
        "keygen": cmd_keygen,
        "new-id": cmd_new_id,
    }
    if args.command not in commands:
        parser.print_help()
        return 1
    return commands[args.command](args)


if __name__ == "__main__":
    sys.exit(main())
