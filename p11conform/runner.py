#!/usr/bin/env python3
import argparse
import dataclasses
import json
import sys
import time
from pathlib import Path

from p11conform.lib.errors import EnvironmentFailure
from p11conform.lib.ledger import EXIT_INVALID_PARAMS, EXIT_TESTS_FAILED, Ledger
from p11conform.lib.manifest import write_manifest
from p11conform.lib.matrix import MatrixError, expand, load_matrix
from p11conform.lib.orchestrator import run_suites
from p11conform.lib.policy import Settings
from p11conform.lib.provision import EnclaveLifecycle, KeyProvisioner
from p11conform.lib.report import Console, write_report


class _Parser(argparse.ArgumentParser):
    def error(self, message):
        self.print_usage(sys.stderr)
        print(f"{self.prog}: error: {message}", file=sys.stderr)
        raise SystemExit(EXIT_INVALID_PARAMS)


def _load(args):
    try:
        return load_matrix(Path(args.matrix) if args.matrix else None).select(args.key)
    except MatrixError as e:
        print(f"[p11conform] {e}", file=sys.stderr)
        return None


def cmd_openssl(args) -> int:
    if not args.kms_key_id.strip() or not args.kms_region.strip():
        print("[p11conform] --kms-key-id and --kms-region must not be empty", file=sys.stderr)
        return EXIT_INVALID_PARAMS
    if args.jobs < 1:
        print("[p11conform] --jobs must be >= 1", file=sys.stderr)
        return EXIT_INVALID_PARAMS
    matrix = _load(args)
    if matrix is None:
        return EXIT_INVALID_PARAMS

    settings = Settings.from_env()
    if args.no_enclave_restart:
        settings = dataclasses.replace(settings, restart_enclave=False)

    out = Path(args.out)
    try:
        out.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        print(f"[p11conform] cannot create output directory {out}: {e}", file=sys.stderr)
        return EXIT_TESTS_FAILED

    run_id = args.run_id or time.strftime("%Y%m%dT%H%M%S")
    console = Console(log_path=out / "run.log")
    console.info(f"run {run_id}: keys {', '.join(k.label for k in matrix.keys)}")

    ledger = Ledger()
    aborted = None
    try:
        run_suites(
            matrix,
            settings,
            out,
            KeyProvisioner(settings, args.kms_key_id, args.kms_region),
            console,
            ledger=ledger,
            enclave=EnclaveLifecycle(settings) if settings.restart_enclave else None,
            jobs=args.jobs,
        )
    except EnvironmentFailure as e:
        aborted = str(e)
        console.error(f"environment failure, run aborted: {e}")

    console.summary(ledger)
    write_report(out, ledger, run_id, {
        "aborted": aborted,
        "settings": settings.to_dict(),
        "keys": [k.label for k in matrix.keys],
    })
    write_manifest(out / "results", out / "manifest.json", run_id)
    if aborted:
        return EXIT_TESTS_FAILED
    return ledger.exit_code()


def cmd_matrix(args) -> int:
    matrix = _load(args)
    if matrix is None:
        return EXIT_INVALID_PARAMS
    cases, skipped = expand(matrix, Settings.from_env().seed)
    if args.json:
        json.dump({
            "cases": [c.to_dict() for c in cases],
            "skipped": [dataclasses.asdict(s) for s in skipped],
        }, sys.stdout, indent=2, sort_keys=True)
        sys.stdout.write("\n")
        return 0
    for c in cases:
        print(f"{c.family}/{c.key.label}/{c.name} size={c.size} comparator={c.comparator}")
    for s in skipped:
        print(f"[SKIP] {s.family}/{s.key_label}/{s.name} ({s.reason})")
    print(f"{len(cases)} cases, {len(skipped)} skipped")
    return 0


def main(argv=None) -> int:
    ap = _Parser(prog="p11conform")
    sub = ap.add_subparsers(dest="cmd", required=True)

    common = _Parser(add_help=False)
    common.add_argument("--matrix", help="YAML test matrix (defaults to the built-in matrix)")
    common.add_argument("--key", action="append", help="Only run this key label (repeatable)")

    so = sub.add_parser("openssl", parents=[common], help="Run the openssl engine test set")
    so.add_argument("--kms-key-id", required=True)
    so.add_argument("--kms-region", required=True)
    so.add_argument("--out", default="p11conform-out")
    so.add_argument("--run-id")
    so.add_argument("--jobs", type=int, default=1, help="Key sub-suites to run concurrently")
    so.add_argument("--no-enclave-restart", action="store_true")
    so.set_defaults(func=cmd_openssl)

    sm = sub.add_parser("matrix", parents=[common], help="Print the expanded test matrix")
    sm.add_argument("--json", action="store_true")
    sm.set_defaults(func=cmd_matrix)

    args = ap.parse_args(argv)
    return int(args.func(args))


if __name__ == "__main__":
    raise SystemExit(main())
