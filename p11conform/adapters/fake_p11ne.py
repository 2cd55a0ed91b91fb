#!/usr/bin/env python3
"""Stand-in for the key-provisioning and enclave tools.

Keeps a token store under $P11CONFORM_FAKE_STATE: ``init`` unpacks the key
database into ``tokens/<label>/key.pem`` and ``release`` removes it, so a
ReferenceProvider pointed at ``tokens/`` behaves like a token-backed subject.
Set P11CONFORM_FAKE_FAIL to a command name to make that command fail.
"""
import argparse
import json
import os
import shutil
import sys
import time
from pathlib import Path


def _state() -> Path:
    p = Path(os.environ.get("P11CONFORM_FAKE_STATE", ".fake-p11ne"))
    p.mkdir(parents=True, exist_ok=True)
    return p


def _journal(cmd: str, **fields) -> None:
    with (_state() / "journal.jsonl").open("a", encoding="utf-8") as f:
        f.write(json.dumps({"cmd": cmd, "ts": int(time.time()), **fields}, sort_keys=True) + "\n")


def cmd_pack_key(args) -> int:
    if not args.kms_key_id or not args.kms_region:
        print("pack-key: kms key id and region required", file=sys.stderr)
        return 1
    db = {
        "id": args.id,
        "label": args.label,
        "key_pem": Path(args.key_file).read_text(encoding="utf-8"),
        "cert_pem": Path(args.cert_file).read_text(encoding="utf-8") if args.cert_file else None,
        "kms_key_id": args.kms_key_id,
        "kms_region": args.kms_region,
    }
    Path(args.out_file).parent.mkdir(parents=True, exist_ok=True)
    Path(args.out_file).write_text(json.dumps(db, sort_keys=True) + "\n", encoding="utf-8")
    _journal("pack-key", label=args.label)
    return 0


def cmd_init(args) -> int:
    token = _state() / "tokens" / args.label
    if token.exists():
        print(f"init: token {args.label} already initialized", file=sys.stderr)
        return 1
    db = json.loads(Path(args.key_db).read_text(encoding="utf-8"))
    if db.get("label") != args.label:
        print(f"init: key db label {db.get('label')} != {args.label}", file=sys.stderr)
        return 1
    token.mkdir(parents=True)
    (token / "key.pem").write_text(db["key_pem"], encoding="utf-8")
    (token / "pin").write_text(args.pin, encoding="utf-8")
    _journal("init", label=args.label)
    return 0


def cmd_release(args) -> int:
    token = _state() / "tokens" / args.label
    if not token.exists():
        print(f"release: token {args.label} not initialized", file=sys.stderr)
        return 1
    if (token / "pin").read_text(encoding="utf-8") != args.pin:
        print("release: wrong pin", file=sys.stderr)
        return 1
    shutil.rmtree(token)
    _journal("release", label=args.label)
    return 0


def cmd_enclave(args) -> int:
    (_state() / "enclave").write_text(args.cmd + "\n", encoding="utf-8")
    _journal(args.cmd)
    return 0


def main() -> int:
    ap = argparse.ArgumentParser()
    sub = ap.add_subparsers(dest="cmd", required=True)

    p = sub.add_parser("pack-key")
    p.add_argument("--id", required=True)
    p.add_argument("--label", required=True)
    p.add_argument("--key-file", required=True)
    p.add_argument("--cert-file")
    p.add_argument("--out-file", required=True)
    p.add_argument("--kms-key-id", required=True)
    p.add_argument("--kms-region", required=True)
    p.set_defaults(fn=cmd_pack_key)

    p = sub.add_parser("init")
    p.add_argument("--key-db", required=True)
    p.add_argument("--label", required=True)
    p.add_argument("--pin", required=True)
    p.set_defaults(fn=cmd_init)

    p = sub.add_parser("release")
    p.add_argument("--label", required=True)
    p.add_argument("--pin", required=True)
    p.set_defaults(fn=cmd_release)

    for name in ("start", "stop"):
        p = sub.add_parser(name)
        p.set_defaults(fn=cmd_enclave)

    args = ap.parse_args()
    if os.environ.get("P11CONFORM_FAKE_FAIL") == args.cmd:
        print(f"{args.cmd}: injected failure", file=sys.stderr)
        return 3
    return args.fn(args)


if __name__ == "__main__":
    raise SystemExit(main())
