from __future__ import annotations

import dataclasses
import json
import os
import sys
import threading
from pathlib import Path
from typing import Any, Optional, TextIO

from .junit import write_junit
from .ledger import Ledger, Verdict
from .matrix import Skipped

GREEN = "\033[32m"
RED = "\033[31m"
YELLOW = "\033[33m"
BOLD_RED = "\033[1;31m"
RESET = "\033[0m"


def _use_color(stream: TextIO) -> bool:
    if os.environ.get("NO_COLOR"):
        return False
    isatty = getattr(stream, "isatty", None)
    return bool(isatty and isatty())


def write_json(path: Path, obj: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(obj, sort_keys=True, indent=2) + "\n", encoding="utf-8")
    tmp.replace(path)


class Console:
    """Per-case result lines on the terminal, mirrored into the aggregate run log."""

    def __init__(self, stream: Optional[TextIO] = None, log_path: Optional[Path] = None, color: Optional[bool] = None):
        self.stream = stream if stream is not None else sys.stdout
        self.color = _use_color(self.stream) if color is None else color
        self.log_path = log_path
        self._lock = threading.Lock()
        if log_path is not None:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            log_path.write_text("", encoding="utf-8")

    def line(self, text: str, color: Optional[str] = None) -> None:
        with self._lock:
            shown = f"{color}{text}{RESET}" if (color and self.color) else text
            print(shown, file=self.stream, flush=True)
            if self.log_path is not None:
                with self.log_path.open("a", encoding="utf-8") as f:
                    f.write(text + "\n")

    def info(self, msg: str) -> None:
        self.line(f"[p11conform] {msg}")

    def error(self, msg: str) -> None:
        self.line(f"[p11conform] error: {msg}", RED)

    def verdict(self, v: Verdict) -> None:
        if v.passed:
            self.line(f"[PASS] {v.case_id}", GREEN)
            return
        color = BOLD_RED if v.failure == "negative_path" else RED
        self.line(f"[FAIL] {v.case_id} ({v.failure} at {v.step}) log: {v.log_path}", color)

    def skipped(self, s: Skipped) -> None:
        self.line(f"[SKIP] {s.family}/{s.key_label}/{s.name} ({s.reason})", YELLOW)

    def summary(self, ledger: Ledger) -> None:
        violations = ledger.violations()
        if violations:
            self.line(f"{len(violations)} negative-path violation(s): corrupted input was accepted", BOLD_RED)
            for v in violations:
                self.line(f"  {v.case_id}: {v.detail}", BOLD_RED)
        others = [v for v in ledger.failures() if v.failure != "negative_path"]
        if others:
            self.line("failed cases:")
            for v in others:
                self.line(f"  {v.case_id}: {v.failure} at {v.step}")
        self.line(ledger.summary(), RED if ledger.failed else GREEN)


def write_report(out_dir: Path, ledger: Ledger, run_id: str, meta: dict) -> dict:
    cases = [v.to_dict() for v in ledger.verdicts]
    skipped = [dataclasses.asdict(s) for s in ledger.skipped]
    report = {
        "run_id": run_id,
        "counts": ledger.counts(),
        "summary": ledger.summary(),
        "negative_path_violations": [v.case_id for v in ledger.violations()],
        "cases": cases,
        "skipped": skipped,
    }
    report.update(meta)
    write_json(out_dir / "report.json", report)
    write_junit(out_dir / "report.junit.xml", suite_name="p11conform", cases=cases, skipped=skipped)
    return report
