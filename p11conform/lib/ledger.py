from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .matrix import Skipped

EXIT_OK = 0
EXIT_INVALID_PARAMS = 1
EXIT_TESTS_FAILED = 2

FAILURE_KINDS = ("generation", "operation", "mismatch", "negative_path")


@dataclass(frozen=True)
class Verdict:
    name: str
    family: str
    key_label: str
    passed: bool
    log_path: str
    failure: Optional[str] = None
    step: Optional[str] = None
    detail: str = ""
    duration_ms: int = 0

    @property
    def case_id(self) -> str:
        return f"{self.family}/{self.key_label}/{self.name}"

    def to_dict(self) -> dict:
        return {
            "id": self.case_id,
            "name": self.name,
            "family": self.family,
            "key": self.key_label,
            "status": "passed" if self.passed else "failed",
            "failure": self.failure,
            "step": self.step,
            "detail": self.detail,
            "log": self.log_path,
            "duration_ms": self.duration_ms,
        }


@dataclass
class Ledger:
    verdicts: List[Verdict] = field(default_factory=list)
    skipped: List[Skipped] = field(default_factory=list)
    passed: int = 0
    failed: int = 0

    def record(self, v: Verdict) -> None:
        self.verdicts.append(v)
        if v.passed:
            self.passed += 1
        else:
            self.failed += 1

    def skip(self, s: Skipped) -> None:
        self.skipped.append(s)

    def merge(self, other: "Ledger") -> None:
        for v in other.verdicts:
            self.record(v)
        self.skipped.extend(other.skipped)

    def counts(self) -> Dict[str, int]:
        out = {"pass": self.passed, "fail": self.failed, "skip": len(self.skipped)}
        for kind in FAILURE_KINDS:
            out[kind] = sum(1 for v in self.verdicts if v.failure == kind)
        return out

    def failures(self) -> List[Verdict]:
        return [v for v in self.verdicts if not v.passed]

    def violations(self) -> List[Verdict]:
        return [v for v in self.verdicts if v.failure == "negative_path"]

    def summary(self) -> str:
        return f"{self.passed} tests passed, {self.failed} tests failed"

    def exit_code(self) -> int:
        return EXIT_TESTS_FAILED if self.failed else EXIT_OK
