"""Differential test template: drive one TestCase through a subject and a reference provider.

Sign cases: both parties sign the same payload, the artifacts are compared
under the case's comparator, each party verifies the other's signature, and
both must reject the other's signature over a one-bit-corrupted payload.

Encrypt cases: both parties encrypt, the artifacts are compared under the
comparator, and every party's decryption of every ciphertext must reproduce
the payload exactly.

Every step writes to the per-case log. The first failing step ends the case;
the failure is returned as a Verdict and never raised to the caller.
"""

from __future__ import annotations

import time
from pathlib import Path
from typing import IO, List, Optional, Tuple

from .corrupt import bit_distance, corrupt
from .errors import (
    CaseFailure,
    ComparatorMismatch,
    EnvironmentFailure,
    GenerationFailure,
    NegativePathViolation,
    OperationFailure,
)
from .inputs import generate, generate_raw
from .ledger import Verdict
from .matrix import COMPARE_EQUAL, KIND_ENCRYPT, TestCase
from .providers import OpResult, Provider


def _now_ms() -> int:
    return int(time.time() * 1000)


def _failure_reason(text: str) -> str:
    """Last diagnostic line of a provider's output, with its exit status if any.

    Skips the echoed ``$ command`` line so the tool's own message wins.
    """
    lines = [ln.strip() for ln in text.splitlines() if ln.strip() and not ln.strip().startswith("$ ")]
    status = next((ln for ln in reversed(lines) if ln.startswith("exit status ")), None)
    messages = [ln for ln in lines if not ln.startswith("exit status ")]
    if messages and status:
        return f"{messages[-1]} ({status})"
    return (messages or [status or ""])[-1]


def _first_difference(a: bytes, b: bytes) -> Optional[int]:
    for i, (x, y) in enumerate(zip(a, b)):
        if x != y:
            return i
    if len(a) != len(b):
        return min(len(a), len(b))
    return None


class _Steps:
    def __init__(self, log: IO[str]):
        self.log = log

    def begin(self, title: str) -> None:
        self.log.write(f"== {title}\n")
        self.log.flush()

    def note(self, text: str) -> None:
        self.log.write(text.rstrip("\n") + "\n")

    def require(self, step: str, result: OpResult) -> None:
        self.begin(step)
        if result.output:
            self.note(result.output)
        if not result.ok:
            raise OperationFailure(step, _failure_reason(result.output) or "operation failed")
        self.note("-> ok")

    def require_reject(self, step: str, result: OpResult) -> None:
        self.begin(step)
        if result.output:
            self.note(result.output)
        if result.ok:
            raise NegativePathViolation(step, "signature accepted for corrupted input")
        self.note("-> rejected as expected")


def _generate_artifact(p: Provider, case: TestCase, src: Path, dst: Path) -> OpResult:
    if case.kind == KIND_ENCRYPT:
        return p.encrypt(case.key.label, src, dst, case.params)
    return p.sign(case.key.label, src, dst, case.params)


def _compare(steps: _Steps, case: TestCase, a: Path, b: Path) -> None:
    steps.begin(f"compare artifacts ({case.comparator})")
    if case.comparator != COMPARE_EQUAL:
        steps.note("not compared: randomized output")
        return
    ab, bb = a.read_bytes(), b.read_bytes()
    if ab != bb:
        off = _first_difference(ab, bb)
        raise ComparatorMismatch(
            "compare artifacts",
            f"subject ({len(ab)} bytes) and reference ({len(bb)} bytes) differ at offset {off}",
        )
    steps.note(f"-> identical ({len(ab)} bytes)")


def _cross_verify(steps: _Steps, case: TestCase, subject: Provider, reference: Provider,
                  payload: Path, corrupted: Optional[Path], a: Path, b: Path) -> None:
    label, params = case.key.label, case.params
    steps.require("reference verify subject signature", reference.verify(label, payload, a, params))
    steps.require("subject verify reference signature", subject.verify(label, payload, b, params))
    if corrupted is None:
        steps.begin("negative path")
        steps.note("skipped: empty payload")
        return
    steps.require_reject("reference verify subject signature over corrupted input",
                         reference.verify(label, corrupted, a, params))
    steps.require_reject("subject verify reference signature over corrupted input",
                         subject.verify(label, corrupted, b, params))


def _round_trip(steps: _Steps, case: TestCase, subject: Provider, reference: Provider,
                payload: Path, a: Path, b: Path, case_dir: Path) -> None:
    label, params = case.key.label, case.params
    expected = payload.read_bytes()
    pairs: List[Tuple[Provider, str, Path]] = [
        (subject, "subject", a),
        (reference, "subject", a),
        (subject, "reference", b),
        (reference, "reference", b),
    ]
    for p, owner, ct in pairs:
        step = f"{p.name} decrypt {owner} ciphertext"
        out = case_dir / f"{owner}.enc.{p.name}.dec"
        steps.require(step, p.decrypt(label, ct, out, params))
        got = out.read_bytes()
        if got != expected:
            raise ComparatorMismatch(
                step,
                f"plaintext differs from input ({len(got)} vs {len(expected)} bytes, "
                f"first difference at offset {_first_difference(got, expected)})",
            )


def _execute(case: TestCase, subject: Provider, reference: Provider, case_dir: Path, steps: _Steps) -> None:
    payload = case_dir / "input.bin"
    ext = "enc" if case.kind == KIND_ENCRYPT else "sig"
    a = case_dir / f"subject.{ext}"
    b = case_dir / f"reference.{ext}"

    steps.begin(f"generate input ({case.size} bytes, seed {case.seed})")
    (generate_raw if case.raw_input else generate)(payload, case.size, case.seed)

    corrupted: Optional[Path] = None
    if case.size > 0:
        start, end = case.bit_range
        steps.begin(f"corrupt input (bit range [{start}, {end}))")
        corrupted = corrupt(payload, case.seed, start, end, case_dir / "input.corrupt.bin")
        original, bad = payload.read_bytes(), corrupted.read_bytes()
        if bad == original or bit_distance(original, bad) != 1:
            raise GenerationFailure("corrupt input", "corrupted payload does not differ in exactly one bit")
    else:
        steps.begin("corrupt input")
        steps.note("skipped: empty payload has no bit to flip")

    steps.require(f"subject {case.kind}", _generate_artifact(subject, case, payload, a))
    steps.require(f"reference {case.kind}", _generate_artifact(reference, case, payload, b))
    _compare(steps, case, a, b)

    if case.kind == KIND_ENCRYPT:
        _round_trip(steps, case, subject, reference, payload, a, b, case_dir)
    else:
        _cross_verify(steps, case, subject, reference, payload, corrupted, a, b)


def run_case(case: TestCase, subject: Provider, reference: Provider, case_dir: Path) -> Verdict:
    t0 = _now_ms()
    log_path = case_dir / "case.log"
    try:
        case_dir.mkdir(parents=True, exist_ok=True)
        log = log_path.open("w", encoding="utf-8")
    except OSError as e:
        raise EnvironmentFailure(f"cannot create case directory {case_dir}: {e}") from e

    def verdict(passed: bool, err: Optional[CaseFailure] = None) -> Verdict:
        return Verdict(
            name=case.name,
            family=case.family,
            key_label=case.key.label,
            passed=passed,
            log_path=str(log_path),
            failure=err.failure_kind if err else None,
            step=err.step if err else None,
            detail=err.message if err else "",
            duration_ms=_now_ms() - t0,
        )

    with log:
        log.write(f"case {case.family}/{case.key.label}/{case.name}\n")
        log.write(f"key {case.key.describe()} params {case.params.to_dict()} comparator {case.comparator}\n")
        steps = _Steps(log)
        try:
            _execute(case, subject, reference, case_dir, steps)
        except CaseFailure as e:
            log.write(f"FAILED [{e.failure_kind}] {e}\n")
            return verdict(False, e)
        except OSError as e:
            # Artifacts that vanished or could not be read back.
            err = OperationFailure("read artifacts", str(e))
            log.write(f"FAILED [{err.failure_kind}] {err}\n")
            return verdict(False, err)
        log.write("PASSED\n")
    return verdict(True)
