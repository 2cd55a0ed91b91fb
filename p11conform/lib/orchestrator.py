from __future__ import annotations

import shutil
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from .algorithms import KeyUnderTest
from .errors import EnvironmentFailure
from .ledger import Ledger
from .matrix import Matrix, TestCase, expand_key
from .policy import Settings
from .provision import EnclaveLifecycle, KeyProvisioner
from .providers import Provider, ReferenceProvider, SubjectProvider
from .report import Console
from .template import run_case

# (settings, key material dir) -> provider
ProviderFactory = Callable[[Settings, Path], Provider]


def subject_provider(settings: Settings, key_dir: Path) -> Provider:
    return SubjectProvider(settings)


def reference_provider(settings: Settings, key_dir: Path) -> Provider:
    return ReferenceProvider(key_dir)


def _reset_dir(path: Path) -> None:
    try:
        if path.exists():
            shutil.rmtree(path)
        path.mkdir(parents=True)
    except OSError as e:
        raise EnvironmentFailure(f"cannot prepare {path}: {e}") from e


def run_key_suite(
    key: KeyUnderTest,
    cases: List[TestCase],
    object_id: str,
    settings: Settings,
    provisioner: KeyProvisioner,
    results_dir: Path,
    work_dir: Path,
    console: Console,
    subject_factory: ProviderFactory,
    reference_factory: ProviderFactory,
    ledger: Optional[Ledger] = None,
) -> Ledger:
    """Provision ``key``, run its cases in order, release it.

    Verdicts go into ``ledger`` as each case finishes, so they survive a
    failed release.
    """
    ledger = ledger if ledger is not None else Ledger()
    if not cases:
        console.info(f"{key.label}: no cases selected")
        return ledger
    console.info(f"{key.label}: provisioning {key.describe()} ({len(cases)} cases)")
    with provisioner.provisioned(key, work_dir, object_id):
        subject = subject_factory(settings, work_dir)
        reference = reference_factory(settings, work_dir)
        for case in cases:
            v = run_case(case, subject, reference, results_dir / case.family / key.label / case.name)
            ledger.record(v)
            console.verdict(v)
    console.info(f"{key.label}: released ({ledger.summary()})")
    return ledger


def run_suites(
    matrix: Matrix,
    settings: Settings,
    out_dir: Path,
    provisioner: KeyProvisioner,
    console: Console,
    ledger: Optional[Ledger] = None,
    enclave: Optional[EnclaveLifecycle] = None,
    subject_factory: ProviderFactory = subject_provider,
    reference_factory: ProviderFactory = reference_provider,
    jobs: int = 1,
) -> Ledger:
    """Run every key's sub-suite and return the ledger.

    Sub-suites run in key-list order. With ``jobs > 1`` different keys run
    concurrently, each into its own ledger, merged back in key-list order;
    cases of one key always run one after another.
    """
    ledger = ledger if ledger is not None else Ledger()
    results_dir = out_dir / "results"
    work_dir = out_dir / "provision"
    _reset_dir(results_dir)
    _reset_dir(work_dir)

    if enclave is not None:
        console.info("restarting enclave")
        enclave.restart()

    plan = []
    for i, key in enumerate(matrix.keys):
        cases, skipped = expand_key(key, matrix, settings.seed)
        for s in skipped:
            console.skipped(s)
            ledger.skip(s)
        plan.append((key, cases, f"{i + 1:02x}"))

    def suite(item) -> Tuple[Ledger, Optional[EnvironmentFailure]]:
        key, cases, object_id = item
        partial = Ledger()
        try:
            run_key_suite(
                key, cases, object_id, settings, provisioner, results_dir, work_dir,
                console, subject_factory, reference_factory, partial,
            )
        except EnvironmentFailure as e:
            return partial, e
        return partial, None

    if jobs <= 1:
        for item in plan:
            partial, err = suite(item)
            ledger.merge(partial)
            if err is not None:
                raise err
        return ledger

    first_error: Optional[EnvironmentFailure] = None
    with ThreadPoolExecutor(max_workers=jobs) as ex:
        futures = [ex.submit(suite, item) for item in plan]
        for f in futures:
            partial, err = f.result()
            ledger.merge(partial)
            if err is not None and first_error is None:
                first_error = err
    if first_error is not None:
        raise first_error
    return ledger
