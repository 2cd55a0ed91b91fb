import contextlib
import functools
import io
import json
import os
import shlex
import sys
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

ROOT = Path(__file__).resolve().parent
sys.path.insert(0, str(ROOT))

from p11conform import runner
from p11conform.adapters import fake_p11ne
from p11conform.lib.orchestrator import run_suites
from p11conform.lib.providers import ReferenceProvider
from support import Wrapped

FAKE = shlex.join([sys.executable, str(Path(fake_p11ne.__file__).resolve())])

MATRIX = """\
keys:
  - {label: rsa1024, type: rsa, bits: 1024}
families: [rsa_pkcs, rsa_x509]
digests: [sha256]
sign_sizes: [8]
"""


class RunnerTests(unittest.TestCase):
    def setUp(self):
        self._td = tempfile.TemporaryDirectory()
        self.tmp = Path(self._td.name)
        self.state = self.tmp / "state"
        self.out = self.tmp / "out"
        self.matrix = self.tmp / "matrix.yaml"
        self.matrix.write_text(MATRIX, encoding="utf-8")
        self._env = patch.dict(os.environ, {
            "P11CONFORM_FAKE_STATE": str(self.state),
            "P11CONFORM_PROVISION_CMD": FAKE,
            "P11CONFORM_ENCLAVE_CMD": FAKE,
            "P11CONFORM_PIN": "2468",
            "P11CONFORM_TOOL_TIMEOUT_SECS": "60",
        })
        self._env.start()
        for name in ("P11CONFORM_FAKE_FAIL", "P11CONFORM_OPENSSL", "P11CONFORM_RESTART_ENCLAVE"):
            os.environ.pop(name, None)

    def tearDown(self):
        self._env.stop()
        self._td.cleanup()

    def _main(self, *argv):
        stdout, stderr = io.StringIO(), io.StringIO()
        with contextlib.redirect_stdout(stdout), contextlib.redirect_stderr(stderr):
            try:
                rc = runner.main(list(argv))
            except SystemExit as e:
                rc = e.code
        return rc, stdout.getvalue(), stderr.getvalue()

    def _openssl(self, *extra):
        return self._main(
            "openssl", "--kms-key-id", "key-1", "--kms-region", "eu-west-1",
            "--matrix", str(self.matrix), "--out", str(self.out), "--run-id", "t1", *extra,
        )

    def _report(self):
        return json.loads((self.out / "report.json").read_text(encoding="utf-8"))

    # Invalid parameters

    def test_missing_kms_arguments(self):
        rc, _, err = self._main("openssl", "--kms-region", "eu-west-1")
        self.assertEqual(rc, 1)
        self.assertIn("--kms-key-id", err)

    def test_no_subcommand(self):
        self.assertEqual(self._main()[0], 1)

    def test_empty_kms_key_id(self):
        rc, _, _ = self._main("openssl", "--kms-key-id", " ", "--kms-region", "r")
        self.assertEqual(rc, 1)

    def test_bad_jobs(self):
        rc, _, err = self._openssl("--jobs", "0")
        self.assertEqual(rc, 1)
        self.assertIn("--jobs", err)
        self.assertFalse(self.out.exists())

    def test_invalid_matrix(self):
        self.matrix.write_text("keys:\n  - {label: x, type: dsa}\n", encoding="utf-8")
        self.assertEqual(self._openssl()[0], 1)

    def test_unknown_key_label(self):
        rc, _, err = self._main("matrix", "--key", "rsa9999")
        self.assertEqual(rc, 1)
        self.assertIn("rsa9999", err)

    # matrix

    def test_matrix_text(self):
        rc, out, _ = self._main("matrix", "--key", "rsa1024")
        self.assertEqual(rc, 0)
        self.assertIn("rsa_x509/rsa1024/x509_128 size=128 comparator=byte_equal", out)
        self.assertIn("[SKIP] rsa_encrypt/rsa1024/encrypt_pkcs1_128", out)

    def test_matrix_json(self):
        rc, out, _ = self._main("matrix", "--matrix", str(self.matrix), "--json")
        self.assertEqual(rc, 0)
        doc = json.loads(out)
        self.assertEqual([c["name"] for c in doc["cases"]], ["sign_sha256_8", "x509_128"])
        self.assertEqual(doc["skipped"], [])

    # openssl

    def test_run_with_token_backed_subject(self):
        tokens = self.state / "tokens"
        patched = functools.partial(
            run_suites, subject_factory=lambda s, d: Wrapped(ReferenceProvider(tokens)),
        )
        with patch("p11conform.runner.run_suites", patched):
            rc, out, _ = self._openssl()
        self.assertEqual(rc, 0, out)
        self.assertIn("2 tests passed, 0 tests failed", out)

        report = self._report()
        self.assertEqual(report["run_id"], "t1")
        self.assertIsNone(report["aborted"])
        self.assertEqual(report["counts"]["pass"], 2)
        self.assertNotIn("pin", report["settings"])

        manifest = json.loads((self.out / "manifest.json").read_text(encoding="utf-8"))
        paths = {f["path"] for f in manifest["files"]}
        self.assertIn("rsa_x509/rsa1024/x509_128/subject.sig", paths)
        self.assertTrue((self.out / "report.junit.xml").exists())
        self.assertIn("[PASS] rsa_pkcs/rsa1024/sign_sha256_8", (self.out / "run.log").read_text(encoding="utf-8"))

    def test_unusable_openssl_fails_every_case(self):
        os.environ["P11CONFORM_OPENSSL"] = str(self.tmp / "no-openssl")
        rc, out, _ = self._openssl("--no-enclave-restart")
        self.assertEqual(rc, 2)
        report = self._report()
        self.assertEqual((report["counts"]["pass"], report["counts"]["fail"]), (0, 2))
        self.assertEqual(report["counts"]["operation"], 2)
        self.assertEqual({c["step"] for c in report["cases"]}, {"subject sign"})
        for c in report["cases"]:
            self.assertTrue(c["detail"].startswith("spawn failed:"), c["detail"])
        self.assertFalse(report["settings"]["restart_enclave"])
        # Tokens were still released.
        self.assertEqual(list((self.state / "tokens").iterdir()), [])
        self.assertIn("0 tests passed, 2 tests failed", out)

    def test_provisioning_failure_aborts_with_partial_report(self):
        os.environ["P11CONFORM_FAKE_FAIL"] = "pack-key"
        rc, out, _ = self._openssl()
        self.assertEqual(rc, 2)
        report = self._report()
        self.assertIn("injected failure", report["aborted"])
        self.assertEqual(report["cases"], [])
        self.assertIn("environment failure, run aborted", out)
        self.assertTrue((self.out / "manifest.json").exists())

    def test_release_failure_still_reports_finished_cases(self):
        os.environ["P11CONFORM_OPENSSL"] = str(self.tmp / "no-openssl")
        os.environ["P11CONFORM_FAKE_FAIL"] = "release"
        rc, out, _ = self._openssl()
        self.assertEqual(rc, 2)
        report = self._report()
        self.assertIn("injected failure", report["aborted"])
        self.assertEqual([c["id"] for c in report["cases"]],
                         ["rsa_pkcs/rsa1024/sign_sha256_8", "rsa_x509/rsa1024/x509_128"])
        self.assertEqual(report["counts"]["fail"], 2)
        self.assertIn("0 tests passed, 2 tests failed", out)

    def test_token_init_failure_keeps_pin_out_of_report(self):
        os.environ["P11CONFORM_FAKE_FAIL"] = "init"
        os.environ["P11CONFORM_PIN"] = "s3cr3t-pin"
        rc, out, _ = self._openssl()
        self.assertEqual(rc, 2)
        aborted = self._report()["aborted"]
        self.assertIn("--pin", aborted)
        self.assertNotIn("s3cr3t-pin", aborted)
        self.assertNotIn("s3cr3t-pin", out)


if __name__ == "__main__":
    unittest.main()
