import sys
import tempfile
import unittest
from pathlib import Path

ROOT = Path(__file__).resolve().parent
sys.path.insert(0, str(ROOT))

from p11conform.lib.algorithms import PAD_OAEP, PAD_PKCS1, PAD_RAW, encrypt_capacity, pss_feasible
from p11conform.lib.matrix import (
    COMPARE_EQUAL,
    COMPARE_IGNORE,
    KIND_ENCRYPT,
    Matrix,
    MatrixError,
    expand,
    expand_key,
    load_matrix,
)
from support import P256, RSA1024, RSA2048, RSA4096


def _by_name(cases):
    return {c.name: c for c in cases}


class CapacityTests(unittest.TestCase):
    def test_pss_boundary_is_computed(self):
        # emLen for 1024 bits is 128: 64 + 62 + 2 fits, 64 + 63 + 2 does not.
        self.assertTrue(pss_feasible(1024, "sha512", 62))
        self.assertFalse(pss_feasible(1024, "sha512", 63))
        self.assertFalse(pss_feasible(1024, "sha512", 64))
        self.assertTrue(pss_feasible(2048, "sha512", 64))

    def test_pss_em_len_uses_modbits_minus_one(self):
        # 1025-bit modulus: emLen = ceil(1024 / 8) = 128
        self.assertTrue(pss_feasible(1025, "sha256", 94))
        self.assertFalse(pss_feasible(1025, "sha256", 95))

    def test_encrypt_capacity(self):
        self.assertEqual(encrypt_capacity(1024, PAD_PKCS1), 117)
        self.assertEqual(encrypt_capacity(2048, PAD_OAEP, "sha1"), 214)
        self.assertEqual(encrypt_capacity(2048, PAD_OAEP, "sha256"), 190)
        self.assertEqual(encrypt_capacity(4096, PAD_RAW), 512)


class ExpansionTests(unittest.TestCase):
    def test_rsa1024_encrypt_128_is_skipped(self):
        m = Matrix(keys=[RSA1024])
        cases, skipped = expand_key(RSA1024, m)
        names = _by_name(cases)
        self.assertNotIn("encrypt_pkcs1_128", names)
        self.assertIn("encrypt_pkcs1_100", names)
        self.assertIn("encrypt_pkcs1_128", {s.name for s in skipped})

    def test_rsa1024_pss_sha512_salt64_is_skipped(self):
        m = Matrix(keys=[RSA1024])
        cases, skipped = expand_key(RSA1024, m)
        self.assertFalse([c for c in cases if c.name.startswith("pss_sha512_salt64_")])
        reasons = [s.reason for s in skipped if s.name.startswith("pss_sha512_salt64_")]
        self.assertEqual(len(reasons), len(m.sign_sizes))
        self.assertIn("PSS capacity 128", reasons[0])

    def test_rsa2048_keeps_pss_sha512_salt64(self):
        cases, _ = expand_key(RSA2048, Matrix(keys=[RSA2048]))
        self.assertIn("pss_sha512_salt64_256", _by_name(cases))

    def test_raw_cases_use_modulus_length(self):
        cases, _ = expand_key(RSA4096, Matrix(keys=[RSA4096]))
        raw = [c for c in cases if c.params.padding == PAD_RAW]
        self.assertEqual([c.name for c in raw], ["x509_512", "x509_encrypt_512"])
        for c in raw:
            self.assertEqual(c.size, 512)
            self.assertTrue(c.raw_input)
            self.assertEqual(c.bit_range, (8, 4096))
            self.assertEqual(c.comparator, COMPARE_EQUAL)

    def test_comparator_policy(self):
        cases = _by_name(expand_key(RSA2048, Matrix(keys=[RSA2048]))[0])
        self.assertEqual(cases["sign_sha256_256"].comparator, COMPARE_EQUAL)
        self.assertEqual(cases["pss_sha256_salt0_256"].comparator, COMPARE_EQUAL)
        self.assertEqual(cases["pss_sha256_salt32_256"].comparator, COMPARE_IGNORE)
        self.assertEqual(cases["encrypt_oaep_sha256_64"].comparator, COMPARE_IGNORE)
        self.assertEqual(cases["encrypt_oaep_sha256_64"].kind, KIND_ENCRYPT)
        ec = _by_name(expand_key(P256, Matrix(keys=[P256]))[0])
        self.assertEqual(ec["ecdsa_sha256_32"].comparator, COMPARE_IGNORE)

    def test_ec_keys_only_get_ecdsa(self):
        cases, skipped = expand_key(P256, Matrix(keys=[P256]))
        self.assertEqual({c.family for c in cases}, {"ecdsa"})
        self.assertEqual(skipped, [])

    def test_enumeration_order_and_seeds(self):
        m = Matrix(keys=[RSA1024, P256], families=["rsa_pkcs", "ecdsa"], digests=["sha256"], sign_sizes=[0, 32])
        cases, _ = expand(m, run_seed=5)
        self.assertEqual(
            [(c.key.label, c.name) for c in cases],
            [("rsa1024", "sign_sha256_0"), ("rsa1024", "sign_sha256_32"),
             ("ec-prime256v1", "ecdsa_sha256_0"), ("ec-prime256v1", "ecdsa_sha256_32")],
        )
        again, _ = expand(m, run_seed=5)
        self.assertEqual([c.seed for c in cases], [c.seed for c in again])
        self.assertEqual(len({c.seed for c in cases}), 4)


class LoadMatrixTests(unittest.TestCase):
    def setUp(self):
        self._td = tempfile.TemporaryDirectory()
        self.tmp = Path(self._td.name)

    def tearDown(self):
        self._td.cleanup()

    def _write(self, text: str) -> Path:
        p = self.tmp / "matrix.yaml"
        p.write_text(text, encoding="utf-8")
        return p

    def test_default_matrix_loads(self):
        m = load_matrix()
        self.assertIn("rsa2048", [k.label for k in m.keys])
        self.assertEqual(m.keys[0].modulus_bytes, 128)

    def test_yaml_overrides_defaults(self):
        m = load_matrix(self._write(
            "keys:\n"
            "  - {label: small, type: rsa, bits: 1024}\n"
            "digests: [sha256]\n"
            "sign_sizes: [0, 16]\n"
        ))
        self.assertEqual([k.label for k in m.keys], ["small"])
        self.assertEqual(m.digests, ["sha256"])
        self.assertEqual(m.pss_salt_lengths, [0, 20, 32, 64])

    def test_rsa_key_without_bits_is_rejected(self):
        with self.assertRaises(MatrixError) as cm:
            load_matrix(self._write("keys:\n  - {label: bad, type: rsa}\n"))
        self.assertIn("keys/0", str(cm.exception))

    def test_rsa_below_1024_bits_is_rejected(self):
        with self.assertRaises(MatrixError) as cm:
            load_matrix(self._write("keys:\n  - {label: tiny, type: rsa, bits: 512}\n"))
        self.assertIn("keys/0/bits", str(cm.exception))

    def test_smallest_rsa_key_signs_every_digest(self):
        # sha512 DigestInfo (83 bytes) + 11 fits the 128-byte modulus.
        m = load_matrix(self._write(
            "keys:\n"
            "  - {label: small, type: rsa, bits: 1024}\n"
            "families: [rsa_pkcs]\n"
            "sign_sizes: [16]\n"
        ))
        cases, skipped = expand(m)
        self.assertEqual([c.name for c in cases],
                         [f"sign_{d}_16" for d in ("sha1", "sha224", "sha256", "sha384", "sha512")])
        self.assertEqual(skipped, [])

    def test_unknown_digest_is_rejected(self):
        with self.assertRaises(MatrixError):
            load_matrix(self._write("keys:\n  - {label: k, type: ecdsa, curve: prime256v1}\ndigests: [md5]\n"))

    def test_duplicate_labels_are_rejected(self):
        with self.assertRaises(MatrixError):
            load_matrix(self._write(
                "keys:\n"
                "  - {label: k, type: rsa, bits: 2048}\n"
                "  - {label: k, type: rsa, bits: 1024}\n"
            ))

    def test_bad_yaml_is_rejected(self):
        with self.assertRaises(MatrixError):
            load_matrix(self._write("keys: [\n"))

    def test_select_unknown_label(self):
        m = load_matrix()
        self.assertEqual([k.label for k in m.select(["rsa2048"]).keys], ["rsa2048"])
        with self.assertRaises(MatrixError):
            m.select(["nope"])


if __name__ == "__main__":
    unittest.main()
