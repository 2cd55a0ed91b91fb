"""Test-matrix configuration and expansion.

A matrix is the outer product of key x family x digest x payload size (x PSS
salt length, x encryption padding). Combinations the key cannot support are
dropped with a reason instead of being run; the limits are computed from the
modulus size and digest length so any key size works.
"""

from __future__ import annotations

import copy
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import jsonschema
import yaml
from jsonschema import Draft202012Validator

from .algorithms import (
    ECDSA,
    PAD_OAEP,
    PAD_PKCS1,
    PAD_PSS,
    PAD_RAW,
    RSA,
    AlgorithmParams,
    KeyUnderTest,
    digest_size,
    encrypt_capacity,
    pss_em_len,
    pss_feasible,
)
from .inputs import case_seed

SCHEMA_PATH = Path(__file__).resolve().parent.parent / "matrix.schema.json"

KIND_SIGN = "sign"
KIND_ENCRYPT = "encrypt"

# Comparator policies for the (subject, reference) artifact pair.
COMPARE_EQUAL = "byte_equal"
COMPARE_IGNORE = "ignore"

# family -> (key family, kind); dict order is the expansion order
FAMILIES = {
    "rsa_pkcs": (RSA, KIND_SIGN),
    "rsa_pss": (RSA, KIND_SIGN),
    "rsa_x509": (RSA, KIND_SIGN),
    "rsa_encrypt": (RSA, KIND_ENCRYPT),
    "rsa_x509_encrypt": (RSA, KIND_ENCRYPT),
    "ecdsa": (ECDSA, KIND_SIGN),
}

DEFAULT_MATRIX: Dict[str, Any] = {
    "keys": [
        {"label": "rsa1024", "type": "rsa", "bits": 1024},
        {"label": "rsa2048", "type": "rsa", "bits": 2048},
        {"label": "rsa4096", "type": "rsa", "bits": 4096},
        {"label": "ec-prime256v1", "type": "ecdsa", "curve": "prime256v1"},
        {"label": "ec-secp384r1", "type": "ecdsa", "curve": "secp384r1"},
        {"label": "ec-secp521r1", "type": "ecdsa", "curve": "secp521r1"},
    ],
    "families": list(FAMILIES),
    "digests": ["sha1", "sha224", "sha256", "sha384", "sha512"],
    "sign_sizes": [0, 1, 32, 64, 256, 1024, 4097],
    "pss_salt_lengths": [0, 20, 32, 64],
    "encrypt_sizes": [0, 1, 32, 64, 100, 128, 190, 256],
    "encrypt_paddings": ["pkcs1", "oaep"],
    "oaep_digests": ["sha1", "sha256"],
}


class MatrixError(ValueError):
    pass


@dataclass(frozen=True)
class TestCase:
    __test__ = False  # not a pytest class

    name: str
    family: str
    key: KeyUnderTest
    size: int
    params: AlgorithmParams
    comparator: str
    kind: str = KIND_SIGN
    raw_input: bool = False
    seed: int = 0

    @property
    def bit_range(self) -> Tuple[int, int]:
        # Raw payloads keep their fixed leading byte intact.
        start = 8 if self.raw_input else 0
        return start, self.size * 8

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "family": self.family,
            "key": self.key.label,
            "size": self.size,
            "params": self.params.to_dict(),
            "comparator": self.comparator,
            "kind": self.kind,
        }


@dataclass(frozen=True)
class Skipped:
    key_label: str
    family: str
    name: str
    reason: str


@dataclass
class Matrix:
    keys: List[KeyUnderTest]
    families: List[str] = field(default_factory=lambda: list(FAMILIES))
    digests: List[str] = field(default_factory=lambda: list(DEFAULT_MATRIX["digests"]))
    sign_sizes: List[int] = field(default_factory=lambda: list(DEFAULT_MATRIX["sign_sizes"]))
    pss_salt_lengths: List[int] = field(default_factory=lambda: list(DEFAULT_MATRIX["pss_salt_lengths"]))
    encrypt_sizes: List[int] = field(default_factory=lambda: list(DEFAULT_MATRIX["encrypt_sizes"]))
    encrypt_paddings: List[str] = field(default_factory=lambda: list(DEFAULT_MATRIX["encrypt_paddings"]))
    oaep_digests: List[str] = field(default_factory=lambda: list(DEFAULT_MATRIX["oaep_digests"]))

    @staticmethod
    def from_dict(doc: Dict[str, Any]) -> "Matrix":
        validate_matrix(doc)
        keys = []
        seen = set()
        for k in doc["keys"]:
            if k["label"] in seen:
                raise MatrixError(f"duplicate key label: {k['label']}")
            seen.add(k["label"])
            keys.append(KeyUnderTest(label=k["label"], family=k["type"], bits=k.get("bits"), curve=k.get("curve")))
        merged = copy.deepcopy(DEFAULT_MATRIX)
        merged.update({k: v for k, v in doc.items() if k != "keys"})
        return Matrix(
            keys=keys,
            families=list(merged["families"]),
            digests=list(merged["digests"]),
            sign_sizes=list(merged["sign_sizes"]),
            pss_salt_lengths=list(merged["pss_salt_lengths"]),
            encrypt_sizes=list(merged["encrypt_sizes"]),
            encrypt_paddings=list(merged["encrypt_paddings"]),
            oaep_digests=list(merged["oaep_digests"]),
        )

    def select(self, labels: Optional[Sequence[str]]) -> "Matrix":
        if not labels:
            return self
        known = {k.label for k in self.keys}
        unknown = [label for label in labels if label not in known]
        if unknown:
            raise MatrixError(f"unknown key label(s): {', '.join(unknown)}")
        out = copy.copy(self)
        out.keys = [k for k in self.keys if k.label in labels]
        return out


def validate_matrix(doc: Any) -> None:
    schema = json.loads(SCHEMA_PATH.read_text(encoding="utf-8"))
    try:
        Draft202012Validator(schema).validate(doc)
    except jsonschema.ValidationError as e:
        where = "/".join(str(p) for p in e.absolute_path) or "<root>"
        raise MatrixError(f"invalid matrix at {where}: {e.message}") from None


def load_matrix(path: Optional[Path] = None) -> Matrix:
    if path is None:
        return Matrix.from_dict(copy.deepcopy(DEFAULT_MATRIX))
    try:
        doc = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
    except OSError as e:
        raise MatrixError(f"cannot read matrix {path}: {e}") from None
    except yaml.YAMLError as e:
        raise MatrixError(f"matrix {path} is not valid YAML: {e}") from None
    return Matrix.from_dict(doc)


def _sign_cases(key: KeyUnderTest, family: str, m: Matrix) -> Tuple[List[tuple], List[Skipped]]:
    out: List[tuple] = []
    skipped: List[Skipped] = []
    if family == "rsa_pkcs":
        for digest in m.digests:
            for size in m.sign_sizes:
                out.append((f"sign_{digest}_{size}", size, AlgorithmParams(PAD_PKCS1, digest), COMPARE_EQUAL, False))
    elif family == "rsa_pss":
        for digest in m.digests:
            for salt in m.pss_salt_lengths:
                names = [f"pss_{digest}_salt{salt}_{size}" for size in m.sign_sizes]
                if not pss_feasible(key.bits, digest, salt):
                    reason = (
                        f"{digest} ({digest_size(digest)} bytes) + salt {salt} + 2 exceeds "
                        f"PSS capacity {pss_em_len(key.bits)} of {key.describe()}"
                    )
                    skipped.extend(Skipped(key.label, family, n, reason) for n in names)
                    continue
                # A zero-length salt makes PSS deterministic.
                cmp = COMPARE_EQUAL if salt == 0 else COMPARE_IGNORE
                for name, size in zip(names, m.sign_sizes):
                    out.append((name, size, AlgorithmParams(PAD_PSS, digest, salt), cmp, False))
    elif family == "rsa_x509":
        size = key.modulus_bytes
        out.append((f"x509_{size}", size, AlgorithmParams(PAD_RAW), COMPARE_EQUAL, True))
    elif family == "ecdsa":
        for digest in m.digests:
            for size in m.sign_sizes:
                out.append((f"ecdsa_{digest}_{size}", size, AlgorithmParams(None, digest), COMPARE_IGNORE, False))
    return out, skipped


def _encrypt_cases(key: KeyUnderTest, family: str, m: Matrix) -> Tuple[List[tuple], List[Skipped]]:
    out: List[tuple] = []
    skipped: List[Skipped] = []
    if family == "rsa_x509_encrypt":
        size = key.modulus_bytes
        out.append((f"x509_encrypt_{size}", size, AlgorithmParams(PAD_RAW), COMPARE_EQUAL, True))
        return out, skipped

    variants: List[Tuple[str, AlgorithmParams]] = []
    for pad in m.encrypt_paddings:
        if pad == PAD_OAEP:
            for md in m.oaep_digests:
                variants.append((f"oaep_{md}", AlgorithmParams(PAD_OAEP, oaep_digest=md)))
        else:
            variants.append(("pkcs1", AlgorithmParams(PAD_PKCS1)))
    for tag, params in variants:
        cap = encrypt_capacity(key.bits, params.padding, params.oaep_digest)
        for size in m.encrypt_sizes:
            name = f"encrypt_{tag}_{size}"
            if size > cap:
                reason = f"{size} bytes exceeds {tag} plaintext capacity {cap} of {key.describe()}"
                skipped.append(Skipped(key.label, family, name, reason))
                continue
            out.append((name, size, params, COMPARE_IGNORE, False))
    return out, skipped


def expand_key(key: KeyUnderTest, m: Matrix, run_seed: int = 1) -> Tuple[List[TestCase], List[Skipped]]:
    cases: List[TestCase] = []
    skipped: List[Skipped] = []
    for family, (key_family, kind) in FAMILIES.items():
        if family not in m.families or key_family != key.family:
            continue
        if kind == KIND_SIGN:
            rows, skip = _sign_cases(key, family, m)
        else:
            rows, skip = _encrypt_cases(key, family, m)
        skipped.extend(skip)
        for name, size, params, cmp, raw in rows:
            cases.append(TestCase(
                name=name,
                family=family,
                key=key,
                size=size,
                params=params,
                comparator=cmp,
                kind=kind,
                raw_input=raw,
                seed=case_seed(run_seed, f"{key.label}/{family}/{name}"),
            ))
    return cases, skipped


def expand(m: Matrix, run_seed: int = 1) -> Tuple[List[TestCase], List[Skipped]]:
    cases: List[TestCase] = []
    skipped: List[Skipped] = []
    for key in m.keys:
        c, s = expand_key(key, m, run_seed)
        cases.extend(c)
        skipped.extend(s)
    return cases, skipped
