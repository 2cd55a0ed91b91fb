from __future__ import annotations

import re
import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa

from .algorithms import PAD_OAEP, PAD_PSS, PAD_RAW, AlgorithmParams, hash_algorithm
from .policy import Settings


@dataclass(frozen=True)
class OpResult:
    ok: bool
    output: str = ""


class Provider:
    """Sign/Verify/Encrypt/Decrypt over files, keyed by key label.

    Every operation returns an OpResult; a rejected signature is ``ok=False``.
    """

    name = "provider"

    def sign(self, label: str, in_path: Path, out_path: Path, params: AlgorithmParams) -> OpResult:
        raise NotImplementedError

    def verify(self, label: str, in_path: Path, sig_path: Path, params: AlgorithmParams) -> OpResult:
        raise NotImplementedError

    def encrypt(self, label: str, in_path: Path, out_path: Path, params: AlgorithmParams) -> OpResult:
        raise NotImplementedError

    def decrypt(self, label: str, in_path: Path, out_path: Path, params: AlgorithmParams) -> OpResult:
        raise NotImplementedError


# ---------------------------------------------------------------------------
# Reference: key material on local disk, no token involved.
# ---------------------------------------------------------------------------

_REFERENCE_ERRORS = (OSError, ValueError, TypeError, UnsupportedAlgorithm)


def _raw_private(key: rsa.RSAPrivateKey, data: bytes) -> bytes:
    priv = key.private_numbers()
    n = priv.public_numbers.n
    k = (key.key_size + 7) // 8
    if len(data) != k:
        raise ValueError(f"raw input must be {k} bytes, got {len(data)}")
    m = int.from_bytes(data, "big")
    if m >= n:
        raise ValueError("raw input not smaller than modulus")
    return pow(m, priv.d, n).to_bytes(k, "big")


def _raw_public(key: rsa.RSAPublicKey, data: bytes) -> bytes:
    pub = key.public_numbers()
    k = (key.key_size + 7) // 8
    if len(data) != k:
        raise ValueError(f"raw input must be {k} bytes, got {len(data)}")
    m = int.from_bytes(data, "big")
    if m >= pub.n:
        raise ValueError("raw input not smaller than modulus")
    return pow(m, pub.e, pub.n).to_bytes(k, "big")


def _signature_padding(params: AlgorithmParams) -> padding.AsymmetricPadding:
    if params.padding == PAD_PSS:
        h = hash_algorithm(params.effective_digest)
        salt = params.salt_len if params.salt_len is not None else padding.PSS.DIGEST_LENGTH
        return padding.PSS(mgf=padding.MGF1(h), salt_length=salt)
    return padding.PKCS1v15()


def _encryption_padding(params: AlgorithmParams) -> padding.AsymmetricPadding:
    if params.padding == PAD_OAEP:
        h = hash_algorithm(params.effective_oaep_digest)
        return padding.OAEP(mgf=padding.MGF1(algorithm=h), algorithm=h, label=None)
    return padding.PKCS1v15()


class ReferenceProvider(Provider):
    name = "reference"

    def __init__(self, key_dir: Path):
        self.key_dir = Path(key_dir)
        self._keys: Dict[str, object] = {}

    def key_path(self, label: str) -> Path:
        return self.key_dir / label / "key.pem"

    def _key(self, label: str):
        if label not in self._keys:
            self._keys[label] = serialization.load_pem_private_key(
                self.key_path(label).read_bytes(), password=None
            )
        return self._keys[label]

    def sign(self, label, in_path, out_path, params):
        try:
            key = self._key(label)
            data = Path(in_path).read_bytes()
            if isinstance(key, ec.EllipticCurvePrivateKey):
                sig = key.sign(data, ec.ECDSA(hash_algorithm(params.effective_digest)))
            elif params.padding == PAD_RAW:
                sig = _raw_private(key, data)
            else:
                sig = key.sign(data, _signature_padding(params), hash_algorithm(params.effective_digest))
            Path(out_path).write_bytes(sig)
        except _REFERENCE_ERRORS as e:
            return OpResult(False, f"reference sign failed: {type(e).__name__}: {e}")
        return OpResult(True, f"reference sign: {len(data)} bytes -> {len(sig)} byte signature")

    def verify(self, label, in_path, sig_path, params):
        try:
            pub = self._key(label).public_key()
            data = Path(in_path).read_bytes()
            sig = Path(sig_path).read_bytes()
            if isinstance(pub, ec.EllipticCurvePublicKey):
                pub.verify(sig, data, ec.ECDSA(hash_algorithm(params.effective_digest)))
            elif params.padding == PAD_RAW:
                if _raw_public(pub, sig) != data:
                    raise InvalidSignature()
            else:
                pub.verify(sig, data, _signature_padding(params), hash_algorithm(params.effective_digest))
        except InvalidSignature:
            return OpResult(False, "reference verify: signature rejected")
        except _REFERENCE_ERRORS as e:
            return OpResult(False, f"reference verify failed: {type(e).__name__}: {e}")
        return OpResult(True, "reference verify: signature accepted")

    def encrypt(self, label, in_path, out_path, params):
        try:
            pub = self._key(label).public_key()
            data = Path(in_path).read_bytes()
            if params.padding == PAD_RAW:
                ct = _raw_public(pub, data)
            else:
                ct = pub.encrypt(data, _encryption_padding(params))
            Path(out_path).write_bytes(ct)
        except _REFERENCE_ERRORS as e:
            return OpResult(False, f"reference encrypt failed: {type(e).__name__}: {e}")
        return OpResult(True, f"reference encrypt: {len(data)} bytes -> {len(ct)} bytes")

    def decrypt(self, label, in_path, out_path, params):
        try:
            key = self._key(label)
            ct = Path(in_path).read_bytes()
            if params.padding == PAD_RAW:
                pt = _raw_private(key, ct)
            else:
                pt = key.decrypt(ct, _encryption_padding(params))
            Path(out_path).write_bytes(pt)
        except _REFERENCE_ERRORS as e:
            return OpResult(False, f"reference decrypt failed: {type(e).__name__}: {e}")
        return OpResult(True, f"reference decrypt: {len(ct)} bytes -> {len(pt)} bytes")


# ---------------------------------------------------------------------------
# Subject: openssl through the PKCS#11 engine backed by the enclave token.
# ---------------------------------------------------------------------------

_PIN_RE = re.compile(r"pin-value=[^;&\s]*")


def redact(argv: List[str]) -> str:
    shown = []
    hide = False
    for arg in argv:
        shown.append("***" if hide else arg)
        hide = arg == "--pin"
    return _PIN_RE.sub("pin-value=***", shlex.join(shown))


class SubjectProvider(Provider):
    name = "subject"

    def __init__(self, settings: Settings):
        self.settings = settings

    def uri(self, label: str, kind: str) -> str:
        # Token and object share the key label.
        return f"pkcs11:token={label};object={label};type={kind}?pin-value={self.settings.pin}"

    def _engine(self) -> List[str]:
        return ["-engine", self.settings.engine, "-keyform", "engine"]

    def _sigopts(self, params: AlgorithmParams) -> List[str]:
        if params.padding != PAD_PSS:
            return []
        opts = ["-sigopt", "rsa_padding_mode:pss"]
        if params.salt_len is not None:
            opts += ["-sigopt", f"rsa_pss_saltlen:{params.salt_len}"]
        return opts

    def _encopts(self, params: AlgorithmParams) -> List[str]:
        if params.padding == PAD_RAW:
            return ["-pkeyopt", "rsa_padding_mode:none"]
        if params.padding == PAD_OAEP:
            md = params.effective_oaep_digest
            return [
                "-pkeyopt", "rsa_padding_mode:oaep",
                "-pkeyopt", f"rsa_oaep_md:{md}",
                "-pkeyopt", f"rsa_mgf1_md:{md}",
            ]
        return ["-pkeyopt", "rsa_padding_mode:pkcs1"]

    def sign_argv(self, label, in_path, out_path, params) -> List[str]:
        if params.padding == PAD_RAW:
            return self.settings.openssl + [
                "pkeyutl", "-sign", *self._engine(), "-inkey", self.uri(label, "private"),
                "-pkeyopt", "rsa_padding_mode:none", "-in", str(in_path), "-out", str(out_path),
            ]
        return self.settings.openssl + [
            "dgst", f"-{params.effective_digest}", *self._engine(),
            "-sign", self.uri(label, "private"), *self._sigopts(params),
            "-out", str(out_path), str(in_path),
        ]

    def verify_argv(self, label, in_path, sig_path, params) -> List[str]:
        if params.padding == PAD_RAW:
            return self.settings.openssl + [
                "pkeyutl", "-verify", *self._engine(), "-pubin", "-inkey", self.uri(label, "public"),
                "-pkeyopt", "rsa_padding_mode:none", "-in", str(in_path), "-sigfile", str(sig_path),
            ]
        return self.settings.openssl + [
            "dgst", f"-{params.effective_digest}", *self._engine(),
            "-verify", self.uri(label, "public"), *self._sigopts(params),
            "-signature", str(sig_path), str(in_path),
        ]

    def encrypt_argv(self, label, in_path, out_path, params) -> List[str]:
        return self.settings.openssl + [
            "pkeyutl", "-encrypt", *self._engine(), "-pubin", "-inkey", self.uri(label, "public"),
            *self._encopts(params), "-in", str(in_path), "-out", str(out_path),
        ]

    def decrypt_argv(self, label, in_path, out_path, params) -> List[str]:
        return self.settings.openssl + [
            "pkeyutl", "-decrypt", *self._engine(), "-inkey", self.uri(label, "private"),
            *self._encopts(params), "-in", str(in_path), "-out", str(out_path),
        ]

    def _run(self, argv: List[str]) -> OpResult:
        cmdline = "$ " + redact(argv) + "\n"
        try:
            cp = subprocess.run(
                argv,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                timeout=self.settings.op_timeout_s,
                check=False,
            )
        except subprocess.TimeoutExpired:
            return OpResult(False, cmdline + f"timeout after {self.settings.op_timeout_s}s\n")
        except OSError as e:
            return OpResult(False, cmdline + f"spawn failed: {e}\n")

        text = cmdline
        text += cp.stdout.decode("utf-8", errors="replace")
        text += cp.stderr.decode("utf-8", errors="replace")
        if cp.returncode != 0:
            return OpResult(False, text + f"exit status {cp.returncode}\n")
        return OpResult(True, text)

    def sign(self, label, in_path, out_path, params):
        return self._run(self.sign_argv(label, in_path, out_path, params))

    def verify(self, label, in_path, sig_path, params):
        return self._run(self.verify_argv(label, in_path, sig_path, params))

    def encrypt(self, label, in_path, out_path, params):
        return self._run(self.encrypt_argv(label, in_path, out_path, params))

    def decrypt(self, label, in_path, out_path, params):
        return self._run(self.decrypt_argv(label, in_path, out_path, params))
