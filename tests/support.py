"""Shared fixtures: on-disk keys and providers with injected faults."""
from pathlib import Path
from typing import Dict

from p11conform.lib.algorithms import KeyUnderTest
from p11conform.lib.provision import generate_key_material
from p11conform.lib.providers import OpResult, Provider

RSA1024 = KeyUnderTest("rsa1024", "rsa", bits=1024)
RSA2048 = KeyUnderTest("rsa2048", "rsa", bits=2048)
RSA4096 = KeyUnderTest("rsa4096", "rsa", bits=4096)
P256 = KeyUnderTest("ec-prime256v1", "ecdsa", curve="prime256v1")

_KEY_CACHE: Dict[str, bytes] = {}


def install_key(key: KeyUnderTest, key_dir: Path) -> Path:
    """Write key material once per process and copy it into ``key_dir``."""
    dst = key_dir / key.label / "key.pem"
    if key.label not in _KEY_CACHE:
        _KEY_CACHE[key.label] = generate_key_material(key, key_dir).read_bytes()
    else:
        dst.parent.mkdir(parents=True, exist_ok=True)
        dst.write_bytes(_KEY_CACHE[key.label])
    return dst


class Wrapped(Provider):
    """Delegates to ``inner``; any operation can be replaced per instance."""

    def __init__(self, inner: Provider, name: str = "subject", **overrides):
        self.inner = inner
        self.name = name
        self.overrides = overrides
        self.calls = []

    def _call(self, op, *args):
        self.calls.append(op)
        fn = self.overrides.get(op) or getattr(self.inner, op)
        return fn(*args)

    def sign(self, label, in_path, out_path, params):
        return self._call("sign", label, in_path, out_path, params)

    def verify(self, label, in_path, sig_path, params):
        return self._call("verify", label, in_path, sig_path, params)

    def encrypt(self, label, in_path, out_path, params):
        return self._call("encrypt", label, in_path, out_path, params)

    def decrypt(self, label, in_path, out_path, params):
        return self._call("decrypt", label, in_path, out_path, params)


def accept_everything(label, in_path, sig_path, params):
    return OpResult(True, "accepted without checking")


def refuse(label, in_path, out_path, params):
    return OpResult(False, "C_Sign: CKR_DEVICE_ERROR")
