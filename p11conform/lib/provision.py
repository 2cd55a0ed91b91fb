from __future__ import annotations

import os
import shutil
import subprocess
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, List, Optional

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa

from .algorithms import RSA, KeyUnderTest
from .errors import EnvironmentFailure
from .policy import Settings
from .providers import redact

_CURVES = {
    "prime256v1": ec.SECP256R1,
    "secp384r1": ec.SECP384R1,
    "secp521r1": ec.SECP521R1,
}


def generate_key_material(key: KeyUnderTest, key_dir: Path) -> Path:
    """Write ``key.pem`` and ``pub.pem`` for ``key`` under ``key_dir/<label>``."""
    if key.family == RSA:
        priv = rsa.generate_private_key(public_exponent=65537, key_size=key.bits)
    else:
        priv = ec.generate_private_key(_CURVES[key.curve]())

    d = key_dir / key.label
    d.mkdir(parents=True, exist_ok=True)
    key_path = d / "key.pem"
    key_path.write_bytes(priv.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ))
    os.chmod(key_path, 0o600)
    (d / "pub.pem").write_bytes(priv.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ))
    return key_path


def _run_tool(argv: List[str], timeout_s: int) -> str:
    try:
        cp = subprocess.run(
            argv,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            timeout=timeout_s,
            check=False,
        )
    except subprocess.TimeoutExpired:
        raise EnvironmentFailure(f"timeout after {timeout_s}s: {redact(argv)}") from None
    except OSError as e:
        raise EnvironmentFailure(f"cannot run {argv[0]}: {e}") from None
    out = cp.stdout.decode("utf-8", errors="replace") + cp.stderr.decode("utf-8", errors="replace")
    if cp.returncode != 0:
        raise EnvironmentFailure(f"{redact(argv)} exited {cp.returncode}: {out.strip()[-2000:]}")
    return out


class EnclaveLifecycle:
    def __init__(self, settings: Settings):
        self.settings = settings

    def start(self) -> None:
        _run_tool(self.settings.enclave_cmd + ["start"], self.settings.tool_timeout_s)

    def stop(self) -> None:
        _run_tool(self.settings.enclave_cmd + ["stop"], self.settings.tool_timeout_s)

    def restart(self) -> None:
        self.stop()
        self.start()


@dataclass(frozen=True)
class ProvisionedKey:
    key: KeyUnderTest
    key_path: Path
    db_path: Path


class KeyProvisioner:
    """Front end of the key-provisioning tool.

    A label can be provisioned only once at a time; ``provisioned`` releases it
    on exit whether or not the sub-suite passed.
    """

    def __init__(self, settings: Settings, kms_key_id: str, kms_region: str):
        self.settings = settings
        self.kms_key_id = kms_key_id
        self.kms_region = kms_region
        self._active: set = set()
        self._lock = threading.Lock()

    def _tool(self, args: List[str]) -> str:
        return _run_tool(self.settings.provision_cmd + args, self.settings.tool_timeout_s)

    def pack_key(self, object_id: str, label: str, key_file: Path, out_file: Path,
                 cert_file: Optional[Path] = None) -> Path:
        args = ["pack-key", "--id", object_id, "--label", label, "--key-file", str(key_file)]
        if cert_file is not None:
            args += ["--cert-file", str(cert_file)]
        args += ["--out-file", str(out_file), "--kms-key-id", self.kms_key_id, "--kms-region", self.kms_region]
        self._tool(args)
        if not out_file.exists():
            raise EnvironmentFailure(f"pack-key did not produce {out_file}")
        return out_file

    def init_token(self, key_db: Path, label: str) -> None:
        self._tool(["init", "--key-db", str(key_db), "--label", label, "--pin", self.settings.pin])

    def release_token(self, label: str) -> None:
        self._tool(["release", "--label", label, "--pin", self.settings.pin])

    @contextmanager
    def provisioned(self, key: KeyUnderTest, work_dir: Path, object_id: str = "1") -> Iterator[ProvisionedKey]:
        with self._lock:
            if key.label in self._active:
                raise EnvironmentFailure(f"key label {key.label} is already provisioned")
            self._active.add(key.label)

        label_dir = work_dir / key.label
        token_ready = False
        try:
            try:
                key_path = generate_key_material(key, work_dir)
            except OSError as e:
                raise EnvironmentFailure(f"cannot write key material for {key.label}: {e}") from e
            db_path = self.pack_key(object_id, key.label, key_path, label_dir / f"{key.label}.db")
            self.init_token(db_path, key.label)
            token_ready = True
            yield ProvisionedKey(key=key, key_path=key_path, db_path=db_path)
        finally:
            try:
                if token_ready:
                    self.release_token(key.label)
            finally:
                shutil.rmtree(label_dir, ignore_errors=True)
                with self._lock:
                    self._active.discard(key.label)
