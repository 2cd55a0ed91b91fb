import os
import shlex
from dataclasses import dataclass, field
from typing import List


def _b(name: str, default: bool) -> bool:
    v = os.environ.get(name)
    if v is None:
        return default
    return v.strip().lower() in ("1", "true", "yes", "on")


def _i(name: str, default: int) -> int:
    try:
        return int(os.environ.get(name, str(default)))
    except ValueError:
        return default


def _s(name: str, default: str) -> str:
    v = os.environ.get(name, "").strip()
    return v or default


@dataclass(frozen=True)
class Settings:
    openssl: List[str] = field(default_factory=lambda: ["openssl"])
    engine: str = "pkcs11"
    provision_cmd: List[str] = field(default_factory=lambda: ["p11ne-cli"])
    enclave_cmd: List[str] = field(default_factory=lambda: ["p11ne-enclave"])
    pin: str = "1234"
    op_timeout_s: int = 60
    tool_timeout_s: int = 300
    seed: int = 1
    restart_enclave: bool = True

    @staticmethod
    def from_env() -> "Settings":
        return Settings(
            openssl=shlex.split(_s("P11CONFORM_OPENSSL", "openssl")),
            engine=_s("P11CONFORM_ENGINE", "pkcs11"),
            provision_cmd=shlex.split(_s("P11CONFORM_PROVISION_CMD", "p11ne-cli")),
            enclave_cmd=shlex.split(_s("P11CONFORM_ENCLAVE_CMD", "p11ne-enclave")),
            pin=_s("P11CONFORM_PIN", "1234"),
            op_timeout_s=_i("P11CONFORM_OP_TIMEOUT_SECS", 60),
            tool_timeout_s=_i("P11CONFORM_TOOL_TIMEOUT_SECS", 300),
            seed=_i("P11CONFORM_SEED", 1),
            restart_enclave=_b("P11CONFORM_RESTART_ENCLAVE", True),
        )

    def to_dict(self) -> dict:
        # The PIN stays out of reports.
        return {
            "openssl": self.openssl,
            "engine": self.engine,
            "provision_cmd": self.provision_cmd,
            "enclave_cmd": self.enclave_cmd,
            "op_timeout_s": self.op_timeout_s,
            "tool_timeout_s": self.tool_timeout_s,
            "seed": self.seed,
            "restart_enclave": self.restart_enclave,
        }
