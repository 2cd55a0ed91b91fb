from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from cryptography.hazmat.primitives import hashes

DIGEST_SIZES = {
    "sha1": 20,
    "sha224": 28,
    "sha256": 32,
    "sha384": 48,
    "sha512": 64,
}

DEFAULT_DIGEST = "sha256"

# Key families
RSA = "rsa"
ECDSA = "ecdsa"

# Padding vocabulary shared by both providers; None means the scheme default
# (PKCS#1 v1.5 for RSA, plain ECDSA for EC keys).
PAD_PKCS1 = "pkcs1"
PAD_PSS = "pss"
PAD_RAW = "raw"
PAD_OAEP = "oaep"

PKCS1_ENC_OVERHEAD = 11


@dataclass(frozen=True)
class KeyUnderTest:
    label: str
    family: str
    bits: Optional[int] = None
    curve: Optional[str] = None

    @property
    def modulus_bytes(self) -> int:
        if self.family != RSA or not self.bits:
            raise ValueError(f"{self.label}: not an RSA key")
        return (self.bits + 7) // 8

    def describe(self) -> str:
        if self.family == RSA:
            return f"RSA-{self.bits}"
        return f"ECDSA-{self.curve}"


@dataclass(frozen=True)
class AlgorithmParams:
    padding: Optional[str] = None
    digest: Optional[str] = None
    salt_len: Optional[int] = None
    oaep_digest: Optional[str] = None

    @property
    def effective_digest(self) -> str:
        return self.digest or DEFAULT_DIGEST

    @property
    def effective_oaep_digest(self) -> str:
        return self.oaep_digest or "sha1"

    def to_dict(self) -> dict:
        return {
            "padding": self.padding or "none",
            "digest": self.digest,
            "salt_len": self.salt_len,
            "oaep_digest": self.oaep_digest,
        }


def digest_size(name: str) -> int:
    try:
        return DIGEST_SIZES[name]
    except KeyError:
        raise ValueError(f"unknown digest: {name}") from None


def hash_algorithm(name: str) -> hashes.HashAlgorithm:
    return {
        "sha1": hashes.SHA1,
        "sha224": hashes.SHA224,
        "sha256": hashes.SHA256,
        "sha384": hashes.SHA384,
        "sha512": hashes.SHA512,
    }[name]()


def pss_em_len(bits: int) -> int:
    # RFC 8017 9.1.1: emLen = ceil((modBits - 1) / 8)
    return (bits - 1 + 7) // 8


def pss_feasible(bits: int, digest: str, salt_len: int) -> bool:
    return digest_size(digest) + salt_len + 2 <= pss_em_len(bits)


def encrypt_capacity(bits: int, padding: Optional[str], oaep_digest: Optional[str] = None) -> int:
    """Largest plaintext, in bytes, an RSA key of ``bits`` accepts under ``padding``.

    Raw encryption has no padding, so its payload is exactly the modulus length.
    """
    k = (bits + 7) // 8
    if padding == PAD_RAW:
        return k
    if padding == PAD_OAEP:
        return k - 2 * digest_size(oaep_digest or "sha1") - 2
    return k - PKCS1_ENC_OVERHEAD
