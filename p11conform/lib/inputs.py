"""Seeded payload generation for test cases."""

import hashlib
import random
from pathlib import Path

from .errors import GenerationFailure

# Non-zero with the high bit clear: the payload as a big-endian integer stays
# below any modulus of the same byte length.
RAW_LEADING_BYTE = 0x01


def case_seed(run_seed: int, name: str) -> int:
    h = hashlib.sha256(f"{run_seed}:{name}".encode("utf-8")).digest()
    return int.from_bytes(h[:8], "big")


def _random_bytes(seed: int, size: int) -> bytes:
    rng = random.Random(seed)
    return bytes(rng.getrandbits(8) for _ in range(size))


def _write(path: Path, data: bytes) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
    except OSError as e:
        raise GenerationFailure("generate input", f"{path}: {e}") from e


def generate(path: Path, size: int, seed: int) -> None:
    if size < 0:
        raise GenerationFailure("generate input", f"negative size {size}")
    _write(Path(path), _random_bytes(seed, size))


def generate_raw(path: Path, size: int, seed: int) -> None:
    """Write a raw RSA payload: a fixed leading byte then ``size - 1`` random bytes."""
    if size < 1:
        raise GenerationFailure("generate input", f"raw payload needs at least one byte, got {size}")
    _write(Path(path), bytes([RAW_LEADING_BYTE]) + _random_bytes(seed, size - 1))
