import random
from pathlib import Path
from typing import Optional

from .errors import GenerationFailure


def flip_bit(data: bytes, index: int) -> bytes:
    if not 0 <= index < len(data) * 8:
        raise IndexError(f"bit {index} out of range for {len(data)} bytes")
    out = bytearray(data)
    out[index // 8] ^= 0x80 >> (index % 8)
    return bytes(out)


def bit_distance(a: bytes, b: bytes) -> int:
    if len(a) != len(b):
        raise ValueError("length mismatch")
    return sum(bin(x ^ y).count("1") for x, y in zip(a, b))


def corrupt(src: Path, seed: int, bit_start: int, bit_end: int, dst: Optional[Path] = None) -> Path:
    """Copy ``src`` with exactly one bit in ``[bit_start, bit_end)`` flipped."""
    src = Path(src)
    dst = Path(dst) if dst is not None else src.with_name(src.name + ".corrupt")
    try:
        data = src.read_bytes()
    except OSError as e:
        raise GenerationFailure("corrupt input", f"{src}: {e}") from e
    if not data:
        raise GenerationFailure("corrupt input", "empty payload has no bit to flip")
    bit_end = min(bit_end, len(data) * 8)
    if bit_start < 0 or bit_start >= bit_end:
        raise GenerationFailure("corrupt input", f"empty bit range [{bit_start}, {bit_end})")

    index = random.Random(seed).randrange(bit_start, bit_end)
    try:
        dst.write_bytes(flip_bit(data, index))
    except OSError as e:
        raise GenerationFailure("corrupt input", f"{dst}: {e}") from e
    return dst
