"""Embedding vector helpers: storage packing and cosine math."""

import math
import re
import struct
from typing import List, Sequence


def pack_vec(v: Sequence[float]) -> bytes:
    """Pack a vector as float32 bytes for the ``embedding`` blob column."""
    return struct.pack(f"{len(v)}f", *v)


def coerce_vec(v) -> List[float]:
    """Best-effort conversion of a stored embedding to ``list[float]``."""
    if v is None:
        return []
    if isinstance(v, (list, tuple)):
        return [float(x) for x in v]
    # Binary-packed embeddings (struct.pack format)
    if isinstance(v, (bytes, bytearray, memoryview)):
        data = bytes(v)
        num_floats = len(data) // 4
        if num_floats == 0:
            return []
        return list(struct.unpack(f"{num_floats}f", data[: num_floats * 4]))
    s = str(v).strip()
    # handles '[0.1, 0.2, ...]' or '(0.1,0.2,...)'
    s = s.strip("[]()")
    parts = re.split(r"[,\s]+", s)
    return [float(p) for p in parts if p]


def normalize(vec: Sequence[float]) -> List[float]:
    n = math.sqrt(sum(v * v for v in vec)) or 1.0
    return [v / n for v in vec]


def _dot(a, b):
    """Dot product with empty vector guard."""
    if not a or not b or len(a) != len(b):
        return 0.0
    return sum(x * y for x, y in zip(a, b))


def _norm(a):
    """Vector norm with empty vector guard."""
    if not a:
        return 1.0
    return math.sqrt(sum(x * x for x in a)) or 1.0


def cosine_similarity(a, b) -> float:
    """Cosine similarity clamped to [-1, 1] for numerical stability."""
    if not a or not b or len(a) != len(b):
        return 0.0
    raw = _dot(a, b) / (_norm(a) * _norm(b))
    return max(-1.0, min(1.0, raw))


def cosine_distance(a, b) -> float:
    """``1 - cosine_similarity``; 0 for identical direction, 2 for opposite."""
    return 1.0 - cosine_similarity(a, b)


def vec_literal(v: Sequence[float]) -> str:
    """pgvector text literal, e.g. ``[0.12,0.34,...]``."""
    return "[" + ",".join(f"{x:.7f}" for x in v) + "]"
