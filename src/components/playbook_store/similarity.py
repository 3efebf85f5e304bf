"""Embeddingベクトル間の類似度計算."""

from collections.abc import Sequence

import numpy as np

from src.common.lib.errors import DimensionMismatchError


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """2つのベクトルのコサイン類似度を計算する.

    Args:
        a: ベクトルA
        b: ベクトルB

    Returns:
        コサイン類似度. どちらかのノルムが0の場合は0.0.

    Raises:
        DimensionMismatchError: ベクトルの長さが異なる場合
    """
    if len(a) != len(b):
        msg = f"Embedding vectors must have the same length ({len(a)} != {len(b)})"
        raise DimensionMismatchError(msg)

    vec_a = np.asarray(a, dtype=float)
    vec_b = np.asarray(b, dtype=float)
    norm = float(np.linalg.norm(vec_a) * np.linalg.norm(vec_b))
    if norm == 0:
        return 0.0
    return float(np.dot(vec_a, vec_b) / norm)
