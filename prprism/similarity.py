"""
Vector similarity helpers shared by clustering and vision alignment.

Both functions only rely on length and index access, so plain lists,
tuples and numpy arrays (float32 from the store, float64 from providers)
are all accepted.
"""

from __future__ import annotations

from typing import Sequence

import numpy as np


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Compute cosine similarity between two vectors.

    Returns 0.0 when either vector has zero magnitude instead of NaN.
    """
    a_arr = np.asarray(a, dtype=np.float64)
    b_arr = np.asarray(b, dtype=np.float64)
    denom = float(np.linalg.norm(a_arr)) * float(np.linalg.norm(b_arr))
    if denom == 0.0:
        return 0.0
    return float(np.dot(a_arr, b_arr) / denom)


def is_zero_vector(v: Sequence[float]) -> bool:
    """Check if a vector is all zeros (failed embedding). Empty counts as zero."""
    return not np.any(np.asarray(v, dtype=np.float64))
