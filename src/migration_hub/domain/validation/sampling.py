"""Statistical sampling helpers: frame comparison and confidence bounds."""

import math
from statistics import NormalDist
from typing import Dict, List, Sequence, Tuple

import pandas as pd


def wilson_upper_bound(mismatches: int, sample_size: int, confidence: float) -> float:
    """
    Upper end of the Wilson score interval for the true mismatch rate.

    Example:
        >>> round(wilson_upper_bound(0, 100, 0.95), 4)
        0.037
    """
    if sample_size <= 0:
        return 1.0
    z = NormalDist().inv_cdf((1 + confidence) / 2)
    p = mismatches / sample_size
    n = sample_size
    denominator = 1 + z * z / n
    centre = p + z * z / (2 * n)
    margin = z * math.sqrt(p * (1 - p) / n + z * z / (4 * n * n))
    return min(1.0, (centre + margin) / denominator)


def _normalize(frame: pd.DataFrame) -> pd.DataFrame:
    # None and NaN compare equal; everything else compares by text
    as_object = frame.astype(object)
    return as_object.where(pd.notna(as_object), None).astype(str)


def compare_frames(
    expected: pd.DataFrame, actual: pd.DataFrame, fields: Sequence[str]
) -> Tuple[List[int], Dict[str, int]]:
    """
    Compare two frames indexed by legacy id on ``fields``.

    Rows absent from ``actual`` count as mismatched on every field.

    Returns:
        (sorted mismatched legacy ids, mismatch count per field)
    """
    if expected.empty:
        return [], {}
    columns = list(fields)
    left = expected.astype(object).reindex(columns=columns)
    right = actual.astype(object).reindex(index=expected.index, columns=columns)
    diff = _normalize(left) != _normalize(right)
    missing = ~expected.index.isin(actual.index)
    diff.loc[missing, :] = True

    row_mask = diff.any(axis=1)
    mismatched_ids = sorted(int(i) for i in expected.index[row_mask])
    per_field = {col: int(count) for col, count in diff.sum().items() if count}
    return mismatched_ids, per_field
