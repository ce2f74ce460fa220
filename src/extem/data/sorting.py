# src/extem/data/sorting.py
from __future__ import annotations

import math
from typing import List, Sequence

import numpy as np

# missing values (NaN) are keyed above every finite value so they sort last
MISSING_KEY = math.inf


def _partition(keys: Sequence[float], index: List[int], left: int, right: int) -> int:
    """
    Hoare-style partition of index[left..right] around the key at the midpoint.
    Returns the last position of the lower part.
    """
    pivot = keys[index[(left + right) // 2]]
    lo, hi = left, right
    while lo < hi:
        while keys[index[lo]] < pivot and lo < hi:
            lo += 1
        while keys[index[hi]] > pivot and lo < hi:
            hi -= 1
        if lo < hi:
            index[lo], index[hi] = index[hi], index[lo]
            lo += 1
            hi -= 1
    if lo == hi and keys[index[hi]] > pivot:
        hi -= 1
    return hi


def quick_sort(keys: Sequence[float], index: List[int], left: int, right: int) -> None:
    """
    Sort index[left..right] in place so that keys[index[...]] is ascending.
    Not stable. Recurses into the smaller half only, so depth stays logarithmic.
    """
    while left < right:
        middle = _partition(keys, index, left, right)
        if middle - left < right - middle:
            quick_sort(keys, index, left, middle)
            left = middle + 1
        else:
            quick_sort(keys, index, middle + 1, right)
            right = middle


def stable_sort(keys) -> np.ndarray:
    """
    Indices that sort `keys` ascending, ties kept in input order, NaN last.

    Quicksort first, then every block of equal keys is re-sorted by original
    index. `keys` is left untouched; a new int64 array is returned.
    """
    arr = np.asarray(keys, dtype=np.float64)
    vals: List[float] = np.where(np.isnan(arr), MISSING_KEY, arr).tolist()
    n = len(vals)
    index = list(range(n))
    quick_sort(vals, index, 0, n - 1)

    out = np.empty(n, dtype=np.int64)
    i = 0
    while i < n:
        j = i + 1
        while j < n and vals[index[j]] == vals[index[i]]:
            j += 1
        block = index[i:j]
        if len(block) > 1:
            order = list(range(len(block)))
            quick_sort(block, order, 0, len(block) - 1)
            block = [block[o] for o in order]
        out[i:j] = block
        i = j
    return out
