from __future__ import annotations

import numpy as np


def contingency(pred: np.ndarray, true: np.ndarray) -> np.ndarray:
    """(k_pred, k_true) count table for two integer labelings."""
    pred = np.asarray(pred, dtype=int)
    true = np.asarray(true, dtype=int)
    C = np.zeros((pred.max() + 1, true.max() + 1), dtype=np.int64)
    np.add.at(C, (pred, true), 1)
    return C


def normalized_mutual_info(pred: np.ndarray, true: np.ndarray) -> float:
    """
    NMI = 2 * I(P;T) / (H(P) + H(T)), permutation-invariant.
    """
    C = contingency(pred, true)
    n = C.sum()
    if n == 0:
        return 0.0
    p = C / n
    pP = p.sum(axis=1, keepdims=True)  # (kP,1)
    pT = p.sum(axis=0, keepdims=True)  # (1,kT)
    with np.errstate(divide="ignore", invalid="ignore"):
        logterm = np.where(p > 0, np.log(p / (pP @ pT)), 0.0)
    mutual_info = float((p * logterm).sum())
    H_P = float(-(pP[pP > 0] * np.log(pP[pP > 0])).sum())
    H_T = float(-(pT[pT > 0] * np.log(pT[pT > 0])).sum())
    return 0.0 if H_P + H_T == 0.0 else 2.0 * mutual_info / (H_P + H_T)


def purity(pred: np.ndarray, true: np.ndarray) -> float:
    """Fraction of rows whose cluster's majority label matches their own."""
    C = contingency(pred, true)
    n = C.sum()
    return 0.0 if n == 0 else float(C.max(axis=1).sum() / n)
