from __future__ import annotations

import os
import random

import numpy as np


def seed_everything(seed: int = 42) -> None:
    """
    Deterministic seeds for Python and NumPy's legacy global state.
    The EM engine keeps its own Generator; this covers helpers that don't.
    """
    random.seed(seed)
    np.random.seed(seed)
    os.environ["PYTHONHASHSEED"] = str(seed)
