# src/extem/data/loaders.py
from __future__ import annotations

from pathlib import Path
from typing import Iterable, List, Optional, Sequence

import numpy as np
import pandas as pd

from extem.data.instances import Attribute, Instances
from extem.exceptions import InvalidArgumentError


def instances_from_array(
    X: np.ndarray,
    weights: Optional[Sequence[float]] = None,
    nominal: Optional[dict[int, Sequence[str]]] = None,
    names: Optional[Sequence[str]] = None,
    relation: str = "data",
) -> Instances:
    """
    Wrap an (n, d) array. NaN marks a missing value.
    `nominal` maps a column index to its value labels; that column must hold codes.
    """
    X = np.asarray(X, dtype=np.float64)
    if X.ndim == 1:
        X = X[:, None]
    if X.ndim != 2:
        raise InvalidArgumentError(f"Expected a 2-D array, got shape {X.shape}")
    n, d = X.shape
    names = list(names) if names is not None else [f"a{j}" for j in range(d)]
    if len(names) != d:
        raise InvalidArgumentError(f"{len(names)} names for {d} columns")
    nominal = nominal or {}
    atts = [
        Attribute.nominal(names[j], nominal[j]) if j in nominal else Attribute.numeric(names[j])
        for j in range(d)
    ]
    w = np.ones(n) if weights is None else np.asarray(weights, dtype=np.float64)
    if w.shape != (n,):
        raise InvalidArgumentError(f"Expected {n} weights, got shape {w.shape}")

    data = Instances(relation, atts)
    for i in range(n):
        data.add(X[i].tolist(), float(w[i]))
    return data


def instances_from_frame(
    df: pd.DataFrame,
    weight_column: Optional[str] = None,
    nominal_columns: Optional[Iterable[str]] = None,
    relation: str = "data",
) -> Instances:
    """
    Build a dataset from a DataFrame.

    Numeric columns stay numeric. Object/category/bool columns, plus any listed
    in `nominal_columns`, become nominal with codes in sorted label order.
    """
    cols = [c for c in df.columns if c != weight_column]
    forced = set(nominal_columns or [])
    missing = forced - set(cols)
    if missing:
        raise InvalidArgumentError(f"Unknown nominal columns: {sorted(missing)}")

    atts: List[Attribute] = []
    encoded = {}
    for c in cols:
        s = df[c]
        if c in forced or not pd.api.types.is_numeric_dtype(s) or pd.api.types.is_bool_dtype(s):
            cat = s.astype("category")
            labels = [str(v) for v in cat.cat.categories]
            codes = cat.cat.codes.to_numpy().astype(np.float64)
            codes[codes < 0] = np.nan
            atts.append(Attribute.nominal(str(c), labels))
            encoded[c] = codes
        else:
            atts.append(Attribute.numeric(str(c)))
            encoded[c] = s.to_numpy(dtype=np.float64, na_value=np.nan)

    if weight_column is not None:
        w = df[weight_column].to_numpy(dtype=np.float64)
    else:
        w = np.ones(len(df))

    data = Instances(relation, atts)
    X = np.column_stack([encoded[c] for c in cols]) if cols else np.empty((len(df), 0))
    for i in range(len(df)):
        data.add(X[i].tolist(), float(w[i]))
    return data


def load_csv(
    path: Path | str,
    weight_column: Optional[str] = None,
    nominal_columns: Optional[Iterable[str]] = None,
) -> Instances:
    df = pd.read_csv(path)
    return instances_from_frame(
        df, weight_column=weight_column, nominal_columns=nominal_columns, relation=Path(path).stem
    )


def instances_like(header: Instances, df: pd.DataFrame) -> Instances:
    """
    Encode `df` against an existing dataset's attributes, e.g. initial centers.
    Nominal labels map through the header's value list; unknown labels are an error.
    """
    data = header.copy_header()
    columns = []
    for att in header.attributes():
        if att.name not in df.columns:
            raise InvalidArgumentError(f"Column {att.name!r} missing")
        s = df[att.name]
        if att.is_nominal:
            codes = {label: i for i, label in enumerate(att.values)}
            col = []
            for v in s:
                if pd.isna(v):
                    col.append(np.nan)
                elif str(v) in codes:
                    col.append(float(codes[str(v)]))
                else:
                    raise InvalidArgumentError(f"Unknown label {v!r} for nominal attribute {att.name!r}")
            columns.append(np.asarray(col, dtype=np.float64))
        else:
            columns.append(s.to_numpy(dtype=np.float64, na_value=np.nan))
    X = np.column_stack(columns) if columns else np.empty((len(df), 0))
    for i in range(len(df)):
        data.add(X[i].tolist())
    return data
