#!/usr/bin/env python
from __future__ import annotations

from pathlib import Path
from typing import List, Optional

import pandas as pd
import typer

from extem.core.io import ensure_dir
from extem.core.logs import init_logger
from extem.core.manifest import write_manifest
from extem.core.seed import seed_everything
from extem.core.timers import timed
from extem.data.loaders import instances_from_frame, instances_like
from extem.em.config import EMConfig, load_config
from extem.em.engine import ExtendedEM, save_result
from extem.metrics import normalized_mutual_info, purity

app = typer.Typer(add_completion=False)


@app.command()
def main(
    csv: Path = typer.Option(..., help="CSV with one row per instance"),
    config: Optional[Path] = typer.Option(None, help="YAML with an `em:` section"),
    k: Optional[int] = typer.Option(None, "-k", help="Number of clusters"),
    max_iter: Optional[int] = typer.Option(None, help="Maximum EM iterations"),
    seed: Optional[int] = typer.Option(None, help="PRNG seed"),
    weight_column: Optional[str] = typer.Option(None, help="Column holding row weights"),
    label_column: Optional[str] = typer.Option(None, help="Ground-truth column, reported as NMI/purity"),
    nominal: List[str] = typer.Option([], help="Columns to treat as nominal"),
    centers: Optional[Path] = typer.Option(None, help="CSV of initial centers, same columns as --csv"),
    sizes: Optional[str] = typer.Option(None, help="Comma separated initial cluster sizes"),
    out: Path = typer.Option(Path("outputs/cluster/em"), help="Output directory"),
    log_level: str = typer.Option("INFO"),
):
    log = init_logger("extem", log_level)
    overrides = dict(num_clusters=k, max_iterations=max_iter, seed=seed)
    if config is not None:
        cfg = load_config(config, **overrides)
    else:
        cfg = EMConfig(**{key: v for key, v in overrides.items() if v is not None})

    seed_everything(cfg.seed)

    df = pd.read_csv(csv)
    labels = None
    if label_column is not None:
        labels = df.pop(label_column).astype("category").cat.codes.to_numpy()
    data = instances_from_frame(df, weight_column=weight_column, nominal_columns=nominal, relation=csv.stem)
    log.info("Loaded %d rows x %d attributes from %s", data.num_instances(), data.num_attributes(), csv)

    em = ExtendedEM(cfg)
    if centers is not None:
        em.set_centers(instances_like(data, pd.read_csv(centers)))
    if sizes is not None:
        em.set_cluster_sizes([float(s) for s in sizes.split(",")])

    with timed("extended EM"):
        em.build_clusterer(data)
    assignments = em.predict(data)

    out_dir = ensure_dir(out)
    clusters_json = out_dir / "clusters.json"
    assignments_csv = out_dir / "assignments.csv"
    save_result(clusters_json, em)
    probs = em.predict_proba(data)
    frame = pd.DataFrame(probs, columns=[f"p{c}" for c in range(probs.shape[1])])
    frame.insert(0, "cluster", assignments)
    frame.to_csv(assignments_csv, index_label="row")

    if labels is not None:
        typer.echo(
            f"NMI={normalized_mutual_info(assignments, labels):.3f} purity={purity(assignments, labels):.3f}"
        )
    write_manifest(
        out_dir,
        "cluster/run_em",
        "0.1.0",
        str(config) if config else None,
        [str(csv)] + ([str(centers)] if centers else []),
        {"clusters_json": str(clusters_json), "assignments_csv": str(assignments_csv)},
        cfg.seed,
    )
    typer.echo(f"[cluster/run_em] k={em.num_clusters} priors={em.cluster_priors().round(3).tolist()} -> {out_dir}")


if __name__ == "__main__":
    app()
