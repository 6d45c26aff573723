"""Treatment-vs-control Wilcoxon tests within each single-cell cluster."""

from __future__ import annotations

import logging
from typing import Dict, Optional, Sequence

import anndata as ad
import numpy as np
import pandas as pd
import scanpy as sc

from ..config import DEThresholds, SingleCellDEConfig
from .base import DEAnalysisResult, label_calls

logger = logging.getLogger(__name__)

__all__ = [
    "ALL_CELLS",
    "group_sizes",
    "run_wilcoxon",
    "run_cluster_de",
    "export_table",
]

ALL_CELLS = "all"

_RANK_KEY = "ahrseq_wilcoxon"


def group_sizes(obs: pd.DataFrame, condition_key: str, treatment: str, control: str) -> Dict[str, int]:
    values = obs[condition_key].astype(str)
    return {treatment: int((values == treatment).sum()), control: int((values == control).sum())}


def run_wilcoxon(
    adata: ad.AnnData,
    *,
    condition_key: str,
    treatment: str,
    control: str,
    config: Optional[SingleCellDEConfig] = None,
    layer: Optional[str] = None,
) -> pd.DataFrame:
    """
    Wilcoxon rank-sum test of ``treatment`` vs ``control`` cells.

    ``adata`` is expected to hold log-normalized expression. Genes are kept
    when ``|log2FC| >= logfc_threshold`` and the detection rate in either group
    is at least ``min_pct``.
    """
    config = config or SingleCellDEConfig()
    sub = adata[adata.obs[condition_key].astype(str).isin([treatment, control])].copy()
    sub.obs[condition_key] = sub.obs[condition_key].astype(str).astype("category")
    sc.tl.rank_genes_groups(
        sub,
        groupby=condition_key,
        groups=[treatment],
        reference=control,
        method="wilcoxon",
        pts=True,
        tie_correct=True,
        use_raw=False,
        layer=layer,
        key_added=_RANK_KEY,
    )
    raw = sc.get.rank_genes_groups_df(sub, group=treatment, key=_RANK_KEY)
    names = raw["names"].astype(str)
    # Detection rates for every tested group, genes x groups.
    pts = sub.uns[_RANK_KEY]["pts"]
    table = pd.DataFrame(
        {
            "gene": names.to_numpy(),
            "score": raw["scores"].astype(float).to_numpy(),
            "log2FoldChange": raw["logfoldchanges"].astype(float).to_numpy(),
            "pvalue": raw["pvals"].astype(float).to_numpy(),
            "padj": raw["pvals_adj"].astype(float).to_numpy(),
            "pct_treatment": pts[treatment].reindex(names).astype(float).to_numpy(),
            "pct_control": pts[control].reindex(names).astype(float).to_numpy(),
        }
    )
    detected = np.maximum(table["pct_treatment"], table["pct_control"]) >= config.min_pct
    shifted = table["log2FoldChange"].abs() >= config.logfc_threshold
    return table[detected & shifted].reset_index(drop=True)


def run_cluster_de(
    adata: ad.AnnData,
    *,
    condition_key: str = "condition",
    cluster_key: str = "cluster",
    treatment: str = "TCDD",
    control: str = "vehicle",
    config: Optional[SingleCellDEConfig] = None,
    clusters: Optional[Sequence[str]] = None,
    include_all: bool = True,
    layer: Optional[str] = None,
) -> DEAnalysisResult:
    """
    Per-cluster (and all-cells) treatment-vs-control differential expression.

    Clusters where either group has fewer than ``min_cells_group`` cells are
    not tested; they are listed in ``skipped`` with the group sizes.
    """
    config = config or SingleCellDEConfig()
    for key in (condition_key, cluster_key):
        if key not in adata.obs.columns:
            raise KeyError(f"AnnData.obs missing column '{key}'.")

    labels = adata.obs[cluster_key].astype(str)
    targets = list(clusters) if clusters is not None else sorted(labels.unique())
    if include_all:
        targets.append(ALL_CELLS)

    contrast_results: Dict[str, pd.DataFrame] = {}
    skipped: Dict[str, str] = {}
    for cluster in targets:
        mask = np.ones(adata.n_obs, dtype=bool) if cluster == ALL_CELLS else (labels == cluster).to_numpy()
        sizes = group_sizes(adata.obs.loc[mask], condition_key, treatment, control)
        if min(sizes.values()) < config.min_cells_group:
            skipped[cluster] = ", ".join(f"{k}={v}" for k, v in sizes.items())
            logger.warning("Skipping cluster %s: too few cells (%s)", cluster, skipped[cluster])
            continue
        table = run_wilcoxon(
            adata[mask],
            condition_key=condition_key,
            treatment=treatment,
            control=control,
            config=config,
            layer=layer,
        )
        table["call"] = label_calls(table, config.label_thresholds)
        table["cluster"] = cluster
        contrast_results[cluster] = table
        logger.info("Cluster %s: %d genes pass detection/fold-change filters", cluster, len(table))

    return DEAnalysisResult(
        contrast_results=contrast_results,
        parameters={
            "treatment": treatment,
            "control": control,
            "condition_key": condition_key,
            "cluster_key": cluster_key,
            "logfc_threshold": config.logfc_threshold,
            "min_pct": config.min_pct,
            "min_cells_group": config.min_cells_group,
        },
        skipped=skipped,
    )


def export_table(
    result: DEAnalysisResult,
    thresholds: Optional[DEThresholds] = None,
) -> pd.DataFrame:
    """Significant genes across clusters under the export cutoffs."""
    thresholds = thresholds or SingleCellDEConfig().export_thresholds
    tidy = result.tidy(key_col="cluster")
    if tidy.empty:
        return tidy
    tidy["call"] = label_calls(tidy, thresholds)
    out = tidy[tidy["call"] != "no"]
    return out.sort_values(["cluster", "padj", "gene"], kind="mergesort").reset_index(drop=True)
