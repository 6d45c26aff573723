"""xCell-style cell-type enrichment from bulk log-expression."""

from __future__ import annotations

import logging
from typing import Dict, List, Mapping, Optional

import gseapy as gp
import numpy as np
import pandas as pd
from scipy.optimize import nnls

from .de.gene_sets import GeneSet

logger = logging.getLogger(__name__)

__all__ = ["cell_type_of", "group_signatures", "ssgsea_scores", "compensate_spillover", "xcell_scores"]

SIGNATURE_SEPARATOR = "%"


def cell_type_of(signature_name: str) -> str:
    """``"T-cells%HPCA%2"`` -> ``"T-cells"``."""
    return str(signature_name).split(SIGNATURE_SEPARATOR, 1)[0]


def _members(value) -> List[str]:
    return value.sorted_genes() if isinstance(value, GeneSet) else sorted(set(map(str, value)))


def group_signatures(signatures: Mapping) -> Dict[str, List[str]]:
    groups: Dict[str, List[str]] = {}
    for name in signatures:
        groups.setdefault(cell_type_of(name), []).append(str(name))
    return groups


def ssgsea_scores(
    log_expr: pd.DataFrame,
    signatures: Mapping,
    *,
    min_size: int = 2,
    threads: int = 1,
) -> pd.DataFrame:
    """Raw single-sample enrichment scores, signatures x samples."""
    universe = set(log_expr.index.astype(str))
    gene_sets = {}
    for name, value in signatures.items():
        present = [g for g in _members(value) if g in universe]
        if len(present) >= min_size:
            gene_sets[str(name)] = present
    if not gene_sets:
        raise ValueError("No signature has enough genes present in the expression matrix.")
    dropped = len(signatures) - len(gene_sets)
    if dropped:
        logger.warning("%d signatures with fewer than %d genes present were skipped", dropped, min_size)

    res = gp.ssgsea(
        data=log_expr,
        gene_sets=gene_sets,
        outdir=None,
        sample_norm_method="rank",
        min_size=min_size,
        max_size=max(len(v) for v in gene_sets.values()),
        permutation_num=0,
        no_plot=True,
        threads=threads,
        verbose=False,
    )
    long = res.res2d
    scores = long.pivot(index="Term", columns="Name", values="ES").astype(float)
    return scores.reindex(columns=log_expr.columns)


def compensate_spillover(scores: pd.DataFrame, spillover: pd.DataFrame) -> pd.DataFrame:
    """
    Remove cross-talk between related cell types.

    For each sample solve ``spillover @ x = scores`` with ``x >= 0``.
    ``spillover`` is a cell type x cell type matrix whose rows and columns
    cover the cell types in ``scores``.
    """
    types = list(scores.index)
    missing = [t for t in types if t not in spillover.index or t not in spillover.columns]
    if missing:
        raise KeyError(f"Spillover matrix missing cell types: {missing}")
    matrix = spillover.loc[types, types].to_numpy(dtype=float)
    out = np.empty(scores.shape, dtype=float)
    for j, sample in enumerate(scores.columns):
        out[:, j], _ = nnls(matrix, scores[sample].to_numpy(dtype=float))
    return pd.DataFrame(out, index=scores.index, columns=scores.columns)


def xcell_scores(
    log_expr: pd.DataFrame,
    signatures: Mapping,
    spillover: Optional[pd.DataFrame] = None,
    *,
    min_size: int = 2,
    threads: int = 1,
) -> pd.DataFrame:
    """
    Cell-type scores (cell types x samples).

    Signatures named ``celltype%source%n`` are scored by ssGSEA, averaged per
    cell type and shifted so each cell type's minimum across samples is zero.
    """
    raw = ssgsea_scores(log_expr, signatures, min_size=min_size, threads=threads)
    groups = group_signatures({name: None for name in raw.index})
    averaged = pd.DataFrame(
        {cell_type: raw.loc[names].mean(axis=0) for cell_type, names in sorted(groups.items())}
    ).T
    shifted = averaged.sub(averaged.min(axis=1), axis=0)
    if spillover is not None:
        shifted = compensate_spillover(shifted, spillover)
    shifted.index.name = "cell_type"
    logger.info("Scored %d cell types across %d samples", shifted.shape[0], shifted.shape[1])
    return shifted
