"""Highly variable gene selection from a mean-variance trend."""

from __future__ import annotations

import logging

import numpy as np
import pandas as pd
from statsmodels.nonparametric.smoothers_lowess import lowess

logger = logging.getLogger(__name__)

__all__ = ["highly_variable_genes", "top_variable_genes"]


def highly_variable_genes(
    log_expr: pd.DataFrame,
    *,
    n_top: int = 500,
    span: float = 0.3,
    min_variance: float = 1e-8,
) -> pd.DataFrame:
    """
    Rank genes by overdispersion relative to a lowess mean-variance trend.

    Parameters
    ----------
    log_expr:
        Log-expression matrix (genes x samples).
    n_top:
        Number of genes flagged ``highly_variable``.
    span:
        Fraction of points used for each local regression (lowess ``frac``).
    min_variance:
        Floor applied to fitted variances so the ratio stays finite.

    Returns
    -------
    pandas.DataFrame
        One row per gene with ``mean``, ``variance``, ``expected_variance``,
        ``overdispersion``, ``rank`` and ``highly_variable``; sorted by
        ``overdispersion`` descending (ties by gene name).
    """
    if log_expr.shape[0] < 3:
        raise ValueError("At least three genes are required to fit a mean-variance trend.")
    if not 0.0 < span <= 1.0:
        raise ValueError("span must lie in (0, 1].")

    values = log_expr.to_numpy(dtype=float)
    mean = values.mean(axis=1)
    variance = values.var(axis=1, ddof=1)

    fitted = lowess(variance, mean, frac=span, it=0, return_sorted=False)
    fitted = np.clip(fitted, min_variance, None)

    stats = pd.DataFrame(
        {
            "mean": mean,
            "variance": variance,
            "expected_variance": fitted,
            "overdispersion": variance / fitted,
        },
        index=log_expr.index,
    )
    stats.index.name = "gene"
    stats = (
        stats.reset_index()
        .sort_values(["overdispersion", "gene"], ascending=[False, True], kind="mergesort")
        .set_index("gene")
    )
    stats["rank"] = np.arange(1, stats.shape[0] + 1)
    stats["highly_variable"] = stats["rank"] <= n_top
    logger.info("Selected %d highly variable genes of %d", int(stats["highly_variable"].sum()), stats.shape[0])
    return stats


def top_variable_genes(log_expr: pd.DataFrame, n_top: int = 500, span: float = 0.3) -> list:
    stats = highly_variable_genes(log_expr, n_top=n_top, span=span)
    return stats.index[stats["highly_variable"]].tolist()
