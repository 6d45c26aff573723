"""Cohort construction: per-(study, tissue) filtered and normalized matrices."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from .config import CohortConfig
from .normalization import calc_norm_factors, cpm
from .samples import AlignmentError, check_cohort_alignment

logger = logging.getLogger(__name__)

__all__ = [
    "Cohort",
    "min_samples_required",
    "gene_filter_mask",
    "resolve_duplicate_symbols",
    "build_cohort",
    "build_cohorts",
]


@dataclass(frozen=True)
class Cohort:
    """An independently normalized sample subset.

    ``counts`` is keyed by gene_id; ``cpm`` and ``log_expr`` are keyed by gene
    symbol after duplicate resolution. All matrices share the column order of
    ``samples.index``.
    """

    name: str
    samples: pd.DataFrame
    counts: pd.DataFrame
    genes: pd.DataFrame
    norm_factors: pd.Series
    cpm: pd.DataFrame
    log_expr: pd.DataFrame

    @property
    def n_samples(self) -> int:
        return int(self.samples.shape[0])

    @property
    def n_genes(self) -> int:
        return int(self.log_expr.shape[0])

    def has_gene(self, symbol: str) -> bool:
        return symbol in self.log_expr.index

    def summary(self) -> Dict[str, object]:
        return {
            "cohort": self.name,
            "n_samples": self.n_samples,
            "n_genes": self.n_genes,
            "min_norm_factor": float(self.norm_factors.min()),
            "max_norm_factor": float(self.norm_factors.max()),
        }


def min_samples_required(n_samples: int, gene_min_samples: int, gene_min_prop: float) -> float:
    """Adaptive sample floor: ``max(gene_min_samples, gene_min_prop * n_samples)``."""
    return max(float(gene_min_samples), gene_min_prop * n_samples)


def gene_filter_mask(
    counts: pd.DataFrame,
    *,
    gene_min_counts: int = 10,
    gene_min_samples: int = 3,
    gene_min_prop: float = 0.2,
) -> pd.Series:
    """Boolean mask of genes with enough reads in enough samples."""
    required = min_samples_required(counts.shape[1], gene_min_samples, gene_min_prop)
    n_passing = (counts >= gene_min_counts).sum(axis=1)
    return n_passing >= required


def resolve_duplicate_symbols(values: pd.DataFrame, symbols: pd.Series) -> pd.Index:
    """
    Pick one row per gene symbol: the one with the highest mean across samples.

    Parameters
    ----------
    values:
        Expression matrix (rows are genes) used to rank duplicates.
    symbols:
        Gene symbol for each row of ``values`` (aligned on the index).

    Returns
    -------
    pandas.Index
        Row labels of ``values`` to keep, in their original order. Ties keep
        the first occurrence.
    """
    frame = pd.DataFrame(
        {
            "symbol": symbols.reindex(values.index).to_numpy(),
            "mean_expr": values.mean(axis=1).to_numpy(),
            "position": np.arange(values.shape[0]),
        },
        index=values.index,
    )
    frame = frame[frame["symbol"].notna() & (frame["symbol"].astype(str) != "")]
    # Stable sort: highest mean first, earlier rows win ties.
    ranked = frame.sort_values(["mean_expr", "position"], ascending=[False, True], kind="mergesort")
    keep = ranked.drop_duplicates(subset="symbol", keep="first")
    return keep.sort_values("position").index


def build_cohort(
    name: str,
    counts: pd.DataFrame,
    samples: pd.DataFrame,
    genes: pd.DataFrame,
    config: Optional[CohortConfig] = None,
    *,
    symbol_col: str = "gene_name",
) -> Cohort:
    """
    Filter, normalize, and log-transform one cohort.

    ``counts`` must already hold exactly the cohort's samples in the order of
    ``samples.index``; any other order is an :class:`AlignmentError`.
    """
    config = config or CohortConfig()
    check_cohort_alignment(counts, samples)
    if counts.shape[1] == 0:
        raise ValueError(f"Cohort '{name}' has no samples.")
    if symbol_col not in genes.columns:
        raise KeyError(f"Gene annotations are missing the '{symbol_col}' column.")

    mask = gene_filter_mask(
        counts,
        gene_min_counts=config.gene_min_counts,
        gene_min_samples=config.gene_min_samples,
        gene_min_prop=config.gene_min_prop,
    )
    filtered = counts.loc[mask.to_numpy()]
    if filtered.shape[0] == 0:
        raise ValueError(f"No genes remain in cohort '{name}' after filtering; relax gene thresholds.")

    factors = calc_norm_factors(
        filtered,
        logratio_trim=config.logratio_trim,
        sum_trim=config.sum_trim,
    )
    norm = cpm(filtered, factors)

    symbols = genes[symbol_col].reindex(filtered.index)
    keep = resolve_duplicate_symbols(norm, symbols)
    norm = norm.loc[keep]
    norm.index = pd.Index(symbols.loc[keep].astype(str).to_numpy(), name="gene")
    log_expr = np.log2(norm + config.prior_count)

    gene_table = genes.reindex(keep).copy()
    gene_table["mean_expr"] = log_expr.mean(axis=1).to_numpy()

    cohort = Cohort(
        name=name,
        samples=samples.copy(),
        counts=filtered.loc[keep].copy(),
        genes=gene_table,
        norm_factors=pd.Series(factors, index=filtered.columns, name="norm_factor"),
        cpm=norm,
        log_expr=log_expr,
    )
    _validate_cohort(cohort)
    logger.info(
        "Cohort %s: %d samples, %d/%d genes kept",
        name,
        cohort.n_samples,
        cohort.n_genes,
        counts.shape[0],
    )
    return cohort


def _validate_cohort(cohort: Cohort) -> None:
    if not cohort.log_expr.index.is_unique:
        raise AlignmentError(f"Cohort '{cohort.name}' has duplicate gene symbols after resolution.")
    for label, frame in (("counts", cohort.counts), ("cpm", cohort.cpm), ("log_expr", cohort.log_expr)):
        if list(frame.columns) != list(cohort.samples.index):
            raise AlignmentError(f"Cohort '{cohort.name}' {label} columns drifted from the sample table.")


def build_cohorts(
    counts: pd.DataFrame,
    samples: pd.DataFrame,
    genes: pd.DataFrame,
    config: Optional[CohortConfig] = None,
    *,
    by: Sequence[str] = ("study", "tissue"),
    min_samples: int = 2,
) -> Dict[str, Cohort]:
    """
    Split samples into cohorts keyed by ``by`` and build each independently.

    Cohorts are named by joining the group values with ``_``. Groups with fewer
    than ``min_samples`` samples are skipped.
    """
    missing = [col for col in by if col not in samples.columns]
    if missing:
        raise KeyError(f"Sample table missing cohort columns: {missing}")
    absent = samples.index.difference(counts.columns)
    if len(absent):
        raise AlignmentError(f"Samples absent from the count matrix: {absent[:5].tolist()}")

    cohorts: Dict[str, Cohort] = {}
    for key, group in samples.groupby(list(by), sort=True):
        key_tuple: Tuple = key if isinstance(key, tuple) else (key,)
        name = "_".join(str(part) for part in key_tuple)
        if len(group) < min_samples:
            logger.warning("Skipping cohort %s with %d samples", name, len(group))
            continue
        cohorts[name] = build_cohort(
            name,
            counts.loc[:, group.index],
            group,
            genes,
            config,
        )
    return cohorts
