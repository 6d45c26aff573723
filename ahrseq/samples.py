"""Sample-sheet assembly, input alignment checks, and per-sample QC.

The bulk pipeline starts from three inputs that must agree with each other:

  1. A sample sheet joined to an external metadata table on the library key.
  2. A gene-level count matrix (genes x samples).
  3. A splice-junction count matrix with the same sample columns.

Alignment problems are fatal and raised as :class:`AlignmentError` before any
statistic is computed. QC metrics are then derived per sample and used to drop
low-quality libraries.
"""

from __future__ import annotations

import logging
from typing import Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from .config import SampleQCConfig

logger = logging.getLogger(__name__)

__all__ = [
    "AlignmentError",
    "SAMPLE_ID_COLUMNS",
    "QC_METRIC_COLUMNS",
    "build_sample_table",
    "check_alignment",
    "check_cohort_alignment",
    "compute_qc_metrics",
    "filter_samples",
]

SAMPLE_ID_COLUMNS: Tuple[str, ...] = ("study", "patient", "sample", "library_id")

QC_METRIC_COLUMNS: Tuple[str, ...] = (
    "total_counts",
    "total_sj_counts",
    "mito_frac",
    "intergenic_frac",
    "ribo_frac",
)


class AlignmentError(ValueError):
    """Raised when matrices and sample tables disagree on row/column keys."""


def _first_mismatch(left: Sequence, right: Sequence, limit: int = 5) -> str:
    pairs = [(a, b) for a, b in zip(left, right) if a != b][:limit]
    if not pairs:
        return f"lengths differ ({len(left)} vs {len(right)})"
    return ", ".join(f"{a!r}!={b!r}" for a, b in pairs)


def build_sample_table(
    sample_sheet: pd.DataFrame,
    metadata: pd.DataFrame,
    *,
    key: str = "library_id",
    id_column: str = "sample_id",
) -> pd.DataFrame:
    """
    Join the sample sheet with external metadata and keep one row per library.

    Parameters
    ----------
    sample_sheet:
        Sequencing sample sheet; must contain ``key``.
    metadata:
        Clinical/cohort annotations keyed by the same library identifier.
    key:
        Join column.
    id_column:
        Column used as the returned index. When absent the library key is used.
    """
    for name, frame in (("sample_sheet", sample_sheet), ("metadata", metadata)):
        if key not in frame.columns:
            raise KeyError(f"{name} is missing the join column '{key}'.")

    overlap = [col for col in metadata.columns if col in sample_sheet.columns and col != key]
    merged = sample_sheet.merge(
        metadata.drop(columns=overlap),
        on=key,
        how="inner",
    )
    n_before = len(merged)
    merged = merged.drop_duplicates(subset=key, keep="first")
    if len(merged) < n_before:
        logger.info("Dropped %d duplicate library records", n_before - len(merged))

    index_col = id_column if id_column in merged.columns else key
    merged = merged.set_index(index_col, drop=False)
    merged.index = merged.index.astype(str)
    merged.index.name = "sample_id"
    if merged.index.has_duplicates:
        dups = merged.index[merged.index.duplicated()].unique().tolist()[:5]
        raise AlignmentError(f"Sample identifiers are not unique after the join: {dups}")
    logger.info("Sample table has %d libraries after joining metadata", len(merged))
    return merged


def check_alignment(gene_counts: pd.DataFrame, sj_counts: pd.DataFrame, *, check_rows: bool = False) -> None:
    """
    Verify that the gene-level and splice-junction matrices share sample order.

    When ``check_rows`` is True the row keys must also be identical and in the
    same order (both matrices keyed by gene identifier).
    """
    if list(gene_counts.columns) != list(sj_counts.columns):
        raise AlignmentError(
            "Sample columns of the gene and splice-junction matrices are not identical: "
            + _first_mismatch(list(gene_counts.columns), list(sj_counts.columns))
        )
    if check_rows and list(gene_counts.index) != list(sj_counts.index):
        raise AlignmentError(
            "Gene rows of the gene and splice-junction matrices are not identical: "
            + _first_mismatch(list(gene_counts.index), list(sj_counts.index))
        )


def check_cohort_alignment(counts: pd.DataFrame, samples: pd.DataFrame) -> None:
    """Verify that matrix columns are exactly the sample table index, in order."""
    if list(counts.columns) != list(samples.index):
        raise AlignmentError(
            "Count matrix columns do not match the sample table index: "
            + _first_mismatch(list(counts.columns), list(samples.index))
        )


def _feature_mask(genes: pd.DataFrame, index: pd.Index, config: SampleQCConfig) -> Tuple[np.ndarray, np.ndarray]:
    annot = genes.reindex(index)
    names = annot["gene_name"].fillna("").astype(str) if "gene_name" in annot else pd.Series("", index=index)
    mito = names.str.startswith(tuple(config.mt_prefixes))
    if "chromosome" in annot:
        mito |= annot["chromosome"].astype(str).isin(config.mt_chromosomes)
    ribo = names.str.startswith(tuple(config.ribo_prefixes))
    return mito.to_numpy(), ribo.to_numpy()


def compute_qc_metrics(
    gene_counts: pd.DataFrame,
    sj_counts: pd.DataFrame,
    genes: pd.DataFrame,
    config: Optional[SampleQCConfig] = None,
    *,
    samples: Optional[pd.DataFrame] = None,
) -> pd.DataFrame:
    """
    Compute per-sample QC metrics.

    ``mito_frac`` and ``ribo_frac`` come from gene annotations; ``intergenic_frac``
    is an aligner statistic and is carried over from ``samples`` when present.
    """
    config = config or SampleQCConfig()
    check_alignment(gene_counts, sj_counts)

    mito, ribo = _feature_mask(genes, gene_counts.index, config)
    totals = gene_counts.sum(axis=0).astype(float)
    with np.errstate(divide="ignore", invalid="ignore"):
        metrics = pd.DataFrame(
            {
                "total_counts": totals,
                "total_sj_counts": sj_counts.sum(axis=0).astype(float),
                "mito_frac": gene_counts.loc[mito].sum(axis=0) / totals,
                "ribo_frac": gene_counts.loc[ribo].sum(axis=0) / totals,
            },
            index=gene_counts.columns,
        )
    if samples is not None and "intergenic_frac" in samples.columns:
        metrics["intergenic_frac"] = samples["intergenic_frac"].reindex(metrics.index).astype(float)
    else:
        metrics["intergenic_frac"] = np.nan
    metrics.index.name = "sample_id"
    return metrics.loc[:, list(QC_METRIC_COLUMNS)]


def filter_samples(samples: pd.DataFrame, config: Optional[SampleQCConfig] = None) -> pd.DataFrame:
    """
    Flag samples failing QC and return the annotated table.

    The returned frame keeps every sample with ``qc_pass`` and ``qc_reason``
    columns; callers subset with ``samples[samples["qc_pass"]]``. Missing metric
    values never fail a sample.
    """
    config = config or SampleQCConfig()
    checks = (
        ("total_counts", config.min_total_counts, "low_counts", np.less),
        ("total_sj_counts", config.min_sj_counts, "low_sj_counts", np.less),
        ("mito_frac", config.max_mito_frac, "high_mito", np.greater),
        ("intergenic_frac", config.max_intergenic_frac, "high_intergenic", np.greater),
        ("ribo_frac", config.max_ribo_frac, "high_ribo", np.greater),
    )
    out = samples.copy()
    reasons = {sample_id: [] for sample_id in out.index}
    for column, cutoff, label, op in checks:
        if cutoff is None or column not in out.columns:
            continue
        values = out[column].astype(float)
        failed = op(values, cutoff) & values.notna()
        for sample_id in out.index[failed.to_numpy()]:
            reasons[sample_id].append(label)

    out["qc_reason"] = [";".join(reasons[sample_id]) for sample_id in out.index]
    out["qc_pass"] = out["qc_reason"] == ""
    n_fail = int((~out["qc_pass"]).sum())
    if n_fail:
        logger.warning("%d of %d samples failed QC", n_fail, len(out))
    return out
