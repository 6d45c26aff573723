"""Shared data structures and pure transforms for differential expression."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, List, Mapping, Optional

import numpy as np
import pandas as pd

from ..config import DEThresholds

__all__ = [
    "DE_COLUMNS",
    "ENRICHMENT_COLUMNS",
    "DEAnalysisResult",
    "EnrichmentResult",
    "label_calls",
    "annotate_volcano",
    "summarize_calls",
]

DE_COLUMNS = ["gene", "log2FoldChange", "AveExpr", "pvalue", "padj", "call"]

ENRICHMENT_COLUMNS = ["pathway", "ES", "NES", "pvalue", "padj", "size", "leading_edge"]


def _require(df: pd.DataFrame, required: Iterable[str]) -> None:
    missing = [col for col in required if col not in df.columns]
    if missing:
        raise KeyError(f"Dataframe missing required columns: {missing}")


@dataclass
class DEAnalysisResult:
    """Structured output for differential expression runs.

    ``contrast_results`` maps a contrast (or cluster) key to its result table.
    ``skipped`` records keys that could not be tested and why.
    """

    contrast_results: Mapping[str, pd.DataFrame]
    parameters: Mapping[str, Any] = field(default_factory=dict)
    skipped: Mapping[str, str] = field(default_factory=dict)
    fit: Any = None

    @property
    def available_contrasts(self) -> List[str]:
        """List of valid contrast identifiers."""
        return list(self.contrast_results.keys())

    def get_contrast_df(self, key: str, *, copy: bool = False) -> pd.DataFrame:
        """
        Retrieve the differential expression dataframe for a contrast.

        Parameters
        ----------
        key:
            Contrast identifier.
        copy:
            When True, return a copy so callers cannot mutate stored results.
        """
        try:
            df = self.contrast_results[key]
        except KeyError as exc:
            available = ", ".join(sorted(self.contrast_results))
            if key in self.skipped:
                raise KeyError(f"Contrast '{key}' was skipped: {self.skipped[key]}.") from exc
            raise KeyError(
                f"Contrast '{key}' not found. Available contrasts: {available or 'none'}."
            ) from exc
        return df.copy() if copy else df

    def tidy(self, key_col: str = "contrast") -> pd.DataFrame:
        """Concatenate every contrast into one long table."""
        frames = []
        for key, df in self.contrast_results.items():
            temp = df.copy()
            if key_col not in temp.columns:
                temp.insert(0, key_col, key)
            frames.append(temp)
        if not frames:
            return pd.DataFrame(columns=[key_col] + DE_COLUMNS)
        return pd.concat(frames, ignore_index=True)


@dataclass
class EnrichmentResult:
    """Container for gene-set enrichment outputs, one table per contrast."""

    per_contrast: Mapping[str, pd.DataFrame]
    parameters: Mapping[str, Any] = field(default_factory=dict)
    skipped_gene_sets: Mapping[str, List[str]] = field(default_factory=dict)

    @property
    def available_contrasts(self) -> List[str]:
        return list(self.per_contrast.keys())

    def get_contrast_df(self, key: str, *, copy: bool = False) -> pd.DataFrame:
        try:
            df = self.per_contrast[key]
        except KeyError as exc:
            available = ", ".join(sorted(self.per_contrast))
            raise KeyError(
                f"Contrast '{key}' not found. Available contrasts: {available or 'none'}."
            ) from exc
        return df.copy() if copy else df

    def tidy(self) -> pd.DataFrame:
        """Return a concatenated long-form DataFrame."""
        frames = []
        for contrast, df in self.per_contrast.items():
            temp = df.copy()
            if "contrast" not in temp.columns:
                temp.insert(0, "contrast", contrast)
            frames.append(temp)
        if not frames:
            return pd.DataFrame(columns=["contrast"] + ENRICHMENT_COLUMNS)
        return pd.concat(frames, ignore_index=True)


def label_calls(
    df: pd.DataFrame,
    thresholds: Optional[DEThresholds] = None,
    *,
    lfc_col: str = "log2FoldChange",
    p_col: str = "padj",
) -> pd.Series:
    """
    Categorical call per row: ``up``, ``dn`` or ``no``.

    A row is called only when ``padj < padj_cutoff`` and
    ``|log2FoldChange| > log2fc_cutoff``; NaN statistics are ``no``.
    """
    thresholds = thresholds or DEThresholds()
    _require(df, [lfc_col, p_col])
    lfc = df[lfc_col].astype(float)
    padj = df[p_col].astype(float)
    sig = (padj < thresholds.padj_cutoff) & (lfc.abs() > thresholds.log2fc_cutoff)
    calls = np.where(sig & (lfc > 0), "up", np.where(sig & (lfc < 0), "dn", "no"))
    return pd.Series(calls, index=df.index, name="call")


def annotate_volcano(
    df: pd.DataFrame,
    thresholds: Optional[DEThresholds] = None,
    *,
    genes_of_interest: Iterable[str] = (),
    n_top: int = 10,
    gene_col: str = "gene",
    lfc_col: str = "log2FoldChange",
    p_col: str = "padj",
    epsilon: float = 1e-300,
) -> pd.DataFrame:
    """
    Filter, label, and pick genes to annotate for a volcano plot.

    Returns a new frame with ``call``, ``neg_log10_padj`` and ``label``. The
    label holds the gene name for genes of interest present in ``df`` plus the
    ``n_top`` most significant called genes per direction; otherwise it is
    empty. Rows with missing statistics are dropped. ``df`` is not modified.
    """
    thresholds = thresholds or DEThresholds()
    _require(df, [gene_col, lfc_col, p_col])
    out = df.dropna(subset=[lfc_col, p_col]).copy()
    out["call"] = label_calls(out, thresholds, lfc_col=lfc_col, p_col=p_col)
    out["neg_log10_padj"] = -np.log10(out[p_col].astype(float) + epsilon)

    present = set(out[gene_col])
    selected = {g for g in genes_of_interest if g in present}
    for direction in ("up", "dn"):
        hits = out[out["call"] == direction]
        hits = hits.assign(_abs_lfc=hits[lfc_col].abs()).sort_values(
            [p_col, "_abs_lfc", gene_col], ascending=[True, False, True], kind="mergesort"
        )
        selected.update(hits[gene_col].head(n_top))

    out["label"] = np.where(out[gene_col].isin(selected), out[gene_col].astype(str), "")
    return out


def summarize_calls(df: pd.DataFrame, group_cols: Iterable[str] = ("contrast",)) -> pd.DataFrame:
    """Count up/dn/no calls per group."""
    group_cols = [col for col in group_cols if col in df.columns]
    _require(df, ["call"])
    if not group_cols:
        return df["call"].value_counts().reindex(["up", "dn", "no"], fill_value=0).to_frame().T
    counts = df.groupby(group_cols)["call"].value_counts().unstack(fill_value=0)
    return counts.reindex(columns=["up", "dn", "no"], fill_value=0)

