"""Preranked gene-set enrichment against DE rank lists (GSEApy backend)."""

from __future__ import annotations

import logging
from typing import Dict, List, Mapping, Optional, Tuple, Union

import gseapy as gp
import pandas as pd
from statsmodels.stats.multitest import multipletests

from ..config import GSEAConfig
from .base import ENRICHMENT_COLUMNS, DEAnalysisResult, EnrichmentResult
from .gene_sets import GeneSet

logger = logging.getLogger(__name__)

__all__ = [
    "rank_genes",
    "filter_gene_sets",
    "run_prerank",
    "run_gsea_for_contrasts",
    "run_gsea_for_cohorts",
]

GeneSetInput = Union[Mapping[str, GeneSet], Mapping[str, List[str]]]


def _members(value) -> List[str]:
    return sorted(value.genes) if isinstance(value, GeneSet) else sorted(set(value))


def rank_genes(
    table: pd.DataFrame,
    *,
    score_col: str = "log2FoldChange",
    gene_col: str = "gene",
    tie_step: float = 1e-10,
) -> pd.Series:
    """
    Ranked statistic indexed by gene, highest first.

    NaN scores are dropped and duplicate genes collapse to the entry with the
    largest absolute score. Tied scores are ordered by gene name and separated
    by ``tie_step`` so the ranking is reproducible regardless of input order.
    """
    missing = [col for col in (score_col, gene_col) if col not in table.columns]
    if missing:
        raise KeyError(f"Ranking table missing columns: {missing}")
    frame = table.loc[:, [gene_col, score_col]].dropna()
    frame = frame.rename(columns={gene_col: "gene", score_col: "score"})
    frame["gene"] = frame["gene"].astype(str)
    frame["abs_score"] = frame["score"].abs()
    frame = frame.sort_values(["abs_score", "gene"], ascending=[False, True], kind="mergesort")
    frame = frame.drop_duplicates(subset="gene", keep="first")
    frame = frame.sort_values(["score", "gene"], ascending=[False, True], kind="mergesort")

    scores = frame["score"].to_numpy(dtype=float)
    tie_rank = frame.groupby("score", sort=False).cumcount().to_numpy()
    scores = scores - tie_rank * tie_step
    ranked = pd.Series(scores, index=pd.Index(frame["gene"].to_numpy(), name="gene"), name="score")
    return ranked


def filter_gene_sets(
    gene_sets: GeneSetInput,
    universe,
    *,
    min_size: int = 10,
    max_size: int = 500,
) -> Tuple[Dict[str, List[str]], List[str]]:
    """
    Restrict gene sets to ``universe`` and drop those outside the size bounds.

    Returns ``(kept, dropped_names)`` where ``kept`` maps set name to the member
    genes present in the ranked list.
    """
    universe = set(universe)
    kept: Dict[str, List[str]] = {}
    dropped: List[str] = []
    for name, value in gene_sets.items():
        present = [g for g in _members(value) if g in universe]
        if min_size <= len(present) <= max_size:
            kept[str(name)] = present
        else:
            dropped.append(str(name))
    if dropped:
        logger.warning(
            "%d gene sets outside size bounds [%d, %d] were skipped",
            len(dropped),
            min_size,
            max_size,
        )
    return kept, dropped


def _empty_enrichment() -> pd.DataFrame:
    return pd.DataFrame(columns=ENRICHMENT_COLUMNS + ["fdr"])


def run_prerank(
    ranked: pd.Series,
    gene_sets: GeneSetInput,
    config: Optional[GSEAConfig] = None,
) -> Tuple[pd.DataFrame, List[str]]:
    """
    Run preranked GSEA and return ``(table, skipped_gene_sets)``.

    The table holds one row per tested gene set with ``ES``, ``NES``,
    ``pvalue`` (nominal), ``padj`` (Benjamini-Hochberg over tested sets),
    ``fdr`` (GSEA permutation FDR), ``size`` and ``leading_edge``.
    """
    config = config or GSEAConfig()
    kept, dropped = filter_gene_sets(
        gene_sets,
        ranked.index,
        min_size=config.min_size,
        max_size=config.max_size,
    )
    if not kept:
        return _empty_enrichment(), dropped

    res = gp.prerank(
        rnk=ranked,
        gene_sets=kept,
        min_size=config.min_size,
        max_size=config.max_size,
        permutation_num=config.permutation_num,
        seed=config.seed,
        threads=config.threads,
        outdir=None,
        no_plot=True,
        verbose=False,
    )
    raw = res.res2d.copy()
    if "Term" not in raw.columns:
        raw = raw.reset_index().rename(columns={"index": "Term"})

    table = pd.DataFrame(
        {
            "pathway": raw["Term"].astype(str).to_numpy(),
            "ES": raw["ES"].astype(float).to_numpy(),
            "NES": raw["NES"].astype(float).to_numpy(),
            "pvalue": raw["NOM p-val"].astype(float).to_numpy(),
            "fdr": raw["FDR q-val"].astype(float).to_numpy(),
            "leading_edge": raw["Lead_genes"].astype(str).to_numpy(),
        }
    )
    table["size"] = table["pathway"].map(lambda name: len(kept.get(name, ())))
    # Backend may apply its own filtering; never report a set below min_size.
    table = table[table["size"] >= config.min_size].copy()
    table["padj"] = multipletests(table["pvalue"].to_numpy(), method="fdr_bh")[1] if len(table) else []
    table = table.sort_values(["pvalue", "pathway"], kind="mergesort").reset_index(drop=True)
    return table.loc[:, ENRICHMENT_COLUMNS + ["fdr"]], dropped


def run_gsea_for_contrasts(
    de_result: DEAnalysisResult,
    gene_sets: GeneSetInput,
    config: Optional[GSEAConfig] = None,
    *,
    cohort: Optional[str] = None,
    score_col: str = "log2FoldChange",
    gene_col: str = "gene",
) -> EnrichmentResult:
    """One enrichment table per contrast, ranked by the signed ``score_col``."""
    config = config or GSEAConfig()
    cohort = cohort or de_result.parameters.get("cohort")
    per_contrast: Dict[str, pd.DataFrame] = {}
    skipped: Dict[str, List[str]] = {}
    for contrast in de_result.available_contrasts:
        ranked = rank_genes(de_result.get_contrast_df(contrast), score_col=score_col, gene_col=gene_col)
        table, dropped = run_prerank(ranked, gene_sets, config)
        table = table.copy()
        table["contrast"] = contrast
        table["cohort"] = cohort
        per_contrast[contrast] = table
        skipped[contrast] = dropped
        n_sig = int((table["padj"] < 0.05).sum()) if len(table) else 0
        logger.info("GSEA %s %s: %d sets tested, %d with padj < 0.05", cohort, contrast, len(table), n_sig)
    return EnrichmentResult(
        per_contrast=per_contrast,
        parameters={
            "cohort": cohort,
            "score_col": score_col,
            "min_size": config.min_size,
            "max_size": config.max_size,
            "permutation_num": config.permutation_num,
            "seed": config.seed,
        },
        skipped_gene_sets=skipped,
    )


def run_gsea_for_cohorts(
    de_results: Mapping[str, DEAnalysisResult],
    gene_sets: GeneSetInput,
    config: Optional[GSEAConfig] = None,
    **kwargs,
) -> Dict[str, EnrichmentResult]:
    return {
        name: run_gsea_for_contrasts(result, gene_sets, config, cohort=name, **kwargs)
        for name, result in de_results.items()
    }
