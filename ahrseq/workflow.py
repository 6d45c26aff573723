"""High-level orchestration for the single-cell and bulk AHR analyses."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Iterable, Mapping, Optional, Sequence, Union

import anndata as ad
import pandas as pd

from .cohort import build_cohorts
from .config import AnalysisConfig
from .de.base import annotate_volcano
from .de.gene_sets import GeneSet, gene_sets_from_de, load_signature
from .de.gsea import run_gsea_for_cohorts
from .de.linear_model import DEFAULT_CONTRASTS, ContrastSpec, run_de_for_cohorts
from .de.signature import score_signature
from .de.single_cell import export_table, run_cluster_de
from .deconvolution import xcell_scores
from .export import export_de_tables, export_frame, export_gsea
from .hvg import highly_variable_genes
from .orthologs import OrthologTable, translate_gene_set
from .pca import run_pca
from .samples import build_sample_table, check_alignment, compute_qc_metrics, filter_samples

logger = logging.getLogger(__name__)

__all__ = ["run_single_cell_pipeline", "run_bulk_pipeline"]

DEFAULT_SINGLE_CELL_SIGNATURE = "ahr_targets_mouse"


def _ensure_directory(path: Optional[Union[str, Path]]) -> Optional[Path]:
    if path is None:
        return None
    out = Path(path)
    out.mkdir(parents=True, exist_ok=True)
    return out


def _signature_genes(signature: Optional[Union[str, Iterable[str], GeneSet]]) -> list:
    if signature is None:
        signature = DEFAULT_SINGLE_CELL_SIGNATURE
    if isinstance(signature, GeneSet):
        return signature.sorted_genes()
    if isinstance(signature, str):
        genes = set()
        for gs in load_signature(signature).values():
            genes |= gs.genes
        return sorted(genes)
    return list(signature)


def _merge_gene_sets(
    gene_sets: Optional[Mapping[str, GeneSet]],
    mouse_gene_sets: Optional[Mapping[str, GeneSet]],
    ortholog_table: Optional[OrthologTable],
) -> Dict[str, GeneSet]:
    merged = dict(gene_sets or {})
    if not mouse_gene_sets:
        return merged
    if ortholog_table is None:
        raise ValueError("mouse_gene_sets require an ortholog_table for translation.")
    for name, gs in mouse_gene_sets.items():
        if name in merged:
            raise ValueError(f"Gene set '{name}' is given both as a human and a mouse set.")
        merged[name] = translate_gene_set(gs, ortholog_table)
    return merged


def run_single_cell_pipeline(
    adata: ad.AnnData,
    config: Optional[AnalysisConfig] = None,
    *,
    condition_key: str = "condition",
    cluster_key: str = "cluster",
    treatment: str = "TCDD",
    control: str = "vehicle",
    signature: Optional[Union[str, Iterable[str], GeneSet]] = None,
    n_permutations: int = 0,
    n_jobs: int = 1,
    layer: Optional[str] = None,
    output_dir: Optional[Union[str, Path]] = None,
) -> Mapping[str, object]:
    """
    Cluster DE, significance labelling, export table and signature scoring.

    ``adata`` must hold log-normalized expression with cluster and condition
    annotations in ``obs``. The exported table doubles as the source of the
    ``TCDD_UP`` / ``TCDD_DN`` gene sets used downstream by the bulk analysis.
    """
    config = config or AnalysisConfig()
    sc_config = config.single_cell_de
    base_output = _ensure_directory(output_dir)

    de_result = run_cluster_de(
        adata,
        condition_key=condition_key,
        cluster_key=cluster_key,
        treatment=treatment,
        control=control,
        config=sc_config,
        layer=layer,
    )
    volcano = {
        cluster: annotate_volcano(table, sc_config.label_thresholds)
        for cluster, table in de_result.contrast_results.items()
    }
    significant = export_table(de_result, sc_config.export_thresholds)
    de_gene_sets = gene_sets_from_de(
        significant,
        sc_config.export_thresholds,
        name=treatment,
        source="single_cell",
    )
    signature_score = score_signature(
        adata,
        _signature_genes(signature),
        n_permutations=n_permutations,
        n_jobs=n_jobs,
        seed=config.gsea.seed,
    )

    if base_output is not None:
        if volcano:
            export_de_tables(volcano, base_output / "cluster_de.xlsx", logger=logger.info)
        export_frame(significant, base_output / "significant_genes.tsv", index=False, logger=logger.info)

    return {
        "de": de_result,
        "volcano": volcano,
        "significant": significant,
        "gene_sets": de_gene_sets,
        "signature_score": signature_score,
    }


def run_bulk_pipeline(
    gene_counts: pd.DataFrame,
    sj_counts: pd.DataFrame,
    sample_sheet: pd.DataFrame,
    metadata: pd.DataFrame,
    genes: pd.DataFrame,
    config: Optional[AnalysisConfig] = None,
    *,
    gene_sets: Optional[Mapping[str, GeneSet]] = None,
    mouse_gene_sets: Optional[Mapping[str, GeneSet]] = None,
    ortholog_table: Optional[OrthologTable] = None,
    signatures: Optional[Mapping] = None,
    spillover: Optional[pd.DataFrame] = None,
    contrasts: Sequence[ContrastSpec] = DEFAULT_CONTRASTS,
    cohort_by: Sequence[str] = ("study", "tissue"),
    factor: str = "smoking_type",
    n_pcs: int = 10,
    output_dir: Optional[Union[str, Path]] = None,
) -> Mapping[str, object]:
    """
    Bulk pipeline from raw counts to per-cohort DE, GSEA and cell-type scores.

    Stages run in order: alignment of the two count matrices (same samples
    and genes in the same order), sample table join, QC metrics, sample
    filtering, cohort construction, highly variable genes, PCA,
    moderated linear-model DE, preranked GSEA and xCell-style deconvolution
    (when ``signatures`` are given).

    GSEA runs on ``gene_sets`` (human symbols, used as is) together with
    ``mouse_gene_sets``, which are translated through ``ortholog_table``.
    """
    config = config or AnalysisConfig()
    all_gene_sets = _merge_gene_sets(gene_sets, mouse_gene_sets, ortholog_table)
    base_output = _ensure_directory(output_dir)

    check_alignment(gene_counts, sj_counts, check_rows=True)
    samples = build_sample_table(sample_sheet, metadata)
    metrics = compute_qc_metrics(gene_counts, sj_counts, genes, config.sample_qc, samples=samples)
    overlap = [col for col in metrics.columns if col in samples.columns]
    samples = samples.drop(columns=overlap).join(metrics, how="inner")
    samples = filter_samples(samples, config.sample_qc)
    kept = samples[samples["qc_pass"]]
    logger.info("%d of %d samples pass QC", len(kept), len(samples))

    cohorts = build_cohorts(gene_counts, kept, genes, config.cohort, by=cohort_by)

    hvg: Dict[str, pd.DataFrame] = {}
    pca = {}
    for name, cohort in cohorts.items():
        hvg[name] = highly_variable_genes(cohort.log_expr, n_top=config.hvg.n_top, span=config.hvg.span)
        top = hvg[name].index[hvg[name]["highly_variable"]]
        pca[name] = run_pca(cohort, top, n_components=n_pcs, random_state=config.gsea.seed)

    de_results = run_de_for_cohorts(
        cohorts,
        contrasts,
        factor=factor,
        thresholds=config.bulk_de,
    )

    enrichment = {}
    if all_gene_sets:
        enrichment = run_gsea_for_cohorts(de_results, all_gene_sets, config.gsea)

    cell_types = {}
    if signatures:
        for name, cohort in cohorts.items():
            cell_types[name] = xcell_scores(cohort.log_expr, signatures, spillover)

    if base_output is not None:
        tables = {name: result.tidy() for name, result in de_results.items() if result.contrast_results}
        if tables:
            export_de_tables(tables, base_output / "bulk_de.xlsx", logger=logger.info)
        for name, result in enrichment.items():
            tidy = result.tidy()
            if not tidy.empty:
                export_gsea(tidy, base_output / f"gsea_{name}", logger=logger.info)
        for name, scores in cell_types.items():
            export_frame(scores, base_output / f"xcell_{name}.tsv", logger=logger.info)

    return {
        "samples": samples,
        "cohorts": cohorts,
        "hvg": hvg,
        "pca": pca,
        "de": de_results,
        "gsea": enrichment,
        "cell_types": cell_types,
    }
