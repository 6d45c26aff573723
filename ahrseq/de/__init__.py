"""Differential expression, gene-set and enrichment utilities."""

from .base import (
    DEAnalysisResult,
    EnrichmentResult,
    annotate_volcano,
    label_calls,
    summarize_calls,
)
from .gene_sets import (
    GeneSet,
    gene_sets_from_de,
    gene_sets_from_table,
    list_available_signatures,
    load_signature,
    read_gmt,
    write_gmt,
)
from .gsea import (
    filter_gene_sets,
    rank_genes,
    run_gsea_for_cohorts,
    run_gsea_for_contrasts,
    run_prerank,
)
from .linear_model import (
    DEFAULT_CONTRASTS,
    ContrastSpec,
    design_matrix,
    ebayes,
    lm_fit,
    run_cohort_de,
    run_de_for_cohorts,
    top_table,
)
from .signature import SignatureScore, score_signature
from .single_cell import export_table, run_cluster_de, run_wilcoxon

__all__ = [
    "DEAnalysisResult",
    "EnrichmentResult",
    "annotate_volcano",
    "label_calls",
    "summarize_calls",
    "GeneSet",
    "gene_sets_from_de",
    "gene_sets_from_table",
    "list_available_signatures",
    "load_signature",
    "read_gmt",
    "write_gmt",
    "filter_gene_sets",
    "rank_genes",
    "run_gsea_for_cohorts",
    "run_gsea_for_contrasts",
    "run_prerank",
    "DEFAULT_CONTRASTS",
    "ContrastSpec",
    "design_matrix",
    "ebayes",
    "lm_fit",
    "run_cohort_de",
    "run_de_for_cohorts",
    "top_table",
    "SignatureScore",
    "score_signature",
    "export_table",
    "run_cluster_de",
    "run_wilcoxon",
]
