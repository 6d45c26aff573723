"""Explicit configuration objects passed into each analysis stage.

All analysis thresholds live here as frozen dataclasses. A full run
configuration can be assembled from a nested mapping or a JSON file; unknown
keys are rejected so that typos do not silently fall back to defaults.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Mapping, Optional, Tuple, Union

__all__ = [
    "SampleQCConfig",
    "CohortConfig",
    "HVGConfig",
    "DEThresholds",
    "SingleCellDEConfig",
    "GSEAConfig",
    "AnalysisConfig",
]


@dataclass(frozen=True)
class SampleQCConfig:
    """Per-sample QC cutoffs; ``None`` disables a check."""

    min_total_counts: Optional[float] = 1e6
    min_sj_counts: Optional[float] = None
    max_mito_frac: Optional[float] = 0.3
    max_intergenic_frac: Optional[float] = 0.2
    max_ribo_frac: Optional[float] = None
    mt_prefixes: Tuple[str, ...] = ("MT-", "mt-")
    mt_chromosomes: Tuple[str, ...] = ("MT", "chrM", "M")
    ribo_prefixes: Tuple[str, ...] = ("RPL", "RPS", "Rpl", "Rps")


@dataclass(frozen=True)
class CohortConfig:
    gene_min_counts: int = 10
    gene_min_samples: int = 3
    gene_min_prop: float = 0.2
    prior_count: float = 1.0
    logratio_trim: float = 0.3
    sum_trim: float = 0.05

    def __post_init__(self) -> None:
        if self.gene_min_counts < 0 or self.gene_min_samples < 0:
            raise ValueError("gene_min_counts and gene_min_samples must be non-negative.")
        if not 0.0 <= self.gene_min_prop <= 1.0:
            raise ValueError("gene_min_prop must lie in [0, 1].")
        if self.prior_count <= 0:
            raise ValueError("prior_count must be positive.")


@dataclass(frozen=True)
class HVGConfig:
    n_top: int = 500
    span: float = 0.3


@dataclass(frozen=True)
class DEThresholds:
    """Adjusted p-value and absolute log2 fold-change cutoffs for up/dn calls."""

    padj_cutoff: float = 0.05
    log2fc_cutoff: float = 1.0


@dataclass(frozen=True)
class SingleCellDEConfig:
    """Cluster-level Wilcoxon settings.

    ``label_thresholds`` drive volcano labelling and ``export_thresholds`` the
    exported significant-gene table. They are deliberately independent.
    """

    logfc_threshold: float = 0.1
    min_pct: float = 0.01
    min_cells_group: int = 3
    label_thresholds: DEThresholds = field(
        default_factory=lambda: DEThresholds(padj_cutoff=1e-10, log2fc_cutoff=1.0)
    )
    export_thresholds: DEThresholds = field(
        default_factory=lambda: DEThresholds(padj_cutoff=1e-5, log2fc_cutoff=1.0)
    )


@dataclass(frozen=True)
class GSEAConfig:
    min_size: int = 10
    max_size: int = 500
    permutation_num: int = 1000
    seed: int = 123456
    threads: int = 1


def _build(cls, values: Mapping[str, Any]):
    allowed = {f.name for f in fields(cls)}
    unknown = sorted(set(values) - allowed)
    if unknown:
        raise KeyError(f"Unknown {cls.__name__} keys: {unknown}")
    kwargs = {}
    for key, value in values.items():
        if isinstance(value, list):
            value = tuple(value)
        if isinstance(value, Mapping) and key in ("label_thresholds", "export_thresholds"):
            value = _build(DEThresholds, value)
        kwargs[key] = value
    return cls(**kwargs)


@dataclass(frozen=True)
class AnalysisConfig:
    """Bundle of every stage configuration used by the two pipelines."""

    sample_qc: SampleQCConfig = field(default_factory=SampleQCConfig)
    cohort: CohortConfig = field(default_factory=CohortConfig)
    hvg: HVGConfig = field(default_factory=HVGConfig)
    bulk_de: DEThresholds = field(default_factory=DEThresholds)
    single_cell_de: SingleCellDEConfig = field(default_factory=SingleCellDEConfig)
    gsea: GSEAConfig = field(default_factory=GSEAConfig)

    _SECTIONS = {
        "sample_qc": SampleQCConfig,
        "cohort": CohortConfig,
        "hvg": HVGConfig,
        "bulk_de": DEThresholds,
        "single_cell_de": SingleCellDEConfig,
        "gsea": GSEAConfig,
    }

    @classmethod
    def from_mapping(cls, values: Mapping[str, Mapping[str, Any]]) -> "AnalysisConfig":
        unknown = sorted(set(values) - set(cls._SECTIONS))
        if unknown:
            raise KeyError(f"Unknown configuration sections: {unknown}")
        sections = {name: _build(cls._SECTIONS[name], section) for name, section in values.items()}
        return replace(cls(), **sections)

    @classmethod
    def from_json(cls, path: Union[str, Path]) -> "AnalysisConfig":
        with Path(path).open("r", encoding="utf-8") as handle:
            return cls.from_mapping(json.load(handle))
