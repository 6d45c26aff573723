import numpy as np
import pandas as pd
import pytest

from ahrseq.cohort import (
    build_cohort,
    build_cohorts,
    gene_filter_mask,
    min_samples_required,
    resolve_duplicate_symbols,
)
from ahrseq.config import CohortConfig
from ahrseq.samples import AlignmentError


def _make_cohort_inputs(seed: int = 0, n_genes: int = 120, n_samples: int = 8):
    rng = np.random.default_rng(seed)
    gene_ids = [f"ENSG{i:05d}" for i in range(n_genes)]
    sample_ids = [f"S{j}" for j in range(n_samples)]
    means = rng.gamma(shape=2.0, scale=60.0, size=n_genes)
    counts = pd.DataFrame(rng.poisson(means[:, None], size=(n_genes, n_samples)), index=gene_ids, columns=sample_ids)
    # A few genes that never reach the count threshold.
    counts.iloc[:5] = 0
    counts.iloc[10] = 200
    counts.iloc[11] = 100
    symbols = [f"GENE{i}" for i in range(n_genes)]
    symbols[10] = "DUP"
    symbols[11] = "DUP"
    genes = pd.DataFrame({"gene_name": symbols}, index=gene_ids)
    samples = pd.DataFrame(
        {
            "study": ["A"] * (n_samples // 2) + ["B"] * (n_samples - n_samples // 2),
            "tissue": ["lung"] * n_samples,
            "smoking_type": (["cigarette", "control"] * n_samples)[:n_samples],
        },
        index=pd.Index(sample_ids, name="sample_id"),
    )
    return counts, samples, genes


def test_min_samples_required_is_adaptive():
    assert min_samples_required(10, 3, 0.2) == 3
    assert min_samples_required(100, 3, 0.2) == 20


def test_gene_filter_is_monotone_in_thresholds():
    counts, _, _ = _make_cohort_inputs(1)
    loose = gene_filter_mask(counts, gene_min_counts=5, gene_min_samples=2, gene_min_prop=0.1)
    strict = gene_filter_mask(counts, gene_min_counts=50, gene_min_samples=4, gene_min_prop=0.5)
    assert strict.sum() <= loose.sum()
    # Everything the strict filter keeps the loose filter keeps too.
    assert not (strict & ~loose).any()


def test_resolve_duplicate_symbols_keeps_highest_mean():
    values = pd.DataFrame({"S1": [1.0, 5.0, 2.0, 3.0], "S2": [1.0, 5.0, 2.0, 3.0]}, index=["a", "b", "c", "d"])
    symbols = pd.Series(["X", "X", "Y", "Y"], index=values.index)
    keep = resolve_duplicate_symbols(values, symbols)
    assert keep.tolist() == ["b", "d"]


def test_resolve_duplicate_symbols_ties_keep_first():
    values = pd.DataFrame({"S1": [2.0, 2.0]}, index=["a", "b"])
    symbols = pd.Series(["X", "X"], index=values.index)
    assert resolve_duplicate_symbols(values, symbols).tolist() == ["a"]


def test_build_cohort_shapes_and_invariants():
    counts, samples, genes = _make_cohort_inputs(2)
    config = CohortConfig(gene_min_counts=10, gene_min_samples=3, gene_min_prop=0.2)
    cohort = build_cohort("A_lung", counts, samples, genes, config)

    assert list(cohort.log_expr.columns) == list(samples.index)
    assert cohort.log_expr.index.is_unique
    assert cohort.log_expr.index.name == "gene"
    assert "DUP" in cohort.log_expr.index
    assert "ENSG00010" in cohort.counts.index
    assert "ENSG00011" not in cohort.counts.index
    assert not any(cohort.has_gene(f"GENE{i}") for i in range(5))
    assert np.exp(np.mean(np.log(cohort.norm_factors))) == pytest.approx(1.0)
    expected = np.log2(cohort.cpm + config.prior_count)
    pd.testing.assert_frame_equal(cohort.log_expr, expected)
    assert cohort.summary()["n_samples"] == samples.shape[0]


def test_build_cohort_rejects_misaligned_samples():
    counts, samples, genes = _make_cohort_inputs(3)
    shuffled = counts.loc[:, list(reversed(counts.columns))]
    with pytest.raises(AlignmentError):
        build_cohort("bad", shuffled, samples, genes)


def test_build_cohorts_splits_by_study_and_tissue():
    counts, samples, genes = _make_cohort_inputs(4)
    cohorts = build_cohorts(counts, samples, genes, CohortConfig(gene_min_samples=2))
    assert sorted(cohorts) == ["A_lung", "B_lung"]
    for cohort in cohorts.values():
        assert set(cohort.samples["study"]) == {cohort.name.split("_")[0]}
        assert list(cohort.log_expr.columns) == list(cohort.samples.index)


def test_build_cohorts_requires_grouping_columns():
    counts, samples, genes = _make_cohort_inputs(5)
    with pytest.raises(KeyError):
        build_cohorts(counts, samples.drop(columns=["tissue"]), genes)
