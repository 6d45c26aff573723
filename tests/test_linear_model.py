import numpy as np
import pandas as pd
import pytest

from ahrseq.cohort import build_cohort
from ahrseq.config import CohortConfig, DEThresholds
from ahrseq.de.base import label_calls
from ahrseq.de.linear_model import (
    DEFAULT_CONTRASTS,
    contrasts_fit,
    design_matrix,
    ebayes,
    _trend_basis,
    lm_fit,
    make_contrasts,
    run_cohort_de,
    run_de_for_cohorts,
    trigamma_inverse,
)
from scipy import special


def _make_cohort(
    seed: int = 7,
    n_genes: int = 500,
    n_per_group: int = 5,
    fold: float = 4.0,
    levels=("cigarette", "control"),
    name: str = "S_lung",
):
    rng = np.random.default_rng(seed)
    groups = [level for level in levels for _ in range(n_per_group)]
    n_samples = len(groups)
    sample_ids = [f"S{j:02d}" for j in range(n_samples)]
    base = rng.uniform(200.0, 2000.0, size=n_genes)
    # Gamma-Poisson noise with a modest biological dispersion.
    mu = np.tile(base[:, None], (1, n_samples))
    mu[0, :n_per_group] *= fold
    lam = rng.gamma(shape=1 / 0.02, scale=mu * 0.02)
    counts = pd.DataFrame(
        rng.poisson(lam),
        index=[f"ENSG{i:05d}" for i in range(n_genes)],
        columns=sample_ids,
    )
    genes = pd.DataFrame({"gene_name": [f"GENE{i}" for i in range(n_genes)]}, index=counts.index)
    samples = pd.DataFrame(
        {"study": "S", "tissue": "lung", "smoking_type": groups},
        index=pd.Index(sample_ids, name="sample_id"),
    )
    return build_cohort(name, counts, samples, genes, CohortConfig())


def test_design_matrix_one_hot():
    samples = pd.DataFrame({"smoking_type": ["control", "cigarette", "control"]}, index=["a", "b", "c"])
    design = design_matrix(samples)
    assert list(design.columns) == ["cigarette", "control"]
    assert design.sum(axis=1).tolist() == [1.0, 1.0, 1.0]


def test_design_matrix_needs_two_levels():
    samples = pd.DataFrame({"smoking_type": ["control", "control"]}, index=["a", "b"])
    with pytest.raises(ValueError):
        design_matrix(samples)


def test_make_contrasts_signs():
    design = pd.DataFrame({"cigarette": [1.0, 0.0], "control": [0.0, 1.0]}, index=["a", "b"])
    matrix = make_contrasts(design, [("cig_vs_ctrl", "cigarette", "control")])
    assert matrix["cig_vs_ctrl"].tolist() == [1.0, -1.0]
    with pytest.raises(KeyError):
        make_contrasts(design, [("bad", "cigarette", "e-cigarette")])


def test_trigamma_inverse_roundtrip():
    y = np.array([0.05, 0.5, 2.0, 10.0, 100.0])
    x = special.polygamma(1, y)
    assert trigamma_inverse(x) == pytest.approx(y, rel=1e-6)


def test_label_calls_thresholds():
    df = pd.DataFrame(
        {
            "log2FoldChange": [2.0, 2.0, -2.0, 0.5, np.nan],
            "padj": [0.3, 0.01, 0.01, 0.001, 0.01],
        }
    )
    calls = label_calls(df, DEThresholds(padj_cutoff=0.05, log2fc_cutoff=1.0))
    assert calls.tolist() == ["no", "up", "dn", "no", "no"]


def test_moderated_fit_shrinks_towards_prior():
    cohort = _make_cohort(11)
    design = design_matrix(cohort.samples)
    fit = lm_fit(cohort.log_expr, design)
    fit = ebayes(contrasts_fit(fit, make_contrasts(design, [("cig_vs_ctrl", "cigarette", "control")])))
    assert fit.df_prior > 0
    s2 = fit.sigma ** 2
    # Posterior variances lie between the gene-wise and prior variances.
    lo = np.minimum(s2, fit.s2_prior)
    hi = np.maximum(s2, fit.s2_prior)
    assert np.all(fit.s2_post >= lo - 1e-12)
    assert np.all(fit.s2_post <= hi + 1e-12)
    assert np.all(fit.df_total <= fit.df_residual.sum() + 1e-9)


def test_end_to_end_single_gene_four_fold_up():
    cohort = _make_cohort(7)
    result = run_cohort_de(cohort, [("cig_vs_ctrl", "cigarette", "control")])
    table = result.get_contrast_df("cig_vs_ctrl")
    row = table.set_index("gene").loc["GENE0"]
    assert row["padj"] < 0.05
    assert row["log2FoldChange"] == pytest.approx(2.0, abs=0.3)
    assert row["call"] == "up"
    assert table.iloc[0]["gene"] == "GENE0"
    # Null genes are rarely called.
    assert (table["call"] != "no").sum() <= 5
    assert set(table["contrast"]) == {"cig_vs_ctrl"}
    assert set(table["cohort"]) == {"S_lung"}


def test_missing_levels_are_skipped():
    cohort = _make_cohort(3, n_genes=100)
    result = run_cohort_de(cohort, DEFAULT_CONTRASTS)
    assert result.available_contrasts == ["cig_vs_ctrl"]
    assert sorted(result.skipped) == ["cig_vs_ecig", "ecig_vs_ctrl"]
    with pytest.raises(KeyError, match="skipped"):
        result.get_contrast_df("ecig_vs_ctrl")


def test_single_level_cohort_is_skipped_not_fatal():
    cohorts = {
        "S_lung": _make_cohort(5, n_genes=100, n_per_group=3),
        "S_blood": _make_cohort(6, n_genes=100, n_per_group=4, levels=("control",), name="S_blood"),
    }
    results = run_de_for_cohorts(cohorts, DEFAULT_CONTRASTS)
    assert results["S_lung"].available_contrasts == ["cig_vs_ctrl"]
    controls_only = results["S_blood"]
    assert controls_only.contrast_results == {}
    assert sorted(controls_only.skipped) == ["cig_vs_ctrl", "cig_vs_ecig", "ecig_vs_ctrl"]
    assert "'cigarette' has 0 samples" in controls_only.skipped["cig_vs_ctrl"]
    assert controls_only.fit is None
    assert controls_only.tidy().empty


def test_trend_basis_width_matches_four_spline_df():
    covariate = np.linspace(1.0, 12.0, 200)
    basis = _trend_basis(covariate)
    assert basis.shape == (200, 4)
    # The intercept lies in the span of the basis.
    beta, *_ = np.linalg.lstsq(basis, np.ones(200), rcond=None)
    assert np.allclose(basis @ beta, 1.0)
    assert _trend_basis(np.repeat([1.0, 2.0, 3.0], 10)).shape == (30, 3)
    assert _trend_basis(np.repeat([1.0, 2.0], 10)).shape == (20, 1)
