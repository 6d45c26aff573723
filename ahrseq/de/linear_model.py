"""Moderated linear models for bulk log-expression (limma-style).

The model is fit gene-wise on log2-CPM values with a no-intercept design
(one column per level of the grouping factor). Contrasts between levels are
evaluated after empirical-Bayes shrinkage of the residual variances towards a
prior that, with ``trend=True``, follows average expression. This is what keeps
the statistics stable when each group holds only a handful of samples.

References: Smyth (2004) Stat Appl Genet Mol Biol 3:3; Law et al. (2014)
Genome Biol 15:R29.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Dict, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from patsy import dmatrix
from scipy import special, stats
from statsmodels.stats.multitest import multipletests

from ..cohort import Cohort
from ..config import DEThresholds
from .base import DEAnalysisResult, label_calls

logger = logging.getLogger(__name__)

__all__ = [
    "ContrastSpec",
    "DEFAULT_CONTRASTS",
    "LinearModelFit",
    "design_matrix",
    "make_contrasts",
    "lm_fit",
    "contrasts_fit",
    "trigamma_inverse",
    "fit_f_dist",
    "squeeze_var",
    "ebayes",
    "top_table",
    "run_cohort_de",
    "run_de_for_cohorts",
]

# (name, numerator level, denominator level)
ContrastSpec = Tuple[str, str, str]

DEFAULT_CONTRASTS: Tuple[ContrastSpec, ...] = (
    ("cig_vs_ctrl", "cigarette", "control"),
    ("cig_vs_ecig", "cigarette", "e-cigarette"),
    ("ecig_vs_ctrl", "e-cigarette", "control"),
)


@dataclass(frozen=True)
class LinearModelFit:
    """Gene-wise least-squares fit plus (optionally) moderated statistics."""

    coefficients: pd.DataFrame
    stdev_unscaled: pd.DataFrame
    sigma: np.ndarray
    df_residual: np.ndarray
    amean: np.ndarray
    cov_coefficients: np.ndarray
    s2_prior: Optional[np.ndarray] = None
    df_prior: Optional[float] = None
    s2_post: Optional[np.ndarray] = None
    t: Optional[pd.DataFrame] = None
    df_total: Optional[np.ndarray] = None
    p_value: Optional[pd.DataFrame] = None

    @property
    def genes(self) -> pd.Index:
        return self.coefficients.index


def design_matrix(samples: pd.DataFrame, factor: str = "smoking_type") -> pd.DataFrame:
    """No-intercept one-hot design with one column per observed factor level."""
    if factor not in samples.columns:
        raise KeyError(f"Sample table missing design factor '{factor}'.")
    values = samples[factor]
    if values.isna().any():
        missing = samples.index[values.isna()].tolist()[:5]
        raise ValueError(f"Design factor '{factor}' has missing values for samples {missing}.")
    levels = sorted(values.astype(str).unique())
    if len(levels) < 2:
        raise ValueError(f"Design factor '{factor}' needs at least two levels; found {levels}.")
    design = pd.DataFrame(
        {level: (values.astype(str) == level).astype(float) for level in levels},
        index=samples.index,
    )
    return design


def make_contrasts(design: pd.DataFrame, contrasts: Sequence[ContrastSpec]) -> pd.DataFrame:
    """Contrast matrix (design columns x contrasts) for ``numerator - denominator``."""
    matrix = pd.DataFrame(0.0, index=design.columns, columns=[name for name, _, _ in contrasts])
    for name, numerator, denominator in contrasts:
        for level in (numerator, denominator):
            if level not in design.columns:
                raise KeyError(f"Level '{level}' of contrast '{name}' is not a design column.")
        matrix.loc[numerator, name] = 1.0
        matrix.loc[denominator, name] = -1.0
    return matrix


def lm_fit(log_expr: pd.DataFrame, design: pd.DataFrame) -> LinearModelFit:
    """Ordinary least squares for every gene (rows of ``log_expr``)."""
    if list(log_expr.columns) != list(design.index):
        raise ValueError("log_expr columns must match the design matrix rows in order.")
    Y = log_expr.to_numpy(dtype=float)
    X = design.to_numpy(dtype=float)
    n, p = X.shape
    rank = np.linalg.matrix_rank(X)
    if rank < p:
        raise ValueError("Design matrix is not of full column rank.")
    df_res = n - rank
    if df_res <= 0:
        raise ValueError("No residual degrees of freedom; add samples or simplify the design.")

    cov = np.linalg.inv(X.T @ X)
    coef = Y @ X @ cov
    resid = Y - coef @ X.T
    sigma2 = np.sum(resid ** 2, axis=1) / df_res

    stdev = np.tile(np.sqrt(np.diag(cov)), (Y.shape[0], 1))
    return LinearModelFit(
        coefficients=pd.DataFrame(coef, index=log_expr.index, columns=design.columns),
        stdev_unscaled=pd.DataFrame(stdev, index=log_expr.index, columns=design.columns),
        sigma=np.sqrt(sigma2),
        df_residual=np.full(Y.shape[0], float(df_res)),
        amean=Y.mean(axis=1),
        cov_coefficients=cov,
    )


def contrasts_fit(fit: LinearModelFit, contrast_matrix: pd.DataFrame) -> LinearModelFit:
    """Re-express the coefficients of ``fit`` as the requested contrasts."""
    C = contrast_matrix.reindex(fit.coefficients.columns).to_numpy(dtype=float)
    if np.isnan(C).any():
        raise KeyError("Contrast matrix rows do not cover every design column.")
    coef = fit.coefficients.to_numpy() @ C
    cov = C.T @ fit.cov_coefficients @ C
    stdev = np.tile(np.sqrt(np.diag(cov)), (coef.shape[0], 1))
    cols = contrast_matrix.columns
    return replace(
        fit,
        coefficients=pd.DataFrame(coef, index=fit.genes, columns=cols),
        stdev_unscaled=pd.DataFrame(stdev, index=fit.genes, columns=cols),
        cov_coefficients=cov,
        s2_prior=None,
        df_prior=None,
        s2_post=None,
        t=None,
        df_total=None,
        p_value=None,
    )


def trigamma_inverse(x: np.ndarray) -> np.ndarray:
    """Solve ``trigamma(y) = x`` by Newton iteration."""
    x = np.atleast_1d(np.asarray(x, dtype=float))
    y = np.empty_like(x)
    big = x > 1e7
    small = x < 1e-6
    mid = ~(big | small)
    y[big] = 1.0 / np.sqrt(x[big])
    y[small] = 1.0 / x[small]
    if mid.any():
        xm = x[mid]
        ym = 0.5 + 1.0 / xm
        for _ in range(50):
            tri = special.polygamma(1, ym)
            dif = tri * (1.0 - tri / xm) / special.polygamma(2, ym)
            ym = ym + dif
            if np.max(-dif / ym) < 1e-8:
                break
        else:
            logger.warning("trigamma_inverse: iteration limit exceeded")
        y[mid] = ym
    return y


def _trend_basis(covariate: np.ndarray, spline_df: int = 4) -> np.ndarray:
    """Natural cubic spline basis with the intercept inside its column span."""
    basis_df = int(min(spline_df, np.unique(covariate).size))
    if basis_df < 3:
        return np.ones((covariate.size, 1))
    return np.asarray(dmatrix(f"cr(x, df={basis_df}) - 1", {"x": covariate}, return_type="matrix"))


def fit_f_dist(
    variances: np.ndarray,
    df1: np.ndarray,
    covariate: Optional[np.ndarray] = None,
    spline_df: int = 4,
) -> Tuple[np.ndarray, float]:
    """
    Moment estimation of a scaled F prior for sample variances.

    Returns ``(s2_prior, df_prior)``; ``s2_prior`` has one value per gene
    (constant when ``covariate`` is None).
    """
    x = np.asarray(variances, dtype=float)
    df1 = np.asarray(df1, dtype=float)
    n = x.size
    if n < 2:
        raise ValueError("Need at least two genes to estimate a variance prior.")
    median = np.median(x)
    if median == 0:
        logger.warning("More than half of residual variances are exactly zero")
        median = 1.0
    x = np.maximum(x, 1e-5 * median)

    z = np.log(x)
    e = z - special.digamma(df1 / 2.0) + np.log(df1 / 2.0)

    if covariate is None:
        emean = np.full(n, e.mean())
        evar = np.sum((e - e.mean()) ** 2) / (n - 1)
    else:
        basis = _trend_basis(np.asarray(covariate, dtype=float), spline_df)
        beta, _, rank, _ = np.linalg.lstsq(basis, e, rcond=None)
        emean = basis @ beta
        evar = np.sum((e - emean) ** 2) / (n - rank)

    evar = evar - np.mean(special.polygamma(1, df1 / 2.0))
    if evar > 0:
        df2 = float(2.0 * trigamma_inverse(evar)[0])
        s20 = np.exp(emean + special.digamma(df2 / 2.0) - np.log(df2 / 2.0))
    else:
        df2 = np.inf
        s20 = np.exp(emean) if covariate is not None else np.full(n, np.mean(x))
    return s20, df2


def squeeze_var(
    variances: np.ndarray,
    df: np.ndarray,
    covariate: Optional[np.ndarray] = None,
) -> Tuple[np.ndarray, np.ndarray, float]:
    """Posterior variances ``(df*s2 + df0*s0^2) / (df + df0)``."""
    s20, df2 = fit_f_dist(variances, df, covariate=covariate)
    if np.isinf(df2):
        post = np.asarray(s20, dtype=float).copy()
    else:
        post = (df * variances + df2 * s20) / (df + df2)
    return post, s20, df2


def ebayes(fit: LinearModelFit, *, trend: bool = True) -> LinearModelFit:
    """Empirical-Bayes moderated t-statistics for every coefficient of ``fit``."""
    sigma2 = fit.sigma ** 2
    covariate = fit.amean if trend else None
    s2_post, s2_prior, df_prior = squeeze_var(sigma2, fit.df_residual, covariate=covariate)

    df_total = fit.df_residual + df_prior
    df_total = np.minimum(df_total, np.sum(fit.df_residual))

    coef = fit.coefficients.to_numpy()
    se = fit.stdev_unscaled.to_numpy() * np.sqrt(s2_post)[:, None]
    t = coef / se
    p = 2.0 * stats.t.sf(np.abs(t), df=df_total[:, None])
    cols = fit.coefficients.columns
    return replace(
        fit,
        s2_prior=np.asarray(s2_prior),
        df_prior=df_prior,
        s2_post=s2_post,
        t=pd.DataFrame(t, index=fit.genes, columns=cols),
        df_total=df_total,
        p_value=pd.DataFrame(p, index=fit.genes, columns=cols),
    )


def top_table(
    fit: LinearModelFit,
    coef: str,
    thresholds: Optional[DEThresholds] = None,
) -> pd.DataFrame:
    """Result table for one coefficient, sorted by p-value (ties by gene)."""
    if fit.t is None or fit.p_value is None:
        raise ValueError("Run ebayes() on the fit before extracting a results table.")
    if coef not in fit.coefficients.columns:
        raise KeyError(f"Coefficient '{coef}' not found; available: {list(fit.coefficients.columns)}")
    pvals = fit.p_value[coef].to_numpy()
    padj = multipletests(pvals, method="fdr_bh")[1]
    table = pd.DataFrame(
        {
            "gene": fit.genes.astype(str),
            "log2FoldChange": fit.coefficients[coef].to_numpy(),
            "AveExpr": fit.amean,
            "t": fit.t[coef].to_numpy(),
            "pvalue": pvals,
            "padj": padj,
        }
    )
    table["call"] = label_calls(table, thresholds)
    table = table.sort_values(["pvalue", "gene"], kind="mergesort").reset_index(drop=True)
    return table


def run_cohort_de(
    cohort: Cohort,
    contrasts: Sequence[ContrastSpec] = DEFAULT_CONTRASTS,
    *,
    factor: str = "smoking_type",
    thresholds: Optional[DEThresholds] = None,
    min_samples_per_group: int = 2,
    trend: bool = True,
) -> DEAnalysisResult:
    """
    Fit one moderated linear model for the cohort and evaluate each contrast.

    Contrasts referencing a level absent from the cohort, or a level with fewer
    than ``min_samples_per_group`` samples, are skipped and recorded in
    ``skipped``. A cohort with a single level yields no tables, only skips.
    """
    thresholds = thresholds or DEThresholds()
    if factor not in cohort.samples.columns:
        raise KeyError(f"Sample table missing design factor '{factor}'.")
    group_sizes = cohort.samples[factor].dropna().astype(str).value_counts()

    runnable = []
    skipped: Dict[str, str] = {}
    for name, numerator, denominator in contrasts:
        problems = [
            f"level '{level}' has {int(group_sizes.get(level, 0))} samples"
            for level in (numerator, denominator)
            if group_sizes.get(level, 0) < min_samples_per_group
        ]
        if problems:
            skipped[name] = "; ".join(problems)
            logger.warning("Cohort %s: skipping contrast %s (%s)", cohort.name, name, skipped[name])
            continue
        runnable.append((name, numerator, denominator))

    contrast_results: Dict[str, pd.DataFrame] = {}
    fit = None
    if runnable:
        design = design_matrix(cohort.samples, factor)
        fit = lm_fit(cohort.log_expr, design)
        fit = ebayes(contrasts_fit(fit, make_contrasts(design, runnable)), trend=trend)
        for name, _, _ in runnable:
            table = top_table(fit, name, thresholds)
            table["contrast"] = name
            table["cohort"] = cohort.name
            contrast_results[name] = table
            logger.info(
                "Cohort %s %s: %d up, %d down",
                cohort.name,
                name,
                int((table["call"] == "up").sum()),
                int((table["call"] == "dn").sum()),
            )

    return DEAnalysisResult(
        contrast_results=contrast_results,
        parameters={
            "cohort": cohort.name,
            "factor": factor,
            "trend": trend,
            "padj_cutoff": thresholds.padj_cutoff,
            "log2fc_cutoff": thresholds.log2fc_cutoff,
            "df_prior": None if fit is None else fit.df_prior,
        },
        skipped=skipped,
        fit=fit,
    )


def run_de_for_cohorts(
    cohorts: Mapping[str, Cohort],
    contrasts: Sequence[ContrastSpec] = DEFAULT_CONTRASTS,
    **kwargs,
) -> Dict[str, DEAnalysisResult]:
    """Run :func:`run_cohort_de` independently for every cohort."""
    return {name: run_cohort_de(cohort, contrasts, **kwargs) for name, cohort in cohorts.items()}
