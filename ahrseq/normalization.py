"""Library-size normalization for bulk count matrices (genes x samples)."""

from __future__ import annotations

from typing import Optional, Union

import numpy as np
import pandas as pd
from scipy.stats import rankdata

__all__ = [
    "library_sizes",
    "calc_norm_factors",
    "cpm",
    "log_cpm",
]

ArrayLike = Union[np.ndarray, pd.DataFrame]


def library_sizes(counts: ArrayLike) -> np.ndarray:
    # Column totals; samples are columns.
    return np.asarray(counts, dtype=float).sum(axis=0)


def _upper_quartile_column(mat: np.ndarray, lib_size: np.ndarray) -> int:
    f75 = np.percentile(mat / lib_size[None, :], 75, axis=0)
    return int(np.argmin(np.abs(f75 - f75.mean())))


def _tmm_factor(
    obs: np.ndarray,
    ref: np.ndarray,
    obs_lib: float,
    ref_lib: float,
    *,
    logratio_trim: float,
    sum_trim: float,
) -> float:
    """Weighted trimmed mean of M-values of ``obs`` against ``ref``."""
    with np.errstate(divide="ignore", invalid="ignore"):
        log_r = np.log2((obs / obs_lib) / (ref / ref_lib))
        abs_e = (np.log2(obs / obs_lib) + np.log2(ref / ref_lib)) / 2.0
        v = (obs_lib - obs) / obs_lib / obs + (ref_lib - ref) / ref_lib / ref

    finite = np.isfinite(log_r) & np.isfinite(abs_e)
    log_r, abs_e, v = log_r[finite], abs_e[finite], v[finite]
    if log_r.size == 0 or np.max(np.abs(log_r)) < 1e-6:
        return 1.0

    n = log_r.size
    lo_l = np.floor(n * logratio_trim) + 1
    hi_l = n + 1 - lo_l
    lo_s = np.floor(n * sum_trim) + 1
    hi_s = n + 1 - lo_s

    rank_r = rankdata(log_r)
    rank_e = rankdata(abs_e)
    keep = (rank_r >= lo_l) & (rank_r <= hi_l) & (rank_e >= lo_s) & (rank_e <= hi_s)
    if not keep.any():
        return 1.0
    f = np.sum(log_r[keep] / v[keep]) / np.sum(1.0 / v[keep])
    if not np.isfinite(f):
        f = 0.0
    return float(2.0 ** f)


def calc_norm_factors(
    counts: ArrayLike,
    *,
    logratio_trim: float = 0.3,
    sum_trim: float = 0.05,
    ref_column: Optional[int] = None,
) -> np.ndarray:
    """
    TMM normalization factors (Robinson & Oshlack 2010), one per sample.

    The reference sample is the one whose upper-quartile scaled count is closest
    to the mean upper quartile unless ``ref_column`` is supplied. Factors are
    rescaled so that their geometric mean is 1.
    """
    mat = np.asarray(counts, dtype=float)
    if mat.ndim != 2:
        raise ValueError("counts must be a 2D genes x samples matrix.")
    if np.any(mat < 0):
        raise ValueError("counts must be non-negative.")
    lib_size = library_sizes(mat)
    if np.any(lib_size <= 0):
        raise ValueError("Every sample must have a positive library size.")

    # Genes with zero counts everywhere carry no information.
    mat = mat[mat.sum(axis=1) > 0]
    if ref_column is None:
        ref_column = _upper_quartile_column(mat, lib_size)

    factors = np.array(
        [
            _tmm_factor(
                mat[:, i],
                mat[:, ref_column],
                lib_size[i],
                lib_size[ref_column],
                logratio_trim=logratio_trim,
                sum_trim=sum_trim,
            )
            for i in range(mat.shape[1])
        ]
    )
    return factors / np.exp(np.mean(np.log(factors)))


def cpm(counts: ArrayLike, norm_factors: Optional[np.ndarray] = None) -> ArrayLike:
    """Counts per million using the effective library size ``lib_size * factor``."""
    lib_size = library_sizes(counts)
    if norm_factors is not None:
        lib_size = lib_size * np.asarray(norm_factors, dtype=float)
    if isinstance(counts, pd.DataFrame):
        return counts.astype(float).div(lib_size, axis=1) * 1e6
    return np.asarray(counts, dtype=float) / lib_size[None, :] * 1e6


def log_cpm(
    counts: ArrayLike,
    norm_factors: Optional[np.ndarray] = None,
    prior_count: float = 1.0,
) -> ArrayLike:
    return np.log2(cpm(counts, norm_factors) + prior_count)

