"""Principal component analysis of cohort log-expression."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np
import pandas as pd
from sklearn.decomposition import PCA

from .cohort import Cohort

__all__ = ["PCAResult", "run_pca"]


@dataclass(frozen=True)
class PCAResult:
    scores: pd.DataFrame
    loadings: pd.DataFrame
    explained_variance_ratio: pd.Series

    def with_covariates(self, samples: pd.DataFrame, columns: Optional[Sequence[str]] = None) -> pd.DataFrame:
        """Join sample covariates onto the per-sample scores."""
        meta = samples if columns is None else samples.loc[:, list(columns)]
        return self.scores.join(meta, how="left")


def run_pca(
    cohort: Cohort,
    genes: Optional[Sequence[str]] = None,
    *,
    n_components: int = 10,
    random_state: int = 123456,
) -> PCAResult:
    """
    PCA on samples using the selected genes (default: all cohort genes).

    Genes missing from the cohort are ignored. The number of components is
    capped at ``min(n_samples, n_genes)``.
    """
    expr = cohort.log_expr
    if genes is not None:
        present = [g for g in dict.fromkeys(genes) if g in expr.index]
        if not present:
            raise ValueError(f"None of the requested genes are present in cohort '{cohort.name}'.")
        expr = expr.loc[present]

    X = expr.to_numpy(dtype=float).T
    n_comp = int(min(n_components, X.shape[0], X.shape[1]))
    pca = PCA(n_components=n_comp, random_state=random_state)
    scores = pca.fit_transform(X - X.mean(axis=0, keepdims=True))

    pcs = [f"PC{i + 1}" for i in range(n_comp)]
    return PCAResult(
        scores=pd.DataFrame(scores, index=expr.columns, columns=pcs),
        loadings=pd.DataFrame(pca.components_.T, index=expr.index, columns=pcs),
        explained_variance_ratio=pd.Series(np.asarray(pca.explained_variance_ratio_), index=pcs),
    )
