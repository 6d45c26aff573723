"""Per-cell scoring of a curated gene signature."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

import anndata as ad
import numpy as np
import pandas as pd
import scanpy as sc

from ..utils import effective_n_jobs

logger = logging.getLogger(__name__)

__all__ = ["SignatureScore", "score_signature"]


@dataclass(frozen=True)
class SignatureScore:
    scores: pd.Series
    genes_used: List[str]
    genes_missing: List[str] = field(default_factory=list)
    pvalues: Optional[pd.Series] = None
    n_permutations: int = 0


def _module_score(
    adata: ad.AnnData,
    genes: List[str],
    *,
    ctrl_size: int,
    n_bins: int,
    random_state: int,
) -> np.ndarray:
    # Lightweight wrapper sharing X so each worker writes to its own obs.
    shell = ad.AnnData(
        X=adata.X,
        obs=pd.DataFrame(index=adata.obs_names),
        var=pd.DataFrame(index=adata.var_names),
    )
    sc.tl.score_genes(
        shell,
        genes,
        ctrl_size=ctrl_size,
        n_bins=n_bins,
        score_name="_score",
        random_state=random_state,
        use_raw=False,
    )
    return shell.obs["_score"].to_numpy(dtype=float)


def score_signature(
    adata: ad.AnnData,
    genes: Iterable[str],
    *,
    score_name: str = "signature_score",
    ctrl_size: int = 50,
    n_bins: int = 25,
    n_permutations: int = 0,
    n_jobs: int = 1,
    seed: int = 123456,
) -> SignatureScore:
    """
    Module score of ``genes`` per cell, optionally with permutation p-values.

    The score (average expression of the signature minus that of expression-
    matched control genes) is written to ``adata.obs[score_name]``. With
    ``n_permutations > 0`` random gene sets of the same size are scored in a
    thread pool of ``n_jobs`` workers; the per-cell empirical p-value is
    ``(1 + #{null >= observed}) / (1 + n_permutations)``.
    """
    genes = list(dict.fromkeys(str(g) for g in genes))
    var_names = set(adata.var_names)
    used = [g for g in genes if g in var_names]
    missing = [g for g in genes if g not in var_names]
    if missing:
        logger.warning("%d signature genes absent from the dataset were dropped", len(missing))
    if not used:
        raise ValueError("None of the signature genes are present in the dataset.")

    observed = _module_score(adata, used, ctrl_size=ctrl_size, n_bins=n_bins, random_state=seed)
    adata.obs[score_name] = observed
    scores = pd.Series(observed, index=adata.obs_names, name=score_name)

    pvalues = None
    if n_permutations > 0:
        rng = np.random.default_rng(seed)
        pool = np.array([g for g in adata.var_names if g not in set(used)])
        draws = [
            (i, rng.choice(pool, size=len(used), replace=False).tolist())
            for i in range(n_permutations)
        ]
        exceed = np.zeros(adata.n_obs, dtype=np.int64)

        def compute(idx: int, random_genes: List[str]) -> np.ndarray:
            return _module_score(
                adata, random_genes, ctrl_size=ctrl_size, n_bins=n_bins, random_state=seed + idx + 1
            )

        workers = effective_n_jobs(n_jobs)
        if workers == 1:
            for idx, random_genes in draws:
                exceed += compute(idx, random_genes) >= observed
        else:
            with ThreadPoolExecutor(max_workers=workers) as executor:
                futures = [executor.submit(compute, idx, random_genes) for idx, random_genes in draws]
                for future in as_completed(futures):
                    exceed += future.result() >= observed
        pvalues = pd.Series((1 + exceed) / (1 + n_permutations), index=adata.obs_names, name=f"{score_name}_pval")
        adata.obs[pvalues.name] = pvalues.to_numpy()

    return SignatureScore(
        scores=scores,
        genes_used=used,
        genes_missing=missing,
        pvalues=pvalues,
        n_permutations=int(n_permutations),
    )
