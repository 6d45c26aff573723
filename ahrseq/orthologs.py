"""
Cross-species gene symbol translation.

Mouse-derived signatures are mapped onto human symbols (and back) through a
two-column ortholog table. Genes without an ortholog are dropped and logged;
no placeholder symbols are ever produced.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

import pandas as pd

from .de.gene_sets import GeneSet

logger = logging.getLogger(__name__)

__all__ = ["BIOMART_DATASETS", "OrthologTable", "translate_gene_set"]

BIOMART_DATASETS = {
    "human": ("hsapiens_gene_ensembl", "hsapiens"),
    "mouse": ("mmusculus_gene_ensembl", "mmusculus"),
}


@dataclass(frozen=True)
class OrthologTable:
    """Ordered ``source -> target`` symbol pairs; the first pair per source wins."""

    mapping: pd.DataFrame
    source_species: str = "mouse"
    target_species: str = "human"

    def __post_init__(self):
        missing = [c for c in ("source", "target") if c not in self.mapping.columns]
        if missing:
            raise KeyError(f"Ortholog table missing columns: {missing}")

    @classmethod
    def from_pairs(cls, pairs: Iterable, source_species: str = "mouse", target_species: str = "human"):
        frame = pd.DataFrame(list(pairs), columns=["source", "target"])
        return cls(_clean(frame), source_species, target_species)

    @classmethod
    def from_frame(
        cls,
        frame: pd.DataFrame,
        *,
        source_col: str,
        target_col: str,
        source_species: str = "mouse",
        target_species: str = "human",
    ) -> "OrthologTable":
        missing = [c for c in (source_col, target_col) if c not in frame.columns]
        if missing:
            raise KeyError(f"Ortholog table missing columns: {missing}")
        pairs = frame.loc[:, [source_col, target_col]].set_axis(["source", "target"], axis=1)
        return cls(_clean(pairs), source_species, target_species)

    @classmethod
    def from_biomart(cls, source_species: str = "mouse", target_species: str = "human") -> "OrthologTable":
        """Fetch the homolog table from Ensembl BioMart through gseapy."""
        from gseapy import Biomart

        for species in (source_species, target_species):
            if species not in BIOMART_DATASETS:
                raise ValueError(f"Unsupported species '{species}'. Known: {sorted(BIOMART_DATASETS)}")
        dataset, _ = BIOMART_DATASETS[source_species]
        _, prefix = BIOMART_DATASETS[target_species]
        target_col = f"{prefix}_homolog_associated_gene_name"
        bm = Biomart()
        frame = bm.query(dataset=dataset, attributes=["external_gene_name", target_col])
        logger.info("Fetched %d %s->%s ortholog rows from BioMart", len(frame), source_species, target_species)
        return cls.from_frame(
            frame,
            source_col="external_gene_name",
            target_col=target_col,
            source_species=source_species,
            target_species=target_species,
        )

    def lookup(self) -> Dict[str, str]:
        first = self.mapping.drop_duplicates(subset="source", keep="first")
        return dict(zip(first["source"], first["target"]))

    def translate(self, genes: Iterable[str]) -> List[str]:
        """Translate symbols in order, dropping unmapped genes and duplicate targets."""
        table = self.lookup()
        out: List[str] = []
        seen = set()
        unmapped = []
        for gene in genes:
            target = table.get(str(gene))
            if target is None:
                unmapped.append(str(gene))
                continue
            if target not in seen:
                seen.add(target)
                out.append(target)
        if unmapped:
            logger.warning(
                "%d %s genes without a %s ortholog were dropped: %s",
                len(unmapped),
                self.source_species,
                self.target_species,
                ", ".join(unmapped[:10]),
            )
        return out


def _clean(frame: pd.DataFrame) -> pd.DataFrame:
    frame = frame.dropna().astype(str)
    frame = frame[(frame["source"].str.strip() != "") & (frame["target"].str.strip() != "")]
    return frame.reset_index(drop=True)


def translate_gene_set(gene_set: GeneSet, table: OrthologTable, name: Optional[str] = None) -> GeneSet:
    genes = table.translate(gene_set.sorted_genes())
    return GeneSet.from_genes(name or gene_set.name, genes, source=gene_set.source)
