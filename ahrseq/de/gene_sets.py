"""Gene-set records and their sources (GMT files, packaged signatures, DE tables)."""

from __future__ import annotations

import csv
import logging
from dataclasses import dataclass
from functools import lru_cache
from importlib import resources
from pathlib import Path
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Union

import pandas as pd

from ahrseq.data import signatures as signatures_pkg

from ..config import DEThresholds
from .base import label_calls

logger = logging.getLogger(__name__)

__all__ = [
    "GeneSet",
    "read_gmt",
    "write_gmt",
    "list_available_signatures",
    "load_signature",
    "gene_sets_from_de",
    "gene_sets_from_table",
    "as_mapping",
]


@dataclass(frozen=True)
class GeneSet:
    """A named, immutable set of gene symbols."""

    name: str
    genes: FrozenSet[str]
    source: str = ""

    @classmethod
    def from_genes(cls, name: str, genes: Iterable[str], source: str = "") -> "GeneSet":
        cleaned = frozenset(str(g).strip() for g in genes if g is not None and str(g).strip())
        return cls(name=name, genes=cleaned, source=source)

    def __len__(self) -> int:
        return len(self.genes)

    def sorted_genes(self) -> List[str]:
        return sorted(self.genes)


def read_gmt(path: Union[str, Path], source: Optional[str] = None) -> Dict[str, GeneSet]:
    """Parse a GMT file into ``{name: GeneSet}``."""
    path = Path(path)
    source = source or path.name
    out: Dict[str, GeneSet] = {}
    with path.open("r", encoding="utf-8") as handle:
        reader = csv.reader(handle, delimiter="\t")
        for row in reader:
            if not row or not row[0].strip():
                continue
            name = row[0].strip()
            out[name] = GeneSet.from_genes(name, row[2:], source=source)
    return out


def write_gmt(gene_sets: Iterable[GeneSet], path: Union[str, Path]) -> Path:
    path = Path(path)
    with path.open("w", encoding="utf-8", newline="") as handle:
        writer = csv.writer(handle, delimiter="\t", lineterminator="\n")
        for gs in gene_sets:
            writer.writerow([gs.name, gs.source or "NA", *gs.sorted_genes()])
    return path


def list_available_signatures() -> List[str]:
    """Packaged signature file names, sorted alphabetically."""
    return sorted(signatures_pkg.iter_signature_files())


@lru_cache(maxsize=None)
def _load_packaged(filename: str) -> Dict[str, GeneSet]:
    resource = resources.files(signatures_pkg.__name__) / filename
    with resources.as_file(resource) as tmp_path:
        return read_gmt(Path(tmp_path), source=filename)


def load_signature(library: str) -> Dict[str, GeneSet]:
    """
    Load a signature library by path or packaged name.

    ``library`` may be an existing GMT path, a packaged file name
    (``ahr_targets.gmt``) or its stem (``ahr_targets``).
    """
    candidate = Path(library)
    if candidate.exists():
        return read_gmt(candidate)

    packaged = list_available_signatures()
    target = library if library in packaged else f"{library}{signatures_pkg.SIGNATURE_FILE_SUFFIX}"
    if target not in packaged:
        raise FileNotFoundError(
            f"Could not locate signature library '{library}'. Packaged libraries: {packaged}"
        )
    return dict(_load_packaged(target))


def gene_sets_from_de(
    table: pd.DataFrame,
    thresholds: Optional[DEThresholds] = None,
    *,
    name: str = "signature",
    gene_col: str = "gene",
    group_col: Optional[str] = None,
    source: str = "de",
) -> Dict[str, GeneSet]:
    """
    Build ``{name}_UP`` / ``{name}_DN`` gene sets from a DE results table.

    When ``group_col`` is given (e.g. ``cluster``), one pair of sets is built
    per group and named ``{name}_{group}_UP`` / ``_DN``. Empty sets are omitted.
    """
    calls = table.copy()
    calls["call"] = label_calls(calls, thresholds)
    groups = [(None, calls)] if group_col is None else list(calls.groupby(group_col, sort=True))
    out: Dict[str, GeneSet] = {}
    for group, frame in groups:
        prefix = name if group is None else f"{name}_{group}"
        for direction, suffix in (("up", "UP"), ("dn", "DN")):
            genes = frame.loc[frame["call"] == direction, gene_col]
            if genes.empty:
                continue
            gs_name = f"{prefix}_{suffix}"
            out[gs_name] = GeneSet.from_genes(gs_name, genes, source=source)
    logger.info("Built %d gene sets from DE table %s", len(out), name)
    return out


def gene_sets_from_table(
    table: pd.DataFrame,
    *,
    gene_col: str = "gene",
    set_col: Optional[str] = None,
    name: str = "signature",
    source: str = "table",
) -> Dict[str, GeneSet]:
    """Gene sets from a curated list (one column) or a long table (``set_col``)."""
    if gene_col not in table.columns:
        raise KeyError(f"Gene column '{gene_col}' not found in table.")
    if set_col is None:
        return {name: GeneSet.from_genes(name, table[gene_col].dropna(), source=source)}
    return {
        str(key): GeneSet.from_genes(str(key), frame[gene_col].dropna(), source=source)
        for key, frame in table.groupby(set_col, sort=True)
    }


def as_mapping(gene_sets: Union[Mapping[str, GeneSet], Iterable[GeneSet]]) -> Dict[str, List[str]]:
    """Plain ``{name: sorted genes}`` mapping accepted by enrichment engines."""
    values = gene_sets.values() if isinstance(gene_sets, Mapping) else gene_sets
    return {gs.name: gs.sorted_genes() for gs in values}
