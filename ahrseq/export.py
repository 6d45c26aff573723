"""Writers for DE and enrichment tables."""

from __future__ import annotations

from pathlib import Path
from typing import Callable, Dict, Mapping, Optional, Union

import pandas as pd

from .utils import sanitize_fragment

__all__ = ["MAX_SHEET_NAME", "sheet_names", "export_de_tables", "export_gsea", "export_frame"]

MAX_SHEET_NAME = 31

PathLike = Union[str, Path]


def sheet_names(keys) -> Dict[str, str]:
    """Unique Excel-safe sheet names for ``keys``, preserving order."""
    out: Dict[str, str] = {}
    used = set()
    for key in keys:
        base = sanitize_fragment(key)[:MAX_SHEET_NAME]
        name = base
        suffix = 1
        while name.lower() in used:
            tag = f"_{suffix}"
            name = f"{base[:MAX_SHEET_NAME - len(tag)]}{tag}"
            suffix += 1
        used.add(name.lower())
        out[key] = name
    return out


def export_de_tables(
    tables: Mapping[str, pd.DataFrame],
    path: PathLike,
    *,
    index: bool = False,
    logger: Optional[Callable[[str], None]] = None,
) -> Path:
    """Write one worksheet per table (keys become sheet names)."""
    if not tables:
        raise ValueError("No tables to export.")
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    names = sheet_names(list(tables))
    with pd.ExcelWriter(path, engine="openpyxl") as writer:
        for key, frame in tables.items():
            frame.to_excel(writer, sheet_name=names[key], index=index)
    if logger:
        logger(f"Saved {len(tables)} DE tables to {path}")
    return path


def export_frame(
    table: pd.DataFrame,
    path: PathLike,
    *,
    index: bool = True,
    logger: Optional[Callable[[str], None]] = None,
) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    table.to_csv(path, sep="\t", index=index)
    if logger:
        logger(f"Saved table to {path}")
    return path


def export_gsea(
    table: pd.DataFrame,
    path_prefix: PathLike,
    *,
    sheet_name: str = "gsea",
    logger: Optional[Callable[[str], None]] = None,
) -> Dict[str, Path]:
    """Write an enrichment table as ``<prefix>.tsv`` and ``<prefix>.xlsx``."""
    prefix = Path(path_prefix)
    prefix.parent.mkdir(parents=True, exist_ok=True)
    tsv_path = prefix.with_name(prefix.name + ".tsv")
    xlsx_path = prefix.with_name(prefix.name + ".xlsx")
    table.to_csv(tsv_path, sep="\t", index=False)
    with pd.ExcelWriter(xlsx_path, engine="openpyxl") as writer:
        table.to_excel(writer, sheet_name=sheet_names([sheet_name])[sheet_name], index=False)
    if logger:
        logger(f"Saved enrichment table to {tsv_path} and {xlsx_path}")
    return {"tsv": tsv_path, "xlsx": xlsx_path}
