"""Bulk and single-cell RNA-seq analysis of aryl hydrocarbon receptor exposure."""

from ._version import __version__
from .config import AnalysisConfig
from .workflow import run_bulk_pipeline, run_single_cell_pipeline

__all__ = ["__version__", "AnalysisConfig", "run_bulk_pipeline", "run_single_cell_pipeline"]
