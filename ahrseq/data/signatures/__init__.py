"""Bundled gene-signature resources in GMT format."""

from importlib import resources as _resources
from typing import Iterator

__all__ = ["iter_signature_files", "SIGNATURE_FILE_SUFFIX"]

SIGNATURE_FILE_SUFFIX = ".gmt"


def iter_signature_files() -> Iterator[str]:
    """Yield the names of packaged signature GMT files."""
    for entry in _resources.files(__name__).iterdir():
        if entry.is_file() and entry.name.endswith(SIGNATURE_FILE_SUFFIX):
            yield entry.name
