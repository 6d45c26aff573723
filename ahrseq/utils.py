import os
import re
from typing import Optional


def effective_n_jobs(n_jobs: Optional[int]) -> int:
    """Normalize parallelism requests (0 -> all CPUs, negative offsets allowed)."""
    total = os.cpu_count() or 1
    if n_jobs is None:
        return 1
    if n_jobs == 0:
        return total
    if n_jobs < 0:
        return max(1, total + 1 + int(n_jobs))
    return max(1, int(n_jobs))


def sanitize_fragment(fragment: str, default: str = "sheet") -> str:
    """Make a string safe for file names and spreadsheet sheet names."""
    clean = re.sub(r"[^A-Za-z0-9._-]+", "_", str(fragment).strip())
    clean = re.sub(r"_+", "_", clean).strip("_")
    return clean or default
