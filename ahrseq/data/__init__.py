"""Data subpackage for bundled resources (curated gene signatures)."""
