import numpy as np
import pandas as pd
import pytest

from ahrseq.config import SampleQCConfig
from ahrseq.samples import (
    AlignmentError,
    build_sample_table,
    check_alignment,
    compute_qc_metrics,
    filter_samples,
)


def _make_inputs():
    sample_ids = ["S1", "S2", "S3"]
    genes = pd.DataFrame(
        {
            "gene_name": ["MT-CO1", "RPL3", "CYP1A1", "AHRR"],
            "chromosome": ["MT", "1", "15", "5"],
        },
        index=["ENSG1", "ENSG2", "ENSG3", "ENSG4"],
    )
    gene_counts = pd.DataFrame(
        [[100, 800, 50], [100, 100, 50], [400, 50, 450], [400, 50, 450]],
        index=genes.index,
        columns=sample_ids,
    )
    sj_counts = pd.DataFrame(
        [[10, 5, 30], [20, 10, 40]],
        index=["junction1", "junction2"],
        columns=sample_ids,
    )
    return gene_counts, sj_counts, genes


def test_build_sample_table_joins_and_dedupes():
    sheet = pd.DataFrame(
        {
            "library_id": ["L1", "L2", "L2", "L3"],
            "sample_id": ["S1", "S2", "S2", "S3"],
            "study": ["A", "A", "A", "B"],
        }
    )
    metadata = pd.DataFrame(
        {
            "library_id": ["L1", "L2", "L3"],
            "smoking_type": ["cigarette", "control", "e-cigarette"],
            "study": ["ignored", "ignored", "ignored"],
        }
    )
    table = build_sample_table(sheet, metadata)
    assert table.index.tolist() == ["S1", "S2", "S3"]
    assert table.index.name == "sample_id"
    assert table["study"].tolist() == ["A", "A", "B"]
    assert table.loc["S3", "smoking_type"] == "e-cigarette"


def test_build_sample_table_requires_key():
    with pytest.raises(KeyError):
        build_sample_table(pd.DataFrame({"x": [1]}), pd.DataFrame({"library_id": ["L1"]}))


def test_alignment_mismatch_raises_before_metrics():
    gene_counts, sj_counts, genes = _make_inputs()
    reordered = sj_counts.loc[:, ["S2", "S1", "S3"]]
    with pytest.raises(AlignmentError, match="S2"):
        check_alignment(gene_counts, reordered)
    with pytest.raises(AlignmentError):
        compute_qc_metrics(gene_counts, reordered, genes)


def test_qc_metrics_fractions():
    gene_counts, sj_counts, genes = _make_inputs()
    samples = pd.DataFrame({"intergenic_frac": [0.05, 0.5, np.nan]}, index=["S1", "S2", "S3"])
    metrics = compute_qc_metrics(gene_counts, sj_counts, genes, samples=samples)
    assert metrics.loc["S1", "total_counts"] == 1000
    assert metrics.loc["S3", "total_sj_counts"] == 70
    assert metrics.loc["S1", "mito_frac"] == pytest.approx(0.1)
    assert metrics.loc["S2", "mito_frac"] == pytest.approx(0.8)
    assert metrics.loc["S1", "ribo_frac"] == pytest.approx(0.1)
    assert np.isnan(metrics.loc["S3", "intergenic_frac"])


def test_filter_samples_records_reasons():
    gene_counts, sj_counts, genes = _make_inputs()
    samples = pd.DataFrame({"intergenic_frac": [0.05, 0.5, np.nan]}, index=["S1", "S2", "S3"])
    metrics = compute_qc_metrics(gene_counts, sj_counts, genes, samples=samples)
    config = SampleQCConfig(min_total_counts=500, max_mito_frac=0.3, max_intergenic_frac=0.2)
    out = filter_samples(metrics, config)
    assert out["qc_pass"].tolist() == [True, False, True]
    assert out.loc["S2", "qc_reason"] == "high_mito;high_intergenic"
    # Missing intergenic fraction does not fail S3.
    assert out.loc["S3", "qc_reason"] == ""


def test_filter_samples_disabled_checks():
    metrics = pd.DataFrame({"total_counts": [10.0, 20.0]}, index=["S1", "S2"])
    out = filter_samples(metrics, SampleQCConfig(min_total_counts=None))
    assert out["qc_pass"].all()
