import numpy as np
import pandas as pd
import pytest

from ahrseq.config import AnalysisConfig
from ahrseq.de.gene_sets import GeneSet
from ahrseq.orthologs import OrthologTable
from ahrseq.samples import AlignmentError
from ahrseq.workflow import run_bulk_pipeline, run_single_cell_pipeline


def _make_bulk_inputs(seed: int = 0, n_genes: int = 300, n_per_group: int = 4):
    rng = np.random.default_rng(seed)
    groups = ["cigarette", "e-cigarette", "control"]
    smoking = [g for g in groups for _ in range(n_per_group)]
    n_samples = len(smoking)
    sample_ids = [f"P{j:02d}" for j in range(n_samples)]
    gene_ids = [f"ENSG{i:05d}" for i in range(n_genes)]
    genes = pd.DataFrame(
        {"gene_name": [f"GENE{i}" for i in range(n_genes)], "chromosome": "1"},
        index=gene_ids,
    )
    base = rng.uniform(100.0, 1000.0, size=n_genes)
    mu = np.tile(base[:, None], (1, n_samples))
    cig = np.array([s == "cigarette" for s in smoking])
    mu[:15, cig] *= 6.0
    counts = pd.DataFrame(rng.poisson(rng.gamma(50.0, mu / 50.0)), index=gene_ids, columns=sample_ids)
    sj_counts = pd.DataFrame(rng.poisson(20, size=(n_genes, n_samples)), index=gene_ids, columns=sample_ids)
    sample_sheet = pd.DataFrame(
        {
            "library_id": [f"L{j:02d}" for j in range(n_samples)],
            "sample_id": sample_ids,
            "study": "STUDY1",
            "patient": [f"patient{j}" for j in range(n_samples)],
            "tissue": "lung",
        }
    )
    metadata = pd.DataFrame({"library_id": sample_sheet["library_id"], "smoking_type": smoking})
    return counts, sj_counts, sample_sheet, metadata, genes


def _bulk_config():
    return AnalysisConfig.from_mapping(
        {
            "sample_qc": {"min_total_counts": 1000},
            "hvg": {"n_top": 50},
            "gsea": {"permutation_num": 20, "seed": 5},
        }
    )


def test_bulk_pipeline_end_to_end(tmp_path):
    counts, sj_counts, sheet, metadata, genes = _make_bulk_inputs(1)
    gene_sets = {"CIG_UP": GeneSet.from_genes("CIG_UP", [f"GENE{i}" for i in range(15)])}
    signatures = {
        "Macrophages%A%1": [f"GENE{i}" for i in range(100, 110)],
        "T-cells%A%1": [f"GENE{i}" for i in range(200, 210)],
    }
    results = run_bulk_pipeline(
        counts,
        sj_counts,
        sheet,
        metadata,
        genes,
        _bulk_config(),
        gene_sets=gene_sets,
        signatures=signatures,
        output_dir=tmp_path,
    )
    assert list(results["cohorts"]) == ["STUDY1_lung"]
    assert results["samples"]["qc_pass"].all()
    de = results["de"]["STUDY1_lung"]
    assert sorted(de.available_contrasts) == ["cig_vs_ctrl", "cig_vs_ecig", "ecig_vs_ctrl"]
    cig = de.get_contrast_df("cig_vs_ctrl").set_index("gene")
    assert (cig.loc[[f"GENE{i}" for i in range(15)], "call"] == "up").mean() > 0.8
    assert results["pca"]["STUDY1_lung"].scores.shape[0] == 12
    gsea = results["gsea"]["STUDY1_lung"].tidy()
    assert set(gsea["contrast"]) == {"cig_vs_ctrl", "cig_vs_ecig", "ecig_vs_ctrl"}
    assert list(results["cell_types"]["STUDY1_lung"].index) == ["Macrophages", "T-cells"]
    assert (tmp_path / "bulk_de.xlsx").exists()
    assert (tmp_path / "gsea_STUDY1_lung.tsv").exists()
    assert (tmp_path / "xcell_STUDY1_lung.tsv").exists()


def test_bulk_pipeline_rejects_misaligned_junction_matrix():
    counts, sj_counts, sheet, metadata, genes = _make_bulk_inputs(2)
    with pytest.raises(AlignmentError):
        run_bulk_pipeline(
            counts,
            sj_counts.iloc[:, ::-1],
            sheet,
            metadata,
            genes,
            _bulk_config(),
        )


def test_single_cell_pipeline(tmp_path):
    ad = pytest.importorskip("anndata")
    pytest.importorskip("scanpy")
    rng = np.random.default_rng(3)
    obs = pd.DataFrame(
        {"cluster": ["hep"] * 30 + ["endo"] * 30, "condition": (["TCDD"] * 15 + ["vehicle"] * 15) * 2},
        index=[f"cell{i}" for i in range(60)],
    )
    var_names = ["Cyp1a1", "Cyp1b1", "Tiparp"] + [f"Gene{i}" for i in range(97)]
    rates = rng.uniform(0.5, 5.0, size=(60, 100))
    treated = (obs["condition"] == "TCDD").to_numpy()
    rates[treated, :3] = 25.0
    adata = ad.AnnData(X=np.log1p(rng.poisson(rates).astype(float)), obs=obs, var=pd.DataFrame(index=var_names))

    results = run_single_cell_pipeline(adata, output_dir=tmp_path)
    assert sorted(results["de"].available_contrasts) == ["all", "endo", "hep"]
    assert set(results["volcano"]) == {"all", "endo", "hep"}
    assert results["signature_score"].genes_used == ["Cyp1a1", "Cyp1b1", "Tiparp"]
    assert (tmp_path / "cluster_de.xlsx").exists()
    assert (tmp_path / "significant_genes.tsv").exists()


def test_bulk_pipeline_rejects_reordered_gene_rows():
    counts, sj_counts, sheet, metadata, genes = _make_bulk_inputs(4)
    with pytest.raises(AlignmentError, match="Gene rows"):
        run_bulk_pipeline(counts, sj_counts.iloc[::-1], sheet, metadata, genes, _bulk_config())


def test_bulk_pipeline_translates_only_mouse_gene_sets():
    counts, sj_counts, sheet, metadata, genes = _make_bulk_inputs(5)
    human = {"CIG_UP": GeneSet.from_genes("CIG_UP", [f"GENE{i}" for i in range(15)])}
    mouse = {"MOUSE_AHR": GeneSet.from_genes("MOUSE_AHR", [f"Gene{i}" for i in range(15, 40)])}
    table = OrthologTable.from_pairs([(f"Gene{i}", f"GENE{i}") for i in range(300)])
    results = run_bulk_pipeline(
        counts,
        sj_counts,
        sheet,
        metadata,
        genes,
        _bulk_config(),
        gene_sets=human,
        mouse_gene_sets=mouse,
        ortholog_table=table,
    )
    gsea = results["gsea"]["STUDY1_lung"].tidy()
    assert set(gsea["pathway"]) == {"CIG_UP", "MOUSE_AHR"}
    sizes = gsea.drop_duplicates("pathway").set_index("pathway")["size"]
    assert sizes["CIG_UP"] == 15
    assert sizes["MOUSE_AHR"] == 25


def test_bulk_pipeline_mouse_gene_sets_need_ortholog_table():
    counts, sj_counts, sheet, metadata, genes = _make_bulk_inputs(6)
    mouse = {"MOUSE_AHR": GeneSet.from_genes("MOUSE_AHR", ["Cyp1a1", "Cyp1b1"])}
    with pytest.raises(ValueError, match="ortholog_table"):
        run_bulk_pipeline(counts, sj_counts, sheet, metadata, genes, _bulk_config(), mouse_gene_sets=mouse)
