"""
Shared fixtures for the DGE Pipeline test suite.
"""

import pytest

from dge_pipeline.design import build_design_matrix, make_contrasts
from dge_pipeline.ebayes import ebayes
from dge_pipeline.filtering import apply_filter, filter_by_expr
from dge_pipeline.linear_model import contrasts_fit, lm_fit
from dge_pipeline.normalization import calc_norm_factors
from dge_pipeline.voom import voom
from tests.generate_test_data import CountMatrixGenerator, create_sample_data


@pytest.fixture(scope="session")
def generator():
    """Generator whose DE gene lists describe the simulated dataset."""
    return CountMatrixGenerator(seed=42)


@pytest.fixture(scope="session")
def simulated(generator):
    """Simulated counts and metadata indexed by sample."""
    counts, metadata = generator.simulate()
    return counts, metadata.set_index('sample')


@pytest.fixture(scope="session")
def voom_data(simulated):
    """Filtered counts, design, normalization factors and voom output."""
    counts, metadata = simulated
    design = build_design_matrix(metadata, "~ 0 + condition")
    norm_factors = calc_norm_factors(counts)
    keep = filter_by_expr(counts, design=design, norm_factors=norm_factors)
    filtered = apply_filter(counts, keep)
    v = voom(filtered, design, lib_size=counts.sum(axis=0), norm_factors=norm_factors)
    return {
        'counts': filtered,
        'design': design,
        'norm_factors': norm_factors,
        'lib_size': counts.sum(axis=0),
        'voom': v,
    }


@pytest.fixture(scope="session")
def moderated_fit(voom_data):
    """Moderated fit of the treated vs control contrast."""
    fit = lm_fit(voom_data['voom'])
    contrasts = make_contrasts(
        {'treated_vs_control': 'conditiontreated - conditioncontrol'}, voom_data['design']
    )
    return ebayes(contrasts_fit(fit, contrasts))


@pytest.fixture(scope="session")
def batch_fit(simulated):
    """Moderated fit of an additive batch + condition model."""
    counts, metadata = simulated
    design = build_design_matrix(metadata, "~ batch + condition")
    norm_factors = calc_norm_factors(counts)
    keep = filter_by_expr(counts, design=design, norm_factors=norm_factors)
    v = voom(apply_filter(counts, keep), design, lib_size=counts.sum(axis=0), norm_factors=norm_factors)
    return ebayes(lm_fit(v))


@pytest.fixture
def sample_files(tmp_path):
    """Counts, metadata and annotation files written to a temporary directory."""
    return create_sample_data(tmp_path)
