"""
DGE Pipeline

Differential gene expression analysis of RNA-seq count data:
TMM normalization, expression filtering, voom precision weights,
weighted linear models, empirical Bayes moderation and FDR control.
"""

__version__ = "1.0.0"

from .loader import CountDataset, load_dataset, read_counts, read_metadata, read_annotation, align_samples
from .normalization import calc_norm_factors, cpm, effective_lib_size
from .filtering import filter_by_expr, filter_by_max_cpm, apply_filter
from .design import add_group_column, prepare_covariates, build_design_matrix, make_contrasts
from .voom import VoomResult, voom
from .linear_model import FittedModel, lm_fit, contrasts_fit
from .ebayes import fit_f_dist, squeeze_var, ebayes
from .multiple_testing import p_adjust, decide_tests, summarize_tests
from .results import top_table, top_table_f
from .config import AnalysisConfig, load_config
from .pipeline import run_dge_analysis

__all__ = [
    "__version__",
    "CountDataset",
    "load_dataset",
    "read_counts",
    "read_metadata",
    "read_annotation",
    "align_samples",
    "calc_norm_factors",
    "cpm",
    "effective_lib_size",
    "filter_by_expr",
    "filter_by_max_cpm",
    "apply_filter",
    "add_group_column",
    "prepare_covariates",
    "build_design_matrix",
    "make_contrasts",
    "VoomResult",
    "voom",
    "FittedModel",
    "lm_fit",
    "contrasts_fit",
    "fit_f_dist",
    "squeeze_var",
    "ebayes",
    "p_adjust",
    "decide_tests",
    "summarize_tests",
    "top_table",
    "top_table_f",
    "AnalysisConfig",
    "load_config",
    "run_dge_analysis",
]
