"""
End-to-end differential expression analysis.

Runs the stages in their fixed order (load, normalize, filter, design,
voom, linear model, contrasts, empirical Bayes, multiple testing, report)
and writes every table to the configured output directory.
"""

import logging
from pathlib import Path
from typing import Any, Dict, Union

import pandas as pd

from .config import AnalysisConfig, load_config
from .design import add_group_column, build_design_matrix, make_contrasts, prepare_covariates
from .ebayes import ebayes
from .filtering import apply_filter, filter_by_expr, filter_by_max_cpm
from .linear_model import contrasts_fit, lm_fit
from .loader import load_dataset, write_table
from .multiple_testing import decide_tests, summarize_tests
from .normalization import calc_norm_factors, cpm, effective_lib_size
from .results import top_table, write_normalized_expression, write_top_table
from .utils import safe_filename, save_metrics_json, validate_directory_exists
from .voom import voom

logger = logging.getLogger(__name__)


def _filter_genes(counts: pd.DataFrame, design: pd.DataFrame, norm_factors: pd.Series,
                  config: AnalysisConfig) -> pd.Series:
    fc = config.filter
    if fc.method == 'expr':
        return filter_by_expr(
            counts,
            design=design,
            norm_factors=norm_factors,
            min_count=fc.min_count,
            min_total_count=fc.min_total_count,
            large_n=fc.large_n,
            min_prop=fc.min_prop,
        )
    if fc.method == 'max_cpm':
        return filter_by_max_cpm(counts, cutoff=fc.cpm_cutoff, norm_factors=norm_factors)
    logger.info("Expression filtering disabled")
    return pd.Series(True, index=counts.index, name='keep')


def run_dge_analysis(config: Union[AnalysisConfig, str, Path]) -> Dict[str, Any]:
    """
    Run the complete differential expression workflow.

    Args:
        config: AnalysisConfig, or path to a YAML configuration file

    Returns:
        Dictionary with output file paths and headline numbers
    """
    if not isinstance(config, AnalysisConfig):
        config = load_config(config)

    output_dir = validate_directory_exists(config.output_dir, create=True)
    logger.info(f"Starting differential expression analysis, output in {output_dir}")

    # Load and align inputs
    dataset = load_dataset(
        config.counts,
        config.metadata,
        annotation_file=config.annotation,
        sample_column=config.sample_column,
        annotation_id_column=config.annotation_id_column,
        reorder=config.reorder,
        allow_fractional=config.allow_fractional,
    )
    metadata = dataset.metadata
    categorical = list(config.categorical)
    if config.group_columns:
        metadata = add_group_column(metadata, config.group_columns, name=config.group_name)
        if config.group_name not in categorical:
            categorical.append(config.group_name)
    metadata = prepare_covariates(metadata, categorical, config.reference_levels)

    design = build_design_matrix(metadata, config.formula)

    # Normalization factors from all genes, then filtering before any fit
    nc = config.normalization
    norm_factors = calc_norm_factors(
        dataset.counts,
        method=nc.method,
        logratio_trim=nc.logratio_trim,
        sum_trim=nc.sum_trim,
        do_weighting=nc.do_weighting,
        p=nc.p,
    )
    keep = _filter_genes(dataset.counts, design, norm_factors, config)
    counts = apply_filter(dataset.counts, keep)

    lib_size = effective_lib_size(dataset.counts, norm_factors)
    factors_table = pd.DataFrame({
        'lib_size': dataset.counts.sum(axis=0),
        'norm_factors': norm_factors,
        'effective_lib_size': lib_size,
    })
    norm_factors_file = write_table(factors_table, output_dir / 'norm_factors.tsv', index_label='sample')

    filtered_table = pd.DataFrame({
        'total_count': dataset.counts.sum(axis=1),
        'keep': keep,
    })
    filtered_file = write_table(filtered_table, output_dir / 'filtered_genes.tsv', index_label='gene_id')

    log_cpm = cpm(counts, norm_factors=norm_factors, lib_size=dataset.counts.sum(axis=0),
                  log=True, prior_count=config.prior_count)
    normalized_file = write_normalized_expression(log_cpm, output_dir / 'normalized_expression.tsv')

    # Model fitting
    v = voom(counts, design, lib_size=dataset.counts.sum(axis=0), norm_factors=norm_factors,
             span=config.voom.span)
    fit = lm_fit(v)
    if config.contrasts:
        contrast_matrix = make_contrasts(config.contrasts, design)
        fit = contrasts_fit(fit, contrast_matrix)
    fit = ebayes(
        fit,
        proportion=config.ebayes.proportion,
        stdev_coef_lim=tuple(config.ebayes.stdev_coef_lim),
        trend=config.ebayes.trend,
    )

    # Report
    tc = config.top_table
    top_tables = {}
    n_significant = {}
    for name in fit.coef_names:
        table = top_table(
            fit,
            coef=name,
            number=tc.number,
            sort_by=tc.sort_by,
            adjust_method=tc.adjust_method,
            p_value=tc.p_value,
            lfc=tc.lfc,
            confint=tc.confint,
            annotation=dataset.annotation,
        )
        path = write_top_table(table, output_dir / f"top_table_{safe_filename(name)}.tsv")
        top_tables[name] = str(path)
        logger.info(f"Wrote {len(table)} genes for '{name}' to {path}")

    calls = decide_tests(fit, adjust_method=tc.adjust_method, p_value=tc.decide_p_value, lfc=tc.lfc)
    test_summary = summarize_tests(calls)
    for name in fit.coef_names:
        n_significant[name] = {
            direction: int(test_summary.loc[direction, name]) for direction in test_summary.index
        }

    config_file = config.save(output_dir / 'config_used.yaml')

    summary = {
        'n_samples': dataset.n_samples,
        'n_genes_input': dataset.n_genes,
        'n_genes_tested': int(counts.shape[0]),
        'design_columns': list(design.columns),
        'coefficients': fit.coef_names,
        'norm_factors': {str(sample): float(factor) for sample, factor in norm_factors.items()},
        'df_prior': float(fit.df_prior),
        'significant': n_significant,
        'decide_p_value': tc.decide_p_value,
        'adjust_method': tc.adjust_method,
    }
    summary_file = output_dir / 'summary.json'
    save_metrics_json(summary, summary_file)

    logger.info(
        f"Analysis complete: {summary['n_genes_tested']}/{summary['n_genes_input']} genes tested, "
        f"{len(top_tables)} result table(s)"
    )

    return {
        'output_dir': str(output_dir),
        'normalized_expression': str(normalized_file),
        'norm_factors': str(norm_factors_file),
        'filtered_genes': str(filtered_file),
        'top_tables': top_tables,
        'summary': str(summary_file),
        'config': str(config_file),
        'n_genes_input': dataset.n_genes,
        'n_genes_tested': summary['n_genes_tested'],
        'significant': n_significant,
    }
