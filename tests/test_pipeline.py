#!/usr/bin/env python3
"""
DGE Pipeline - Test Suite

Pytest test suite for input loading, configuration, the end-to-end
analysis and the command-line interface.
"""

import json
import sys
from pathlib import Path

import numpy as np
import pandas as pd
import pytest
import yaml
from typer.testing import CliRunner

# Add the project root to the Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from dge_pipeline import __version__, cli, config, loader, utils
from dge_pipeline.exceptions import ConfigError, DGEError, InputFormatError, SampleAlignmentError
from dge_pipeline.pipeline import run_dge_analysis
from tests.generate_test_data import CountMatrixGenerator, create_config, create_sample_data


runner = CliRunner()


class TestUtils:
    """Test utility functions."""

    def test_validate_file_exists(self, tmp_path):
        """Test file validation function."""
        test_file = tmp_path / "test.txt"
        test_file.write_text("test content")

        assert utils.validate_file_exists(test_file) == test_file

        with pytest.raises(FileNotFoundError):
            utils.validate_file_exists(tmp_path / "nonexistent.txt")

        # A directory is not a file
        with pytest.raises(FileNotFoundError):
            utils.validate_file_exists(tmp_path)

    def test_validate_directory_exists(self, tmp_path):
        new_dir = tmp_path / "a" / "b"
        with pytest.raises(FileNotFoundError):
            utils.validate_directory_exists(new_dir)

        assert utils.validate_directory_exists(new_dir, create=True) == new_dir
        assert new_dir.is_dir()

    def test_metrics_json_numpy_values(self, tmp_path):
        """Numpy scalars and arrays are written as plain JSON."""
        metrics = {
            'n': np.int64(5),
            'x': np.float64(0.5),
            'flag': np.bool_(True),
            'values': np.array([1, 2]),
            'path': tmp_path,
        }
        out = tmp_path / "metrics.json"
        utils.save_metrics_json(metrics, out)

        loaded = utils.load_metrics_json(out)
        assert loaded == {'n': 5, 'x': 0.5, 'flag': True, 'values': [1, 2], 'path': str(tmp_path)}

    def test_format_number(self):
        assert utils.format_number(1500) == "1.50K"
        assert utils.format_number(2_500_000, precision=1) == "2.5M"
        assert utils.format_number(12) == "12.00"

    def test_safe_filename(self):
        assert utils.safe_filename("treated - control") == "treated_-_control"
        assert utils.safe_filename("groupB:time9") == "groupB_time9"
        assert utils.safe_filename("(Intercept)") == "Intercept"
        assert utils.safe_filename("///") == "unnamed"


class TestExceptions:
    """Test the exception hierarchy."""

    def test_details_and_value_error(self):
        error = SampleAlignmentError("mismatch", {'missing_in_counts': ['s9']})

        assert isinstance(error, DGEError)
        assert isinstance(error, ValueError)
        assert str(error) == "mismatch"
        assert error.details == {'missing_in_counts': ['s9']}
        assert InputFormatError("bad").details == {}


class TestLoader:
    """Test reading and aligning input tables."""

    def test_read_counts(self, sample_files):
        counts = loader.read_counts(sample_files['counts'])

        assert counts.shape == (1000, 8)
        assert counts.index.name == 'gene_id'
        assert counts.index[0] == 'GENE0000'
        assert all(dtype == np.int64 for dtype in counts.dtypes)
        assert list(counts.columns[:2]) == ['control_1', 'control_2']

    def test_read_counts_without_id_header(self, tmp_path):
        """Header without an entry for the gene ID column."""
        path = tmp_path / "counts.tsv"
        path.write_text("A\tB\nG1\t1\t2\nG2\t3\t4\n")

        counts = loader.read_counts(path)
        assert list(counts.columns) == ['A', 'B']
        assert list(counts.index) == ['G1', 'G2']
        assert counts.loc['G2', 'B'] == 4

    @pytest.mark.parametrize("content", [
        "gene\tA\tB\nG1\t1\t2\nG1\t3\t4\n",      # duplicated gene
        "gene\tA\tA\nG1\t1\t2\nG2\t3\t4\n",      # duplicated sample
        "gene\tA\tB\nG1\t1\t-2\nG2\t3\t4\n",     # negative count
        "gene\tA\tB\nG1\t1\tNA\nG2\t3\t4\n",     # missing value
        "gene\tA\tB\nG1\t1\tx\nG2\t3\t4\n",      # non-numeric
        "gene\tA\tB\nG1\t1.5\t2\nG2\t3\t4\n",    # non-integer
    ])
    def test_read_counts_rejects_malformed(self, tmp_path, content):
        path = tmp_path / "counts.tsv"
        path.write_text(content)

        with pytest.raises(InputFormatError):
            loader.read_counts(path)

    def test_allow_fractional(self, tmp_path):
        path = tmp_path / "counts.tsv"
        path.write_text("gene\tA\tB\nG1\t1.5\t2\nG2\t3\t4.25\n")

        counts = loader.read_counts(path, allow_fractional=True)
        assert counts.loc['G1', 'A'] == 1.5

    def test_read_counts_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            loader.read_counts(tmp_path / "missing.tsv")

    def test_read_metadata(self, sample_files):
        metadata = loader.read_metadata(sample_files['metadata'])

        assert metadata.index.name == 'sample'
        assert len(metadata) == 8
        assert set(metadata['condition']) == {'control', 'treated'}

    def test_read_metadata_errors(self, tmp_path):
        path = tmp_path / "meta.csv"
        path.write_text("sample,condition\ns1,a\ns1,b\n")
        with pytest.raises(InputFormatError):
            loader.read_metadata(path)

        with pytest.raises(InputFormatError):
            loader.read_metadata(path, sample_column='sample_id')

    def test_read_annotation_keeps_first_duplicate(self, tmp_path):
        path = tmp_path / "annot.tsv"
        path.write_text("gene_id\tsymbol\nG1\tAAA\nG2\tBBB\nG1\tCCC\n")

        annotation = loader.read_annotation(path)
        assert list(annotation.index) == ['G1', 'G2']
        assert annotation.loc['G1', 'symbol'] == 'AAA'

    def test_align_samples(self):
        counts = pd.DataFrame({'s1': [1], 's2': [2], 's3': [3]}, index=['g1'])
        metadata = pd.DataFrame({'group': ['a', 'b', 'c']}, index=['s1', 's2', 's3'])

        assert loader.align_samples(counts, metadata) is metadata

    def test_align_samples_order_mismatch(self):
        counts = pd.DataFrame({'s1': [1], 's2': [2], 's3': [3]}, index=['g1'])
        metadata = pd.DataFrame({'group': ['c', 'a', 'b']}, index=['s3', 's1', 's2'])

        with pytest.raises(SampleAlignmentError) as excinfo:
            loader.align_samples(counts, metadata)
        assert excinfo.value.details['mismatched_positions'][0] == (0, 's1', 's3')

        aligned = loader.align_samples(counts, metadata, reorder=True)
        assert list(aligned.index) == ['s1', 's2', 's3']
        assert list(aligned['group']) == ['a', 'b', 'c']

    def test_align_samples_different_sets(self):
        counts = pd.DataFrame({'s1': [1], 's2': [2]}, index=['g1'])
        metadata = pd.DataFrame({'group': ['a', 'b']}, index=['s1', 's4'])

        with pytest.raises(SampleAlignmentError) as excinfo:
            loader.align_samples(counts, metadata, reorder=True)
        assert excinfo.value.details['missing_in_metadata'] == ['s2']
        assert excinfo.value.details['missing_in_counts'] == ['s4']

    def test_load_dataset(self, sample_files):
        dataset = loader.load_dataset(
            sample_files['counts'], sample_files['metadata'], sample_files['annotation']
        )

        assert dataset.n_genes == 1000
        assert dataset.n_samples == 8
        assert list(dataset.metadata.index) == list(dataset.counts.columns)
        assert 'symbol' in dataset.annotation.columns

    def test_read_counts_keeps_numeric_looking_ids(self, tmp_path):
        path = tmp_path / "counts.tsv"
        path.write_text("gene_id\t01\t02\n0001\t1\t2\n0002\t3\t4\n")

        counts = loader.read_counts(path)
        assert list(counts.index) == ['0001', '0002']
        assert list(counts.columns) == ['01', '02']
        assert counts.loc['0002', '02'] == 4

    def test_read_counts_empty_id_header(self, tmp_path):
        """An empty gene ID header field does not hide the first sample."""
        path = tmp_path / "counts.tsv"
        path.write_text("\tS1\tS2\nG1\t1\t2\nG2\t3\t4\n")
        counts = loader.read_counts(path)
        assert list(counts.columns) == ['S1', 'S2']
        assert list(counts.index) == ['G1', 'G2']

        path.write_text("\tS1\tS1\nG1\t1\t2\nG2\t3\t4\n")
        with pytest.raises(InputFormatError) as excinfo:
            loader.read_counts(path)
        assert excinfo.value.details['duplicated_samples'] == ['S1']

    def test_load_dataset_zero_padded_ids(self, tmp_path):
        counts_file = tmp_path / "counts.tsv"
        counts_file.write_text("gene_id\t01\t02\t03\n0001\t1\t2\t3\n0002\t4\t5\t6\n")
        metadata_file = tmp_path / "meta.csv"
        metadata_file.write_text("sample,condition\n01,a\n02,b\n03,b\n")
        annotation_file = tmp_path / "annot.tsv"
        annotation_file.write_text("gene_id\tsymbol\n0001\tAAA\n0002\tBBB\n")

        dataset = loader.load_dataset(counts_file, metadata_file, annotation_file)

        assert list(dataset.metadata.index) == ['01', '02', '03']
        assert list(dataset.metadata['condition']) == ['a', 'b', 'b']
        assert dataset.counts.index.isin(dataset.annotation.index).all()

    def test_write_table(self, tmp_path):
        df = pd.DataFrame({'x': [1, 2]}, index=pd.Index(['a', 'b']))
        out = loader.write_table(df, tmp_path / "sub" / "table.tsv", index_label='gene_id')

        assert out.read_text().splitlines()[0] == "gene_id\tx"


class TestConfig:
    """Test analysis configuration loading."""

    def test_load_config(self, tmp_path):
        config_file = create_config(tmp_path, extra={'filter': {'min_count': 5}})
        cfg = config.load_config(config_file)

        assert cfg.counts == tmp_path.resolve() / 'counts.tsv'
        assert cfg.output_dir == tmp_path.resolve() / 'results'
        assert cfg.formula == "~ 0 + condition"
        assert cfg.filter.min_count == 5
        assert cfg.filter.min_total_count == 15
        assert cfg.normalization.method == 'TMM'
        assert cfg.contrasts == {'treated_vs_control': 'conditiontreated - conditioncontrol'}

    def test_absolute_paths_kept(self, tmp_path):
        counts = tmp_path / "elsewhere" / "counts.tsv"
        cfg = config.config_from_dict(
            {'counts': str(counts), 'metadata': 'm.csv', 'formula': '~ group'}, base_dir=tmp_path
        )
        assert cfg.counts == counts
        assert cfg.metadata == tmp_path / 'm.csv'
        assert cfg.annotation is None

    def test_contrast_list(self, tmp_path):
        cfg = config.config_from_dict(
            {'counts': 'c.tsv', 'metadata': 'm.csv', 'formula': '~ 0 + group',
             'contrasts': ['groupB - groupA']},
            base_dir=tmp_path,
        )
        assert cfg.contrasts == {'groupB - groupA': 'groupB - groupA'}

    @pytest.mark.parametrize("data", [
        {'counts': 'c.tsv', 'metadata': 'm.csv', 'formula': '~ g', 'colour': 'red'},
        {'counts': 'c.tsv', 'metadata': 'm.csv', 'formula': '~ g', 'voom': {'spam': 1}},
        {'counts': 'c.tsv', 'metadata': 'm.csv'},
        {'counts': 'c.tsv', 'metadata': 'm.csv', 'formula': '~ g', 'normalization': {'method': 'TPM'}},
        {'counts': 'c.tsv', 'metadata': 'm.csv', 'formula': '~ g', 'filter': {'method': 'median'}},
        {'counts': 'c.tsv', 'metadata': 'm.csv', 'formula': '~ g', 'top_table': {'adjust_method': 'sidak'}},
        {'counts': 'c.tsv', 'metadata': 'm.csv', 'formula': '~ g', 'top_table': {'sort_by': 'pval'}},
        {'counts': 'c.tsv', 'metadata': 'm.csv', 'formula': '~ g', 'voom': {'span': 1.5}},
        {'counts': 'c.tsv', 'metadata': 'm.csv', 'formula': '~ g', 'ebayes': 'yes'},
    ])
    def test_invalid_config(self, tmp_path, data):
        with pytest.raises(ConfigError):
            config.config_from_dict(data, base_dir=tmp_path)

    def test_malformed_yaml(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("counts: [unclosed\n")
        with pytest.raises(ConfigError):
            config.load_config(path)

    def test_missing_config_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            config.load_config(tmp_path / "nope.yaml")

    def test_save_round_trip(self, tmp_path):
        cfg = config.load_config(create_config(tmp_path))
        saved = cfg.save(tmp_path / "saved.yaml")

        with open(saved) as f:
            data = yaml.safe_load(f)
        assert data['formula'] == cfg.formula
        assert config.config_from_dict(data, base_dir=tmp_path) == cfg


class TestDataGeneration:
    """Test synthetic data generation."""

    def test_simulate(self):
        generator = CountMatrixGenerator(n_genes=200, n_de=20, n_zero=5, seed=1)
        counts, metadata = generator.simulate(n_control=3, n_treated=3)

        assert counts.shape == (200, 6)
        assert list(metadata['sample']) == list(counts.columns)
        assert (counts.iloc[-5:] == 0).all().all()
        assert len(generator.up_genes) == 10
        assert len(generator.down_genes) == 10

    def test_reproducible(self):
        first, _ = CountMatrixGenerator(n_genes=100, seed=3).simulate()
        second, _ = CountMatrixGenerator(n_genes=100, seed=3).simulate()
        pd.testing.assert_frame_equal(first, second)


class TestIntegration:
    """End-to-end analysis tests."""

    def test_run_dge_analysis(self, tmp_path, generator):
        create_sample_data(tmp_path)
        results = run_dge_analysis(create_config(tmp_path))

        out = Path(results['output_dir'])
        for name in ('normalized_expression.tsv', 'norm_factors.tsv', 'filtered_genes.tsv',
                     'summary.json', 'config_used.yaml', 'top_table_treated_vs_control.tsv'):
            assert (out / name).exists(), name

        assert results['n_genes_tested'] < results['n_genes_input'] == 1000

        table = pd.read_csv(results['top_tables']['treated_vs_control'], sep='\t', index_col=0)
        assert table.index.name == 'gene_id'
        assert list(table.columns) == ['logFC', 'AveExpr', 't', 'P.Value', 'adj.P.Val', 'B', 'symbol', 'biotype']
        assert len(table) == results['n_genes_tested']
        assert table['P.Value'].is_monotonic_increasing
        assert len(set(table.index[:50]) & set(generator.de_genes)) >= 45

        normalized = pd.read_csv(out / 'normalized_expression.tsv', sep='\t', index_col=0)
        assert normalized.shape == (results['n_genes_tested'], 8)

        filtered = pd.read_csv(out / 'filtered_genes.tsv', sep='\t', index_col=0)
        assert len(filtered) == 1000
        assert filtered['keep'].sum() == results['n_genes_tested']

        summary = utils.load_metrics_json(out / 'summary.json')
        assert summary['coefficients'] == ['treated_vs_control']
        assert summary['significant']['treated_vs_control']['Up'] >= 20
        assert summary['significant']['treated_vs_control']['Down'] >= 20

        # The stored configuration reproduces the analysis settings
        assert config.load_config(out / 'config_used.yaml').formula == "~ 0 + condition"

    def test_coefficients_without_contrasts(self, tmp_path):
        create_sample_data(tmp_path)
        config_file = create_config(
            tmp_path, formula="~ batch + condition", contrasts={},
            extra={'top_table': {'number': 100, 'sort_by': 'B'}},
        )
        results = run_dge_analysis(config_file)

        assert set(results['top_tables']) == {'Intercept', 'batchbatch2', 'conditiontreated'}
        table = pd.read_csv(results['top_tables']['conditiontreated'], sep='\t', index_col=0)
        assert len(table) == 100

    def test_misaligned_metadata(self, tmp_path):
        files = create_sample_data(tmp_path)
        metadata = pd.read_csv(files['metadata'])
        metadata.iloc[::-1].to_csv(files['metadata'], index=False)

        with pytest.raises(SampleAlignmentError):
            run_dge_analysis(create_config(tmp_path))

        results = run_dge_analysis(create_config(tmp_path, extra={'reorder': True}))
        assert 'treated_vs_control' in results['top_tables']

    def test_group_columns(self, tmp_path):
        create_sample_data(tmp_path)
        config_file = create_config(
            tmp_path,
            formula="~ 0 + group",
            contrasts={'treated': 'grouptreated - groupcontrol'},
            extra={'group_columns': ['condition'], 'filter': {'method': 'max_cpm'},
                   'normalization': {'method': 'upperquartile'}},
        )
        results = run_dge_analysis(config_file)
        assert results['significant']['treated']['Up'] > 0


class TestCLI:
    """Test command-line interface."""

    def test_cli_help(self):
        result = runner.invoke(cli.app, ["--help"])

        assert result.exit_code == 0
        assert "DGE Pipeline" in result.output

    def test_version(self):
        result = runner.invoke(cli.app, ["--version"])

        assert result.exit_code == 0
        assert __version__ in result.output

    def test_shared_console(self):
        assert cli.console is utils.console

    def test_validate_command(self, sample_files):
        result = runner.invoke(cli.app, [
            "validate", str(sample_files['counts']), str(sample_files['metadata'])
        ])

        assert result.exit_code == 0
        assert "Inputs are valid" in result.output

    def test_validate_misaligned(self, sample_files):
        metadata = pd.read_csv(sample_files['metadata'])
        metadata.iloc[::-1].to_csv(sample_files['metadata'], index=False)

        result = runner.invoke(cli.app, [
            "validate", str(sample_files['counts']), str(sample_files['metadata'])
        ])
        assert result.exit_code == 1
        assert "Validation failed" in result.output

        result = runner.invoke(cli.app, [
            "validate", str(sample_files['counts']), str(sample_files['metadata']), "--reorder"
        ])
        assert result.exit_code == 0

    def test_normalize_command(self, sample_files, tmp_path):
        output = tmp_path / "out" / "log_cpm.tsv"
        result = runner.invoke(cli.app, [
            "normalize", str(sample_files['counts']), str(output), "--method", "RLE"
        ])

        assert result.exit_code == 0
        assert output.exists()
        factors = pd.read_csv(tmp_path / "out" / "log_cpm_norm_factors.tsv", sep='\t', index_col=0)
        assert len(factors) == 8

    def test_normalize_bad_method(self, sample_files, tmp_path):
        result = runner.invoke(cli.app, [
            "normalize", str(sample_files['counts']), str(tmp_path / "x.tsv"), "--method", "TPM"
        ])
        assert result.exit_code == 1

    def test_filter_command(self, sample_files, tmp_path):
        output = tmp_path / "filtered.tsv"
        result = runner.invoke(cli.app, [
            "filter", str(sample_files['counts']), str(sample_files['metadata']), str(output),
            "--design", "~ 0 + condition",
        ])

        assert result.exit_code == 0
        filtered = pd.read_csv(output, sep='\t', index_col=0)
        assert 0 < len(filtered) < 1000
        assert filtered.shape[1] == 8

    def test_run_command(self, sample_files, tmp_path):
        config_file = create_config(tmp_path)
        result = runner.invoke(cli.app, ["run", str(config_file)])

        assert result.exit_code == 0
        assert (tmp_path / "results" / "summary.json").exists()
        summary = json.loads((tmp_path / "results" / "summary.json").read_text())
        assert summary['n_samples'] == 8

    def test_run_missing_config(self, tmp_path):
        result = runner.invoke(cli.app, ["run", str(tmp_path / "missing.yaml")])
        assert result.exit_code == 1
