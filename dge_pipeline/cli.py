#!/usr/bin/env python3
"""
DGE Pipeline CLI

Command-line interface for differential gene expression analysis of
RNA-seq count matrices. Runs the full workflow from a YAML configuration
and exposes the loading, normalization and filtering steps on their own.
"""

import typer
import sys
from pathlib import Path
from typing import Optional
from rich.table import Table
import logging

from . import __version__
from .utils import console, setup_logging, validate_file_exists, format_number
from .pipeline import run_dge_analysis
from .loader import load_dataset, read_counts, write_table
from .normalization import NORM_METHODS, calc_norm_factors, cpm
from .design import build_design_matrix
from .filtering import filter_by_expr, apply_filter
from .results import write_normalized_expression

app = typer.Typer(
    name="dge_pipeline",
    help="DGE Pipeline - Differential gene expression analysis of RNA-seq counts",
    add_completion=False,
)

# Global options
def version_callback(value: bool):
    if value:
        console.print(f"DGE Pipeline v{__version__}")
        raise typer.Exit()

def verbose_callback(value: bool):
    if value:
        setup_logging(level=logging.DEBUG)
    else:
        setup_logging(level=logging.INFO)

@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None, "--version", "-v",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit"
    ),
    verbose: bool = typer.Option(
        False, "--verbose",
        callback=verbose_callback,
        help="Enable verbose logging"
    ),
):
    """DGE Pipeline CLI"""
    pass

@app.command()
def run(
    config_file: Path = typer.Argument(..., help="YAML analysis configuration"),
):
    """Run the complete differential expression analysis."""
    console.print("[bold blue]Running differential expression analysis[/bold blue]")

    try:
        validate_file_exists(config_file)
        results = run_dge_analysis(config_file)

        table = Table(title="Differentially expressed genes")
        table.add_column("Coefficient")
        table.add_column("Down", justify="right")
        table.add_column("NotSig", justify="right")
        table.add_column("Up", justify="right")
        for name, counts in results['significant'].items():
            table.add_row(name, str(counts['Down']), str(counts['NotSig']), str(counts['Up']))
        console.print(table)

        console.print("[bold green]Analysis completed successfully![/bold green]")
        console.print(f"Results saved to: {results['output_dir']}")

    except Exception as e:
        console.print(f"[bold red]Error in analysis: {e}[/bold red]")
        sys.exit(1)

@app.command()
def validate(
    counts_file: Path = typer.Argument(..., help="Count matrix (TSV, genes x samples)"),
    metadata_file: Path = typer.Argument(..., help="Sample metadata (CSV)"),
    sample_column: str = typer.Option("sample", help="Metadata column holding sample IDs"),
    reorder: bool = typer.Option(False, help="Reorder metadata rows to match the count matrix"),
):
    """Check that counts and metadata load and describe the same samples."""
    console.print("[bold blue]Validating input tables[/bold blue]")

    try:
        dataset = load_dataset(
            counts_file,
            metadata_file,
            sample_column=sample_column,
            reorder=reorder,
        )
        lib_sizes = dataset.counts.sum(axis=0)
        console.print("[bold green]Inputs are valid![/bold green]")
        console.print(f"Found {dataset.n_genes} genes and {dataset.n_samples} samples")
        console.print(
            f"Library sizes: {format_number(lib_sizes.min())} - {format_number(lib_sizes.max())}"
        )

    except Exception as e:
        console.print(f"[bold red]Validation failed: {e}[/bold red]")
        sys.exit(1)

@app.command()
def normalize(
    counts_file: Path = typer.Argument(..., help="Count matrix (TSV, genes x samples)"),
    output_file: Path = typer.Argument(..., help="Output log-CPM table (TSV)"),
    method: str = typer.Option("TMM", help=f"Normalization method ({', '.join(NORM_METHODS)})"),
    prior_count: float = typer.Option(2.0, help="Prior count added before taking logs"),
):
    """Compute normalization factors and write log-CPM values."""
    console.print(f"[bold blue]Normalizing counts ({method})[/bold blue]")

    try:
        counts = read_counts(counts_file)
        norm_factors = calc_norm_factors(counts, method=method)
        log_cpm = cpm(counts, norm_factors=norm_factors, log=True, prior_count=prior_count)

        output_file.parent.mkdir(parents=True, exist_ok=True)
        write_normalized_expression(log_cpm, output_file)
        factors_file = output_file.with_name(output_file.stem + "_norm_factors.tsv")
        write_table(norm_factors.to_frame(), factors_file, index_label="sample")

        console.print("[bold green]Normalization completed![/bold green]")
        console.print(f"Log-CPM saved to: {output_file}")
        console.print(f"Normalization factors saved to: {factors_file}")

    except Exception as e:
        console.print(f"[bold red]Error in normalization: {e}[/bold red]")
        sys.exit(1)

@app.command()
def filter(
    counts_file: Path = typer.Argument(..., help="Count matrix (TSV, genes x samples)"),
    metadata_file: Path = typer.Argument(..., help="Sample metadata (CSV)"),
    output_file: Path = typer.Argument(..., help="Output filtered count matrix (TSV)"),
    design: str = typer.Option(..., help="Design formula, e.g. '~ 0 + group'"),
    sample_column: str = typer.Option("sample", help="Metadata column holding sample IDs"),
    min_count: float = typer.Option(10, help="Minimum count in a typical library"),
    min_total_count: float = typer.Option(15, help="Minimum total count across samples"),
):
    """Remove lowly expressed genes from a count matrix."""
    console.print("[bold blue]Filtering lowly expressed genes[/bold blue]")

    try:
        dataset = load_dataset(counts_file, metadata_file, sample_column=sample_column)
        design_matrix = build_design_matrix(dataset.metadata, design)
        keep = filter_by_expr(
            dataset.counts,
            design=design_matrix,
            min_count=min_count,
            min_total_count=min_total_count,
        )
        filtered = apply_filter(dataset.counts, keep)

        output_file.parent.mkdir(parents=True, exist_ok=True)
        write_table(filtered, output_file, index_label="gene_id")

        console.print("[bold green]Filtering completed![/bold green]")
        console.print(f"Kept {filtered.shape[0]} of {dataset.n_genes} genes")
        console.print(f"Filtered counts saved to: {output_file}")

    except Exception as e:
        console.print(f"[bold red]Error in filtering: {e}[/bold red]")
        sys.exit(1)

if __name__ == "__main__":
    app()
