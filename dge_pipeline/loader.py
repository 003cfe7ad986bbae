"""
Input loading module for the DGE Pipeline.

This module reads the genes x samples count matrix, the sample metadata
table and the optional gene annotation table, and verifies that count
matrix columns and metadata rows describe the same samples in the same
order before anything downstream touches them.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Union

import numpy as np
import pandas as pd

from .exceptions import InputFormatError, SampleAlignmentError
from .utils import validate_file_exists, format_number

logger = logging.getLogger(__name__)


@dataclass
class CountDataset:
    """Counts, sample metadata and gene annotation for one experiment."""

    counts: pd.DataFrame
    metadata: pd.DataFrame
    annotation: Optional[pd.DataFrame] = None

    @property
    def n_genes(self) -> int:
        return self.counts.shape[0]

    @property
    def n_samples(self) -> int:
        return self.counts.shape[1]


def _read_lines(path: Path, n: int) -> List[str]:
    lines = []
    with open(path, 'r') as f:
        for line in f:
            lines.append(line.rstrip('\r\n'))
            if len(lines) == n:
                break
    return lines


def _split_fields(line: str, sep: str) -> List[str]:
    return [h.strip('"') for h in line.split(sep)]


def read_counts(
    counts_file: Union[str, Path],
    sep: str = '\t',
    allow_fractional: bool = False
) -> pd.DataFrame:
    """
    Read a genes x samples count matrix.

    The first column holds gene identifiers. Files written without a
    header entry for the identifier column (one header field fewer than
    data fields) are accepted as well.

    Args:
        counts_file: Path to the delimited count matrix
        sep: Field delimiter
        allow_fractional: Accept non-integer counts (e.g. estimated counts)

    Returns:
        DataFrame indexed by gene ID with one column per sample

    Raises:
        InputFormatError: If the matrix is malformed
    """
    path = validate_file_exists(counts_file)

    lines = _read_lines(path, 2)
    if not lines:
        raise InputFormatError(f"Count matrix {path} is empty")
    header = _split_fields(lines[0], sep)
    n_fields = len(lines[1].split(sep)) if len(lines) > 1 else len(header)

    # Header may lack an entry for the gene ID column
    short_header = n_fields == len(header) + 1
    sample_names = header if short_header else header[1:]

    dup_samples = sorted({s for s in sample_names if sample_names.count(s) > 1})
    if dup_samples:
        raise InputFormatError(
            f"Duplicated sample IDs in count matrix: {dup_samples}",
            {'duplicated_samples': dup_samples}
        )

    # Gene IDs are read as text so that e.g. '0001' is kept as is
    try:
        df = pd.read_csv(
            path,
            sep=sep,
            header=None,
            skiprows=1,
            names=['gene_id'] + sample_names,
            index_col=0,
            converters={'gene_id': str},
        )
    except Exception as e:
        raise InputFormatError(f"Could not read count matrix {path}: {e}")

    df.index = df.index.astype(str)
    df.index.name = 'gene_id'
    df.columns = df.columns.astype(str)

    dup_genes = df.index[df.index.duplicated()].unique().tolist()
    if dup_genes:
        raise InputFormatError(
            f"Duplicated gene IDs in count matrix: {dup_genes[:10]}",
            {'duplicated_genes': dup_genes}
        )

    non_numeric = [c for c in df.columns if not pd.api.types.is_numeric_dtype(df[c])]
    if non_numeric:
        raise InputFormatError(
            f"Non-numeric count columns: {non_numeric}",
            {'columns': non_numeric}
        )

    values = df.to_numpy(dtype=np.float64)
    if np.isnan(values).any():
        raise InputFormatError("Count matrix contains missing values")
    if (values < 0).any():
        raise InputFormatError("Count matrix contains negative values")
    if not allow_fractional and not np.all(values == np.round(values)):
        raise InputFormatError(
            "Count matrix contains non-integer values; pass allow_fractional=True "
            "for estimated counts"
        )

    if not allow_fractional:
        df = df.astype(np.int64)

    logger.info(
        f"Loaded count matrix: {df.shape[0]} genes x {df.shape[1]} samples "
        f"({format_number(float(values.sum()))} reads)"
    )
    return df


def read_metadata(
    metadata_file: Union[str, Path],
    sample_column: str = 'sample',
    sep: str = ','
) -> pd.DataFrame:
    """
    Read the sample metadata table.

    Args:
        metadata_file: Path to the delimited metadata table
        sample_column: Column holding sample identifiers
        sep: Field delimiter

    Returns:
        DataFrame indexed by sample ID

    Raises:
        InputFormatError: If the sample column is missing or IDs repeat
    """
    path = validate_file_exists(metadata_file)

    # Sample IDs are read as text so that e.g. '01' still matches the count header
    header = _split_fields(next(iter(_read_lines(path, 1)), ''), sep)
    dtype = {sample_column: str} if sample_column in header else None
    try:
        df = pd.read_csv(path, sep=sep, dtype=dtype)
    except Exception as e:
        raise InputFormatError(f"Could not read metadata {path}: {e}")

    if sample_column not in df.columns:
        raise InputFormatError(
            f"Sample column '{sample_column}' not found in metadata; "
            f"available columns: {list(df.columns)}",
            {'columns': list(df.columns)}
        )

    df[sample_column] = df[sample_column].astype(str)
    dup = df.loc[df[sample_column].duplicated(), sample_column].tolist()
    if dup:
        raise InputFormatError(
            f"Duplicated sample IDs in metadata: {dup}",
            {'duplicated_samples': dup}
        )

    df = df.set_index(sample_column)
    logger.info(f"Loaded metadata for {len(df)} samples with columns {list(df.columns)}")
    return df


def read_annotation(
    annotation_file: Union[str, Path],
    id_column: Optional[str] = None,
    sep: str = '\t'
) -> pd.DataFrame:
    """
    Read a gene annotation table.

    Args:
        annotation_file: Path to the delimited annotation table
        id_column: Column holding gene IDs (default: first column)
        sep: Field delimiter

    Returns:
        DataFrame indexed by gene ID; repeated IDs keep their first row
    """
    path = validate_file_exists(annotation_file)

    try:
        df = pd.read_csv(path, sep=sep, dtype=str)
    except Exception as e:
        raise InputFormatError(f"Could not read annotation {path}: {e}")

    if id_column is None:
        id_column = df.columns[0]
    elif id_column not in df.columns:
        raise InputFormatError(
            f"Annotation ID column '{id_column}' not found; "
            f"available columns: {list(df.columns)}"
        )

    df = df.set_index(id_column)
    dup = df.index.duplicated(keep='first')
    if dup.any():
        logger.warning(f"Annotation has {int(dup.sum())} repeated gene IDs; keeping first occurrence")
        df = df[~dup]

    logger.info(f"Loaded annotation for {len(df)} genes")
    return df


def align_samples(
    counts: pd.DataFrame,
    metadata: pd.DataFrame,
    reorder: bool = False
) -> pd.DataFrame:
    """
    Check that metadata rows match count matrix columns one to one, in order.

    Args:
        counts: Count matrix (genes x samples)
        metadata: Metadata indexed by sample ID
        reorder: Reorder the metadata to the count matrix column order
            instead of raising when only the order differs

    Returns:
        Metadata in count matrix column order

    Raises:
        SampleAlignmentError: If the sample sets differ, or the order
            differs and reorder is False
    """
    count_samples = [str(s) for s in counts.columns]
    meta_samples = [str(s) for s in metadata.index]

    missing_in_metadata = [s for s in count_samples if s not in set(meta_samples)]
    missing_in_counts = [s for s in meta_samples if s not in set(count_samples)]
    if missing_in_metadata or missing_in_counts:
        raise SampleAlignmentError(
            "Count matrix and metadata describe different samples "
            f"(only in counts: {missing_in_metadata}; only in metadata: {missing_in_counts})",
            {
                'missing_in_metadata': missing_in_metadata,
                'missing_in_counts': missing_in_counts,
            }
        )

    if count_samples == meta_samples:
        return metadata

    mismatched = [
        (i, c, m) for i, (c, m) in enumerate(zip(count_samples, meta_samples)) if c != m
    ]
    if not reorder:
        shown = ', '.join(f"#{i}: {c} != {m}" for i, c, m in mismatched[:5])
        raise SampleAlignmentError(
            f"Metadata sample order differs from count matrix columns ({shown})",
            {'mismatched_positions': mismatched}
        )

    logger.warning(
        f"Reordering metadata to match count matrix columns ({len(mismatched)} samples moved)"
    )
    return metadata.loc[count_samples]


def load_dataset(
    counts_file: Union[str, Path],
    metadata_file: Union[str, Path],
    annotation_file: Optional[Union[str, Path]] = None,
    sample_column: str = 'sample',
    annotation_id_column: Optional[str] = None,
    reorder: bool = False,
    allow_fractional: bool = False
) -> CountDataset:
    """
    Load counts, metadata and annotation and verify sample alignment.

    Args:
        counts_file: Tab-delimited count matrix
        metadata_file: Comma-delimited sample metadata
        annotation_file: Optional tab-delimited gene annotation
        sample_column: Metadata column with sample IDs
        annotation_id_column: Annotation column with gene IDs
        reorder: Reorder metadata to the count matrix instead of failing
        allow_fractional: Accept non-integer counts

    Returns:
        CountDataset with aligned metadata
    """
    counts = read_counts(counts_file, allow_fractional=allow_fractional)
    metadata = read_metadata(metadata_file, sample_column=sample_column)
    metadata = align_samples(counts, metadata, reorder=reorder)

    annotation = None
    if annotation_file is not None:
        annotation = read_annotation(annotation_file, id_column=annotation_id_column)
        n_annotated = int(counts.index.isin(annotation.index).sum())
        logger.info(f"{n_annotated}/{counts.shape[0]} genes have annotation")

    return CountDataset(counts=counts, metadata=metadata, annotation=annotation)


def write_table(
    df: pd.DataFrame,
    output_file: Union[str, Path],
    index_label: Optional[str] = None,
    index: bool = True
) -> Path:
    """
    Write a DataFrame as a tab-delimited table.

    Args:
        df: Table to write
        output_file: Destination path
        index_label: Header for the index column
        index: Whether to write the index

    Returns:
        Path of the written file
    """
    output_file = Path(output_file)
    output_file.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(output_file, sep='\t', index=index, index_label=index_label if index else None)
    logger.debug(f"Wrote {df.shape[0]} rows to {output_file}")
    return output_file
