"""
Design matrix module for the DGE Pipeline.

This module turns sample metadata into the numeric design matrix used
for regression (via patsy formulas), gives its columns readable names
such as ``groupB`` or ``groupB:time9``, checks that every coefficient is
estimable, and builds contrast matrices from expressions like
``"groupB - groupA"``.
"""

import logging
import re
from typing import Dict, List, Mapping, Optional, Sequence, Union

import numpy as np
import pandas as pd
import patsy

from .exceptions import DesignMatrixError

logger = logging.getLogger(__name__)


def _check_complete(metadata: pd.DataFrame, columns: Sequence[str]) -> None:
    """Raise DesignMatrixError when any of ``columns`` has missing values."""
    for col in columns:
        na = metadata[col].isna()
        if na.any():
            samples = metadata.index[na].astype(str).tolist()
            raise DesignMatrixError(
                f"Column '{col}' has missing values for samples: {samples}",
                {'column': col, 'samples': samples}
            )


_LEVEL_RE = re.compile(r'^(.*)\[(?:T\.)?(.*)\]$')
_WRAPPED_RE = re.compile(r'^C\(\s*([^,\)]+)')


def add_group_column(
    metadata: pd.DataFrame,
    columns: Sequence[str],
    name: str = 'group',
    sep: str = '.'
) -> pd.DataFrame:
    """
    Add a factor combining several categorical columns (their interaction).

    Args:
        metadata: Metadata indexed by sample ID
        columns: Columns to combine, in order
        name: Name of the new column
        sep: Separator between the combined values

    Returns:
        Copy of metadata with the combined column added
    """
    missing = [c for c in columns if c not in metadata.columns]
    if missing:
        raise DesignMatrixError(f"Group columns not found in metadata: {missing}")
    _check_complete(metadata, columns)

    md = metadata.copy()
    md[name] = md[list(columns)].astype(str).agg(sep.join, axis=1)
    logger.info(f"Created '{name}' from {list(columns)} with levels {sorted(md[name].unique())}")
    return md


def prepare_covariates(
    metadata: pd.DataFrame,
    categorical: Sequence[str] = (),
    reference_levels: Optional[Mapping[str, str]] = None
) -> pd.DataFrame:
    """
    Cast covariates to categoricals with a chosen reference level.

    Numeric columns listed in ``categorical`` (e.g. a time point coded
    8/9) are treated as factors. Levels are sorted, with the reference
    level, when given, moved first so that it becomes the baseline of
    treatment coding.

    Args:
        metadata: Metadata indexed by sample ID
        categorical: Columns to treat as categorical
        reference_levels: Mapping of column -> baseline level

    Returns:
        Copy of metadata with categorical columns converted
    """
    reference_levels = dict(reference_levels or {})
    columns = list(dict.fromkeys(list(categorical) + list(reference_levels)))
    missing = [c for c in columns if c not in metadata.columns]
    if missing:
        raise DesignMatrixError(f"Covariates not found in metadata: {missing}")
    _check_complete(metadata, columns)

    md = metadata.copy()
    for col in columns:
        values = md[col].astype(str)
        levels = sorted(values.unique())
        ref = reference_levels.get(col)
        if ref is not None:
            ref = str(ref)
            if ref not in levels:
                raise DesignMatrixError(
                    f"Reference level '{ref}' not found in column '{col}' (levels: {levels})"
                )
            levels.remove(ref)
            levels.insert(0, ref)
        md[col] = pd.Categorical(values, categories=levels)
    return md


def _clean_column_name(name: str) -> str:
    parts = []
    for part in name.split(':'):
        m = _LEVEL_RE.match(part)
        if m:
            var, level = m.groups()
            wrapped = _WRAPPED_RE.match(var)
            if wrapped:
                var = wrapped.group(1).strip()
            part = f"{var}{level}"
        parts.append(part)
    return ':'.join(parts)


def non_estimable(design: pd.DataFrame) -> List[str]:
    """Names of coefficients that are linear combinations of earlier ones."""
    x = design.to_numpy(dtype=np.float64)
    if x.shape[1] == 0:
        return []
    _, r = np.linalg.qr(x)
    d = np.abs(np.diag(r))
    tol = (d.max() if d.size else 0.0) * max(x.shape) * np.finfo(np.float64).eps
    return [design.columns[i] for i in np.where(d <= tol)[0]]


def build_design_matrix(metadata: pd.DataFrame, formula: str) -> pd.DataFrame:
    """
    Encode metadata covariates into a design matrix.

    Args:
        metadata: Metadata indexed by sample ID
        formula: Right-hand-side formula, e.g. ``"~ 0 + group"`` or
            ``"~ batch + condition"``

    Returns:
        DataFrame (samples x coefficients) indexed like metadata

    Raises:
        DesignMatrixError: If the formula cannot be evaluated or the
            design is not of full column rank
    """
    try:
        design = patsy.dmatrix(formula, metadata, return_type='dataframe', NA_action='raise')
    except (patsy.PatsyError, KeyError, NameError) as e:
        raise DesignMatrixError(f"Could not build design matrix from '{formula}': {e}")

    design.index = metadata.index
    design.columns = [_clean_column_name(c) for c in design.columns]

    dup = design.columns[design.columns.duplicated()].tolist()
    if dup:
        raise DesignMatrixError(f"Ambiguous design column names: {dup}")

    bad = non_estimable(design)
    if bad:
        raise DesignMatrixError(
            f"Design matrix is not of full rank; coefficients not estimable: {bad}",
            {'non_estimable': bad}
        )

    if design.shape[0] <= design.shape[1]:
        logger.warning(
            f"Design has {design.shape[1]} coefficients for {design.shape[0]} samples; "
            "no residual degrees of freedom"
        )

    logger.info(f"Design matrix '{formula}': {design.shape[0]} samples x coefficients {list(design.columns)}")
    return design


def make_contrasts(
    contrasts: Union[str, Sequence[str], Mapping[str, str]],
    levels: Union[pd.DataFrame, Sequence[str]]
) -> pd.DataFrame:
    """
    Build a contrast matrix from expressions in coefficient names.

    Args:
        contrasts: One expression, a list of expressions (each named by
            itself), or a mapping of contrast name -> expression, e.g.
            ``{"BvsA": "groupB - groupA"}``
        levels: Coefficient names, or the design matrix itself

    Returns:
        DataFrame (coefficients x contrasts) of contrast weights

    Raises:
        DesignMatrixError: If an expression refers to unknown coefficients
            or does not involve any coefficient
    """
    if isinstance(levels, pd.DataFrame):
        levels = list(levels.columns)
    levels = [str(level) for level in levels]

    if isinstance(contrasts, str):
        contrasts = {contrasts: contrasts}
    elif not isinstance(contrasts, Mapping):
        contrasts = {expr: expr for expr in contrasts}
    if not contrasts:
        raise DesignMatrixError("No contrasts given")

    aliases = {level: f"_coef{i}" for i, level in enumerate(levels)}
    pattern = re.compile(
        r'(?<![\w.:])(' + '|'.join(re.escape(l) for l in sorted(levels, key=len, reverse=True)) + r')(?![\w.:])'
    )
    basis = pd.DataFrame(np.eye(len(levels)), index=levels, columns=list(aliases.values()))

    columns: Dict[str, np.ndarray] = {}
    for name, expr in contrasts.items():
        aliased = pattern.sub(lambda m: aliases[m.group(1)], expr)
        try:
            value = basis.eval(aliased)
        except Exception as e:
            raise DesignMatrixError(
                f"Could not parse contrast '{name}': '{expr}' ({e}); "
                f"coefficients are {levels}"
            )
        if not isinstance(value, pd.Series):
            raise DesignMatrixError(f"Contrast '{name}' does not involve any coefficient: '{expr}'")
        columns[name] = value.to_numpy(dtype=np.float64)

    matrix = pd.DataFrame(columns, index=levels)
    matrix.index.name = 'coefficient'
    logger.debug(f"Contrast matrix:\n{matrix}")
    return matrix
