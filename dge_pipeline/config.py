"""
Configuration for the DGE Pipeline.

An analysis is described by a YAML file that maps onto the dataclasses
below. Relative input and output paths are resolved against the directory
containing the YAML file.

Example::

    counts: counts.tsv
    metadata: samples.csv
    annotation: genes.tsv
    output_dir: results
    formula: "~ 0 + group"
    group_columns: [condition, time]
    contrasts:
      treated_vs_control: grouptreated - groupcontrol
    normalization:
      method: TMM
    filter:
      method: expr
      min_count: 10
"""

import logging
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from .exceptions import ConfigError
from .multiple_testing import ADJUST_METHODS
from .normalization import NORM_METHODS
from .results import SORT_ALIASES

logger = logging.getLogger(__name__)

FILTER_METHODS = ('expr', 'max_cpm', 'none')


@dataclass
class NormalizationConfig:
    method: str = 'TMM'
    logratio_trim: float = 0.3
    sum_trim: float = 0.05
    do_weighting: bool = True
    p: float = 0.75


@dataclass
class FilterConfig:
    method: str = 'expr'
    min_count: float = 10
    min_total_count: float = 15
    large_n: int = 10
    min_prop: float = 0.7
    cpm_cutoff: float = 1.0


@dataclass
class VoomConfig:
    span: float = 0.5


@dataclass
class EBayesConfig:
    proportion: float = 0.01
    trend: bool = False
    stdev_coef_lim: List[float] = field(default_factory=lambda: [0.1, 4.0])


@dataclass
class TopTableConfig:
    adjust_method: str = 'BH'
    sort_by: str = 'P'
    p_value: float = 1.0
    lfc: float = 0.0
    number: Optional[int] = None
    confint: bool = False
    decide_p_value: float = 0.05


@dataclass
class AnalysisConfig:
    """Complete description of one differential expression analysis."""

    counts: Path
    metadata: Path
    formula: str
    contrasts: Dict[str, str] = field(default_factory=dict)
    annotation: Optional[Path] = None
    output_dir: Path = Path('dge_results')
    sample_column: str = 'sample'
    annotation_id_column: Optional[str] = None
    group_columns: List[str] = field(default_factory=list)
    group_name: str = 'group'
    categorical: List[str] = field(default_factory=list)
    reference_levels: Dict[str, str] = field(default_factory=dict)
    reorder: bool = False
    allow_fractional: bool = False
    prior_count: float = 2.0
    normalization: NormalizationConfig = field(default_factory=NormalizationConfig)
    filter: FilterConfig = field(default_factory=FilterConfig)
    voom: VoomConfig = field(default_factory=VoomConfig)
    ebayes: EBayesConfig = field(default_factory=EBayesConfig)
    top_table: TopTableConfig = field(default_factory=TopTableConfig)

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        """
        Check option values.

        Raises:
            ConfigError: If any value is out of range or unknown
        """
        if not str(self.formula).strip():
            raise ConfigError("formula must not be empty")
        if self.normalization.method not in NORM_METHODS:
            raise ConfigError(
                f"Unknown normalization method '{self.normalization.method}'",
                {'choices': list(NORM_METHODS)},
            )
        if self.filter.method not in FILTER_METHODS:
            raise ConfigError(
                f"Unknown filter method '{self.filter.method}'",
                {'choices': list(FILTER_METHODS)},
            )
        if self.top_table.adjust_method not in ADJUST_METHODS:
            raise ConfigError(
                f"Unknown adjust method '{self.top_table.adjust_method}'",
                {'choices': list(ADJUST_METHODS)},
            )
        if self.top_table.sort_by not in SORT_ALIASES:
            raise ConfigError(
                f"Unknown top_table sort_by '{self.top_table.sort_by}'",
                {'choices': list(SORT_ALIASES)},
            )
        if not 0 < self.voom.span <= 1:
            raise ConfigError(f"voom span must be in (0, 1], got {self.voom.span}")
        if not 0 < self.ebayes.proportion < 1:
            raise ConfigError(f"ebayes proportion must be in (0, 1), got {self.ebayes.proportion}")
        if len(self.ebayes.stdev_coef_lim) != 2:
            raise ConfigError("ebayes stdev_coef_lim must have two values")
        if self.prior_count < 0:
            raise ConfigError("prior_count must be non-negative")
        if not isinstance(self.contrasts, dict):
            raise ConfigError("contrasts must be a mapping of name to expression")

    def to_dict(self) -> Dict[str, Any]:
        """Plain-data form of the configuration, suitable for YAML output."""
        data = asdict(self)
        for key in ('counts', 'metadata', 'annotation', 'output_dir'):
            if data[key] is not None:
                data[key] = str(data[key])
        return data

    def save(self, output_file: Union[str, Path]) -> Path:
        """Write the configuration as YAML."""
        output_file = Path(output_file)
        with open(output_file, 'w') as f:
            yaml.safe_dump(self.to_dict(), f, sort_keys=False)
        return output_file


SECTIONS = {
    'normalization': NormalizationConfig,
    'filter': FilterConfig,
    'voom': VoomConfig,
    'ebayes': EBayesConfig,
    'top_table': TopTableConfig,
}


def _check_keys(data: Dict[str, Any], cls: type, where: str) -> None:
    allowed = {f.name for f in fields(cls)}
    unknown = sorted(set(data) - allowed)
    if unknown:
        raise ConfigError(f"Unknown key(s) in {where}: {', '.join(unknown)}", {'allowed': sorted(allowed)})


def _resolve(path: Optional[Union[str, Path]], base_dir: Path) -> Optional[Path]:
    if path is None:
        return None
    path = Path(path).expanduser()
    return path if path.is_absolute() else base_dir / path


def config_from_dict(data: Dict[str, Any], base_dir: Union[str, Path] = '.') -> AnalysisConfig:
    """
    Build an AnalysisConfig from a parsed YAML mapping.

    Args:
        data: Mapping of configuration keys
        base_dir: Directory that relative paths are resolved against

    Returns:
        Validated AnalysisConfig

    Raises:
        ConfigError: On unknown keys, missing required keys or invalid values
    """
    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a YAML mapping")

    _check_keys(data, AnalysisConfig, 'configuration')
    missing = [key for key in ('counts', 'metadata', 'formula') if key not in data]
    if missing:
        raise ConfigError(f"Missing required key(s): {', '.join(missing)}")

    base_dir = Path(base_dir)
    kwargs = dict(data)
    for name, cls in SECTIONS.items():
        section = kwargs.get(name) or {}
        if not isinstance(section, dict):
            raise ConfigError(f"Section '{name}' must be a mapping")
        _check_keys(section, cls, f"section '{name}'")
        try:
            kwargs[name] = cls(**section)
        except TypeError as e:
            raise ConfigError(f"Invalid section '{name}': {e}") from e

    contrasts = kwargs.get('contrasts') or {}
    if isinstance(contrasts, list):
        contrasts = {str(expr): str(expr) for expr in contrasts}
    kwargs['contrasts'] = contrasts

    for key in ('group_columns', 'categorical'):
        value = kwargs.get(key) or []
        kwargs[key] = [value] if isinstance(value, str) else list(value)
    kwargs['reference_levels'] = kwargs.get('reference_levels') or {}

    for key in ('counts', 'metadata', 'annotation'):
        kwargs[key] = _resolve(kwargs.get(key), base_dir)
    kwargs['output_dir'] = _resolve(kwargs.get('output_dir') or 'dge_results', base_dir)

    return AnalysisConfig(**kwargs)


def load_config(config_file: Union[str, Path]) -> AnalysisConfig:
    """
    Load an analysis configuration from YAML.

    Args:
        config_file: Path to the YAML file

    Returns:
        Validated AnalysisConfig

    Raises:
        FileNotFoundError: If the file does not exist
        ConfigError: If the YAML is malformed or the configuration is invalid
    """
    config_file = Path(config_file)
    if not config_file.is_file():
        raise FileNotFoundError(f"Config file not found: {config_file}")

    try:
        with open(config_file, 'r') as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Could not parse {config_file}: {e}") from e

    logger.info(f"Loaded configuration from {config_file}")
    return config_from_dict(data or {}, base_dir=config_file.resolve().parent)
