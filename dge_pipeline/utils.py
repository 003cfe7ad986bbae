"""
Utility functions for the DGE Pipeline.

This module provides common utility functions used across the pipeline,
including logging setup, file validation, and JSON summary helpers.
"""

import logging
import json
from pathlib import Path
from typing import Dict, Any, Union
import numpy as np
from rich.logging import RichHandler
from rich.console import Console

console = Console()

def setup_logging(level: int = logging.INFO) -> None:
    """
    Set up logging with Rich handler for colored output.

    Args:
        level: Logging level (default: INFO)
    """
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True)],
        force=True,
    )

def validate_file_exists(file_path: Union[str, Path]) -> Path:
    """
    Validate that a file exists and return Path object.

    Args:
        file_path: Path to file

    Returns:
        Path object if file exists

    Raises:
        FileNotFoundError: If file doesn't exist
    """
    path = Path(file_path)
    if not path.is_file():
        raise FileNotFoundError(f"File not found: {path}")
    return path

def validate_directory_exists(dir_path: Union[str, Path], create: bool = False) -> Path:
    """
    Validate that a directory exists, optionally create it.

    Args:
        dir_path: Path to directory
        create: Whether to create directory if it doesn't exist

    Returns:
        Path object

    Raises:
        FileNotFoundError: If directory doesn't exist and create=False
    """
    path = Path(dir_path)
    if not path.exists():
        if create:
            path.mkdir(parents=True, exist_ok=True)
        else:
            raise FileNotFoundError(f"Directory not found: {path}")
    return path

def _json_default(value: Any) -> Any:
    """Convert numpy scalars, arrays and paths for json.dump."""
    if isinstance(value, np.integer):
        return int(value)
    if isinstance(value, np.floating):
        return float(value)
    if isinstance(value, np.bool_):
        return bool(value)
    if isinstance(value, np.ndarray):
        return value.tolist()
    if isinstance(value, Path):
        return str(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")

def save_metrics_json(metrics: Dict[str, Any], output_file: Union[str, Path]) -> None:
    """
    Save metrics dictionary to JSON file.

    Args:
        metrics: Dictionary of metrics
        output_file: Output JSON file path
    """
    with open(output_file, 'w') as f:
        json.dump(metrics, f, indent=2, default=_json_default)

def load_metrics_json(json_file: Union[str, Path]) -> Dict[str, Any]:
    """
    Load metrics from JSON file.

    Args:
        json_file: Path to JSON file

    Returns:
        Dictionary of metrics
    """
    with open(json_file, 'r') as f:
        return json.load(f)

def format_number(num: Union[int, float], precision: int = 2) -> str:
    """
    Format number with appropriate precision and units.

    Args:
        num: Number to format
        precision: Decimal precision

    Returns:
        Formatted number string
    """
    if num >= 1e9:
        return f"{num/1e9:.{precision}f}B"
    elif num >= 1e6:
        return f"{num/1e6:.{precision}f}M"
    elif num >= 1e3:
        return f"{num/1e3:.{precision}f}K"
    else:
        return f"{num:.{precision}f}"

def safe_filename(name: str) -> str:
    """Replace characters that are awkward in file names (contrast names, etc.)."""
    cleaned = "".join(c if c.isalnum() or c in "._-" else "_" for c in name)
    return cleaned.strip("_") or "unnamed"
