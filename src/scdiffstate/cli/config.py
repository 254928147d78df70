"""
Configuration file support for the scdiffstate CLI.

Supports YAML and JSON config files with CLI argument override. A config
holds shared input settings at the top level and one optional section per
subcommand:

    input: counts.csv
    metadata: cells.csv
    labels:
      sample_id: patient
      cluster_id: celltype
      group_id: condition
    pseudobulk:
      method: qlnb
      min_cells: 10
    mixed:
      method: dream
      ddf: satterthwaite
"""

import json
from argparse import Namespace
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

PATH_KEYS = ('input', 'metadata', 'h5ad', 'output')


@dataclass
class AggregateConfig:
    """Aggregation configuration."""
    assay: str = "counts"
    fun: str = "sum"
    by: List[str] = field(default_factory=lambda: ["cluster_id", "sample_id"])


@dataclass
class PseudobulkConfig:
    """Pseudobulk DS configuration."""
    method: str = "qlnb"
    min_cells: int = 10
    min_samples_expressed: Optional[int] = None
    coef: Optional[List[str]] = None
    fdr_method: str = "BH"
    n_jobs: int = 1
    bind: str = "row"


@dataclass
class MixedConfig:
    """Mixed-model DS configuration."""
    method: str = "dream"
    n_cells: int = 10
    n_samples: int = 2
    min_count: float = 1
    min_cells: int = 20
    ddf: str = "satterthwaite"
    coef: Optional[List[str]] = None
    fdr_method: str = "BH"
    n_jobs: int = 1
    bind: str = "row"


@dataclass
class ConfigSchema:
    """
    Complete configuration schema for the scdiffstate commands.

    Mirrors the CLI argument structure for consistency.
    """
    input: Optional[Path] = None
    metadata: Optional[Path] = None
    h5ad: Optional[Path] = None
    output: Optional[Path] = None
    labels: Dict[str, str] = field(default_factory=dict)
    aggregate: AggregateConfig = field(default_factory=AggregateConfig)
    pseudobulk: PseudobulkConfig = field(default_factory=PseudobulkConfig)
    mixed: MixedConfig = field(default_factory=MixedConfig)


SECTIONS = {
    'aggregate': AggregateConfig,
    'pseudobulk': PseudobulkConfig,
    'mixed': MixedConfig,
}

CHOICES = {
    ('aggregate', 'fun'): {"sum", "mean", "median", "prop.detected", "num.detected"},
    ('pseudobulk', 'method'): {"qlnb", "limma-trend"},
    ('mixed', 'method'): {"dream", "vst", "poisson", "nbinom"},
    ('mixed', 'ddf'): {"satterthwaite", "between-within", "residual"},
    ('pseudobulk', 'fdr_method'): {"BH", "BY", "bonferroni"},
    ('mixed', 'fdr_method'): {"BH", "BY", "bonferroni"},
    ('pseudobulk', 'bind'): {"row", "col"},
    ('mixed', 'bind'): {"row", "col"},
}


def load_config(config_path: Path) -> Dict[str, Any]:
    """
    Load configuration from YAML or JSON file.

    Parameters:
        config_path: Path to config file (.yaml, .yml, or .json)

    Returns:
        Dictionary with configuration values

    Raises:
        FileNotFoundError: If config file doesn't exist
        ValueError: If file format is unsupported or invalid

    Examples:
        >>> config = load_config(Path("ds.yaml"))
        >>> print(config['pseudobulk']['method'])
        qlnb
    """
    config_path = Path(config_path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    suffix = config_path.suffix.lower()

    try:
        with open(config_path, 'r') as f:
            if suffix in ('.yaml', '.yml'):
                config = yaml.safe_load(f)
            elif suffix == '.json':
                config = json.load(f)
            else:
                raise ValueError(
                    f"Unsupported config format: {suffix}. "
                    f"Use .yaml, .yml, or .json"
                )
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in config file: {e}")
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in config file: {e}")

    if config is None:
        return {}

    if not isinstance(config, dict):
        raise ValueError("Config file must contain a dictionary/mapping at top level")

    return config


def validate_config(config: Dict[str, Any]) -> None:
    """
    Check section names, keys and enumerated values.

    Raises:
        ValueError: On unknown sections/keys or invalid choices
    """
    top_level = {f.name for f in fields(ConfigSchema)}
    unknown = [k for k in config if k not in top_level]
    if unknown:
        raise ValueError(f"Unknown config keys: {unknown}. Allowed: {sorted(top_level)}")

    labels = config.get('labels') or {}
    if not isinstance(labels, dict):
        raise ValueError("'labels' must be a mapping of DS label -> metadata column")
    bad_labels = [k for k in labels if k not in ('sample_id', 'cluster_id', 'group_id')]
    if bad_labels:
        raise ValueError(f"Unknown labels {bad_labels}; use sample_id, cluster_id, group_id")

    for section, schema in SECTIONS.items():
        values = config.get(section)
        if values is None:
            continue
        if not isinstance(values, dict):
            raise ValueError(f"Section '{section}' must be a mapping")
        allowed = {f.name for f in fields(schema)}
        unknown = [k for k in values if k not in allowed]
        if unknown:
            raise ValueError(f"Unknown keys in '{section}': {unknown}. Allowed: {sorted(allowed)}")
        for key, value in values.items():
            choices = CHOICES.get((section, key))
            if choices is not None and value not in choices:
                raise ValueError(f"{section}.{key} must be one of {sorted(choices)}, got {value!r}")


def _merge_value(cli_value: Any, config_value: Any, arg_name: str, was_explicitly_set: bool) -> Any:
    """
    Merge a single config value with CLI argument.

    Rules:
    - CLI args ALWAYS override config if explicitly set
    - If CLI arg not set, use config value
    - If neither set, keep CLI default
    """
    if was_explicitly_set:
        return cli_value

    if config_value is not None:
        return config_value

    return cli_value


def explicit_arguments(cli_args: Optional[List[str]]) -> set:
    """Destination names of the long options present on the command line."""
    explicit = set()
    short_to_long = {'i': 'input', 'm': 'metadata', 'o': 'output', 'c': 'config'}
    for arg in cli_args or []:
        if arg.startswith('--'):
            explicit.add(arg[2:].split('=', 1)[0].replace('-', '_'))
        elif arg.startswith('-') and len(arg) == 2 and arg[1] in short_to_long:
            explicit.add(short_to_long[arg[1]])
    return explicit


def merge_config_with_args(
    config: Dict[str, Any],
    args: Namespace,
    cli_args: Optional[List[str]] = None,
    section: Optional[str] = None,
) -> Namespace:
    """
    Merge config file values with CLI arguments.

    Priority (highest to lowest):
    1. Explicitly provided CLI arguments
    2. Config file values (the command's section, then top level)
    3. CLI argument defaults

    Parameters:
        config: Configuration dictionary from load_config()
        args: Parsed CLI arguments (argparse.Namespace)
        cli_args: Raw CLI arguments list (for detecting explicit values).
                  If None, assumes all args are defaults
        section: Config section of the running subcommand

    Returns:
        Updated Namespace with merged values
    """
    explicit = explicit_arguments(cli_args)
    merged = Namespace(**vars(args))

    for key in PATH_KEYS:
        if key in config and hasattr(merged, key):
            value = config[key]
            if value is not None:
                value = Path(value)
            setattr(merged, key, _merge_value(getattr(merged, key), value, key, key in explicit))

    # labels.sample_id -> --sample-col, etc.
    for label, column in (config.get('labels') or {}).items():
        arg_name = f"{label.split('_')[0]}_col"
        if hasattr(merged, arg_name):
            setattr(merged, arg_name, _merge_value(
                getattr(merged, arg_name), column, arg_name, arg_name in explicit
            ))

    if section and isinstance(config.get(section), dict):
        for key, value in config[section].items():
            if hasattr(merged, key):
                setattr(merged, key, _merge_value(getattr(merged, key), value, key, key in explicit))

    return merged
