"""
Configuration for network construction, module detection, preservation
scoring and duplication simulation.

Every default is explicit here; nothing is read from module-level
globals at run time. Config files are YAML or JSON with one section per
dataclass:

    network:
      power: 6
      adjacency_type: unsigned
    modules:
      min_module_size: 200
      merge_height: 0.25
    submodules:
      min_module_size: 1
      merge_height: 0.05
    preservation:
      n_permutations: 200
      seed: 42
    simulation:
      noise_factors: [0.05, 0.5, 1.0]
      numsim: 10

CLI arguments explicitly given on the command line override file values.
"""

import json
from argparse import Namespace
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml


# Soft-threshold candidates: 1..10, then 12..20 in steps of 2
DEFAULT_POWERS: Tuple[float, ...] = tuple(range(1, 11)) + tuple(range(12, 21, 2))


@dataclass
class NetworkConfig:
    """Similarity and topological overlap settings."""
    power: Optional[float] = None  # None = pick_soft_threshold()
    adjacency_type: str = "unsigned"
    overlap: str = "min"
    r2_target: float = 0.9
    mean_connectivity_floor: float = 20.0
    candidate_powers: Tuple[float, ...] = DEFAULT_POWERS
    chunk_size: int = 500
    max_block_bytes: int = 256 * 1024 ** 2


@dataclass
class ModuleDetectionConfig:
    """Dynamic tree cut, eigengene merge and gene reassignment settings."""
    min_module_size: int = 200
    deep_split: int = 2
    cut_height: Optional[float] = None
    merge_height: float = 0.25
    reassign_threshold: Optional[float] = 0.001  # None disables reassignment

    @classmethod
    def submodule(cls, **overrides) -> "ModuleDetectionConfig":
        """Defaults for detection inside a single module."""
        return replace(cls(min_module_size=1, merge_height=0.05), **overrides)


@dataclass
class PreservationConfig:
    """Permutation test settings."""
    n_permutations: int = 200
    min_module_size: int = 5
    seed: int = 42
    n_jobs: int = 1
    permutation_jobs: int = 1
    permutation_chunk_size: int = 50
    use_processes: bool = False
    checkpoint_dir: Optional[Path] = None


@dataclass
class SimulationConfig:
    """Duplication simulator settings."""
    noise_factors: Tuple[float, ...] = (0.05, 0.1, 0.25, 0.5, 1.0)
    numsim: int = 10
    scenarios: Tuple[str, ...] = ("control", "random_imbalance", "hub_imbalance")
    imbalance_fraction: float = 0.5
    imbalance_sample_fraction: float = 0.5
    hub_quantile: float = 0.75
    seed: int = 42


@dataclass
class PipelineConfig:
    """All settings of one end-to-end run."""
    network: NetworkConfig = field(default_factory=NetworkConfig)
    modules: ModuleDetectionConfig = field(default_factory=ModuleDetectionConfig)
    submodules: ModuleDetectionConfig = field(default_factory=ModuleDetectionConfig.submodule)
    preservation: PreservationConfig = field(default_factory=PreservationConfig)
    simulation: SimulationConfig = field(default_factory=SimulationConfig)

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> "PipelineConfig":
        """
        Build from a (possibly partial) nested mapping.

        Unknown keys are rejected so that typos do not silently fall back
        to defaults.
        """
        validate_config(config)
        sections = {
            'network': NetworkConfig,
            'modules': ModuleDetectionConfig,
            'submodules': ModuleDetectionConfig,
            'preservation': PreservationConfig,
            'simulation': SimulationConfig,
        }
        unknown = set(config) - set(sections)
        if unknown:
            raise ValueError(f"Unknown config sections: {sorted(unknown)}")

        built = {}
        for name, section_cls in sections.items():
            values = dict(config.get(name) or {})
            allowed = {f.name for f in fields(section_cls)}
            bad = set(values) - allowed
            if bad:
                raise ValueError(f"Unknown keys in '{name}': {sorted(bad)}")
            for key in ('candidate_powers', 'noise_factors', 'scenarios'):
                if key in values and values[key] is not None:
                    values[key] = tuple(values[key])
            if values.get('checkpoint_dir') is not None:
                values['checkpoint_dir'] = Path(values['checkpoint_dir'])
            if name == 'submodules':
                built[name] = ModuleDetectionConfig.submodule(**values)
            else:
                built[name] = section_cls(**values)
        return cls(**built)

    def to_dict(self) -> Dict[str, Any]:
        result = asdict(self)
        checkpoint = result['preservation']['checkpoint_dir']
        if checkpoint is not None:
            result['preservation']['checkpoint_dir'] = str(checkpoint)
        return result


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
        >>> config = PipelineConfig.from_dict(load_config(Path("run.yaml")))
        >>> config.modules.merge_height
        0.25
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


def _check_positive(section: str, key: str, value: Any, allow_zero: bool = False) -> None:
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        raise ValueError(f"{section}.{key} must be a number, got: {value!r}")
    if value < 0 or (value == 0 and not allow_zero):
        raise ValueError(f"{section}.{key} must be positive, got: {value}")


def _check_fraction(section: str, key: str, value: Any) -> None:
    if not isinstance(value, (int, float)) or not 0 < value <= 1:
        raise ValueError(f"{section}.{key} must be in (0, 1], got: {value!r}")


def validate_config(config: Dict[str, Any]) -> None:
    """
    Validate configuration values.

    Parameters:
        config: Configuration dictionary (sections as in PipelineConfig)

    Raises:
        ValueError: If configuration is invalid
    """
    network = config.get('network') or {}
    if network.get('power') is not None:
        _check_positive('network', 'power', network['power'])
    if 'adjacency_type' in network:
        valid = ['unsigned', 'signed', 'signed_hybrid']
        if network['adjacency_type'] not in valid:
            raise ValueError(
                f"Invalid adjacency type '{network['adjacency_type']}'. "
                f"Choose from: {', '.join(valid)}"
            )
    if 'overlap' in network and network['overlap'] not in ('min', 'product'):
        raise ValueError(f"Invalid TOM overlap '{network['overlap']}'. Choose from: min, product")
    if 'r2_target' in network:
        _check_fraction('network', 'r2_target', network['r2_target'])

    for section in ('modules', 'submodules'):
        modules = config.get(section) or {}
        if 'min_module_size' in modules:
            size = modules['min_module_size']
            if not isinstance(size, int) or size < 1:
                raise ValueError(f"{section}.min_module_size must be an integer >= 1, got: {size!r}")
        if 'deep_split' in modules and modules['deep_split'] not in range(5):
            raise ValueError(f"{section}.deep_split must be 0..4, got: {modules['deep_split']!r}")
        if 'merge_height' in modules:
            _check_positive(section, 'merge_height', modules['merge_height'], allow_zero=True)
        if modules.get('reassign_threshold') is not None:
            _check_positive(section, 'reassign_threshold', modules['reassign_threshold'], allow_zero=True)

    preservation = config.get('preservation') or {}
    for key in ('n_permutations', 'n_jobs', 'permutation_jobs', 'permutation_chunk_size'):
        if key in preservation:
            value = preservation[key]
            if not isinstance(value, int) or value < 1:
                raise ValueError(f"preservation.{key} must be an integer >= 1, got: {value!r}")
    if 'min_module_size' in preservation:
        size = preservation['min_module_size']
        if not isinstance(size, int) or size < 3:
            raise ValueError(f"preservation.min_module_size must be an integer >= 3, got: {size!r}")

    simulation = config.get('simulation') or {}
    for noise in simulation.get('noise_factors') or []:
        _check_positive('simulation', 'noise_factors', noise, allow_zero=True)
    if 'numsim' in simulation:
        if not isinstance(simulation['numsim'], int) or simulation['numsim'] < 1:
            raise ValueError(f"simulation.numsim must be an integer >= 1, got: {simulation['numsim']!r}")
    for key in ('imbalance_fraction', 'imbalance_sample_fraction'):
        if key in simulation:
            _check_fraction('simulation', key, simulation[key])
    if 'hub_quantile' in simulation:
        q = simulation['hub_quantile']
        if not isinstance(q, (int, float)) or not 0 <= q < 1:
            raise ValueError(f"simulation.hub_quantile must be in [0, 1), got: {q!r}")
    valid_scenarios = {'control', 'random_imbalance', 'hub_imbalance'}
    for scenario in simulation.get('scenarios') or []:
        if scenario not in valid_scenarios:
            raise ValueError(
                f"Invalid scenario '{scenario}'. Choose from: {', '.join(sorted(valid_scenarios))}"
            )


def explicit_cli_args(cli_args: Optional[List[str]]) -> set:
    """Destination names of options given explicitly on the command line."""
    explicit = set()
    for arg in cli_args or []:
        if arg.startswith('--'):
            explicit.add(arg[2:].split('=', 1)[0].replace('-', '_'))
    return explicit


def merge_config_with_args(
    config: PipelineConfig,
    args: Namespace,
    mapping: Dict[str, Tuple[str, str]],
    cli_args: Optional[List[str]] = None,
) -> PipelineConfig:
    """
    Apply CLI arguments on top of a PipelineConfig.

    Priority (highest to lowest):
    1. Explicitly provided CLI arguments
    2. Config file values
    3. Dataclass defaults

    Parameters:
        config: Configuration built from the config file (or defaults)
        args: Parsed CLI arguments
        mapping: CLI destination -> (section, field)
        cli_args: Raw argv; if None, every non-None CLI value counts as explicit

    Returns:
        New PipelineConfig with overrides applied
    """
    explicit = explicit_cli_args(cli_args) if cli_args is not None else None
    sections = {name: getattr(config, name) for name in
                ('network', 'modules', 'submodules', 'preservation', 'simulation')}

    for arg_name, (section, key) in mapping.items():
        value = getattr(args, arg_name, None)
        if value is None:
            continue
        if explicit is not None and arg_name not in explicit:
            continue
        if isinstance(value, list):
            value = tuple(value)
        sections[section] = replace(sections[section], **{key: value})

    return PipelineConfig(**sections)
