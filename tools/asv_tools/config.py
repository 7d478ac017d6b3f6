"""
Pipeline configuration.

The YAML file is read once by the entry scripts and turned into a
PipelineConfig, which is then passed explicitly to every stage. Relative
paths are resolved against a base directory (the project root for the
scripts), never against the current working directory.
"""

import dataclasses
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

import yaml

from .exceptions import ConfigError


DEFAULT_RANKS = ['Kingdom', 'Phylum', 'Class', 'Order', 'Family', 'Genus', 'Species']


@dataclass
class PathsConfig:
    raw_reads_dir: Path = Path('data/raw')
    work_dir: Path = Path('data/processed')
    results_dir: Path = Path('results')
    metadata_file: Path = Path('metadata/sample_metadata.tsv')
    log_file: Optional[Path] = None

    @property
    def filtered_dir(self):
        return self.work_dir / 'filtered'

    @property
    def figures_dir(self):
        return self.results_dir / 'figures'

    @property
    def tables_dir(self):
        return self.results_dir / 'tables'


@dataclass
class ReadsConfig:
    forward_suffix: str = '_R1_001.fastq.gz'
    reverse_suffix: str = '_R2_001.fastq.gz'
    sample_id_regex: str = r'^([^_]+)_'


@dataclass
class FilteringConfig:
    trim_left: List[int] = field(default_factory=lambda: [0, 0])
    trunc_len: List[int] = field(default_factory=lambda: [240, 160])
    max_n: int = 0
    max_ee: List[float] = field(default_factory=lambda: [2.0, 2.0])
    trunc_q: int = 2
    rm_phix: bool = True


@dataclass
class DenoisingConfig:
    pool: bool = False
    min_overlap: int = 12
    max_mismatch: int = 0


@dataclass
class ChimeraConfig:
    method: str = 'consensus'
    min_fold_parent_over_abundance: float = 2.0


@dataclass
class TaxonomyConfig:
    reference_db: Optional[Path] = None
    species_db: Optional[Path] = None
    min_boot: int = 50
    ranks: List[str] = field(default_factory=lambda: list(DEFAULT_RANKS))
    exclude: Dict[str, List[str]] = field(
        default_factory=lambda: {'Order': ['Chloroplast'], 'Family': ['Mitochondria']}
    )


@dataclass
class PhylogenyConfig:
    mode: str = 'local'
    mafft: str = 'mafft'
    fasttree: str = 'FastTree'
    tree_file: Optional[Path] = None
    scheduler_header: List[str] = field(default_factory=list)


@dataclass
class MetadataConfig:
    sample_id_column: str = 'SampleID'
    group_variables: List[str] = field(
        default_factory=lambda: ['Sex', 'Injury', 'Treatment', 'Timepoint']
    )


@dataclass
class DiversityConfig:
    alpha_metrics: List[str] = field(
        default_factory=lambda: ['observed', 'shannon', 'simpson', 'faith_pd']
    )
    beta_metrics: List[str] = field(
        default_factory=lambda: ['braycurtis', 'weighted_unifrac', 'unweighted_unifrac', 'aitchison']
    )
    rarefaction_depth: Optional[int] = None
    rarefaction_seed: int = 42
    permutations: int = 999


@dataclass
class DifferentialAbundanceConfig:
    method: str = 'zinb'
    min_prevalence: float = 0.1
    min_abundance: float = 0.0
    alpha: float = 0.05
    rank: Optional[str] = None
    comparisons: List[Dict[str, str]] = field(default_factory=list)


@dataclass
class VisualizationConfig:
    figure_dpi: int = 300
    stacked_bar_ranks: List[str] = field(default_factory=lambda: ['Phylum', 'Family', 'Genus'])
    top_n: int = 10
    facet_variable: Optional[str] = None


@dataclass
class PipelineConfig:
    paths: PathsConfig = field(default_factory=PathsConfig)
    reads: ReadsConfig = field(default_factory=ReadsConfig)
    filtering: FilteringConfig = field(default_factory=FilteringConfig)
    denoising: DenoisingConfig = field(default_factory=DenoisingConfig)
    chimeras: ChimeraConfig = field(default_factory=ChimeraConfig)
    taxonomy: TaxonomyConfig = field(default_factory=TaxonomyConfig)
    phylogeny: PhylogenyConfig = field(default_factory=PhylogenyConfig)
    metadata: MetadataConfig = field(default_factory=MetadataConfig)
    diversity: DiversityConfig = field(default_factory=DiversityConfig)
    differential_abundance: DifferentialAbundanceConfig = field(
        default_factory=DifferentialAbundanceConfig
    )
    visualization: VisualizationConfig = field(default_factory=VisualizationConfig)
    labels: Dict[str, Dict[str, str]] = field(default_factory=dict)
    threads: int = 1


# Fields holding filesystem paths, per section
_PATH_FIELDS = {
    'paths': ('raw_reads_dir', 'work_dir', 'results_dir', 'metadata_file', 'log_file'),
    'taxonomy': ('reference_db', 'species_db'),
    'phylogeny': ('tree_file',),
}

_CHIMERA_METHODS = ('consensus', 'pooled', 'per-sample', 'exact')
_PHYLOGENY_MODES = ('local', 'external')


def _build_section(cls, section_name, values, base_dir):
    if values is None:
        values = {}
    if not isinstance(values, dict):
        raise ConfigError(f"Configuration section '{section_name}' must be a mapping")

    known = {f.name for f in dataclasses.fields(cls)}
    unknown = sorted(set(values) - known)
    if unknown:
        raise ConfigError(f"Unknown key(s) in section '{section_name}': {', '.join(unknown)}")

    section = cls(**values)

    # Defaults are relative too
    for name in _PATH_FIELDS.get(section_name, ()):
        value = getattr(section, name)
        if value is not None:
            setattr(section, name, _resolve(value, base_dir))
    return section


def _resolve(value, base_dir):
    path = Path(value).expanduser()
    if not path.is_absolute():
        path = Path(base_dir) / path
    return path


def config_from_dict(data, base_dir):
    """
    Build a PipelineConfig from a plain dictionary.

    Parameters:
    -----------
    data : dict
        Parsed YAML content
    base_dir : str or Path
        Directory that relative paths are resolved against

    Returns:
    --------
    PipelineConfig
    """
    data = dict(data or {})
    section_types = {
        f.name: f.default_factory
        for f in dataclasses.fields(PipelineConfig)
        if dataclasses.is_dataclass(f.default_factory)
    }
    unknown = sorted(set(data) - {f.name for f in dataclasses.fields(PipelineConfig)})
    if unknown:
        raise ConfigError(f"Unknown configuration section(s): {', '.join(unknown)}")

    kwargs = {}
    for name, cls in section_types.items():
        kwargs[name] = _build_section(cls, name, data.get(name), base_dir)

    labels = data.get('labels') or {}
    if not isinstance(labels, dict) or not all(isinstance(v, dict) for v in labels.values()):
        raise ConfigError("'labels' must map column names to {raw value: display label} mappings")
    kwargs['labels'] = {
        column: {str(k): str(v) for k, v in mapping.items()}
        for column, mapping in labels.items()
    }

    threads = data.get('threads', 1)
    if not isinstance(threads, int) or threads < 1:
        raise ConfigError(f"'threads' must be a positive integer, got {threads!r}")
    kwargs['threads'] = threads

    config = PipelineConfig(**kwargs)
    validate_config(config)
    return config


def validate_config(config):
    """Check value ranges that the dataclasses cannot express."""
    if config.chimeras.method not in _CHIMERA_METHODS:
        raise ConfigError(
            f"Unknown chimera method '{config.chimeras.method}'. "
            f"Use one of: {', '.join(_CHIMERA_METHODS)}"
        )
    if config.phylogeny.mode not in _PHYLOGENY_MODES:
        raise ConfigError(
            f"Unknown phylogeny mode '{config.phylogeny.mode}'. "
            f"Use one of: {', '.join(_PHYLOGENY_MODES)}"
        )
    for name in ('trim_left', 'trunc_len', 'max_ee'):
        value = getattr(config.filtering, name)
        if len(value) != 2:
            raise ConfigError(f"filtering.{name} needs one value per read direction, got {value!r}")
    for comparison in config.differential_abundance.comparisons:
        if 'variable' not in comparison:
            raise ConfigError(f"Differential abundance comparison without 'variable': {comparison!r}")


def load_config(path, base_dir=None):
    """
    Load the pipeline configuration from a YAML file.

    Parameters:
    -----------
    path : str or Path
        Path to the YAML configuration file
    base_dir : str or Path, optional
        Directory relative paths are resolved against. Defaults to the
        directory containing the configuration file.

    Returns:
    --------
    PipelineConfig
    """
    path = Path(path)
    with open(path, 'r') as f:
        data = yaml.safe_load(f)

    if base_dir is None:
        base_dir = path.resolve().parent
    return config_from_dict(data, base_dir)
