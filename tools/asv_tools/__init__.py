"""
Amplicon sequence variant tools for the FMT/TBI mouse gut microbiome study.

Reads go through DADA2, chimera removal, taxonomy assignment and tree
building into a validated MicrobiomeDataset, which the diversity, ordination,
differential abundance and plotting functions work on.
"""

from .config import PipelineConfig, load_config
from .dataset import MicrobiomeDataset, assemble_dataset, load_dataset, save_dataset
from .exceptions import (
    AsvToolsError,
    ConfigError,
    DatasetIntegrityError,
    ExternalToolError,
    IdentifierCollisionError,
)
from .identifiers import assign_feature_ids, hash_sequence
from .logger import setup_logger

__version__ = '0.1.0'

__all__ = [
    'AsvToolsError',
    'ConfigError',
    'DatasetIntegrityError',
    'ExternalToolError',
    'IdentifierCollisionError',
    'MicrobiomeDataset',
    'PipelineConfig',
    'assemble_dataset',
    'assign_feature_ids',
    'hash_sequence',
    'load_config',
    'load_dataset',
    'save_dataset',
    'setup_logger',
]
