"""
Reading and writing the intermediate files passed between pipeline stages.

Feature tables are stored as BIOM (HDF5) or TSV, taxonomy and read tracking
as TSV, representative sequences as FASTA and trees as Newick. Feature tables
are always samples x features in memory.
"""

import logging
from pathlib import Path

import numpy as np
import pandas as pd
import skbio.io
from skbio import DNA, TreeNode

logger = logging.getLogger(__name__)


def _normalise_table(table):
    table = table.copy()
    table.index = pd.Index([str(i) for i in table.index], name='SampleID')
    table.columns = pd.Index([str(c) for c in table.columns], name='FeatureID')
    return table


def write_feature_table(table, path, generated_by='asv_tools'):
    """
    Save a samples x features count table.

    Parameters:
    -----------
    table : pandas.DataFrame
        Counts with samples as rows and feature IDs as columns
    path : str or Path
        Output file; '.biom' writes BIOM HDF5, anything else writes TSV
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    table = _normalise_table(table)

    if path.suffix == '.biom':
        from biom import Table
        from biom.util import biom_open

        biom_table = Table(
            table.T.values,
            observation_ids=list(table.columns),
            sample_ids=list(table.index),
        )
        with biom_open(str(path), 'w') as f:
            biom_table.to_hdf5(f, generated_by)
    else:
        table.to_csv(path, sep='\t')

    logger.info(f"Wrote feature table ({table.shape[0]} samples, {table.shape[1]} features) to {path}")


def read_feature_table(path):
    """
    Load a count table written by write_feature_table.

    Returns:
    --------
    pandas.DataFrame
        Integer counts, samples as rows, feature IDs as columns
    """
    path = Path(path)
    if path.suffix == '.biom':
        from biom import load_table

        biom_table = load_table(str(path))
        table = pd.DataFrame(
            biom_table.matrix_data.toarray().T,
            index=biom_table.ids(axis='sample'),
            columns=biom_table.ids(axis='observation'),
        )
    else:
        table = pd.read_csv(path, sep='\t', index_col=0, dtype={'SampleID': str})

    table = _normalise_table(table)
    return table.round().astype(np.int64)


def write_taxonomy(taxonomy, path):
    """Save a feature x rank taxonomy table as TSV."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    taxonomy = taxonomy.copy()
    taxonomy.index.name = 'FeatureID'
    taxonomy.to_csv(path, sep='\t')


def read_taxonomy(path):
    """Load a taxonomy table; unassigned ranks come back as NaN."""
    taxonomy = pd.read_csv(path, sep='\t', index_col=0, dtype=str, keep_default_na=False, na_values=[''])
    taxonomy.index = taxonomy.index.astype(str)
    taxonomy.index.name = 'FeatureID'
    return taxonomy


def write_sequences(sequences, path):
    """
    Write representative sequences to FASTA.

    Parameters:
    -----------
    sequences : pandas.Series
        Sequences indexed by feature ID
    path : str or Path
        Output FASTA path
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    records = (DNA(sequence, metadata={'id': feature_id, 'description': ''})
               for feature_id, sequence in sequences.items())
    skbio.io.write(records, format='fasta', into=str(path), max_width=None)


def read_sequences(path):
    """Read a FASTA file into a Series of sequences indexed by record ID."""
    records = skbio.io.read(str(path), format='fasta', constructor=DNA)
    data = {}
    for record in records:
        data[record.metadata['id']] = str(record)
    sequences = pd.Series(data, dtype=object)
    sequences.index.name = 'FeatureID'
    sequences.name = 'Sequence'
    return sequences


def write_tree(tree, path):
    """Write a TreeNode as Newick."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tree.write(str(path), format='newick')


def read_tree(path):
    """Read a Newick tree into a TreeNode."""
    return TreeNode.read(str(path), format='newick')


def write_read_tracking(tracking, path):
    """Save the per-sample read counts retained at each stage."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tracking = tracking.copy()
    tracking.index.name = 'SampleID'
    tracking.to_csv(path, sep='\t')


def read_read_tracking(path):
    tracking = pd.read_csv(path, sep='\t', index_col=0, dtype={'SampleID': str})
    return tracking
