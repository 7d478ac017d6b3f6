"""
The integrated dataset consumed by every downstream analysis.

A MicrobiomeDataset joins the feature table (samples x features), the
taxonomy table, the rooted phylogenetic tree, the representative sequences
and the sample metadata. assemble_dataset only returns one when all parts
share exactly the same sample and feature identifiers; anything else raises
DatasetIntegrityError naming the offending identifiers.

Datasets are never modified in place. Filtering and subsetting return new
datasets, transformations return DataFrames.
"""

import logging
import tempfile
import zipfile
from collections import Counter
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import numpy as np
import pandas as pd
from skbio import TreeNode

from . import artifacts
from .exceptions import DatasetIntegrityError, IdentifierCollisionError
from .identifiers import hash_sequence
from .utils import filter_low_abundance, load_metadata

logger = logging.getLogger(__name__)


UNASSIGNED = 'Unassigned'

_ARCHIVE_MEMBERS = {
    'table': 'feature_table.biom',
    'taxonomy': 'taxonomy.tsv',
    'tree': 'tree.nwk',
    'sequences': 'sequences.fasta',
    'metadata': 'metadata.tsv',
}


def _check_identifiers(expected, observed, allow_extra=False):
    """Compare an identifier list against the expected set."""
    counts = Counter(observed)
    problems = {}

    missing = sorted(set(expected) - set(counts))
    if missing:
        problems['missing'] = missing

    if not allow_extra:
        unexpected = sorted(set(counts) - set(expected))
        if unexpected:
            problems['unexpected'] = unexpected

    duplicated = sorted(i for i, n in counts.items() if n > 1 and (i in expected or not allow_extra))
    if duplicated:
        problems['duplicated'] = duplicated

    return problems


def _single_tip_tree(tree, feature_id):
    """Root with one child, keeping the tip's distance to the original root."""
    tip = tree.find(feature_id)
    length = sum(node.length or 0.0 for node in [tip] + tip.ancestors()[:-1])
    return TreeNode(children=[TreeNode(name=feature_id, length=length)])


def validate_components(table, taxonomy, tree, metadata, sequences=None, check_content_ids=False):
    """
    Collect every identifier mismatch between the dataset components.

    Parameters:
    -----------
    table : pandas.DataFrame
        Counts with samples as rows, feature IDs as columns
    taxonomy : pandas.DataFrame
        Taxonomy with feature IDs as index
    tree : skbio.TreeNode
        Tree whose tips are named by feature ID
    metadata : pandas.DataFrame
        Sample metadata with sample IDs as index
    sequences : pandas.Series, optional
        Representative sequence per feature ID
    check_content_ids : bool
        Also require each feature ID to be the content hash of its sequence

    Returns:
    --------
    dict
        Problems keyed by component, empty when everything matches

    Raises:
    -------
    IdentifierCollisionError
        With ``check_content_ids``, if two distinct sequences share a hash
    """
    problems = {}
    features = [str(c) for c in table.columns]
    samples = [str(i) for i in table.index]

    table_problems = {}
    for kind, ids in (('duplicated features', features), ('duplicated samples', samples)):
        dupes = sorted(i for i, n in Counter(ids).items() if n > 1)
        if dupes:
            table_problems[kind] = dupes
    if table_problems:
        problems['table'] = table_problems

    checks = {
        'taxonomy': _check_identifiers(features, [str(i) for i in taxonomy.index]),
        'tree': _check_identifiers(features, [str(tip.name) for tip in tree.tips()]),
        'metadata': _check_identifiers(samples, [str(i) for i in metadata.index], allow_extra=True),
    }
    if sequences is not None:
        sequence_problems = _check_identifiers(features, [str(i) for i in sequences.index])
        if check_content_ids:
            by_hash = {}
            for sequence in sequences.values:
                sequence = str(sequence).upper()
                distinct = by_hash.setdefault(hash_sequence(sequence), [])
                if sequence not in distinct:
                    distinct.append(sequence)
            for feature_id, distinct in by_hash.items():
                if len(distinct) > 1:
                    raise IdentifierCollisionError(feature_id, distinct)

            mismatched = sorted(
                str(feature_id) for feature_id, sequence in sequences.items()
                if hash_sequence(sequence) != str(feature_id)
            )
            if mismatched:
                sequence_problems['mismatched'] = mismatched
        checks['sequences'] = sequence_problems

    for component, component_problems in checks.items():
        if component_problems:
            problems[component] = component_problems

    return problems


@dataclass(frozen=True, eq=False)
class MicrobiomeDataset:
    """
    Feature table, taxonomy, tree, sequences and metadata with shared identifiers.

    Build instances with assemble_dataset rather than directly.
    """

    table: pd.DataFrame
    taxonomy: pd.DataFrame
    tree: TreeNode
    metadata: pd.DataFrame
    sequences: Optional[pd.Series] = None

    @property
    def sample_ids(self):
        return list(self.table.index)

    @property
    def feature_ids(self):
        return list(self.table.columns)

    @property
    def shape(self):
        return self.table.shape

    @property
    def ranks(self):
        return list(self.taxonomy.columns)

    def __repr__(self):
        return (
            f"MicrobiomeDataset({self.table.shape[0]} samples, {self.table.shape[1]} features, "
            f"{self.metadata.shape[1]} metadata variables, {len(self.ranks)} ranks)"
        )

    def sample_sums(self):
        return self.table.sum(axis=1)

    def subset_samples(self, samples, prune_features=False):
        """
        Keep a subset of samples.

        Parameters:
        -----------
        samples : list-like or boolean pandas.Series
            Sample IDs to keep, or a boolean mask indexed by sample ID
            (e.g. ``dataset.metadata['Timepoint'] == 'D7'``)
        prune_features : bool
            Also drop features with no reads in the kept samples

        Returns:
        --------
        MicrobiomeDataset
        """
        if isinstance(samples, pd.Series) and samples.dtype == bool:
            samples = samples.reindex(self.table.index, fill_value=False)
            keep = list(self.table.index[samples.values])
        else:
            keep = [str(s) for s in samples]
            unknown = sorted(set(keep) - set(self.table.index))
            if unknown:
                raise KeyError(f"Samples not in dataset: {', '.join(unknown)}")

        subset = MicrobiomeDataset(
            table=self.table.loc[keep].copy(),
            taxonomy=self.taxonomy,
            tree=self.tree,
            metadata=self.metadata.loc[keep].copy(),
            sequences=self.sequences,
        )
        if prune_features:
            present = subset.table.columns[subset.table.sum(axis=0) > 0]
            subset = subset.filter_features(present)
        return subset

    def filter_features(self, features):
        """
        Keep a subset of features, pruning the tree to match.

        Parameters:
        -----------
        features : list-like
            Feature IDs to keep; table order is preserved

        Returns:
        --------
        MicrobiomeDataset
        """
        wanted = set(str(f) for f in features)
        unknown = sorted(wanted - set(self.table.columns))
        if unknown:
            raise KeyError(f"Features not in dataset: {', '.join(unknown)}")
        keep = [f for f in self.table.columns if f in wanted]

        if not keep:
            raise ValueError("No features left in the dataset")
        if len(keep) == len(self.table.columns):
            tree = self.tree.copy()
        elif len(keep) >= 2:
            tree = self.tree.shear(keep)
        else:
            tree = _single_tip_tree(self.tree, keep[0])

        return MicrobiomeDataset(
            table=self.table[keep].copy(),
            taxonomy=self.taxonomy.loc[keep].copy(),
            tree=tree,
            metadata=self.metadata.copy(),
            sequences=None if self.sequences is None else self.sequences[keep].copy(),
        )

    def filter_prevalence(self, min_prevalence=0.1, min_abundance=0.0):
        """Keep features passing prevalence and mean relative abundance thresholds."""
        return self.filter_features(filter_low_abundance(self.table, min_prevalence, min_abundance))

    def remove_taxa(self, exclude):
        """
        Drop features assigned to unwanted taxa.

        Parameters:
        -----------
        exclude : dict
            {rank: [names]}, e.g. {'Family': ['Mitochondria'], 'Order': ['Chloroplast']}

        Returns:
        --------
        MicrobiomeDataset
        """
        drop = pd.Series(False, index=self.taxonomy.index)
        for rank, names in exclude.items():
            if rank not in self.taxonomy.columns:
                raise KeyError(f"Rank '{rank}' not in taxonomy (ranks: {', '.join(self.ranks)})")
            drop |= self.taxonomy[rank].isin(names)

        if drop.any():
            logger.info(f"Removing {int(drop.sum())} features assigned to {exclude}")
        return self.filter_features(self.taxonomy.index[~drop])

    def drop_empty_samples(self):
        """Drop samples without any reads."""
        sums = self.sample_sums()
        empty = list(sums.index[sums == 0])
        if empty:
            logger.warning(f"Dropping {len(empty)} samples without reads: {', '.join(empty)}")
        return self.subset_samples(list(sums.index[sums > 0]))

    def relative_abundance(self):
        """Per-sample proportions as a new DataFrame."""
        sums = self.sample_sums()
        return self.table.div(sums.where(sums > 0, 1), axis=0)

    def agglomerate(self, rank, relative=False):
        """
        Sum features sharing the same assignment at a taxonomic rank.

        Parameters:
        -----------
        rank : str
            Taxonomic rank (e.g. 'Phylum')
        relative : bool
            Return proportions instead of counts

        Returns:
        --------
        pandas.DataFrame
            Samples as rows, taxa as columns; features unassigned at the
            rank are pooled as 'Unassigned'
        """
        if rank not in self.taxonomy.columns:
            raise KeyError(f"Rank '{rank}' not in taxonomy (ranks: {', '.join(self.ranks)})")

        data = self.relative_abundance() if relative else self.table
        labels = self.taxonomy.loc[data.columns, rank].fillna(UNASSIGNED)
        grouped = data.T.groupby(labels.values).sum().T
        grouped.columns.name = rank
        return grouped

    def rarefy(self, depth, seed=42):
        """
        Subsample every sample to the same read depth without replacement.

        Samples with fewer reads than ``depth`` are dropped, as are features
        left without reads.

        Returns:
        --------
        MicrobiomeDataset
        """
        rng = np.random.default_rng(seed)
        sums = self.sample_sums()
        shallow = list(sums.index[sums < depth])
        if shallow:
            logger.warning(f"Dropping {len(shallow)} samples with fewer than {depth} reads: {', '.join(shallow)}")
        kept = self.subset_samples(list(sums.index[sums >= depth]))

        counts = np.vstack([
            rng.multivariate_hypergeometric(row.astype(np.int64), depth)
            for row in kept.table.values
        ]) if kept.table.shape[0] else np.zeros((0, kept.table.shape[1]), dtype=np.int64)

        rarefied = MicrobiomeDataset(
            table=pd.DataFrame(counts, index=kept.table.index, columns=kept.table.columns),
            taxonomy=kept.taxonomy,
            tree=kept.tree,
            metadata=kept.metadata,
            sequences=kept.sequences,
        )
        present = rarefied.table.columns[rarefied.table.sum(axis=0) > 0]
        return rarefied.filter_features(present)


def assemble_dataset(table, taxonomy, tree, metadata, sequences=None, check_content_ids=False):
    """
    Join the pipeline outputs into a MicrobiomeDataset.

    Parameters:
    -----------
    table : pandas.DataFrame
        Counts with samples as rows, feature IDs as columns
    taxonomy : pandas.DataFrame
        One row per feature ID
    tree : skbio.TreeNode
        Rooted tree with one tip per feature ID
    metadata : pandas.DataFrame
        One row per sample ID; rows for samples absent from the table are dropped
    sequences : pandas.Series, optional
        Representative sequences indexed by feature ID
    check_content_ids : bool
        Require feature IDs to be the content hashes of their sequences

    Returns:
    --------
    MicrobiomeDataset

    Raises:
    -------
    DatasetIntegrityError
        If any identifier is missing, unexpected or duplicated
    IdentifierCollisionError
        If two distinct sequences share a content hash
    """
    problems = validate_components(table, taxonomy, tree, metadata, sequences, check_content_ids)
    if problems:
        raise DatasetIntegrityError(problems)

    table = table.copy()
    table.index = pd.Index([str(i) for i in table.index], name='SampleID')
    table.columns = pd.Index([str(c) for c in table.columns], name='FeatureID')

    metadata = metadata.copy()
    metadata.index = pd.Index([str(i) for i in metadata.index], name='SampleID')
    extra = sorted(set(metadata.index) - set(table.index))
    if extra:
        logger.warning(f"Metadata has {len(extra)} samples without reads, not included: {', '.join(extra)}")
    metadata = metadata.loc[table.index]

    taxonomy = taxonomy.copy()
    taxonomy.index = pd.Index([str(i) for i in taxonomy.index], name='FeatureID')
    taxonomy = taxonomy.loc[table.columns]

    if sequences is not None:
        sequences = sequences.copy()
        sequences.index = pd.Index([str(i) for i in sequences.index], name='FeatureID')
        sequences = sequences.loc[table.columns]

    dataset = MicrobiomeDataset(
        table=table,
        taxonomy=taxonomy,
        tree=tree.copy(),
        metadata=metadata,
        sequences=sequences,
    )
    logger.info(f"Assembled {dataset!r}")
    return dataset


def save_dataset(dataset, path):
    """
    Save a dataset as a single zip archive.

    The archive holds the feature table (BIOM), taxonomy and metadata (TSV),
    the tree (Newick) and the sequences (FASTA).
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    with tempfile.TemporaryDirectory() as tmp:
        tmp = Path(tmp)
        artifacts.write_feature_table(dataset.table, tmp / _ARCHIVE_MEMBERS['table'])
        artifacts.write_taxonomy(dataset.taxonomy, tmp / _ARCHIVE_MEMBERS['taxonomy'])
        artifacts.write_tree(dataset.tree, tmp / _ARCHIVE_MEMBERS['tree'])
        dataset.metadata.to_csv(tmp / _ARCHIVE_MEMBERS['metadata'], sep='\t')
        if dataset.sequences is not None:
            artifacts.write_sequences(dataset.sequences, tmp / _ARCHIVE_MEMBERS['sequences'])

        with zipfile.ZipFile(path, 'w', compression=zipfile.ZIP_DEFLATED) as archive:
            for member in _ARCHIVE_MEMBERS.values():
                if (tmp / member).exists():
                    archive.write(tmp / member, arcname=member)

    logger.info(f"Saved dataset to {path}")


def load_dataset(path):
    """Load and re-validate a dataset saved with save_dataset."""
    with tempfile.TemporaryDirectory() as tmp:
        tmp = Path(tmp)
        with zipfile.ZipFile(path) as archive:
            archive.extractall(tmp)

        sequences_file = tmp / _ARCHIVE_MEMBERS['sequences']
        return assemble_dataset(
            table=artifacts.read_feature_table(tmp / _ARCHIVE_MEMBERS['table']),
            taxonomy=artifacts.read_taxonomy(tmp / _ARCHIVE_MEMBERS['taxonomy']),
            tree=artifacts.read_tree(tmp / _ARCHIVE_MEMBERS['tree']),
            metadata=load_metadata(tmp / _ARCHIVE_MEMBERS['metadata']),
            sequences=artifacts.read_sequences(sequences_file) if sequences_file.exists() else None,
        )
