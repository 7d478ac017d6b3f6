"""
Chimera removal for sequence variant tables.

The DADA2 methods ('consensus', 'pooled', 'per-sample') hand the table to
removeBimeraDenovo through rpy2. The 'exact' method is a small pooled check
for two-parent chimeras that match their parents without mismatches, which
is handy for pre-denoised tables and for running without R.
"""

import logging

import pandas as pd

from .exceptions import AsvToolsError

logger = logging.getLogger(__name__)


DADA2_METHODS = ('consensus', 'pooled', 'per-sample')


def _common_prefix(a, b):
    n = min(len(a), len(b))
    i = 0
    while i < n and a[i] == b[i]:
        i += 1
    return i


def _common_suffix(a, b):
    n = min(len(a), len(b))
    i = 0
    while i < n and a[-1 - i] == b[-1 - i]:
        i += 1
    return i


def is_bimera(sequence, parents):
    """
    Check whether a sequence is an exact join of two parent sequences.

    The sequence is a bimera when the left end of one parent and the right
    end of another cover its full length, each contributing at least one base.

    Parameters:
    -----------
    sequence : str
        Query sequence
    parents : iterable of str
        Candidate parent sequences; copies of the query are ignored

    Returns:
    --------
    bool
    """
    sequence = sequence.upper()
    length = len(sequence)
    best_left = 0
    best_right = 0

    for parent in parents:
        parent = parent.upper()
        if parent == sequence:
            continue
        left = _common_prefix(sequence, parent)
        right = _common_suffix(sequence, parent)
        # A parent that contains the query entirely at one end is not a chimera parent
        if left < length:
            best_left = max(best_left, left)
        if right < length:
            best_right = max(best_right, right)

    return best_left > 0 and best_right > 0 and best_left + best_right >= length


def find_bimeras(table, sequences, min_fold_parent_over_abundance=2.0):
    """
    Identify chimeric variants in a pooled table.

    Parameters:
    -----------
    table : pandas.DataFrame
        Counts with samples as rows, feature identifiers as columns
    sequences : pandas.Series
        Sequence for each feature identifier
    min_fold_parent_over_abundance : float
        Parents must be at least this many times more abundant than the query

    Returns:
    --------
    list
        Feature identifiers flagged as chimeras
    """
    totals = table.sum(axis=0).sort_values(ascending=False)
    chimeras = []

    for feature_id, abundance in totals.items():
        threshold = abundance * min_fold_parent_over_abundance
        parent_ids = totals.index[(totals >= threshold) & (totals.index != feature_id)]
        if len(parent_ids) == 0:
            continue
        if is_bimera(sequences[feature_id], sequences[parent_ids]):
            chimeras.append(feature_id)

    return chimeras


def check_chimera_removal(before, after):
    """
    Verify that chimera removal only removed columns.

    Raises:
    -------
    AsvToolsError
        If the filtered table has new features or any sample gained reads
    """
    new_features = sorted(set(after.columns) - set(before.columns))
    if new_features:
        raise AsvToolsError(f"Chimera removal introduced features: {', '.join(new_features)}")

    before_sums = before.sum(axis=1)
    after_sums = after.sum(axis=1).reindex(before_sums.index, fill_value=0)
    increased = sorted(before_sums.index[after_sums > before_sums])
    if increased:
        raise AsvToolsError(f"Chimera removal increased read counts for samples: {', '.join(map(str, increased))}")


def remove_chimeras(table, sequences, method='consensus', min_fold_parent_over_abundance=2.0, threads=1):
    """
    Remove chimeric sequence variants from a feature table.

    Parameters:
    -----------
    table : pandas.DataFrame
        Counts with samples as rows, feature identifiers as columns
    sequences : pandas.Series
        Sequence for each feature identifier
    method : str
        'consensus', 'pooled' or 'per-sample' (DADA2), or 'exact'
    min_fold_parent_over_abundance : float
        Minimum parent to query abundance ratio
    threads : int
        Threads for DADA2

    Returns:
    --------
    tuple of (pandas.DataFrame, pandas.Series)
        Filtered table and the sequences of retained features
    """
    if method == 'exact':
        chimeras = set(find_bimeras(table, sequences, min_fold_parent_over_abundance))
        kept = [feature_id for feature_id in table.columns if feature_id not in chimeras]
    elif method in DADA2_METHODS:
        from . import dada2

        seqtab = table.copy()
        seqtab.columns = sequences[table.columns].values
        nochim = dada2.remove_bimeras(
            seqtab,
            method=method,
            min_fold_parent_over_abundance=min_fold_parent_over_abundance,
            threads=threads,
        )
        kept_sequences = set(nochim.columns)
        kept = [feature_id for feature_id in table.columns if sequences[feature_id] in kept_sequences]
    else:
        raise ValueError(f"Unknown chimera removal method: {method}")

    filtered = table[kept]
    check_chimera_removal(table, filtered)

    removed = table.shape[1] - filtered.shape[1]
    total_before = table.values.sum()
    retained_fraction = filtered.values.sum() / total_before if total_before > 0 else 1.0
    logger.info(
        f"Removed {removed} of {table.shape[1]} variants as chimeric "
        f"({retained_fraction:.1%} of reads retained)"
    )

    return filtered, sequences[kept]
