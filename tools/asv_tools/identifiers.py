"""
Content-addressed identifiers for sequence variants.

A variant's identifier is the MD5 hex digest of its sequence, so the same
sequence gets the same identifier in every run regardless of the order
variants were discovered in.
"""

import hashlib

import pandas as pd

from .exceptions import IdentifierCollisionError


def hash_sequence(sequence, hash_func=hashlib.md5):
    """Return the hex digest identifying a nucleotide sequence."""
    return hash_func(str(sequence).upper().encode('ascii')).hexdigest()


def assign_feature_ids(sequences, hash_func=hashlib.md5):
    """
    Map sequences to content-hash identifiers.

    Parameters:
    -----------
    sequences : iterable of str
        Nucleotide sequences; repeats are allowed and collapse to one entry
    hash_func : callable
        hashlib-style constructor

    Returns:
    --------
    pandas.Series
        Sequences indexed by feature identifier, in order of first appearance

    Raises:
    -------
    IdentifierCollisionError
        If two distinct sequences produce the same identifier
    """
    seen = {}
    for sequence in sequences:
        sequence = str(sequence).upper()
        feature_id = hash_sequence(sequence, hash_func)
        previous = seen.setdefault(feature_id, sequence)
        if previous != sequence:
            raise IdentifierCollisionError(feature_id, [previous, sequence])

    result = pd.Series(seen, dtype=object)
    result.index.name = 'FeatureID'
    result.name = 'Sequence'
    return result


def relabel_sequence_table(seqtab, hash_func=hashlib.md5):
    """
    Replace the sequence column labels of a DADA2 sequence table with identifiers.

    Parameters:
    -----------
    seqtab : pandas.DataFrame
        Samples as rows, sequences as columns

    Returns:
    --------
    tuple of (pandas.DataFrame, pandas.Series)
        The relabelled table and the identifier -> sequence mapping
    """
    sequences = assign_feature_ids(seqtab.columns, hash_func)
    if len(sequences) != len(seqtab.columns):
        raise ValueError("Sequence table has duplicate sequence columns")

    table = seqtab.copy()
    table.columns = pd.Index(sequences.index, name='FeatureID')
    return table, sequences
