"""
Utility functions for sample metadata and feature table processing.
"""

import logging
from pathlib import Path

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)


def load_metadata(filepath, sample_id_column='SampleID'):
    """
    Load sample metadata from a CSV or TSV file.

    Parameters:
    -----------
    filepath : str or Path
        Path to the metadata file; '.tsv' and '.txt' are read as tab separated
    sample_id_column : str
        Column name for sample IDs

    Returns:
    --------
    pandas.DataFrame
        Metadata DataFrame with sample IDs as index. Duplicate sample IDs are
        kept so that dataset assembly can report them.
    """
    filepath = Path(filepath)
    sep = '\t' if filepath.suffix in ('.tsv', '.txt') else ','
    metadata_df = pd.read_csv(filepath, sep=sep, dtype={sample_id_column: str})

    # Check if the sample ID column exists
    if sample_id_column not in metadata_df.columns:
        raise ValueError(f"Sample ID column '{sample_id_column}' not found in metadata")

    metadata_df = metadata_df.set_index(sample_id_column)
    metadata_df.index.name = 'SampleID'

    duplicated = metadata_df.index[metadata_df.index.duplicated()].unique()
    if len(duplicated) > 0:
        logger.warning(f"Found {len(duplicated)} duplicate sample IDs in metadata: {', '.join(duplicated)}")

    # Convert categorical variables to string
    for col in metadata_df.columns:
        if metadata_df[col].dtype == 'object' or metadata_df[col].dtype.name == 'category':
            metadata_df[col] = metadata_df[col].astype(str)

    logger.info(f"Loaded metadata: {metadata_df.shape[0]} samples, {metadata_df.shape[1]} variables")
    return metadata_df


def preprocess_abundance_data(table, normalize=True, log_transform=False, clr_transform=False):
    """
    Preprocess a samples x features abundance table.

    Parameters:
    -----------
    table : pandas.DataFrame
        Counts with samples as rows, features as columns
    normalize : bool
        Whether to normalize to relative abundance (percent)
    log_transform : bool
        Whether to apply log transformation
    clr_transform : bool
        Whether to apply centered log-ratio transformation (with log_transform)

    Returns:
    --------
    pandas.DataFrame
        Preprocessed abundance DataFrame
    """
    processed_df = table.fillna(0).astype(float)

    # Normalize to relative abundance
    if normalize:
        sample_sums = processed_df.sum(axis=1)
        processed_df = processed_df.div(sample_sums.where(sample_sums > 0, 1), axis=0) * 100

    # Apply log transformation
    if log_transform:
        if clr_transform:
            from skbio.stats.composition import clr

            # Add small pseudocount to zeros
            min_val = processed_df[processed_df > 0].min().min() / 2
            processed_df = processed_df.replace(0, min_val)

            processed_df = pd.DataFrame(
                clr(processed_df.values),
                index=processed_df.index,
                columns=processed_df.columns
            )
        else:
            # Simple log transformation with pseudocount
            processed_df = np.log1p(processed_df)

    return processed_df


def filter_low_abundance(table, min_prevalence=0.1, min_abundance=0.0):
    """
    Select features passing prevalence and mean relative abundance thresholds.

    Parameters:
    -----------
    table : pandas.DataFrame
        Counts with samples as rows, features as columns
    min_prevalence : float
        Minimum fraction of samples in which a feature must be present
    min_abundance : float
        Minimum mean relative abundance (fraction, 0-1) a feature must have

    Returns:
    --------
    pandas.Index
        Identifiers of the features to keep
    """
    # Calculate prevalence (fraction of samples where feature is present)
    prevalence = (table > 0).mean(axis=0)

    # Calculate mean relative abundance
    sample_sums = table.sum(axis=1)
    relative = table.div(sample_sums.where(sample_sums > 0, 1), axis=0)
    mean_abundance = relative.mean(axis=0)

    keep = (prevalence >= min_prevalence) & (mean_abundance >= min_abundance)

    logger.info(f"Filtering from {table.shape[1]} to {int(keep.sum())} features")
    logger.info(f"  Prevalence threshold: {min_prevalence:.2f} (must be present in {min_prevalence*100:.1f}% of samples)")
    logger.info(f"  Abundance threshold: {min_abundance:.4f} (must have mean abundance >= {min_abundance*100:.2f}%)")

    return table.columns[keep]


def create_abundance_summary(table, metadata_df=None, group_var=None, top_n=20):
    """
    Create a summary table of relative abundance and prevalence per feature.

    Parameters:
    -----------
    table : pandas.DataFrame
        Counts or relative abundances with samples as rows, features as columns
    metadata_df : pandas.DataFrame, optional
        Metadata DataFrame with samples as index
    group_var : str, optional
        Metadata variable to group by
    top_n : int
        Number of most abundant features to include

    Returns:
    --------
    pandas.DataFrame
        Summary table
    """
    relative = preprocess_abundance_data(table, normalize=True)
    summary = pd.DataFrame({
        'Mean Abundance (%)': relative.mean(axis=0),
        'Prevalence (%)': (table > 0).mean(axis=0) * 100
    })

    if metadata_df is not None and group_var is not None and group_var in metadata_df.columns:
        groups = metadata_df.loc[relative.index, group_var]
        for group, group_samples in groups.groupby(groups).groups.items():
            summary[f'Mean in {group} (%)'] = relative.loc[group_samples].mean(axis=0)

    summary = summary.sort_values('Mean Abundance (%)', ascending=False)

    if top_n is not None:
        summary = summary.head(top_n)

    return summary
