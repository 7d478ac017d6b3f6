"""
Functions for calculating alpha and beta diversity metrics and PERMANOVA.

Feature tables are samples x features count DataFrames, as stored in
MicrobiomeDataset.table.
"""

import logging

import numpy as np
import pandas as pd
from scipy import stats
from scipy.spatial.distance import pdist, squareform
from skbio.diversity import alpha_diversity, beta_diversity
from skbio.stats.composition import clr
from skbio.stats.distance import DistanceMatrix, permanova

logger = logging.getLogger(__name__)


ALPHA_METRICS = ('observed', 'shannon', 'simpson', 'chao1', 'faith_pd', 'evenness')
BETA_METRICS = ('braycurtis', 'jaccard', 'weighted_unifrac', 'unweighted_unifrac', 'aitchison')
PHYLOGENETIC_METRICS = ('faith_pd', 'weighted_unifrac', 'unweighted_unifrac')


def _counts(table):
    return table.fillna(0).values.astype(np.int64)


def calculate_alpha_diversity(table, metrics=None, tree=None):
    """
    Calculate alpha diversity metrics for each sample.

    Parameters:
    -----------
    table : pandas.DataFrame
        Counts with samples as rows, features as columns
    metrics : list, optional
        Metrics to calculate, from 'observed', 'shannon', 'simpson', 'chao1',
        'faith_pd' and 'evenness'
        Default: ['observed', 'shannon', 'simpson']
    tree : skbio.TreeNode, optional
        Rooted tree with features as tips; required for 'faith_pd'

    Returns:
    --------
    pandas.DataFrame
        Alpha diversity metrics with samples as index
    """
    if metrics is None:
        metrics = ['observed', 'shannon', 'simpson']

    unknown = [m for m in metrics if m.lower() not in ALPHA_METRICS]
    if unknown:
        raise ValueError(f"Unknown alpha diversity metric(s): {', '.join(unknown)}")

    alpha_div = pd.DataFrame(index=table.index)
    counts = _counts(table)
    sample_ids = list(table.index)

    for metric in metrics:
        metric_lower = metric.lower()

        if metric_lower == 'observed':
            alpha_div[metric] = (counts > 0).sum(axis=1)
        elif metric_lower == 'faith_pd':
            if tree is None:
                raise ValueError("faith_pd requires a phylogenetic tree")
            alpha_div[metric] = alpha_diversity(
                'faith_pd', counts, ids=sample_ids, taxa=list(table.columns), tree=tree
            ).values
        elif metric_lower == 'evenness':
            # Pielou's evenness: Shannon diversity / log(richness)
            shannon = alpha_diversity('shannon', counts, ids=sample_ids, base=np.e).values
            richness = (counts > 0).sum(axis=1)
            log_richness = np.log(np.where(richness > 1, richness, np.e))
            alpha_div[metric] = np.where(richness > 1, shannon / log_richness, np.nan)
        else:
            alpha_div[metric] = alpha_diversity(metric_lower, counts, ids=sample_ids).values

    return alpha_div


def compare_alpha_diversity(alpha_df, metadata_df, group_var):
    """
    Compare alpha diversity metrics between groups.

    Parameters:
    -----------
    alpha_df : pandas.DataFrame
        Alpha diversity DataFrame with samples as index
    metadata_df : pandas.DataFrame
        Metadata DataFrame with samples as index
    group_var : str
        Metadata variable to group by

    Returns:
    --------
    dict
        Dictionary with results for each metric
    """
    common_samples = [s for s in alpha_df.index if s in metadata_df.index]

    if len(common_samples) < 3:
        return {metric: {'test': 'None', 'p-value': None, 'note': 'Too few samples'}
                for metric in alpha_df.columns}

    alpha_subset = alpha_df.loc[common_samples]
    groups = metadata_df.loc[common_samples, group_var]
    unique_groups = list(pd.unique(groups))
    n_groups = len(unique_groups)

    if n_groups < 2:
        return {metric: {'test': 'None', 'p-value': None, 'note': 'Need at least 2 groups'}
                for metric in alpha_df.columns}

    results = {}

    for metric in alpha_df.columns:
        values = alpha_subset[metric]
        if n_groups == 2:
            group1 = values[groups == unique_groups[0]].dropna()
            group2 = values[groups == unique_groups[1]].dropna()

            if len(group1) < 3 or len(group2) < 3:
                results[metric] = {'test': 'Mann-Whitney U', 'p-value': None, 'note': 'Group size < 3'}
                continue

            stat, p_value = stats.mannwhitneyu(group1, group2, alternative='two-sided')
            results[metric] = {
                'test': 'Mann-Whitney U',
                'test-statistic': stat,
                'p-value': p_value,
                'group1': unique_groups[0],
                'group2': unique_groups[1],
                'n1': len(group1),
                'n2': len(group2)
            }
        else:
            group_data = [values[groups == group].dropna() for group in unique_groups]

            if any(len(g) < 3 for g in group_data):
                results[metric] = {'test': 'Kruskal-Wallis', 'p-value': None, 'note': 'Group size < 3'}
                continue

            stat, p_value = stats.kruskal(*group_data)
            results[metric] = {
                'test': 'Kruskal-Wallis',
                'test-statistic': stat,
                'p-value': p_value,
                'groups': unique_groups,
                'n_groups': n_groups,
                'n_samples': len(common_samples)
            }

    return results


def calculate_beta_diversity(table, metric='braycurtis', tree=None, pseudocount=1):
    """
    Calculate a beta diversity distance matrix.

    Parameters:
    -----------
    table : pandas.DataFrame
        Counts with samples as rows, features as columns
    metric : str
        'braycurtis' (on relative abundance), 'jaccard' (presence/absence),
        'weighted_unifrac', 'unweighted_unifrac' or 'aitchison' (Euclidean
        distance between CLR-transformed counts)
    tree : skbio.TreeNode, optional
        Rooted tree with features as tips; required for UniFrac
    pseudocount : float
        Added to counts before the CLR transform for 'aitchison'

    Returns:
    --------
    skbio.DistanceMatrix
        Beta diversity distance matrix
    """
    metric_lower = metric.lower()
    sample_ids = [str(s) for s in table.index]
    counts = _counts(table)

    if metric_lower == 'braycurtis':
        sums = counts.sum(axis=1, keepdims=True)
        rel_abundance = counts / np.where(sums > 0, sums, 1)
        return DistanceMatrix(squareform(pdist(rel_abundance, metric='braycurtis')), ids=sample_ids)

    if metric_lower == 'jaccard':
        presence = (counts > 0).astype(bool)
        return DistanceMatrix(squareform(pdist(presence, metric='jaccard')), ids=sample_ids)

    if metric_lower in ('weighted_unifrac', 'unweighted_unifrac'):
        if tree is None:
            raise ValueError(f"{metric} requires a phylogenetic tree")
        return beta_diversity(metric_lower, counts, ids=sample_ids, taxa=list(table.columns), tree=tree)

    if metric_lower == 'aitchison':
        transformed = clr(counts + pseudocount)
        return DistanceMatrix(squareform(pdist(transformed, metric='euclidean')), ids=sample_ids)

    raise ValueError(f"Unknown beta diversity metric: {metric}. Use one of: {', '.join(BETA_METRICS)}")


def perform_permanova(distance_matrix, metadata_df, variable, permutations=999):
    """
    Perform PERMANOVA test to see if grouping variable explains community differences.

    Parameters:
    -----------
    distance_matrix : skbio.DistanceMatrix
        Beta diversity distance matrix
    metadata_df : pandas.DataFrame
        Metadata DataFrame with samples as index
    variable : str
        Grouping variable in metadata
    permutations : int
        Number of permutations to use

    Returns:
    --------
    dict
        PERMANOVA results
    """
    common_samples = [s for s in distance_matrix.ids if s in metadata_df.index]

    if len(common_samples) < 5:
        return {
            'test-statistic': np.nan,
            'p-value': np.nan,
            'sample size': len(common_samples),
            'note': 'Insufficient samples for PERMANOVA'
        }

    filtered_dm = distance_matrix.filter(common_samples)
    grouping = metadata_df.loc[common_samples, variable].astype(str).values

    unique_groups = np.unique(grouping)
    if len(unique_groups) < 2:
        return {
            'test-statistic': np.nan,
            'p-value': np.nan,
            'sample size': len(common_samples),
            'note': f'Only one group found in {variable}'
        }

    for group in unique_groups:
        if np.sum(grouping == group) < 2:
            return {
                'test-statistic': np.nan,
                'p-value': np.nan,
                'sample size': len(common_samples),
                'note': f'At least one group in {variable} has fewer than 2 samples'
            }

    results = permanova(filtered_dm, grouping, permutations=permutations)

    return {
        'test-statistic': results['test statistic'],
        'p-value': results['p-value'],
        'sample size': len(common_samples),
        'note': 'Successful test'
    }
