"""
Visualization functions for the amplicon dataset.

Every plotting function takes the raw metadata and an optional label mapping;
display labels are applied here and never written back to the metadata.
"""

import matplotlib.pyplot as plt
import numpy as np
import seaborn as sns

from .labels import apply_display_labels
from .ordination import nmds_ordination, ordination_frame, pcoa_ordination


def _display_metadata(metadata_df, labels):
    return apply_display_labels(metadata_df, labels or {})


def plot_alpha_diversity_boxplot(alpha_df, metadata_df, group_var, metric=None, hue=None, labels=None):
    """
    Create a boxplot of alpha diversity by group.

    Parameters:
    -----------
    alpha_df : pandas.DataFrame
        Alpha diversity DataFrame with samples as index
    metadata_df : pandas.DataFrame
        Metadata DataFrame with samples as index
    group_var : str
        Grouping variable from metadata
    metric : str, optional
        Alpha diversity metric to plot (if None, plots all metrics)
    hue : str, optional
        Second metadata variable used to split boxes
    labels : dict, optional
        Display label mapping

    Returns:
    --------
    matplotlib.figure.Figure or dict
        Boxplot figure(s)
    """
    common_samples = [s for s in alpha_df.index if s in metadata_df.index]
    alpha_subset = alpha_df.loc[common_samples]
    metadata_subset = _display_metadata(metadata_df.loc[common_samples], labels)

    if metric is None:
        return {m: _create_diversity_boxplot(alpha_subset, metadata_subset, group_var, m, hue)
                for m in alpha_df.columns}

    if metric not in alpha_df.columns:
        raise ValueError(f"Metric '{metric}' not found in alpha diversity data")
    return _create_diversity_boxplot(alpha_subset, metadata_subset, group_var, metric, hue)


def _create_diversity_boxplot(alpha_df, metadata_df, group_var, metric, hue=None):
    """Helper function to create a diversity boxplot."""
    fig, ax = plt.subplots(figsize=(10, 6))

    plot_data = metadata_df[[group_var] + ([hue] if hue else [])].copy()
    plot_data[metric] = alpha_df[metric]

    sns.boxplot(x=group_var, y=metric, hue=hue, data=plot_data, ax=ax, showfliers=False)
    points = {'palette': 'dark:black'} if hue else {'color': 'black'}
    sns.stripplot(x=group_var, y=metric, hue=hue, data=plot_data, dodge=hue is not None,
                  size=4, alpha=0.5, ax=ax, legend=False, **points)

    ax.set_title(f'{metric} Diversity by {group_var}')
    ax.set_xlabel(group_var)
    ax.set_ylabel(f'{metric} Diversity')
    if hue:
        ax.legend(title=hue, bbox_to_anchor=(1.05, 1), loc='upper left')

    longest = max((len(str(v)) for v in plot_data[group_var].astype(str)), default=0)
    ax.tick_params(axis='x', labelrotation=45 if longest > 10 else 0)

    fig.tight_layout()
    return fig


def plot_ordination(beta_dm, metadata_df, variable, method='PCoA', style=None, labels=None, title=None):
    """
    Create ordination plot from beta diversity distance matrix.

    Parameters:
    -----------
    beta_dm : skbio.DistanceMatrix
        Beta diversity distance matrix
    metadata_df : pandas.DataFrame
        Metadata DataFrame with samples as index
    variable : str
        Metadata variable for coloring points
    method : str
        Ordination method ('PCoA' or 'NMDS')
    style : str, optional
        Metadata variable for marker shapes
    labels : dict, optional
        Display label mapping
    title : str, optional
        Plot title

    Returns:
    --------
    matplotlib.figure.Figure
        Ordination plot figure
    """
    display_df = _display_metadata(metadata_df, labels)

    if method.upper() == 'PCOA':
        coordinates, explained = pcoa_ordination(beta_dm)
        x, y = 'PC1', 'PC2'
        xlabel = f'PC1 ({explained.iloc[0] * 100:.1f}% variance explained)'
        ylabel = f'PC2 ({explained.iloc[1] * 100:.1f}% variance explained)'
        stress = None
    elif method.upper() == 'NMDS':
        coordinates, stress = nmds_ordination(beta_dm)
        x, y = 'NMDS1', 'NMDS2'
        xlabel, ylabel = x, y
    else:
        raise ValueError(f"Unknown ordination method: {method}. Use 'PCoA' or 'NMDS'.")

    plot_df = ordination_frame(coordinates, display_df, axes=[x, y])

    fig, ax = plt.subplots(figsize=(10, 8))
    sns.scatterplot(data=plot_df, x=x, y=y, hue=variable, style=style, s=100, ax=ax)

    ax.set_xlabel(xlabel)
    ax.set_ylabel(ylabel)
    ax.set_title(title or f'{method} of Beta Diversity ({variable})')

    if stress is not None:
        ax.text(0.02, 0.98, f"Stress: {stress:.3f}",
                transform=ax.transAxes, va='top', ha='left',
                bbox=dict(boxstyle='round', facecolor='white', alpha=0.8))

    ax.legend(bbox_to_anchor=(1.05, 1), loc='upper left')
    fig.tight_layout()
    return fig


def plot_stacked_bar(abundance_df, metadata_df, group_var, top_n=10, other_category=True, labels=None):
    """
    Create a stacked bar plot of the most abundant taxa by group.

    Parameters:
    -----------
    abundance_df : pandas.DataFrame
        Taxa abundance with samples as rows, taxa as columns (e.g. the output
        of MicrobiomeDataset.agglomerate)
    metadata_df : pandas.DataFrame
        Metadata DataFrame with samples as index
    group_var : str
        Grouping variable from metadata
    top_n : int
        Number of top taxa to include
    other_category : bool
        Whether to include an "Other" category for remaining taxa
    labels : dict, optional
        Display label mapping

    Returns:
    --------
    matplotlib.figure.Figure
        Stacked bar plot figure
    """
    common_samples = [s for s in abundance_df.index if s in metadata_df.index]
    filtered = abundance_df.loc[common_samples]

    # Relative abundance per sample before averaging
    sums = filtered.sum(axis=1)
    relative = filtered.div(sums.where(sums > 0, 1), axis=0)

    top_taxa = relative.mean(axis=0).nlargest(top_n).index.tolist()
    plot_data = relative[top_taxa].copy()
    if other_category and len(top_taxa) < relative.shape[1]:
        plot_data['Other'] = relative.drop(columns=top_taxa).sum(axis=1)

    group_info = _display_metadata(metadata_df.loc[common_samples], labels)[group_var]
    plot_df = plot_data.groupby(group_info, observed=True).mean() * 100

    fig, ax = plt.subplots(figsize=(12, 8))
    plot_df.plot(kind='bar', stacked=True, ax=ax, colormap='tab20', width=0.8)

    ax.set_title(f'Mean Taxa Abundance by {group_var}')
    ax.set_xlabel(group_var)
    ax.set_ylabel('Relative Abundance (%)')
    ax.legend(title=abundance_df.columns.name or 'Taxa', bbox_to_anchor=(1.05, 1), loc='upper left')

    fig.tight_layout()
    return fig


def plot_volcano(results_df, alpha=0.05, label_column='Feature', top_n_labels=10, title=None):
    """
    Volcano plot of a differential abundance result.

    Parameters:
    -----------
    results_df : pandas.DataFrame
        Output of differential_abundance_analysis
    alpha : float
        Adjusted p-value threshold for highlighting
    label_column : str
        Column used to label the most significant points
    top_n_labels : int
        Number of points to label
    title : str, optional
        Plot title

    Returns:
    --------
    matplotlib.figure.Figure
    """
    plot_df = results_df.dropna(subset=['Log2 Fold Change', 'Adjusted P-value']).copy()
    plot_df['-log10(q)'] = -np.log10(plot_df['Adjusted P-value'].clip(lower=1e-300))
    plot_df['Significant'] = plot_df['Adjusted P-value'] < alpha

    fig, ax = plt.subplots(figsize=(10, 8))
    sns.scatterplot(data=plot_df, x='Log2 Fold Change', y='-log10(q)', hue='Significant',
                    palette={True: 'firebrick', False: 'grey'}, alpha=0.7, ax=ax)
    ax.axhline(-np.log10(alpha), color='black', linestyle='--', linewidth=0.8)
    ax.axvline(0, color='black', linewidth=0.5)

    if label_column in plot_df.columns:
        for _, row in plot_df[plot_df['Significant']].nsmallest(top_n_labels, 'Adjusted P-value').iterrows():
            ax.annotate(str(row[label_column]), (row['Log2 Fold Change'], row['-log10(q)']),
                        fontsize=8, xytext=(3, 3), textcoords='offset points')

    ax.set_title(title or 'Differential Abundance')
    ax.set_xlabel('Log2 Fold Change')
    ax.set_ylabel('-log10(adjusted p-value)')

    fig.tight_layout()
    return fig


def plot_read_tracking(tracking_df):
    """Line plot of reads retained per sample through the processing stages."""
    stages = list(tracking_df.columns)
    positions = np.arange(len(stages))

    fig, ax = plt.subplots(figsize=(10, 6))
    for _, row in tracking_df.iterrows():
        ax.plot(positions, row.values, color='grey', alpha=0.4, linewidth=1)
    ax.plot(positions, tracking_df.mean(axis=0).values, color='black', marker='o', linewidth=2, label='Mean')

    ax.set_xticks(positions)
    ax.set_xticklabels(stages)
    ax.set_ylabel('Reads')
    ax.legend()
    ax.set_title('Reads Retained per Processing Stage')
    fig.tight_layout()
    return fig
