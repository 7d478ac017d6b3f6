"""
Ordination of beta diversity distance matrices.
"""

import pandas as pd
from skbio.stats.ordination import pcoa
from sklearn.manifold import MDS


def pcoa_ordination(distance_matrix, number_of_dimensions=None):
    """
    Principal coordinates analysis of a distance matrix.

    Returns:
    --------
    tuple of (pandas.DataFrame, pandas.Series)
        Sample coordinates ('PC1', 'PC2', ...) and the proportion of
        variance explained by each axis
    """
    if number_of_dimensions is None:
        results = pcoa(distance_matrix)
    else:
        results = pcoa(distance_matrix, number_of_dimensions=number_of_dimensions)

    coordinates = results.samples.copy()
    coordinates.index = pd.Index(list(distance_matrix.ids), name='SampleID')
    return coordinates, results.proportion_explained


def nmds_ordination(distance_matrix, n_components=2, random_state=42):
    """
    Non-metric multidimensional scaling of a distance matrix.

    Returns:
    --------
    tuple of (pandas.DataFrame, float)
        Sample coordinates ('NMDS1', 'NMDS2', ...) and the final stress
    """
    mds = MDS(n_components=n_components, dissimilarity='precomputed', random_state=random_state,
              metric=False, n_init=10, max_iter=500)
    coords = mds.fit_transform(distance_matrix.data)

    coordinates = pd.DataFrame(
        coords,
        index=pd.Index(list(distance_matrix.ids), name='SampleID'),
        columns=[f'NMDS{i + 1}' for i in range(n_components)]
    )
    return coordinates, getattr(mds, 'stress_', None)


def ordination_frame(coordinates, metadata_df, axes=None):
    """
    Join ordination coordinates with sample metadata for plotting.

    Parameters:
    -----------
    coordinates : pandas.DataFrame
        Sample coordinates indexed by sample ID
    metadata_df : pandas.DataFrame
        Metadata with samples as index
    axes : list of str, optional
        Coordinate columns to keep; defaults to the first two

    Returns:
    --------
    pandas.DataFrame
    """
    if axes is None:
        axes = list(coordinates.columns[:2])
    missing = [s for s in coordinates.index if s not in metadata_df.index]
    if missing:
        raise KeyError(f"Samples without metadata: {', '.join(map(str, missing))}")
    return coordinates[axes].join(metadata_df, how='left')
