"""
Display labels for categorical metadata.

Stored metadata keeps its raw codes (e.g. 'VEH', 'D7'). Figures and exported
tables run the metadata through a mapping such as

    labels:
      Treatment: {VEH: Vehicle, FMT: FMT}
      Timepoint: {D0: Baseline, D7: Day 7}

which renames values and fixes the category order used in legends.
"""

import pandas as pd


def apply_display_labels(metadata_df, labels, columns=None):
    """
    Return a copy of the metadata with display labels applied.

    Parameters:
    -----------
    metadata_df : pandas.DataFrame
        Metadata with samples as index
    labels : dict
        {column: {raw value: display label}}; mapping order sets category order
    columns : list of str, optional
        Restrict relabelling to these columns

    Returns:
    --------
    pandas.DataFrame
        Relabelled copy; the input is not modified
    """
    display_df = metadata_df.copy()

    for column, mapping in labels.items():
        if column not in display_df.columns:
            continue
        if columns is not None and column not in columns:
            continue

        raw = display_df[column].astype(str)
        renamed = raw.map(lambda value: mapping.get(value, value))

        # Mapped labels first, in mapping order, then any unmapped values
        order = list(dict.fromkeys(mapping.values()))
        order += sorted(set(renamed.dropna()) - set(order))
        present = [label for label in order if label in set(renamed)]
        display_df[column] = pd.Categorical(renamed, categories=present, ordered=True)

    return display_df


def display_value(column, value, labels):
    """Label for a single raw value."""
    return labels.get(column, {}).get(str(value), str(value))


def category_order(column, labels, values=None):
    """
    Order of display labels for a column.

    Parameters:
    -----------
    column : str
        Metadata column
    labels : dict
        Label mapping
    values : iterable, optional
        Raw values present in the data; if given, only their labels are returned
    """
    mapping = labels.get(column, {})
    order = list(dict.fromkeys(mapping.values()))
    if values is None:
        return order
    present = [display_value(column, v, labels) for v in values]
    return [label for label in order if label in present] + sorted(set(present) - set(order))
