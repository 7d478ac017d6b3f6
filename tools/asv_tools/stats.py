"""
Differential abundance testing between sample groups.

Three methods are available:

* 'wilcoxon' - Mann-Whitney U on relative abundances of two groups, with
  Cliff's delta as effect size
* 'kruskal' - Kruskal-Wallis on relative abundances of more than two groups
* 'zinb' - a zero-inflated negative binomial GLM per feature with a log
  library size offset, fitted with statsmodels; each non-reference group
  is tested against the reference group

P-values are adjusted with the Benjamini-Hochberg procedure.
"""

import logging
import warnings

import numpy as np
import pandas as pd
from scipy import stats
from statsmodels.discrete.count_model import ZeroInflatedNegativeBinomialP
from statsmodels.stats.multitest import multipletests

logger = logging.getLogger(__name__)


DA_METHODS = ('wilcoxon', 'kruskal', 'zinb')


def _adjust_pvalues(pvalues):
    """Benjamini-Hochberg adjustment that leaves NaN p-values as NaN."""
    adjusted = pd.Series(np.nan, index=pvalues.index)
    valid = pvalues.notna()
    if valid.sum() > 1:
        adjusted[valid] = multipletests(pvalues[valid], method='fdr_bh')[1]
    else:
        adjusted[valid] = pvalues[valid]
    return adjusted


def differential_abundance_analysis(table, metadata_df, variable, method='wilcoxon',
                                    reference=None, taxonomy=None, max_iter=500):
    """
    Identify differentially abundant features between groups.

    Parameters:
    -----------
    table : pandas.DataFrame
        Counts with samples as rows, features as columns
    metadata_df : pandas.DataFrame
        Metadata DataFrame with samples as index
    variable : str
        Grouping variable in metadata
    method : str
        'wilcoxon', 'kruskal' or 'zinb'
    reference : str, optional
        Reference group; defaults to the first group in sorted order
    taxonomy : pandas.DataFrame, optional
        Taxonomy table joined onto the results
    max_iter : int
        Maximum optimizer iterations for 'zinb'

    Returns:
    --------
    pandas.DataFrame
        One row per feature (per contrast for 'zinb'), sorted by adjusted p-value
    """
    method = method.lower()
    if method not in DA_METHODS:
        raise ValueError(f"Unknown differential abundance method: {method}. Use one of: {', '.join(DA_METHODS)}")

    common_samples = [s for s in table.index if s in metadata_df.index]
    if len(common_samples) < 5:
        raise ValueError(f"Not enough samples for differential abundance testing (found {len(common_samples)})")

    groups = metadata_df.loc[common_samples, variable].astype(str)
    unique_groups = sorted(groups.unique())
    if len(unique_groups) < 2:
        raise ValueError(f"Need at least 2 groups in {variable} for differential abundance testing")

    if reference is None:
        reference = unique_groups[0]
    reference = str(reference)
    if reference not in unique_groups:
        raise ValueError(f"Reference group '{reference}' not found in {variable} (groups: {', '.join(unique_groups)})")
    ordered_groups = [reference] + [g for g in unique_groups if g != reference]

    counts = table.loc[common_samples]
    logger.info(
        f"Testing {counts.shape[1]} features for {variable} "
        f"({', '.join(ordered_groups)}) with {method}"
    )

    if method == 'zinb':
        results_df = _zinb_differential_testing(counts, groups, ordered_groups, max_iter)
    else:
        sums = counts.sum(axis=1)
        relative = counts.div(sums.where(sums > 0, 1), axis=0)
        if method == 'wilcoxon':
            if len(ordered_groups) != 2:
                raise ValueError(
                    f"Wilcoxon testing needs exactly 2 groups, {variable} has {len(ordered_groups)}; use 'kruskal'"
                )
            results_df = _two_group_differential_testing(relative, groups, ordered_groups)
        else:
            results_df = _multi_group_differential_testing(relative, groups, ordered_groups)

    results_df['Variable'] = variable
    if taxonomy is not None:
        results_df = results_df.join(taxonomy, on='Feature')

    return results_df.sort_values('Adjusted P-value', na_position='last').reset_index(drop=True)


def _two_group_differential_testing(relative, groups, ordered_groups):
    """
    Mann-Whitney U test per feature between two groups.

    The fold change is group 2 over group 1, where group 1 is the reference.
    """
    results = []
    group1_samples = groups.index[groups == ordered_groups[0]]
    group2_samples = groups.index[groups == ordered_groups[1]]
    pseudocount = 1e-5

    for feature in relative.columns:
        values1 = relative.loc[group1_samples, feature]
        values2 = relative.loc[group2_samples, feature]
        mean1 = values1.mean()
        mean2 = values2.mean()
        fold_change = np.log2((mean2 + pseudocount) / (mean1 + pseudocount))

        if (values1 == values1.iloc[0]).all() and (values2 == values1.iloc[0]).all():
            # Identical values everywhere, nothing to test
            p_value = 1.0
        else:
            _, p_value = stats.mannwhitneyu(values1, values2, alternative='two-sided')

        results.append({
            'Feature': feature,
            'P-value': p_value,
            'Group1': ordered_groups[0],
            'Group2': ordered_groups[1],
            'Mean in Group1': mean1,
            'Mean in Group2': mean2,
            'Log2 Fold Change': fold_change,
            'Abs Fold Change': np.abs(fold_change),
            'Cliff Delta': calculate_cliffs_delta(values2, values1),
            'Test': 'Mann-Whitney U'
        })

    results_df = pd.DataFrame(results)
    results_df['Adjusted P-value'] = _adjust_pvalues(results_df['P-value'])
    return results_df


def _multi_group_differential_testing(relative, groups, ordered_groups):
    """Kruskal-Wallis test per feature across all groups."""
    results = []
    pseudocount = 1e-5

    for feature in relative.columns:
        group_values = {group: relative.loc[groups.index[groups == group], feature] for group in ordered_groups}
        group_means = {group: values.mean() for group, values in group_values.items()}

        all_values = pd.concat(group_values.values())
        if (all_values == all_values.iloc[0]).all():
            p_value = 1.0
        else:
            _, p_value = stats.kruskal(*group_values.values())

        # Largest fold change between any two groups
        max_fold_change = 0.0
        max_group_pair = None
        for i, group1 in enumerate(ordered_groups):
            for group2 in ordered_groups[i + 1:]:
                fold_change = np.abs(np.log2((group_means[group2] + pseudocount) / (group_means[group1] + pseudocount)))
                if fold_change > max_fold_change:
                    max_fold_change = fold_change
                    max_group_pair = (group1, group2)

        result = {
            'Feature': feature,
            'P-value': p_value,
            'Test': 'Kruskal-Wallis',
            'Max Log2 Fold Change': max_fold_change,
            'Max Fold Change Groups': f'{max_group_pair[0]} vs {max_group_pair[1]}' if max_group_pair else None,
        }
        for group in ordered_groups:
            result[f'Mean in {group}'] = group_means[group]
        results.append(result)

    results_df = pd.DataFrame(results)
    results_df['Adjusted P-value'] = _adjust_pvalues(results_df['P-value'])
    return results_df


def _zinb_differential_testing(counts, groups, ordered_groups, max_iter=500):
    """
    Zero-inflated negative binomial regression per feature.

    The count model is ``log(mu) = b0 + sum(b_g * [group == g]) + log(library size)``
    with an intercept-only logit zero-inflation component. The group
    coefficients are natural-log fold changes against the reference group.
    """
    reference = ordered_groups[0]
    contrasts = ordered_groups[1:]

    exog = pd.DataFrame({'const': 1.0}, index=counts.index)
    for group in contrasts:
        exog[group] = (groups == group).astype(float)
    exog_infl = pd.DataFrame({'const': 1.0}, index=counts.index)
    offset = np.log(counts.sum(axis=1).clip(lower=1).astype(float))

    results = []
    for feature in counts.columns:
        y = counts[feature].astype(float)
        means = {group: y[groups == group].mean() for group in ordered_groups}
        fit = None
        note = 'Converged'

        if (y == 0).all():
            note = 'No reads'
        else:
            model = ZeroInflatedNegativeBinomialP(y, exog, exog_infl=exog_infl, offset=offset, inflation='logit')
            try:
                with warnings.catch_warnings():
                    warnings.simplefilter('ignore')
                    fit = model.fit(method='bfgs', maxiter=max_iter, disp=0)
                if not fit.mle_retvals.get('converged', False):
                    note = 'Did not converge'
            except (np.linalg.LinAlgError, ValueError, OverflowError) as e:
                note = f'Fit failed: {e}'

        for group in contrasts:
            coefficient = fit.params[group] if fit is not None else np.nan
            p_value = fit.pvalues[group] if fit is not None else np.nan
            results.append({
                'Feature': feature,
                'P-value': p_value,
                'Group1': reference,
                'Group2': group,
                'Mean in Group1': means[reference],
                'Mean in Group2': means[group],
                'Log2 Fold Change': coefficient / np.log(2),
                'Test': 'ZINB',
                'Note': note,
            })

    results_df = pd.DataFrame(results)
    results_df['Adjusted P-value'] = np.nan
    for group in contrasts:
        mask = results_df['Group2'] == group
        results_df.loc[mask, 'Adjusted P-value'] = _adjust_pvalues(results_df.loc[mask, 'P-value']).values
    return results_df


def calculate_cliffs_delta(group1, group2):
    """
    Calculate Cliff's Delta effect size.

    Parameters:
    -----------
    group1 : array-like
        Values for first group
    group2 : array-like
        Values for second group

    Returns:
    --------
    float
        Cliff's Delta, positive when group1 values tend to be larger
    """
    x = np.asarray(group1, dtype=float)
    y = np.asarray(group2, dtype=float)
    if len(x) == 0 or len(y) == 0:
        return np.nan

    diff = x[:, None] - y[None, :]
    return ((diff > 0).sum() - (diff < 0).sum()) / (len(x) * len(y))


def significant_features(results_df, alpha=0.05):
    """Rows of a differential abundance result with adjusted p-value below alpha."""
    return results_df[results_df['Adjusted P-value'] < alpha]
