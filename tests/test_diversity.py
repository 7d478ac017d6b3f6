import numpy as np
import pandas as pd
import pytest
from skbio import DistanceMatrix

from asv_tools.diversity import (
    calculate_alpha_diversity,
    calculate_beta_diversity,
    compare_alpha_diversity,
    perform_permanova,
)
from asv_tools.ordination import nmds_ordination, ordination_frame, pcoa_ordination


def test_alpha_diversity_default_metrics(counts):
    alpha = calculate_alpha_diversity(counts)

    assert list(alpha.columns) == ['observed', 'shannon', 'simpson']
    assert list(alpha.index) == list(counts.index)
    assert alpha.loc['S1', 'observed'] == 4
    assert alpha.loc['S3', 'observed'] == 3
    assert (alpha['simpson'] > 0).all() and (alpha['simpson'] < 1).all()


def test_alpha_diversity_shannon_of_even_sample():
    table = pd.DataFrame([[25, 25, 25, 25]], index=['S1'], columns=list('ABCD'))
    alpha = calculate_alpha_diversity(table, metrics=['shannon', 'evenness'])
    # scikit-bio reports Shannon entropy in bits by default in older releases and nats in newer ones
    assert alpha.loc['S1', 'shannon'] in (pytest.approx(2.0), pytest.approx(np.log(4)))
    assert alpha.loc['S1', 'evenness'] == pytest.approx(1.0)


def test_faith_pd_needs_tree(counts, tree):
    with pytest.raises(ValueError, match='tree'):
        calculate_alpha_diversity(counts, metrics=['faith_pd'])

    alpha = calculate_alpha_diversity(counts, metrics=['faith_pd'], tree=tree)
    # All four tips present: every branch counts
    assert alpha.loc['S1', 'faith_pd'] == pytest.approx(0.1 + 0.2 + 0.3 + 0.4 + 0.5 + 0.6)
    # S3 lacks B
    assert alpha.loc['S3', 'faith_pd'] == pytest.approx(0.1 + 0.3 + 0.4 + 0.5 + 0.6)


def test_unknown_alpha_metric(counts):
    with pytest.raises(ValueError, match='margalef_typo'):
        calculate_alpha_diversity(counts, metrics=['margalef_typo'])


@pytest.mark.parametrize('metric', ['braycurtis', 'jaccard', 'aitchison'])
def test_beta_diversity_is_a_distance_matrix(counts, metric):
    dm = calculate_beta_diversity(counts, metric=metric)

    assert isinstance(dm, DistanceMatrix)
    assert list(dm.ids) == list(counts.index)
    assert np.allclose(np.diag(dm.data), 0)
    assert np.allclose(dm.data, dm.data.T)
    assert (dm.data >= 0).all()


def test_braycurtis_uses_relative_abundance(counts):
    doubled = counts.copy()
    doubled.loc['S2'] = counts.loc['S1'] * 2
    dm = calculate_beta_diversity(doubled, metric='braycurtis')
    assert dm['S1', 'S2'] == pytest.approx(0.0)


@pytest.mark.parametrize('metric', ['weighted_unifrac', 'unweighted_unifrac'])
def test_unifrac(counts, tree, metric):
    with pytest.raises(ValueError, match='tree'):
        calculate_beta_diversity(counts, metric=metric)

    dm = calculate_beta_diversity(counts, metric=metric, tree=tree)
    assert dm.shape == (6, 6)
    assert np.allclose(np.diag(dm.data), 0)


def test_unknown_beta_metric(counts):
    with pytest.raises(ValueError):
        calculate_beta_diversity(counts, metric='manhattan_typo')


def test_compare_alpha_diversity_two_groups(counts, metadata):
    alpha = calculate_alpha_diversity(counts)
    results = compare_alpha_diversity(alpha, metadata, 'Treatment')

    assert set(results) == {'observed', 'shannon', 'simpson'}
    assert results['shannon']['test'] == 'Mann-Whitney U'
    assert 0 <= results['shannon']['p-value'] <= 1
    assert results['shannon']['n1'] == 3


def test_compare_alpha_diversity_single_group(counts, metadata):
    metadata = metadata.assign(Cohort='one')
    results = compare_alpha_diversity(calculate_alpha_diversity(counts), metadata, 'Cohort')
    assert results['shannon']['p-value'] is None


def test_permanova(counts, metadata):
    dm = calculate_beta_diversity(counts)
    result = perform_permanova(dm, metadata, 'Treatment', permutations=99)

    assert set(result) == {'test-statistic', 'p-value', 'sample size', 'note'}
    assert result['sample size'] == 6
    assert result['note'] == 'Successful test'
    assert 0 < result['p-value'] <= 1


def test_permanova_guards(counts, metadata):
    dm = calculate_beta_diversity(counts)

    small = perform_permanova(dm.filter(['S1', 'S2', 'S3']), metadata, 'Treatment')
    assert np.isnan(small['p-value'])

    singleton = metadata.assign(Group=['a', 'a', 'a', 'a', 'a', 'b'])
    result = perform_permanova(dm, singleton, 'Group')
    assert 'fewer than 2 samples' in result['note']


def test_pcoa_ordination(counts):
    dm = calculate_beta_diversity(counts)
    coordinates, explained = pcoa_ordination(dm)

    assert list(coordinates.index) == list(counts.index)
    assert coordinates.index.name == 'SampleID'
    assert 'PC1' in coordinates.columns and 'PC2' in coordinates.columns
    assert explained.iloc[0] >= explained.iloc[1]


def test_nmds_ordination(counts):
    dm = calculate_beta_diversity(counts)
    coordinates, stress = nmds_ordination(dm)

    assert coordinates.shape == (6, 2)
    assert list(coordinates.columns) == ['NMDS1', 'NMDS2']
    assert stress is not None and stress >= 0


def test_ordination_frame(counts, metadata):
    coordinates, _ = pcoa_ordination(calculate_beta_diversity(counts))

    frame = ordination_frame(coordinates, metadata)
    assert list(frame.columns) == ['PC1', 'PC2', 'Treatment', 'Injury', 'Sex']

    with pytest.raises(KeyError, match='S6'):
        ordination_frame(coordinates, metadata.drop('S6'))
