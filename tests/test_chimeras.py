import pandas as pd
import pytest

from asv_tools.chimeras import check_chimera_removal, find_bimeras, is_bimera, remove_chimeras
from asv_tools.exceptions import AsvToolsError
from asv_tools.identifiers import assign_feature_ids

PARENT_A = 'ACGTACGTACGGGGGTTTTT'
PARENT_B = 'TTTTTCCCCCCATGCATGCA'
CHIMERA = PARENT_A[:10] + PARENT_B[10:]
OTHER_D = 'GGGGGGGGGGAAAAAAAAAA'
OTHER_E = 'CCCCCCCCCCGGGGGGGGGG'


@pytest.fixture
def variant_table():
    sequences = assign_feature_ids([PARENT_A, PARENT_B, CHIMERA, OTHER_D, OTHER_E])
    per_sample = [100, 80, 5, 30, 20]
    table = pd.DataFrame(
        [per_sample, per_sample, per_sample],
        index=['S1', 'S2', 'S3'],
        columns=list(sequences.index),
    )
    return table, sequences


def test_is_bimera_detects_exact_two_parent_join():
    assert is_bimera(CHIMERA, [PARENT_A, PARENT_B])
    assert not is_bimera(CHIMERA, [PARENT_A])
    assert not is_bimera(OTHER_D, [PARENT_A, PARENT_B])


def test_is_bimera_ignores_identical_parents():
    assert not is_bimera(PARENT_A, [PARENT_A, PARENT_B])


def test_find_bimeras_respects_parent_abundance(variant_table):
    table, sequences = variant_table
    chimera_id = sequences.index[2]

    assert find_bimeras(table, sequences) == [chimera_id]
    # Parents must be far more abundant than the chimera
    assert find_bimeras(table, sequences, min_fold_parent_over_abundance=100) == []


def test_remove_chimeras_exact_keeps_four_of_five(variant_table):
    table, sequences = variant_table
    filtered, kept = remove_chimeras(table, sequences, method='exact')

    assert filtered.shape == (3, 4)
    assert sequences.index[2] not in filtered.columns
    assert list(kept.index) == list(filtered.columns)
    assert CHIMERA not in set(kept.values)


def test_remove_chimeras_never_increases_abundance(variant_table):
    table, sequences = variant_table
    filtered, _ = remove_chimeras(table, sequences, method='exact')

    assert (filtered.sum(axis=1) <= table.sum(axis=1)).all()
    assert set(filtered.columns) <= set(table.columns)


def test_remove_chimeras_unknown_method(variant_table):
    table, sequences = variant_table
    with pytest.raises(ValueError):
        remove_chimeras(table, sequences, method='vsearch')


def test_check_chimera_removal_flags_new_features():
    before = pd.DataFrame([[1, 2]], index=['S1'], columns=['a', 'b'])
    after = pd.DataFrame([[1, 2]], index=['S1'], columns=['a', 'c'])
    with pytest.raises(AsvToolsError, match='introduced features: c'):
        check_chimera_removal(before, after)


def test_check_chimera_removal_flags_increased_counts():
    before = pd.DataFrame([[1, 2]], index=['S1'], columns=['a', 'b'])
    after = pd.DataFrame([[5]], index=['S1'], columns=['a'])
    with pytest.raises(AsvToolsError, match='S1'):
        check_chimera_removal(before, after)
