import io

import numpy as np
import pandas as pd
import pytest
from skbio import TreeNode

from asv_tools import artifacts


@pytest.mark.parametrize('filename', ['table.biom', 'table.tsv'])
def test_feature_table_round_trip(tmp_path, counts, filename):
    path = tmp_path / filename
    artifacts.write_feature_table(counts, path)
    loaded = artifacts.read_feature_table(path)

    pd.testing.assert_frame_equal(loaded, counts.astype(np.int64))
    assert loaded.index.name == 'SampleID'
    assert loaded.columns.name == 'FeatureID'


def test_feature_table_keeps_numeric_looking_sample_ids(tmp_path):
    table = pd.DataFrame([[1, 2], [3, 4]], index=['001', '002'], columns=['f1', 'f2'])
    path = tmp_path / 'table.tsv'
    artifacts.write_feature_table(table, path)
    assert list(artifacts.read_feature_table(path).index) == ['001', '002']


def test_taxonomy_round_trip_keeps_unassigned_as_nan(tmp_path, taxonomy):
    path = tmp_path / 'taxonomy.tsv'
    artifacts.write_taxonomy(taxonomy, path)
    loaded = artifacts.read_taxonomy(path)

    assert list(loaded.index) == list(taxonomy.index)
    assert list(loaded.columns) == list(taxonomy.columns)
    assert loaded['Genus'].isna().tolist() == taxonomy['Genus'].isna().tolist()
    assert loaded.loc['C', 'Family'] == 'Muribaculaceae'


def test_sequences_round_trip(tmp_path):
    sequences = pd.Series({'f1': 'ACGTACGTAC' * 30, 'f2': 'TTGACA'}, name='Sequence')
    path = tmp_path / 'seqs.fasta'
    artifacts.write_sequences(sequences, path)
    loaded = artifacts.read_sequences(path)

    assert loaded.to_dict() == sequences.to_dict()
    # One line per sequence
    assert len(path.read_text().splitlines()) == 4


def test_tree_round_trip(tmp_path, tree):
    path = tmp_path / 'tree.nwk'
    artifacts.write_tree(tree, path)
    loaded = artifacts.read_tree(path)

    assert sorted(t.name for t in loaded.tips()) == ['A', 'B', 'C', 'D']
    assert loaded.find('A').accumulate_to_ancestor(loaded) == pytest.approx(0.4)
    assert loaded.compare_tip_distances(tree) == pytest.approx(0.0)


def test_read_tracking_round_trip(tmp_path):
    tracking = pd.DataFrame(
        {'input': [1000, 900], 'filtered': [800, 700], 'nonchim': [600, 650]},
        index=['S1', 'S2'],
    )
    path = tmp_path / 'tracking.tsv'
    artifacts.write_read_tracking(tracking, path)
    loaded = artifacts.read_read_tracking(path)

    assert loaded.index.name == 'SampleID'
    assert loaded.loc['S2', 'nonchim'] == 650
    assert list(loaded.columns) == ['input', 'filtered', 'nonchim']


def test_write_tree_creates_parent_directories(tmp_path):
    tree = TreeNode.read(io.StringIO('(a:1,b:2);'))
    path = tmp_path / 'nested' / 'dir' / 'tree.nwk'
    artifacts.write_tree(tree, path)
    assert path.exists()
