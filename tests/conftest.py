import io

import matplotlib
matplotlib.use('Agg')

import numpy as np
import pandas as pd
import pytest
from skbio import TreeNode

from asv_tools.dataset import assemble_dataset


FEATURES = ['A', 'B', 'C', 'D']
SAMPLES = ['S1', 'S2', 'S3', 'S4', 'S5', 'S6']


@pytest.fixture
def counts():
    data = [
        [10, 20, 30, 40],
        [15, 25, 5, 55],
        [50, 0, 25, 25],
        [5, 40, 35, 20],
        [30, 30, 0, 40],
        [20, 10, 60, 10],
    ]
    table = pd.DataFrame(data, index=SAMPLES, columns=FEATURES)
    table.index.name = 'SampleID'
    table.columns.name = 'FeatureID'
    return table


@pytest.fixture
def taxonomy():
    taxonomy = pd.DataFrame(
        {
            'Kingdom': ['Bacteria'] * 4,
            'Phylum': ['Firmicutes', 'Firmicutes', 'Bacteroidota', 'Proteobacteria'],
            'Family': ['Lachnospiraceae', 'Lachnospiraceae', 'Muribaculaceae', 'Mitochondria'],
            'Genus': ['Blautia', np.nan, 'Muribaculum', np.nan],
        },
        index=pd.Index(FEATURES, name='FeatureID'),
    )
    return taxonomy


@pytest.fixture
def tree():
    return TreeNode.read(io.StringIO('((A:0.1,B:0.2):0.3,(C:0.4,D:0.5):0.6);'))


@pytest.fixture
def metadata():
    metadata = pd.DataFrame(
        {
            'Treatment': ['VEH', 'FMT', 'VEH', 'FMT', 'VEH', 'FMT'],
            'Injury': ['Sham', 'Sham', 'Sham', 'TBI', 'TBI', 'TBI'],
            'Sex': ['M', 'F', 'M', 'F', 'M', 'F'],
        },
        index=pd.Index(SAMPLES, name='SampleID'),
    )
    return metadata


@pytest.fixture
def labels():
    return {
        'Treatment': {'VEH': 'Vehicle', 'FMT': 'FMT'},
        'Sex': {'M': 'Male', 'F': 'Female'},
    }


@pytest.fixture
def dataset(counts, taxonomy, tree, metadata):
    return assemble_dataset(counts, taxonomy, tree, metadata)
