import logging

import numpy as np
import pandas as pd
import pytest

from asv_tools.logger import setup_logger
from asv_tools.utils import (
    create_abundance_summary,
    filter_low_abundance,
    load_metadata,
    preprocess_abundance_data,
)


def test_load_metadata_tsv(tmp_path):
    path = tmp_path / 'metadata.tsv'
    path.write_text('Mouse\tTreatment\tWeight\n001\tVEH\t20.1\n002\tFMT\t21.4\n')

    metadata = load_metadata(path, sample_id_column='Mouse')
    assert list(metadata.index) == ['001', '002']
    assert metadata.index.name == 'SampleID'
    assert metadata.loc['002', 'Treatment'] == 'FMT'
    assert metadata['Weight'].dtype == float


def test_load_metadata_csv_keeps_duplicates(tmp_path):
    path = tmp_path / 'metadata.csv'
    path.write_text('SampleID,Treatment\nS1,VEH\nS1,FMT\nS2,VEH\n')

    metadata = load_metadata(path)
    assert list(metadata.index) == ['S1', 'S1', 'S2']


def test_load_metadata_missing_id_column(tmp_path):
    path = tmp_path / 'metadata.csv'
    path.write_text('Mouse,Treatment\nS1,VEH\n')
    with pytest.raises(ValueError, match='SampleID'):
        load_metadata(path)


def test_filter_low_abundance(counts):
    assert list(filter_low_abundance(counts, min_prevalence=1.0)) == ['A', 'D']
    assert list(filter_low_abundance(counts, min_prevalence=0.0, min_abundance=0.3)) == ['D']


def test_preprocess_abundance_data(counts):
    percent = preprocess_abundance_data(counts)
    assert np.allclose(percent.sum(axis=1), 100)

    transformed = preprocess_abundance_data(counts, log_transform=True, clr_transform=True)
    assert np.allclose(transformed.sum(axis=1), 0)


def test_create_abundance_summary(counts, metadata):
    summary = create_abundance_summary(counts, metadata, group_var='Treatment', top_n=2)

    assert len(summary) == 2
    assert summary.index[0] == 'D'
    assert 'Mean in VEH (%)' in summary.columns
    assert summary.loc['D', 'Prevalence (%)'] == pytest.approx(100.0)


def test_setup_logger_replaces_handlers(tmp_path):
    log_file = tmp_path / 'logs' / 'run.log'
    setup_logger(name='asv_tools.test')
    logger = setup_logger(log_file=log_file, log_level=logging.DEBUG, name='asv_tools.test')

    assert len(logger.handlers) == 2
    logger.debug('hello')
    for handler in logger.handlers:
        handler.flush()
    assert 'hello' in log_file.read_text()
    assert ' - asv_tools.test - DEBUG - hello' in log_file.read_text()
