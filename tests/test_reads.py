import pytest

from asv_tools.reads import ReadPair, existing_pairs, filtered_read_paths, find_read_pairs


def touch(directory, *names):
    for name in names:
        (directory / name).write_bytes(b'')


def test_find_read_pairs_sorted_by_sample(tmp_path):
    touch(tmp_path,
          'M2_S2_L001_R1_001.fastq.gz', 'M2_S2_L001_R2_001.fastq.gz',
          'M1_S1_L001_R1_001.fastq.gz', 'M1_S1_L001_R2_001.fastq.gz',
          'notes.txt')

    pairs = find_read_pairs(tmp_path)

    assert [p.sample_id for p in pairs] == ['M1', 'M2']
    assert pairs[0].forward.name == 'M1_S1_L001_R1_001.fastq.gz'
    assert pairs[0].reverse.name == 'M1_S1_L001_R2_001.fastq.gz'


def test_find_read_pairs_missing_reverse(tmp_path):
    touch(tmp_path, 'M1_R1_001.fastq.gz', 'M1_R2_001.fastq.gz', 'M3_R1_001.fastq.gz')
    with pytest.raises(FileNotFoundError, match='M3'):
        find_read_pairs(tmp_path)


def test_find_read_pairs_duplicate_sample(tmp_path):
    touch(tmp_path,
          'M1_L001_R1_001.fastq.gz', 'M1_L001_R2_001.fastq.gz',
          'M1_L002_R1_001.fastq.gz', 'M1_L002_R2_001.fastq.gz')
    with pytest.raises(ValueError, match='Duplicate sample ID M1'):
        find_read_pairs(tmp_path)


def test_find_read_pairs_custom_pattern(tmp_path):
    touch(tmp_path, 'run1-M7.fwd.fq', 'run1-M7.rev.fq')
    pairs = find_read_pairs(tmp_path, '.fwd.fq', '.rev.fq', r'-(M\d+)\.')
    assert pairs[0].sample_id == 'M7'


def test_find_read_pairs_regex_mismatch(tmp_path):
    touch(tmp_path, 'noseparator.fwd.fq', 'noseparator.rev.fq')
    with pytest.raises(ValueError, match='Cannot derive a sample ID'):
        find_read_pairs(tmp_path, '.fwd.fq', '.rev.fq', r'^(M\d+)_')


def test_find_read_pairs_empty_and_missing_dirs(tmp_path):
    with pytest.raises(FileNotFoundError):
        find_read_pairs(tmp_path)
    with pytest.raises(FileNotFoundError):
        find_read_pairs(tmp_path / 'absent')


def test_filtered_read_paths(tmp_path):
    pairs = [ReadPair('M1', tmp_path / 'a', tmp_path / 'b')]
    filtered = filtered_read_paths(pairs, tmp_path / 'filtered')

    assert filtered[0].sample_id == 'M1'
    assert filtered[0].forward == tmp_path / 'filtered' / 'M1_F_filt.fastq.gz'
    assert filtered[0].reverse == tmp_path / 'filtered' / 'M1_R_filt.fastq.gz'


def test_existing_pairs_drops_samples_without_files(tmp_path):
    filtered = filtered_read_paths([ReadPair('M1', None, None), ReadPair('M2', None, None)], tmp_path)
    touch(tmp_path, 'M1_F_filt.fastq.gz', 'M1_R_filt.fastq.gz', 'M2_F_filt.fastq.gz')

    assert [p.sample_id for p in existing_pairs(filtered)] == ['M1']
