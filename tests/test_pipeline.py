import pandas as pd
import pytest

from asv_tools import artifacts, dada2
from asv_tools.config import config_from_dict
from asv_tools.dataset import load_dataset
from asv_tools.exceptions import DatasetIntegrityError
from asv_tools.identifiers import assign_feature_ids
from asv_tools.pipeline import (
    STAGES,
    ArtifactPaths,
    learn_or_load_error_model,
    prepare_for_analysis,
    run_pipeline,
)

PARENT_A = 'ACGTACGTACGGGGGTTTTT'
PARENT_B = 'TTTTTCCCCCCATGCATGCA'
CHIMERA = PARENT_A[:10] + PARENT_B[10:]
OTHER_D = 'GGGGGGGGGGAAAAAAAAAA'
OTHER_E = 'CCCCCCCCCCGGGGGGGGGG'


@pytest.fixture
def project(tmp_path):
    """A work directory holding the denoising outputs for three samples."""
    config = config_from_dict({
        'paths': {'work_dir': 'work', 'results_dir': 'results', 'metadata_file': 'metadata.tsv'},
        'chimeras': {'method': 'exact'},
        'phylogeny': {'mode': 'external', 'tree_file': 'cluster/tree.nwk'},
        'diversity': {'rarefaction_depth': 100},
    }, base_dir=tmp_path)
    paths = ArtifactPaths(config)

    sequences = assign_feature_ids([PARENT_A, PARENT_B, CHIMERA, OTHER_D, OTHER_E])
    ids = list(sequences.index)
    table = pd.DataFrame(
        [[100, 80, 5, 30, 20], [90, 85, 4, 25, 0], [110, 70, 6, 35, 15]],
        index=['M1', 'M2', 'M3'],
        columns=ids,
    )
    artifacts.write_feature_table(table, paths.raw_table)
    artifacts.write_sequences(sequences, paths.raw_sequences)
    artifacts.write_read_tracking(
        pd.DataFrame({'input': [300, 250, 280], 'filtered': [260, 220, 250]}, index=['M1', 'M2', 'M3']),
        paths.filter_counts,
    )

    kept = [ids[0], ids[1], ids[3], ids[4]]
    taxonomy = pd.DataFrame({
        'Kingdom': ['Bacteria'] * 4,
        'Family': ['Lachnospiraceae', 'Muribaculaceae', 'Mitochondria', 'Lactobacillaceae'],
        'Genus': ['Blautia', None, None, 'Lactobacillus'],
    }, index=kept)
    artifacts.write_taxonomy(taxonomy, paths.taxonomy)

    paths.unrooted_tree.parent.mkdir(parents=True)
    paths.unrooted_tree.write_text(f'({kept[0]}:0.1,{kept[1]}:0.2,({kept[2]}:0.3,{kept[3]}:0.4):0.5);\n')

    (tmp_path / 'metadata.tsv').write_text(
        'SampleID\tTreatment\tInjury\n'
        'M1\tVEH\tTBI\n'
        'M2\tFMT\tTBI\n'
        'M3\tFMT\tSham\n'
        'M4\tVEH\tSham\n'
    )
    return config, paths, ids


def test_stage_order():
    assert list(STAGES) == ['filter', 'denoise', 'chimeras', 'taxonomy', 'phylogeny', 'assemble']


def test_unknown_stage(project):
    config, _, _ = project
    with pytest.raises(ValueError, match='Unknown stage'):
        run_pipeline(config, stages=['chimeras', 'blast'])


def test_runs_remaining_stages_to_dataset(project):
    config, paths, ids = project
    ran = run_pipeline(config, stages=['chimeras', 'phylogeny', 'assemble'])

    assert ran == ['chimeras', 'phylogeny', 'assemble']
    assert artifacts.read_feature_table(paths.table).shape == (3, 4)
    assert ids[2] not in artifacts.read_sequences(paths.sequences).index

    tracking = artifacts.read_read_tracking(paths.read_tracking)
    assert list(tracking.columns) == ['input', 'filtered', 'nonchim']
    assert tracking.loc['M1', 'nonchim'] == 230

    dataset = load_dataset(paths.dataset)
    assert dataset.shape == (3, 4)
    # M4 has metadata but no reads
    assert dataset.sample_ids == ['M1', 'M2', 'M3']
    assert dataset.metadata.loc['M3', 'Injury'] == 'Sham'


def test_completed_stages_are_skipped_unless_forced(project):
    config, _, _ = project
    run_pipeline(config, stages=['chimeras', 'phylogeny', 'assemble'])

    assert run_pipeline(config, stages=['chimeras', 'phylogeny', 'assemble']) == []
    assert run_pipeline(config, stages=['assemble'], force=True) == ['assemble']


def test_missing_inputs(project):
    config, paths, _ = project
    paths.raw_table.unlink()
    with pytest.raises(FileNotFoundError, match='chimeras'):
        run_pipeline(config, stages=['chimeras'])


def test_external_tree_not_ready_writes_batch_script(project):
    config, paths, _ = project
    paths.unrooted_tree.unlink()
    run_pipeline(config, stages=['chimeras'])

    with pytest.raises(FileNotFoundError, match='build_tree.sh'):
        run_pipeline(config, stages=['phylogeny'])
    assert paths.batch_script.exists()
    assert 'FastTree -gtr -nt' in paths.batch_script.read_text()


def test_assembly_fails_on_orphan_taxonomy(project):
    config, paths, ids = project
    run_pipeline(config, stages=['chimeras', 'phylogeny'])

    taxonomy = artifacts.read_taxonomy(paths.taxonomy)
    taxonomy.loc[ids[2]] = ['Bacteria', 'Chimeraceae', None]
    artifacts.write_taxonomy(taxonomy, paths.taxonomy)

    with pytest.raises(DatasetIntegrityError) as excinfo:
        run_pipeline(config, stages=['assemble'])
    assert excinfo.value.problems == {'taxonomy': {'unexpected': [ids[2]]}}
    assert not paths.dataset.exists()


def test_prepare_for_analysis(project):
    config, _, ids = project
    run_pipeline(config, stages=['chimeras', 'phylogeny', 'assemble'])

    dataset = prepare_for_analysis(config)
    # Mitochondria are removed; the Order rank is not in this taxonomy
    assert ids[3] not in dataset.feature_ids
    assert len(dataset.feature_ids) == 3

    rarefied = prepare_for_analysis(config, rarefy=True)
    assert (rarefied.sample_sums() == 100).all()


def test_error_model_is_learned_once(tmp_path, monkeypatch):
    learned = []
    saved = {}
    monkeypatch.setattr(dada2, 'learn_errors', lambda reads, threads=1: learned.append(list(reads)) or 'model')
    monkeypatch.setattr(dada2, 'save_error_model', lambda model, path: saved.update({path: model}) or path.touch())
    monkeypatch.setattr(dada2, 'load_error_model', lambda path: f'loaded {path.name}')

    model_path = tmp_path / 'error_model_F.rds'
    assert learn_or_load_error_model(['a_F.fastq.gz'], model_path) == 'model'
    assert saved == {model_path: 'model'}

    assert learn_or_load_error_model(['a_F.fastq.gz'], model_path) == 'loaded error_model_F.rds'
    assert learned == [['a_F.fastq.gz']]
