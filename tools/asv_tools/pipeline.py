"""
The read-to-dataset pipeline as a sequence of named stages.

Each stage reads its complete inputs from disk and writes its outputs to the
work directory, so any stage can be rerun on its own once its inputs exist.
A stage whose outputs are already present is skipped unless forced.

    filter     raw FASTQ          -> filtered FASTQ, read counts
    denoise    filtered FASTQ     -> raw feature table, representative sequences
    chimeras   raw feature table  -> chimera-free feature table and sequences
    taxonomy   sequences          -> taxonomy table
    phylogeny  sequences          -> rooted tree (MAFFT + FastTree, local or batch)
    assemble   everything above   -> integrated dataset archive
"""

import logging
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, List

import pandas as pd

from . import artifacts, chimeras, phylogeny
from .dataset import assemble_dataset, load_dataset, save_dataset
from .identifiers import relabel_sequence_table
from .reads import ReadPair, existing_pairs, filtered_read_paths, find_read_pairs
from .utils import load_metadata

logger = logging.getLogger(__name__)


class ArtifactPaths:
    """Locations of the files passed between stages, under the work directory."""

    def __init__(self, config):
        work = config.paths.work_dir
        self.work_dir = work
        self.filtered_dir = config.paths.filtered_dir
        self.filter_counts = work / 'read_counts_filter.tsv'
        self.error_model_forward = work / 'error_model_F.rds'
        self.error_model_reverse = work / 'error_model_R.rds'
        self.denoise_counts = work / 'read_counts_denoise.tsv'
        self.raw_table = work / 'feature_table_raw.biom'
        self.raw_sequences = work / 'rep_seqs_raw.fasta'
        self.table = work / 'feature_table.biom'
        self.sequences = work / 'rep_seqs.fasta'
        self.read_tracking = work / 'read_tracking.tsv'
        self.taxonomy = work / 'taxonomy.tsv'
        self.alignment = work / 'aligned_seqs.fasta'
        self.unrooted_tree = config.phylogeny.tree_file or work / 'tree_unrooted.nwk'
        self.rooted_tree = work / 'rooted_tree.nwk'
        self.batch_script = work / 'build_tree.sh'
        self.dataset = work / 'dataset.zip'


@dataclass
class Stage:
    name: str
    description: str
    inputs: Callable
    outputs: Callable
    run: Callable

    def is_complete(self, paths):
        return all(p.exists() for p in self.outputs(paths))

    def missing_inputs(self, config, paths):
        return [p for p in self.inputs(config, paths) if not p.exists()]


def run_filter(config, paths):
    from . import dada2

    pairs = find_read_pairs(
        config.paths.raw_reads_dir,
        config.reads.forward_suffix,
        config.reads.reverse_suffix,
        config.reads.sample_id_regex,
    )
    paths.filtered_dir.mkdir(parents=True, exist_ok=True)
    filtered = filtered_read_paths(pairs, paths.filtered_dir)

    counts = dada2.filter_and_trim(pairs, filtered, config.filtering, config.threads)
    counts = counts.rename(columns={'reads.in': 'input', 'reads.out': 'filtered'})
    artifacts.write_read_tracking(counts, paths.filter_counts)

    logger.info(f"Filtering kept {counts['filtered'].sum()} of {counts['input'].sum()} reads")

    # Error models learned from earlier filtered reads are stale now
    for model_path in (paths.error_model_forward, paths.error_model_reverse):
        if model_path.exists():
            model_path.unlink()


def learn_or_load_error_model(reads, model_path, threads=1):
    """Reuse a saved error model, otherwise learn one from the reads and save it."""
    from . import dada2

    if model_path.exists():
        logger.info(f"Reusing error model {model_path}")
        return dada2.load_error_model(model_path)

    error_model = dada2.learn_errors(reads, threads)
    dada2.save_error_model(error_model, model_path)
    return error_model


def run_denoise(config, paths):
    from . import dada2

    counts = artifacts.read_read_tracking(paths.filter_counts)
    samples = [ReadPair(str(sample_id), None, None) for sample_id in counts.index]
    pairs = existing_pairs(filtered_read_paths(samples, paths.filtered_dir))
    names = [p.sample_id for p in pairs]
    forward = [p.forward for p in pairs]
    reverse = [p.reverse for p in pairs]

    error_forward = learn_or_load_error_model(forward, paths.error_model_forward, config.threads)
    error_reverse = learn_or_load_error_model(reverse, paths.error_model_reverse, config.threads)

    dada_forward = dada2.denoise(forward, names, error_forward, config.threads, config.denoising.pool)
    dada_reverse = dada2.denoise(reverse, names, error_reverse, config.threads, config.denoising.pool)
    mergers = dada2.merge_pairs(
        dada_forward, forward, dada_reverse, reverse, names,
        min_overlap=config.denoising.min_overlap,
        max_mismatch=config.denoising.max_mismatch,
    )

    seqtab = dada2.make_sequence_table(mergers)
    lengths = pd.Series([len(s) for s in seqtab.columns]).value_counts().sort_index()
    logger.info(f"Merged sequence length distribution: {lengths.to_dict()}")

    table, sequences = relabel_sequence_table(seqtab)
    artifacts.write_feature_table(table, paths.raw_table)
    artifacts.write_sequences(sequences, paths.raw_sequences)

    tracking = pd.DataFrame({
        'denoisedF': dada2.count_unique_reads(dada_forward),
        'denoisedR': dada2.count_unique_reads(dada_reverse),
        'merged': dada2.count_unique_reads(mergers),
    })
    artifacts.write_read_tracking(tracking, paths.denoise_counts)


def run_chimeras(config, paths):
    table = artifacts.read_feature_table(paths.raw_table)
    sequences = artifacts.read_sequences(paths.raw_sequences)

    nochim, kept_sequences = chimeras.remove_chimeras(
        table,
        sequences,
        method=config.chimeras.method,
        min_fold_parent_over_abundance=config.chimeras.min_fold_parent_over_abundance,
        threads=config.threads,
    )
    artifacts.write_feature_table(nochim, paths.table)
    artifacts.write_sequences(kept_sequences, paths.sequences)

    tracking = build_read_tracking(paths, nochim)
    artifacts.write_read_tracking(tracking, paths.read_tracking)


def build_read_tracking(paths, nochim):
    """Combine the per-stage read counts that exist into one table."""
    parts = []
    for counts_file in (paths.filter_counts, paths.denoise_counts):
        if counts_file.exists():
            parts.append(artifacts.read_read_tracking(counts_file))
    parts.append(nochim.sum(axis=1).rename('nonchim').to_frame())

    tracking = pd.concat(parts, axis=1).fillna(0).astype(int)
    tracking.index.name = 'SampleID'
    return tracking


def run_taxonomy(config, paths):
    from . import dada2

    if config.taxonomy.reference_db is None:
        raise ValueError("taxonomy.reference_db must be set to assign taxonomy")

    sequences = artifacts.read_sequences(paths.sequences)
    by_sequence = dada2.assign_taxonomy(
        list(sequences.values),
        config.taxonomy.reference_db,
        min_boot=config.taxonomy.min_boot,
        threads=config.threads,
        species_db=config.taxonomy.species_db,
        ranks=config.taxonomy.ranks,
    )
    taxonomy = by_sequence.copy()
    taxonomy.index = sequences.index

    unassigned = taxonomy.iloc[:, 0].isna().sum()
    if unassigned:
        logger.warning(f"{unassigned} sequence variants have no assignment at {taxonomy.columns[0]}")
    artifacts.write_taxonomy(taxonomy, paths.taxonomy)


def run_phylogeny(config, paths):
    if config.phylogeny.mode == 'local':
        phylogeny.run_alignment(paths.sequences, paths.alignment, config.phylogeny.mafft, config.threads)
        phylogeny.run_tree_builder(paths.alignment, paths.unrooted_tree, config.phylogeny.fasttree)
    elif not paths.unrooted_tree.exists():
        write_phylogeny_batch_script(config, paths)
        raise FileNotFoundError(
            f"Tree file {paths.unrooted_tree} not found. Submit {paths.batch_script} "
            f"and rerun the phylogeny stage when it has finished."
        )

    rooted = phylogeny.load_rooted_tree(paths.unrooted_tree)
    artifacts.write_tree(rooted, paths.rooted_tree)


def write_phylogeny_batch_script(config, paths):
    return phylogeny.write_batch_script(
        paths.sequences,
        paths.alignment,
        paths.unrooted_tree,
        paths.batch_script,
        mafft=config.phylogeny.mafft,
        fasttree=config.phylogeny.fasttree,
        threads=config.threads,
        header=config.phylogeny.scheduler_header,
    )


def run_assemble(config, paths):
    dataset = assemble_dataset(
        table=artifacts.read_feature_table(paths.table),
        taxonomy=artifacts.read_taxonomy(paths.taxonomy),
        tree=artifacts.read_tree(paths.rooted_tree),
        metadata=load_metadata(config.paths.metadata_file, config.metadata.sample_id_column),
        sequences=artifacts.read_sequences(paths.sequences),
        check_content_ids=True,
    )
    save_dataset(dataset, paths.dataset)


STAGES = OrderedDict((stage.name, stage) for stage in [
    Stage(
        'filter', 'Quality filtering and trimming',
        inputs=lambda config, paths: [config.paths.raw_reads_dir],
        outputs=lambda paths: [paths.filter_counts],
        run=run_filter,
    ),
    Stage(
        'denoise', 'Error learning, denoising, merging and sequence table',
        inputs=lambda config, paths: [paths.filter_counts],
        outputs=lambda paths: [paths.raw_table, paths.raw_sequences, paths.denoise_counts],
        run=run_denoise,
    ),
    Stage(
        'chimeras', 'Chimera removal',
        inputs=lambda config, paths: [paths.raw_table, paths.raw_sequences],
        outputs=lambda paths: [paths.table, paths.sequences, paths.read_tracking],
        run=run_chimeras,
    ),
    Stage(
        'taxonomy', 'Taxonomic assignment',
        inputs=lambda config, paths: [paths.sequences],
        outputs=lambda paths: [paths.taxonomy],
        run=run_taxonomy,
    ),
    Stage(
        'phylogeny', 'Alignment, tree building and rooting',
        inputs=lambda config, paths: [paths.sequences],
        outputs=lambda paths: [paths.rooted_tree],
        run=run_phylogeny,
    ),
    Stage(
        'assemble', 'Integrated dataset assembly',
        inputs=lambda config, paths: [paths.table, paths.taxonomy, paths.rooted_tree,
                                      paths.sequences, config.paths.metadata_file],
        outputs=lambda paths: [paths.dataset],
        run=run_assemble,
    ),
])


def run_pipeline(config, stages=None, force=False):
    """
    Run pipeline stages in order.

    Parameters:
    -----------
    config : PipelineConfig
        Pipeline configuration
    stages : list of str, optional
        Stage names to run; defaults to all stages
    force : bool
        Rerun stages whose outputs already exist

    Returns:
    --------
    list of str
        Names of the stages that ran
    """
    if stages is None:
        stages = list(STAGES)
    unknown = [name for name in stages if name not in STAGES]
    if unknown:
        raise ValueError(f"Unknown stage(s): {', '.join(unknown)}. Stages: {', '.join(STAGES)}")

    paths = ArtifactPaths(config)
    paths.work_dir.mkdir(parents=True, exist_ok=True)
    ran = []

    for name, stage in STAGES.items():
        if name not in stages:
            continue

        if stage.is_complete(paths) and not force:
            logger.info(f"Skipping stage '{name}': outputs already exist")
            continue

        missing = stage.missing_inputs(config, paths)
        if missing:
            raise FileNotFoundError(
                f"Stage '{name}' is missing inputs: {', '.join(str(p) for p in missing)}"
            )

        logger.info(f"Running stage '{name}': {stage.description}")
        stage.run(config, paths)
        ran.append(name)

    return ran


def prepare_for_analysis(config, rarefy=False):
    """
    Load the assembled dataset and derive the view used by the analyses.

    Organelle taxa listed in taxonomy.exclude and samples without reads are
    removed; with ``rarefy`` the table is subsampled to
    diversity.rarefaction_depth (or the smallest library size).
    """
    dataset = load_dataset(ArtifactPaths(config).dataset)
    if config.taxonomy.exclude:
        present = {rank: names for rank, names in config.taxonomy.exclude.items() if rank in dataset.ranks}
        dataset = dataset.remove_taxa(present)
    dataset = dataset.drop_empty_samples()

    if rarefy:
        depth = config.diversity.rarefaction_depth or int(dataset.sample_sums().min())
        logger.info(f"Rarefying to {depth} reads per sample")
        dataset = dataset.rarefy(depth, seed=config.diversity.rarefaction_seed)

    return dataset
