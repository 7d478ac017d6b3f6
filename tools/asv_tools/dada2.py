"""
DADA2 calls through rpy2.

Read filtering, error learning, denoising, pair merging, sequence table
construction, chimera removal and taxonomy assignment are all delegated to
the DADA2 R package. This module only moves file paths in and pandas tables
out. R is imported on first use, so the rest of asv_tools works without it.
"""

import logging

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)

_R = {}


def _r():
    """Import rpy2 and the DADA2 package once."""
    if not _R:
        import rpy2.robjects as robjects
        from rpy2.robjects.packages import importr

        _R['ro'] = robjects
        _R['dada2'] = importr('dada2')
        _R['base'] = importr('base')
        # NA handling is simplest on the R side
        _R['na_to_empty'] = robjects.r('function(m) { m[is.na(m)] <- ""; m }')
    return _R['ro'], _R['dada2']


def _named_paths(paths, names):
    ro, _ = _r()
    return ro.r['setNames'](ro.StrVector([str(p) for p in paths]), ro.StrVector(list(names)))


def _multithread(threads):
    return int(threads) if threads and threads > 1 else False


def _r_matrix_to_frame(matrix, dtype=None):
    """Convert an R matrix with dimnames to a DataFrame."""
    ro, _ = _r()
    nrow = int(ro.r['nrow'](matrix)[0])
    ncol = int(ro.r['ncol'](matrix)[0])
    rownames = ro.r['rownames'](matrix)
    colnames = ro.r['colnames'](matrix)

    # R stores matrices column-major
    values = np.array(list(matrix), dtype=dtype).reshape((ncol, nrow)).T
    index = list(rownames) if rownames is not ro.NULL else list(range(nrow))
    columns = list(colnames) if colnames is not ro.NULL else list(range(ncol))
    return pd.DataFrame(values, index=index, columns=columns)


def _frame_to_r_matrix(df):
    """Convert an integer count DataFrame to an R integer matrix."""
    ro, _ = _r()
    values = np.asarray(df.values, dtype=int)
    return ro.r['matrix'](
        ro.IntVector(values.flatten(order='F').tolist()),
        nrow=df.shape[0],
        dimnames=ro.r['list'](
            ro.StrVector([str(i) for i in df.index]),
            ro.StrVector([str(c) for c in df.columns]),
        ),
    )


def _as_named_list(result, names):
    """dada() and mergePairs() return a bare object for a single sample."""
    ro, _ = _r()
    if ro.r['class'](result)[0] in ('dada', 'data.frame'):
        result = ro.r['list'](result)
    return ro.r['setNames'](result, ro.StrVector(list(names)))


def filter_and_trim(pairs, filtered_pairs, filtering, threads=1):
    """
    Quality filter and trim raw read pairs with filterAndTrim.

    Parameters:
    -----------
    pairs : list of ReadPair
        Raw read files
    filtered_pairs : list of ReadPair
        Output locations, in the same order as pairs
    filtering : FilteringConfig
        Trimming and expected error thresholds
    threads : int
        Number of threads

    Returns:
    --------
    pandas.DataFrame
        Columns 'reads.in' and 'reads.out', indexed by sample ID
    """
    ro, dada2 = _r()
    names = [pair.sample_id for pair in pairs]

    logger.info(
        f"Filtering {len(pairs)} read pairs (truncLen={filtering.trunc_len}, "
        f"maxEE={filtering.max_ee}, truncQ={filtering.trunc_q})"
    )
    out = dada2.filterAndTrim(
        ro.StrVector([str(p.forward) for p in pairs]),
        _named_paths([p.forward for p in filtered_pairs], names),
        ro.StrVector([str(p.reverse) for p in pairs]),
        _named_paths([p.reverse for p in filtered_pairs], names),
        trimLeft=ro.IntVector(filtering.trim_left),
        truncLen=ro.IntVector(filtering.trunc_len),
        maxN=filtering.max_n,
        maxEE=ro.FloatVector(filtering.max_ee),
        truncQ=filtering.trunc_q,
        rm_phix=filtering.rm_phix,
        compress=True,
        multithread=_multithread(threads),
    )

    counts = _r_matrix_to_frame(out, dtype=float).astype(int)
    # filterAndTrim names rows after the input files
    counts.index = pd.Index(names, name='SampleID')
    return counts


def learn_errors(paths, threads=1):
    """Fit the DADA2 error model on filtered reads of one direction."""
    ro, dada2 = _r()
    logger.info(f"Learning error rates from {len(paths)} files")
    return dada2.learnErrors(ro.StrVector([str(p) for p in paths]), multithread=_multithread(threads))


def save_error_model(error_model, path):
    """Persist an error model with saveRDS."""
    ro, _ = _r()
    ro.r['saveRDS'](error_model, file=str(path))


def load_error_model(path):
    ro, _ = _r()
    return ro.r['readRDS'](str(path))


def denoise(paths, names, error_model, threads=1, pool=False):
    """Infer exact sequence variants per sample."""
    ro, dada2 = _r()
    logger.info(f"Denoising {len(paths)} samples (pool={pool})")
    result = dada2.dada(
        _named_paths(paths, names),
        err=error_model,
        pool=pool,
        multithread=_multithread(threads),
    )
    return _as_named_list(result, names)


def merge_pairs(dada_forward, filtered_forward, dada_reverse, filtered_reverse, names,
                min_overlap=12, max_mismatch=0):
    """Merge denoised forward and reverse reads."""
    ro, dada2 = _r()
    result = dada2.mergePairs(
        dada_forward,
        _named_paths(filtered_forward, names),
        dada_reverse,
        _named_paths(filtered_reverse, names),
        minOverlap=min_overlap,
        maxMismatch=max_mismatch,
    )
    return _as_named_list(result, names)


def count_unique_reads(results):
    """
    Sum the reads represented by each sample's dada or mergePairs result.

    Returns:
    --------
    pandas.Series
        Read counts indexed by sample ID
    """
    ro, dada2 = _r()
    names = list(ro.r['names'](results))
    counts = [int(ro.r['sum'](dada2.getUniques(results.rx2(name)))[0]) for name in names]
    return pd.Series(counts, index=pd.Index(names, name='SampleID'))


def make_sequence_table(mergers):
    """
    Build the samples x sequences count table from merged pairs.

    Returns:
    --------
    pandas.DataFrame
        Integer counts, samples as rows, sequences as columns
    """
    _, dada2 = _r()
    seqtab = _r_matrix_to_frame(dada2.makeSequenceTable(mergers), dtype=float).astype(np.int64)
    seqtab.index.name = 'SampleID'
    logger.info(f"Sequence table: {seqtab.shape[0]} samples, {seqtab.shape[1]} sequence variants")
    return seqtab


def remove_bimeras(seqtab, method='consensus', min_fold_parent_over_abundance=2.0, threads=1):
    """Run removeBimeraDenovo on a sequence-labelled table."""
    ro, dada2 = _r()
    nochim = dada2.removeBimeraDenovo(
        _frame_to_r_matrix(seqtab),
        method=method,
        minFoldParentOverAbundance=min_fold_parent_over_abundance,
        multithread=_multithread(threads),
    )
    result = _r_matrix_to_frame(nochim, dtype=float).astype(np.int64)
    result.index = seqtab.index
    return result


def assign_taxonomy(sequences, reference_db, min_boot=50, threads=1, species_db=None, ranks=None):
    """
    Classify sequences against a reference training set.

    Parameters:
    -----------
    sequences : list of str
        Sequences to classify
    reference_db : str or Path
        DADA2 formatted training FASTA (e.g. SILVA)
    min_boot : int
        Minimum bootstrap confidence for a rank assignment
    threads : int
        Number of threads
    species_db : str or Path, optional
        Species assignment FASTA for exact-match species calls
    ranks : list of str, optional
        Rank names for the output columns

    Returns:
    --------
    pandas.DataFrame
        One row per sequence, one column per rank; unassigned ranks are NaN
    """
    ro, dada2 = _r()
    seqs = ro.StrVector(list(sequences))
    kwargs = {'minBoot': min_boot, 'multithread': _multithread(threads)}
    if ranks is not None:
        # addSpecies appends its own Species column
        levels = [r for r in ranks if r != 'Species'] if species_db is not None else list(ranks)
        kwargs['taxLevels'] = ro.StrVector(levels)

    logger.info(f"Assigning taxonomy to {len(sequences)} sequences with {reference_db}")
    taxa = dada2.assignTaxonomy(seqs, str(reference_db), **kwargs)

    if species_db is not None:
        logger.info(f"Adding exact species matches from {species_db}")
        taxa = dada2.addSpecies(taxa, str(species_db))

    taxonomy = _r_matrix_to_frame(_R['na_to_empty'](taxa), dtype=object)
    taxonomy = taxonomy.replace('', np.nan)
    taxonomy.index = list(sequences)
    if ranks is not None:
        taxonomy = taxonomy.reindex(columns=list(ranks))
    return taxonomy
