"""
Raw read ingestion and filtered-read path bookkeeping.
"""

import logging
import re
from collections import namedtuple
from pathlib import Path

logger = logging.getLogger(__name__)


ReadPair = namedtuple('ReadPair', ['sample_id', 'forward', 'reverse'])


def find_read_pairs(input_dir, forward_suffix='_R1_001.fastq.gz',
                    reverse_suffix='_R2_001.fastq.gz', sample_id_regex=r'^([^_]+)_'):
    """
    Enumerate paired forward/reverse FASTQ files per sample.

    Parameters:
    -----------
    input_dir : str or Path
        Directory holding the demultiplexed read files
    forward_suffix : str
        File name ending of forward read files
    reverse_suffix : str
        File name ending of reverse read files
    sample_id_regex : str
        Regular expression applied to the forward file name; its first
        capture group is the sample identifier

    Returns:
    --------
    list of ReadPair
        One pair per sample, sorted by sample identifier
    """
    input_dir = Path(input_dir)
    if not input_dir.is_dir():
        raise FileNotFoundError(f"Read directory not found: {input_dir}")

    pattern = re.compile(sample_id_regex)
    pairs = {}

    for forward in sorted(input_dir.iterdir()):
        if not forward.name.endswith(forward_suffix):
            continue

        match = pattern.search(forward.name)
        if match is None:
            raise ValueError(f"Cannot derive a sample ID from '{forward.name}' with pattern '{sample_id_regex}'")
        sample_id = match.group(1) if match.groups() else match.group(0)

        reverse = forward.with_name(forward.name[:-len(forward_suffix)] + reverse_suffix)
        if not reverse.exists():
            raise FileNotFoundError(f"Reverse read file missing for sample {sample_id}: {reverse}")

        if sample_id in pairs:
            raise ValueError(
                f"Duplicate sample ID {sample_id}: {pairs[sample_id].forward.name} and {forward.name}"
            )
        pairs[sample_id] = ReadPair(sample_id, forward, reverse)

    if not pairs:
        raise FileNotFoundError(f"No files ending in '{forward_suffix}' found in {input_dir}")

    logger.info(f"Found {len(pairs)} read pairs in {input_dir}")
    return [pairs[sample_id] for sample_id in sorted(pairs)]


def filtered_read_paths(pairs, filtered_dir):
    """Return the filtered read locations matching each raw read pair."""
    filtered_dir = Path(filtered_dir)
    return [
        ReadPair(
            pair.sample_id,
            filtered_dir / f"{pair.sample_id}_F_filt.fastq.gz",
            filtered_dir / f"{pair.sample_id}_R_filt.fastq.gz",
        )
        for pair in pairs
    ]


def existing_pairs(pairs):
    """
    Keep read pairs whose files both exist.

    Filtering drops samples with no passing reads without writing their
    files, so later stages only see the survivors.
    """
    kept = [pair for pair in pairs if pair.forward.exists() and pair.reverse.exists()]
    dropped = sorted(set(pair.sample_id for pair in pairs) - set(pair.sample_id for pair in kept))
    if dropped:
        logger.warning(f"No reads passed filtering for {len(dropped)} sample(s): {', '.join(dropped)}")
    return kept
