"""
Alignment and tree building around MAFFT and FastTree.

Both tools run out of process with files in and files out. They can run
locally through subprocess, or on a cluster from the script written by
write_batch_script, in which case the pipeline only picks up the tree file.
"""

import logging
import shlex
import shutil
import subprocess
from pathlib import Path

from .artifacts import read_tree
from .exceptions import ExternalToolError

logger = logging.getLogger(__name__)


def _run(cmd, stdout_path):
    """Run a command, sending its standard output to a file."""
    if shutil.which(cmd[0]) is None:
        raise ExternalToolError(cmd, f"'{cmd[0]}' not found on PATH")

    stdout_path = Path(stdout_path)
    stdout_path.parent.mkdir(parents=True, exist_ok=True)
    logger.info(f"Executing: {' '.join(str(c) for c in cmd)}")

    with open(stdout_path, 'w') as out:
        result = subprocess.run([str(c) for c in cmd], stdout=out, stderr=subprocess.PIPE, text=True)

    if result.returncode != 0:
        stdout_path.unlink(missing_ok=True)
        logger.error(result.stderr.strip())
        raise ExternalToolError(cmd, f"exited with status {result.returncode}")
    return result


def alignment_command(sequences_fasta, mafft='mafft', threads=1):
    return [mafft, '--auto', '--thread', str(threads), str(sequences_fasta)]


def tree_command(aligned_fasta, fasttree='FastTree'):
    return [fasttree, '-gtr', '-nt', str(aligned_fasta)]


def run_alignment(sequences_fasta, aligned_fasta, mafft='mafft', threads=1):
    """Align representative sequences with MAFFT."""
    _run(alignment_command(sequences_fasta, mafft, threads), aligned_fasta)
    return Path(aligned_fasta)


def run_tree_builder(aligned_fasta, tree_file, fasttree='FastTree'):
    """Infer an unrooted GTR tree from the alignment with FastTree."""
    _run(tree_command(aligned_fasta, fasttree), tree_file)
    return Path(tree_file)


def write_batch_script(sequences_fasta, aligned_fasta, tree_file, path,
                       mafft='mafft', fasttree='FastTree', threads=1, header=None):
    """
    Write a shell script running the alignment and tree steps.

    Parameters:
    -----------
    sequences_fasta, aligned_fasta, tree_file : str or Path
        Input FASTA and the two output files
    path : str or Path
        Where to write the script
    mafft, fasttree : str
        Executables
    threads : int
        Threads for MAFFT
    header : list of str, optional
        Scheduler directives placed after the shebang (e.g. '#SBATCH --mem=16G')
    """
    align = ' '.join(shlex.quote(c) for c in alignment_command(sequences_fasta, mafft, threads))
    build = ' '.join(shlex.quote(c) for c in tree_command(aligned_fasta, fasttree))
    lines = ['#!/bin/bash']
    lines += list(header or [])
    lines += [
        'set -euo pipefail',
        '',
        f"{align} > {shlex.quote(str(aligned_fasta))}",
        f"{build} > {shlex.quote(str(tree_file))}",
        '',
    ]

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text('\n'.join(lines))
    path.chmod(0o755)
    logger.info(f"Batch script written to {path}")
    return path


def root_tree(tree):
    """Root a tree at the midpoint of its longest tip-to-tip path."""
    # FastTree support values end up as internal node names
    tree = tree.copy()
    for node in tree.non_tips(include_self=True):
        node.name = None
    return tree.root_at_midpoint()


def load_rooted_tree(path):
    """Read a Newick tree and midpoint-root it."""
    tree = read_tree(path)
    rooted = root_tree(tree)
    logger.info(f"Rooted tree with {rooted.count(tips=True)} tips from {path}")
    return rooted
