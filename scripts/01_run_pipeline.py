#!/usr/bin/env python3
"""
Run the amplicon processing pipeline from raw reads to the integrated dataset.

This script:
1. Filters and trims the paired-end reads
2. Learns error models, denoises, merges pairs and builds the feature table
3. Removes chimeras and writes the read tracking table
4. Assigns taxonomy
5. Aligns sequences, builds and roots the phylogenetic tree
6. Assembles and validates the dataset (table, taxonomy, tree, metadata)

Stages whose outputs already exist are skipped unless --force is given.

Usage:
    python scripts/01_run_pipeline.py [--config CONFIG_FILE] [--stages filter denoise ...]
    python scripts/01_run_pipeline.py --write-batch-script
"""

import argparse
import logging
import sys
from pathlib import Path

import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt

# Add tools directory to Python path
project_root = Path(__file__).resolve().parents[1]
sys.path.append(str(project_root / 'tools'))

from asv_tools import AsvToolsError, load_config, setup_logger
from asv_tools.artifacts import read_read_tracking
from asv_tools.pipeline import STAGES, ArtifactPaths, run_pipeline, write_phylogeny_batch_script
from asv_tools.viz import plot_read_tracking


def parse_args():
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description='Process amplicon reads into an integrated microbiome dataset')
    parser.add_argument('--config', type=str, default='config/analysis_parameters.yml',
                        help='Path to configuration file')
    parser.add_argument('--stages', nargs='+', choices=list(STAGES), default=None,
                        help='Stages to run (default: all, in order)')
    parser.add_argument('--force', action='store_true',
                        help='Rerun stages whose outputs already exist')
    parser.add_argument('--write-batch-script', action='store_true',
                        help='Write the alignment/tree shell script for cluster submission and exit')
    parser.add_argument('--log-level', default='INFO',
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
                        help='Logging level (default: INFO)')
    return parser.parse_args()


def main():
    args = parse_args()

    config_path = Path(args.config)
    if not config_path.is_absolute():
        config_path = project_root / config_path
    config = load_config(config_path, base_dir=project_root)

    logger = setup_logger(log_file=config.paths.log_file, log_level=getattr(logging, args.log_level))
    logger.info(f"Loaded configuration from {config_path}")

    paths = ArtifactPaths(config)

    if args.write_batch_script:
        script = write_phylogeny_batch_script(config, paths)
        logger.info(f"Batch script written to {script}")
        logger.info("Set phylogeny.mode to 'external' and rerun the phylogeny stage once the job has finished")
        return

    try:
        ran = run_pipeline(config, stages=args.stages, force=args.force)
    except (AsvToolsError, FileNotFoundError, ValueError) as e:
        logger.error(str(e))
        sys.exit(1)

    logger.info(f"Stages run: {', '.join(ran) if ran else 'none'}")

    if paths.read_tracking.exists():
        tracking = read_read_tracking(paths.read_tracking)
        config.paths.tables_dir.mkdir(parents=True, exist_ok=True)
        config.paths.figures_dir.mkdir(parents=True, exist_ok=True)
        tracking.to_csv(config.paths.tables_dir / 'read_tracking.csv')

        fig = plot_read_tracking(tracking)
        fig.savefig(config.paths.figures_dir / 'read_tracking.png',
                    dpi=config.visualization.figure_dpi, bbox_inches='tight')
        plt.close(fig)

        retained = tracking.iloc[:, -1].sum() / max(tracking.iloc[:, 0].sum(), 1)
        logger.info(f"{retained:.1%} of input reads retained after chimera removal")

    logger.info("Pipeline complete!")


if __name__ == "__main__":
    main()
