#!/usr/bin/env python3
"""
Plot taxonomic composition of the integrated dataset.

For each configured rank, features are agglomerated and the top taxa are
shown as stacked bars of mean relative abundance per group, with the rest
pooled as "Other". Agglomerated relative abundance tables are saved too.

Usage:
    python scripts/04_plot_composition.py [--config CONFIG_FILE]
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
from asv_tools.pipeline import prepare_for_analysis
from asv_tools.utils import create_abundance_summary
from asv_tools.viz import plot_stacked_bar


def parse_args():
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description='Plot taxonomic composition')
    parser.add_argument('--config', type=str, default='config/analysis_parameters.yml',
                        help='Path to configuration file')
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

    figures_dir = config.paths.figures_dir / 'composition'
    tables_dir = config.paths.tables_dir / 'composition'
    figures_dir.mkdir(exist_ok=True, parents=True)
    tables_dir.mkdir(exist_ok=True, parents=True)

    try:
        dataset = prepare_for_analysis(config)
    except (AsvToolsError, FileNotFoundError) as e:
        logger.error(str(e))
        logger.error("Please run 01_run_pipeline.py first.")
        sys.exit(1)

    group_vars = [v for v in config.metadata.group_variables if v in dataset.metadata.columns]

    for rank in config.visualization.stacked_bar_ranks:
        if rank not in dataset.ranks:
            logger.warning(f"Rank '{rank}' not in taxonomy, skipping")
            continue

        abundance_df = dataset.agglomerate(rank, relative=True)
        abundance_df.to_csv(tables_dir / f"relative_abundance_{rank}.csv")
        logger.info(f"{rank}: {abundance_df.shape[1]} taxa")

        summary = create_abundance_summary(dataset.agglomerate(rank), dataset.metadata,
                                           group_var=config.visualization.facet_variable, top_n=None)
        summary.to_csv(tables_dir / f"abundance_summary_{rank}.csv")

        for var in group_vars:
            fig = plot_stacked_bar(abundance_df, dataset.metadata, var,
                                   top_n=config.visualization.top_n, labels=config.labels)
            fig.savefig(figures_dir / f"stacked_bar_{rank}_{var}.png",
                        dpi=config.visualization.figure_dpi, bbox_inches='tight')
            plt.close(fig)

    logger.info("Composition plots complete!")


if __name__ == "__main__":
    main()
