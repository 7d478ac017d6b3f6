#!/usr/bin/env python3
"""
Calculate and analyze alpha and beta diversity of the integrated dataset.

This script:
1. Loads the assembled dataset and rarefies it
2. Calculates alpha diversity metrics (Observed, Shannon, Simpson, Faith PD)
3. Compares alpha diversity between experimental groups
4. Calculates beta diversity distance matrices (Bray-Curtis, UniFrac, Aitchison)
5. Performs PERMANOVA to test for community composition differences
6. Generates boxplots and PCoA/NMDS ordination plots

Usage:
    python scripts/02_calculate_diversity.py [--config CONFIG_FILE]
"""

import argparse
import logging
import sys
from pathlib import Path

import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt
import pandas as pd
import seaborn as sns

# Add tools directory to Python path
project_root = Path(__file__).resolve().parents[1]
sys.path.append(str(project_root / 'tools'))

from asv_tools import AsvToolsError, load_config, setup_logger
from asv_tools.diversity import (
    PHYLOGENETIC_METRICS,
    calculate_alpha_diversity,
    calculate_beta_diversity,
    compare_alpha_diversity,
    perform_permanova,
)
from asv_tools.labels import apply_display_labels
from asv_tools.ordination import pcoa_ordination
from asv_tools.pipeline import prepare_for_analysis
from asv_tools.viz import plot_alpha_diversity_boxplot, plot_ordination


def parse_args():
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description='Calculate and analyze microbiome diversity')
    parser.add_argument('--config', type=str, default='config/analysis_parameters.yml',
                        help='Path to configuration file')
    parser.add_argument('--no-rarefy', action='store_true',
                        help='Use the unrarefied table')
    parser.add_argument('--log-level', default='INFO',
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
                        help='Logging level (default: INFO)')
    return parser.parse_args()


def main():
    """Main function to calculate diversity metrics."""
    args = parse_args()

    config_path = Path(args.config)
    if not config_path.is_absolute():
        config_path = project_root / config_path
    config = load_config(config_path, base_dir=project_root)
    logger = setup_logger(log_file=config.paths.log_file, log_level=getattr(logging, args.log_level))

    figures_dir = config.paths.figures_dir
    tables_dir = config.paths.tables_dir
    figures_dir.mkdir(exist_ok=True, parents=True)
    tables_dir.mkdir(exist_ok=True, parents=True)
    dpi = config.visualization.figure_dpi

    try:
        dataset = prepare_for_analysis(config, rarefy=not args.no_rarefy)
    except (AsvToolsError, FileNotFoundError) as e:
        logger.error(str(e))
        logger.error("Please run 01_run_pipeline.py first.")
        sys.exit(1)

    logger.info(f"Dataset: {dataset.shape[0]} samples, {dataset.shape[1]} sequence variants")
    metadata_df = dataset.metadata
    group_vars = [v for v in config.metadata.group_variables if v in metadata_df.columns]
    for var in config.metadata.group_variables:
        if var not in metadata_df.columns:
            logger.warning(f"Variable '{var}' not found in metadata")

    # Alpha diversity
    logger.info("Calculating alpha diversity metrics...")
    alpha_df = calculate_alpha_diversity(dataset.table, metrics=config.diversity.alpha_metrics, tree=dataset.tree)
    alpha_df.join(apply_display_labels(metadata_df, config.labels)).to_csv(tables_dir / 'alpha_diversity.csv')

    for var in group_vars:
        logger.info(f"Analyzing differences in alpha diversity by {var}")
        results = compare_alpha_diversity(alpha_df, metadata_df, var)
        for metric, result in results.items():
            if result['p-value'] is not None:
                logger.info(f"  {metric}: {result['test']} p-value = {result['p-value']:.4f}")
            else:
                logger.info(f"  {metric}: {result['test']} - {result.get('note', 'not tested')}")

        results_df = pd.DataFrame({metric: dict(result) for metric, result in results.items()}).T
        results_df.to_csv(tables_dir / f"alpha_diversity_{var}_stats.csv")

        figures = plot_alpha_diversity_boxplot(alpha_df, metadata_df, var, labels=config.labels)
        for metric, fig in figures.items():
            fig.savefig(figures_dir / f"alpha_{metric}_{var}.png", dpi=dpi, bbox_inches='tight')
            plt.close(fig)

    # Beta diversity
    permanova_rows = []
    for metric in config.diversity.beta_metrics:
        logger.info(f"Calculating {metric} distances...")
        tree = dataset.tree if metric in PHYLOGENETIC_METRICS else None
        beta_dm = calculate_beta_diversity(dataset.table, metric=metric, tree=tree)
        beta_dm.to_data_frame().to_csv(tables_dir / f"beta_{metric}_distances.csv")

        coordinates, explained = pcoa_ordination(beta_dm)
        coordinates.iloc[:, :5].to_csv(tables_dir / f"pcoa_{metric}_coordinates.csv")
        explained.iloc[:5].to_csv(tables_dir / f"pcoa_{metric}_proportion_explained.csv")

        for var in group_vars:
            result = perform_permanova(beta_dm, metadata_df, var, permutations=config.diversity.permutations)
            logger.info(
                f"  PERMANOVA {metric} ~ {var}: pseudo-F = {result['test-statistic']:.4f}, "
                f"p = {result['p-value']:.4f} ({result['note']})"
            )
            permanova_rows.append(dict(result, metric=metric, variable=var))

            for method in ('PCoA', 'NMDS'):
                fig = plot_ordination(beta_dm, metadata_df, var, method=method,
                                      style=config.visualization.facet_variable,
                                      labels=config.labels, title=f'{method} of {metric} ({var})')
                fig.savefig(figures_dir / f"beta_{metric}_{method.lower()}_{var}.png", dpi=dpi, bbox_inches='tight')
                plt.close(fig)

    permanova_df = pd.DataFrame(permanova_rows)
    permanova_df.to_csv(tables_dir / 'permanova_results.csv', index=False)
    logger.info(f"PERMANOVA results saved to {tables_dir / 'permanova_results.csv'}")

    logger.info("Diversity analysis complete!")


if __name__ == "__main__":
    sns.set(style="whitegrid")
    main()
