#!/usr/bin/env python3
"""
Identify differentially abundant sequence variants between experimental groups.

This script:
1. Loads the assembled dataset (unrarefied counts)
2. Restricts samples per configured comparison (e.g. one timepoint)
3. Filters features by prevalence and abundance
4. Tests each feature (ZINB GLM, Wilcoxon or Kruskal-Wallis)
5. Applies Benjamini-Hochberg correction and saves result tables
6. Creates volcano plots of each comparison

Comparisons are configured under differential_abundance.comparisons, e.g.

    comparisons:
      - name: D7_FMT_vs_VEH
        variable: Treatment
        reference: VEH
        subset: {Timepoint: D7, Injury: TBI}

Without comparisons, every metadata group variable is tested on all samples.

Usage:
    python scripts/03_differential_abundance.py [--config CONFIG_FILE]
"""

import argparse
import logging
import sys
from pathlib import Path

import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt
import pandas as pd

# Add tools directory to Python path
project_root = Path(__file__).resolve().parents[1]
sys.path.append(str(project_root / 'tools'))

from asv_tools import AsvToolsError, load_config, setup_logger
from asv_tools.labels import display_value
from asv_tools.pipeline import prepare_for_analysis
from asv_tools.stats import differential_abundance_analysis, significant_features
from asv_tools.viz import plot_volcano


def parse_args():
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description='Identify differentially abundant sequence variants')
    parser.add_argument('--config', type=str, default='config/analysis_parameters.yml',
                        help='Path to configuration file')
    parser.add_argument('--method', choices=['zinb', 'wilcoxon', 'kruskal'], default=None,
                        help='Override the configured test')
    parser.add_argument('--log-level', default='INFO',
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
                        help='Logging level (default: INFO)')
    return parser.parse_args()


def subset_mask(metadata_df, subset):
    """Boolean sample mask for {column: value or [values]}."""
    mask = pd.Series(True, index=metadata_df.index)
    for column, values in (subset or {}).items():
        if column not in metadata_df.columns:
            raise KeyError(f"Subset column '{column}' not found in metadata")
        if not isinstance(values, (list, tuple)):
            values = [values]
        mask &= metadata_df[column].astype(str).isin([str(v) for v in values])
    return mask


def comparison_name(comparison):
    if 'name' in comparison:
        return comparison['name']
    parts = [comparison['variable']]
    for column, values in (comparison.get('subset') or {}).items():
        values = values if isinstance(values, (list, tuple)) else [values]
        parts.append(f"{column}-{'+'.join(str(v) for v in values)}")
    return '_'.join(parts)


def run_comparison(dataset, comparison, da_config, method):
    """
    Subset, filter and test one comparison.

    Returns:
    --------
    tuple of (pandas.DataFrame, pandas.DataFrame) or None
        The results and the tested table, or None when the comparison is
        skipped (no samples or features left, too few groups)
    """
    logger = logging.getLogger('asv_tools')
    name = comparison_name(comparison)

    try:
        subset = dataset.subset_samples(
            subset_mask(dataset.metadata, comparison.get('subset')), prune_features=True
        )
        subset = subset.filter_prevalence(da_config.min_prevalence, da_config.min_abundance)

        if da_config.rank:
            table = subset.agglomerate(da_config.rank)
            taxonomy = None
        else:
            table = subset.table
            taxonomy = subset.taxonomy

        results_df = differential_abundance_analysis(
            table, subset.metadata, comparison['variable'], method=method,
            reference=comparison.get('reference'), taxonomy=taxonomy,
        )
    except (KeyError, ValueError) as e:
        logger.warning(f"Skipping comparison {name}: {e}")
        return None

    return results_df, table


def main():
    """Main function to run the configured comparisons."""
    args = parse_args()

    config_path = Path(args.config)
    if not config_path.is_absolute():
        config_path = project_root / config_path
    config = load_config(config_path, base_dir=project_root)
    logger = setup_logger(log_file=config.paths.log_file, log_level=getattr(logging, args.log_level))

    da_config = config.differential_abundance
    figures_dir = config.paths.figures_dir / 'differential_abundance'
    tables_dir = config.paths.tables_dir / 'differential_abundance'
    figures_dir.mkdir(exist_ok=True, parents=True)
    tables_dir.mkdir(exist_ok=True, parents=True)

    try:
        dataset = prepare_for_analysis(config)
    except (AsvToolsError, FileNotFoundError) as e:
        logger.error(str(e))
        logger.error("Please run 01_run_pipeline.py first.")
        sys.exit(1)

    comparisons = da_config.comparisons or [
        {'variable': var} for var in config.metadata.group_variables if var in dataset.metadata.columns
    ]

    summary = []
    for comparison in comparisons:
        name = comparison_name(comparison)
        variable = comparison['variable']
        method = args.method or comparison.get('method', da_config.method)
        logger.info(f"Comparison {name}: {variable} ({method})")

        outcome = run_comparison(dataset, comparison, da_config, method)
        if outcome is None:
            continue
        results_df, table = outcome

        for column in ('Group1', 'Group2'):
            if column in results_df.columns:
                results_df[column] = results_df[column].map(lambda v: display_value(variable, v, config.labels))

        results_df.to_csv(tables_dir / f"{name}.csv", index=False)
        significant = significant_features(results_df, da_config.alpha)
        logger.info(f"  {len(significant)} of {table.shape[1]} features significant at q < {da_config.alpha}")
        summary.append({'comparison': name, 'variable': variable, 'method': method,
                        'samples': table.shape[0], 'features': table.shape[1],
                        'significant': len(significant)})

        if 'Log2 Fold Change' in results_df.columns:
            label_column = 'Genus' if 'Genus' in results_df.columns else 'Feature'
            fig = plot_volcano(results_df, alpha=da_config.alpha, label_column=label_column, title=name)
            fig.savefig(figures_dir / f"volcano_{name}.png", dpi=config.visualization.figure_dpi, bbox_inches='tight')
            plt.close(fig)

    if summary:
        pd.DataFrame(summary).to_csv(tables_dir / 'summary.csv', index=False)

    logger.info("Differential abundance analysis complete!")


if __name__ == "__main__":
    main()
