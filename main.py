"""
main.py

Headless achievement-gap report.

Usage:
    # Synthetic demo data, settings from config.yaml
    python main.py

    # Real extracts
    python main.py --data students.csv --sd-reference state_sd.csv

    # Only math, top 5 gaps
    python main.py --data students.csv --outcome math_ss --top-n 5

    # Adjusted gaps in within-grade SD units
    python main.py --data students.csv --standardize
"""

import argparse
import sys
from dataclasses import replace
from pathlib import Path
from typing import List, Optional

import pandas as pd
from loguru import logger

from config import DEFAULT_CONFIG_PATH, AnalysisConfig, load_config
from data_loading import load_sd_reference, load_student_data
from errors import GapAnalysisError
from gaps import detect_gaps, gap_table, standardize_within_grade
from logging_config import configure_logging
from modelling import choose_controls, regression_adjusted_gaps
from synthetic_data import generate_student_scores, sd_reference_table


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Rank achievement gaps and re-estimate them with school-clustered OLS.",
        formatter_class=argparse.RawTextHelpFormatter,
    )
    parser.add_argument(
        "--config",
        type=str,
        default=str(DEFAULT_CONFIG_PATH),
        help="YAML settings file (defaults are used if it does not exist).",
    )
    parser.add_argument(
        "--data",
        type=str,
        default=None,
        help="Student-level CSV. If omitted, synthetic data is generated.",
    )
    parser.add_argument(
        "--sd-reference",
        type=str,
        default=None,
        help="CSV with grade, outcome, sd columns (statewide SDs).",
    )
    parser.add_argument(
        "--outcome",
        action="append",
        default=None,
        help="Outcome column to analyse (repeatable). Defaults to config outcome_columns.",
    )
    parser.add_argument(
        "--top-n",
        type=int,
        default=None,
        help="Number of gaps to report per outcome.",
    )
    parser.add_argument(
        "--standardize",
        action="store_true",
        help="Fit the adjusted models on the outcome z-scored within grade.",
    )
    return parser.parse_args(argv)


def run_report(
    data: pd.DataFrame,
    config: AnalysisConfig,
    sd_reference=None,
    outcomes: Optional[List[str]] = None,
    top_n: Optional[int] = None,
) -> List[pd.DataFrame]:
    """
    Detect gaps for each outcome, then fit the adjusted models for each gap.

    Returns one adjusted-gap table per detected gap (also printed). A gap
    whose models cannot be fitted is logged and left out. With
    config.standardize_outcome the models use the outcome z-scored within
    grade, so coefficients are in SD units.
    """
    adjusted_tables = []
    for outcome in outcomes or config.outcome_columns:
        records = detect_gaps(
            data,
            config.grade_column,
            outcome,
            config.feature_columns,
            top_n=top_n or config.top_n,
            sd_reference=sd_reference,
            min_group_size=config.min_group_size,
            strict_reference=config.strict_reference,
        )
        print(f"\n=== Top gaps: {outcome} ===")
        print(gap_table(records).to_string(index=False))

        fit_outcome = outcome
        fit_data = data
        if config.standardize_outcome:
            fit_outcome = f"{outcome}_std"
            fit_data = standardize_within_grade(
                data,
                config.grade_column,
                outcome,
                sd_reference=sd_reference,
                new_column=fit_outcome,
                strict_reference=config.strict_reference,
            )

        prior = config.prior_score_columns.get(outcome)
        if prior and prior not in data.columns:
            logger.info("No '{}' column; skipping the prior-achievement model for {}.", prior, outcome)
            prior = None

        for gap in records:
            controls = choose_controls(gap.feature, override=config.controls_for(gap.feature))
            scale = None
            if sd_reference is not None and not config.standardize_outcome:
                scale = sd_reference.get((gap.grade, outcome))
            try:
                table = regression_adjusted_gaps(
                    fit_data,
                    replace(gap, outcome=fit_outcome),
                    cluster_column=config.cluster_column,
                    grade_column=config.grade_column,
                    controls=controls,
                    prior_score_column=prior,
                    scale=scale,
                )
            except GapAnalysisError as e:
                logger.error(
                    "Adjusted models failed for grade {} {} {} vs {}: {}",
                    gap.grade, gap.feature, gap.level_1, gap.level_2, e,
                )
                continue
            print(f"\n--- Grade {gap.grade} {gap.feature}: {gap.level_1} vs {gap.level_2} "
                  f"(controls: {', '.join(controls)}) ---")
            print(table.to_string(index=False))
            adjusted_tables.append(table)

    return adjusted_tables


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)

    try:
        config_path = Path(args.config)
        if config_path == DEFAULT_CONFIG_PATH and not config_path.exists():
            config_path = None
        config = load_config(config_path)
    except (FileNotFoundError, GapAnalysisError) as e:
        configure_logging()
        logger.error("Could not load config: {}", e)
        return 1

    configure_logging(config.log_level)
    if args.standardize:
        config = replace(config, standardize_outcome=True)

    try:
        if args.data:
            data = load_student_data(
                args.data,
                outcome_columns=config.outcome_columns,
                categorical_columns=config.categorical_columns(),
                grade_column=config.grade_column,
                cluster_column=config.cluster_column,
                extra_numeric=list(config.prior_score_columns.values()),
            )
        else:
            logger.info("No --data given; generating synthetic student scores.")
            data = generate_student_scores()

        if args.sd_reference:
            sd_reference = load_sd_reference(args.sd_reference)
        elif not args.data:
            sd_reference = sd_reference_table(data, config.outcome_columns, config.grade_column)
        else:
            sd_reference = None

        run_report(data, config, sd_reference=sd_reference, outcomes=args.outcome, top_n=args.top_n)
    except (FileNotFoundError, GapAnalysisError) as e:
        logger.error("Report failed: {}", e)
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
