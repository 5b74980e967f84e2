"""
gaps.py

Achievement gap detection on student-level test scores.

Implements:

- GapRecord:
    One pairwise comparison (grade × outcome × feature × level pair).
- detect_gaps:
    Rank standardized subgroup gaps across grades and features, return top N.
- gap_table:
    Turn a list of GapRecords into a DataFrame for display.
- standardize_within_grade:
    Z-score an outcome within each grade (reference SD or sample SD).

Effect sizes are (mean_1 - mean_2) / SD where level_1 sorts before level_2.
The SD is the statewide reference SD for (grade, outcome) when supplied,
otherwise the pooled SD of the two groups being compared.
"""

from dataclasses import asdict, dataclass, fields, replace
from itertools import combinations
from typing import Dict, Hashable, Iterable, List, Mapping, Optional, Tuple

import numpy as np
import pandas as pd
from loguru import logger

from errors import MissingReferenceError, SchemaError


SDReference = Mapping[Tuple[Hashable, str], float]

SD_SOURCE_REFERENCE = "reference"
SD_SOURCE_POOLED = "pooled"


# ---------- Records ---------- #

@dataclass(frozen=True)
class GapRecord:
    """A standardized difference between two levels of one feature."""
    grade: Hashable
    outcome: str
    feature: str
    level_1: Hashable
    level_2: Hashable
    n1: int
    n2: int
    mean_1: float
    mean_2: float
    effect_size: float
    median_diff: Optional[float] = None
    sd_source: str = SD_SOURCE_POOLED

    @property
    def gap_magnitude(self) -> float:
        return abs(self.effect_size)

    @property
    def target_population(self) -> Optional[Hashable]:
        """The lower-scoring level, or None when the means are equal."""
        if self.mean_1 < self.mean_2:
            return self.level_1
        if self.mean_2 < self.mean_1:
            return self.level_2
        return None

    def swapped(self) -> "GapRecord":
        """Same comparison with level_1 and level_2 exchanged."""
        return replace(
            self,
            level_1=self.level_2,
            level_2=self.level_1,
            n1=self.n2,
            n2=self.n1,
            mean_1=self.mean_2,
            mean_2=self.mean_1,
            effect_size=-self.effect_size,
            median_diff=None if self.median_diff is None else -self.median_diff,
        )


# ---------- Validation ---------- #

def _is_numeric(series: pd.Series) -> bool:
    return pd.api.types.is_numeric_dtype(series) and not pd.api.types.is_bool_dtype(series)


def _validate_inputs(
    data: pd.DataFrame,
    grade_column: str,
    outcome_column: str,
    feature_columns: Iterable[str],
    top_n: int,
    min_group_size: Optional[int],
) -> List[str]:
    """
    Check the table and arguments once, before any grouping.

    Returns the de-duplicated list of feature columns in the given order.
    """
    if not isinstance(data, pd.DataFrame) or data.empty:
        raise SchemaError("Observation table is empty.")

    for col in (grade_column, outcome_column):
        if col not in data.columns:
            raise SchemaError(f"Column '{col}' not found in data.")

    if not _is_numeric(data[outcome_column]):
        raise SchemaError(
            f"Outcome column '{outcome_column}' must be numeric, got {data[outcome_column].dtype}."
        )

    if isinstance(feature_columns, str):
        feature_columns = [feature_columns]
    features = list(dict.fromkeys(feature_columns))
    if not features:
        raise SchemaError("At least one feature column is required.")

    missing = [c for c in features if c not in data.columns]
    if missing:
        raise SchemaError(f"Feature columns not found in data: {missing}")

    clashing = [c for c in features if c in (grade_column, outcome_column)]
    if clashing:
        raise SchemaError(f"Feature columns overlap grade/outcome columns: {clashing}")

    if isinstance(top_n, bool) or not isinstance(top_n, (int, np.integer)) or top_n < 1:
        raise ValueError(f"top_n must be a positive integer, got {top_n!r}")

    if min_group_size is not None and (
        isinstance(min_group_size, bool)
        or not isinstance(min_group_size, (int, np.integer))
        or min_group_size < 1
    ):
        raise ValueError(f"min_group_size must be a positive integer, got {min_group_size!r}")

    return features


def _reference_sd(
    sd_reference: Optional[SDReference],
    grade: Hashable,
    outcome: str,
    strict: bool,
) -> Optional[float]:
    """
    Look up the reference SD for one grade/outcome.

    Missing entries fall back to None (pooled SD) unless strict, in which
    case MissingReferenceError is raised.
    """
    if sd_reference is None:
        return None

    sd = sd_reference.get((grade, outcome))
    if sd is None or pd.isna(sd):
        if strict:
            raise MissingReferenceError(grade, outcome)
        logger.warning(
            "No reference SD for grade={} outcome={}; using pooled within-sample SD.",
            grade,
            outcome,
        )
        return None

    sd = float(sd)
    if not np.isfinite(sd) or sd <= 0:
        raise ValueError(f"Reference SD for grade={grade!r}, outcome={outcome!r} must be positive, got {sd}")
    return sd


# ---------- Pairwise statistics ---------- #

def pooled_sd(values_1: np.ndarray, values_2: np.ndarray) -> float:
    """Pooled standard deviation of two samples (ddof=1 within each)."""
    n1, n2 = len(values_1), len(values_2)
    dof = n1 + n2 - 2
    if dof <= 0:
        return np.nan

    ss1 = float(np.var(values_1, ddof=1)) * (n1 - 1) if n1 > 1 else 0.0
    ss2 = float(np.var(values_2, ddof=1)) * (n2 - 1) if n2 > 1 else 0.0
    return float(np.sqrt((ss1 + ss2) / dof))


def _observed_levels(grade_df: pd.DataFrame, feature: str, outcome: str) -> Dict[Hashable, np.ndarray]:
    """
    Non-missing outcome values per observed level of one feature.

    Levels are ordered by their string form so the pairing is reproducible.
    """
    observed = grade_df[[feature, outcome]].dropna()
    groups = {
        level: values.to_numpy(dtype=float)
        for level, values in observed.groupby(feature, observed=True, sort=False)[outcome]
        if len(values) > 0
    }
    return {level: groups[level] for level in sorted(groups, key=str)}


def _feature_gaps(
    grade: Hashable,
    grade_df: pd.DataFrame,
    outcome: str,
    feature: str,
    reference_sd: Optional[float],
    min_group_size: Optional[int],
    include_median: bool,
) -> List[GapRecord]:
    groups = _observed_levels(grade_df, feature, outcome)
    records = []

    for level_1, level_2 in combinations(groups, 2):
        values_1, values_2 = groups[level_1], groups[level_2]
        n1, n2 = len(values_1), len(values_2)

        if min_group_size is not None and (n1 < min_group_size or n2 < min_group_size):
            logger.debug(
                "Skipping grade={} {}: {} (n={}) vs {} (n={}) below min_group_size={}",
                grade, feature, level_1, n1, level_2, n2, min_group_size,
            )
            continue

        if reference_sd is not None:
            sd, sd_source = reference_sd, SD_SOURCE_REFERENCE
        else:
            sd, sd_source = pooled_sd(values_1, values_2), SD_SOURCE_POOLED

        if not np.isfinite(sd) or sd <= 0:
            logger.debug(
                "Skipping grade={} {}: {} vs {} has undefined SD",
                grade, feature, level_1, level_2,
            )
            continue

        mean_1, mean_2 = float(values_1.mean()), float(values_2.mean())
        median_diff = None
        if include_median:
            median_diff = (float(np.median(values_1)) - float(np.median(values_2))) / sd

        records.append(
            GapRecord(
                grade=grade,
                outcome=outcome,
                feature=feature,
                level_1=level_1,
                level_2=level_2,
                n1=n1,
                n2=n2,
                mean_1=mean_1,
                mean_2=mean_2,
                effect_size=(mean_1 - mean_2) / sd,
                median_diff=median_diff,
                sd_source=sd_source,
            )
        )

    return records


def _rank_key(record: GapRecord):
    return (
        -record.gap_magnitude,
        record.feature,
        str(record.grade),
        str(record.level_1),
        str(record.level_2),
    )


# ---------- Gap detection ---------- #

def detect_gaps(
    data: pd.DataFrame,
    grade_column: str,
    outcome_column: str,
    feature_columns: Iterable[str],
    top_n: int = 3,
    sd_reference: Optional[SDReference] = None,
    min_group_size: Optional[int] = None,
    strict_reference: bool = False,
    include_median: bool = True,
) -> List[GapRecord]:
    """
    Find the largest standardized subgroup gaps in one outcome.

    Parameters
    ----------
    data : DataFrame
        Student-level records. Not modified.
    grade_column : str
        Column used to partition the data; grades are never pooled.
    outcome_column : str
        Numeric score column.
    feature_columns : iterable of str
        Categorical columns to scan (e.g. ['gender', 'race_ethnicity']).
    top_n : int
        Number of gaps to return.
    sd_reference : mapping, optional
        (grade, outcome_column) -> statewide SD. Used instead of pooled SD.
    min_group_size : int, optional
        Pairs where either level has fewer non-missing scores are dropped.
    strict_reference : bool
        If True, a missing sd_reference entry raises MissingReferenceError
        instead of falling back to the pooled SD.
    include_median : bool
        Also compute the standardized median difference.

    Returns
    -------
    list of GapRecord
        At most top_n records, ordered by |effect_size| descending, then
        feature, grade, level_1, level_2.

    Raises
    ------
    SchemaError
        Empty table, missing columns, or non-numeric outcome.
    MissingReferenceError
        strict_reference=True and a grade has no reference SD.
    """
    features = _validate_inputs(data, grade_column, outcome_column, feature_columns, top_n, min_group_size)

    records: List[GapRecord] = []
    for grade, grade_df in data.groupby(grade_column, sort=True):
        reference_sd = _reference_sd(sd_reference, grade, outcome_column, strict_reference)
        for feature in features:
            records.extend(
                _feature_gaps(grade, grade_df, outcome_column, feature, reference_sd, min_group_size, include_median)
            )

    records.sort(key=_rank_key)
    logger.info(
        "Compared {} level pairs for {} across {} feature(s); returning top {}",
        len(records), outcome_column, len(features), min(top_n, len(records)),
    )
    return records[:top_n]


def gap_table(records: Iterable[GapRecord]) -> pd.DataFrame:
    """Tabulate gap records (one row each) with the target population."""
    columns = [f.name for f in fields(GapRecord)] + ["target_population"]
    rows = [{**asdict(r), "target_population": r.target_population} for r in records]
    return pd.DataFrame(rows, columns=columns)


# ---------- Standardisation ---------- #

def standardize_within_grade(
    data: pd.DataFrame,
    grade_column: str,
    outcome_column: str,
    sd_reference: Optional[SDReference] = None,
    new_column: Optional[str] = None,
    strict_reference: bool = False,
) -> pd.DataFrame:
    """
    Return a copy of data with the outcome z-scored within each grade.

    The within-grade mean is removed and the result divided by the reference
    SD for that grade (if supplied) or the within-grade sample SD. Grades
    missing from sd_reference follow the same fallback / strict policy as
    detect_gaps.
    """
    for col in (grade_column, outcome_column):
        if col not in data.columns:
            raise SchemaError(f"Column '{col}' not found in data.")
    if not _is_numeric(data[outcome_column]):
        raise SchemaError(f"Outcome column '{outcome_column}' must be numeric.")

    out = data.copy()
    target = new_column or f"{outcome_column}_std"

    grouped = out.groupby(grade_column)[outcome_column]
    means = grouped.transform("mean")
    sds = grouped.transform("std")

    if sd_reference is not None:
        grade_sd = {
            grade: _reference_sd(sd_reference, grade, outcome_column, strict_reference)
            for grade in out[grade_column].dropna().unique()
        }
        reference = out[grade_column].map(grade_sd).astype(float)
        sds = reference.fillna(sds)

    sds = sds.where(sds > 0)
    out[target] = (out[outcome_column] - means) / sds
    return out
