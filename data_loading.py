"""
data_loading.py

Load and clean the student score table and the statewide SD reference table.

- standardise_columns:
    Lowercase + snake_case column names.
- ensure_numeric:
    Coerce columns to numeric (bad values become NaN).
- load_student_data:
    Read student-level CSV (path or upload) into a DataFrame.
- load_sd_reference:
    Read a long (grade, outcome, sd) CSV into a {(grade, outcome): sd} dict.
"""

from typing import Dict, Hashable, List, Optional, Tuple

import numpy as np
import pandas as pd
from loguru import logger

from errors import SchemaError


def standardise_columns(df: pd.DataFrame) -> pd.DataFrame:
    """Lowercase + snake_case column names."""
    df = df.copy()
    df.columns = (
        df.columns
        .astype(str)
        .str.strip()
        .str.lower()
        .str.replace(r"[^\w]+", "_", regex=True)
        .str.replace("__+", "_", regex=True)
        .str.strip("_")
    )
    return df


def ensure_numeric(df: pd.DataFrame, cols: List[str]) -> pd.DataFrame:
    df = df.copy()
    for c in cols:
        if c in df.columns:
            df[c] = pd.to_numeric(df[c], errors="coerce")
    return df


def _require_columns(df: pd.DataFrame, cols: List[str], what: str) -> None:
    missing = [c for c in cols if c not in df.columns]
    if missing:
        raise SchemaError(f"{what} is missing required columns: {missing}")


def _as_label(value):
    """Category label as a clean string; missing stays missing."""
    if pd.isna(value):
        return np.nan
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value).strip()


def load_student_data(
    source,
    outcome_columns: List[str],
    categorical_columns: List[str],
    grade_column: str = "grade",
    cluster_column: Optional[str] = "school_code",
    extra_numeric: Optional[List[str]] = None,
) -> pd.DataFrame:
    """
    Read the student-level observation table.

    Parameters
    ----------
    source : path or file-like
        CSV file (e.g. a Streamlit upload).
    outcome_columns : list of str
        Score columns; coerced to numeric.
    categorical_columns : list of str
        Demographic columns; stored as string labels so 0/1 flags and text
        codes compare the same way.
    grade_column : str
        Grade column; coerced to integer where possible.
    cluster_column : str, optional
        School (cluster) identifier; stored as string.
    extra_numeric : list of str, optional
        Other numeric columns to keep numeric (e.g. prior-year scores).

    Raises
    ------
    SchemaError
        If any expected column is missing after cleaning.
    """
    df = standardise_columns(pd.read_csv(source))

    expected = [grade_column] + list(outcome_columns) + list(categorical_columns)
    if cluster_column:
        expected.append(cluster_column)
    _require_columns(df, expected, "Student data")

    df = ensure_numeric(df, [grade_column] + list(outcome_columns) + list(extra_numeric or []))
    grades = df[grade_column]
    if grades.notna().all() and (grades % 1 == 0).all():
        df[grade_column] = grades.astype(int)

    for col in categorical_columns:
        df[col] = df[col].map(_as_label)
    if cluster_column:
        df[cluster_column] = df[cluster_column].map(_as_label)

    n_missing = int(df[list(outcome_columns)].isna().sum().sum())
    logger.info("Loaded {} student rows ({} missing scores)", len(df), n_missing)
    return df


def load_sd_reference(source) -> Dict[Tuple[Hashable, str], float]:
    """
    Read the SD reference table.

    Expects columns grade, outcome, sd (header case/spacing is normalised;
    'subject' is accepted for 'outcome'). Each (grade, outcome) must be
    unique and every sd positive.
    """
    df = standardise_columns(pd.read_csv(source))
    if "outcome" not in df.columns and "subject" in df.columns:
        df = df.rename(columns={"subject": "outcome"})
    _require_columns(df, ["grade", "outcome", "sd"], "SD reference table")

    df = ensure_numeric(df, ["grade", "sd"]).dropna(subset=["grade", "outcome"])
    df["outcome"] = df["outcome"].astype(str).str.strip()
    if (df["grade"] % 1 == 0).all():
        df["grade"] = df["grade"].astype(int)

    dupes = df[df.duplicated(["grade", "outcome"], keep=False)]
    if not dupes.empty:
        pairs = sorted(set(zip(dupes["grade"].tolist(), dupes["outcome"])))
        raise SchemaError(f"Duplicate SD reference entries: {pairs}")

    bad = df[~(df["sd"] > 0)]
    if not bad.empty:
        raise SchemaError(
            f"SD reference values must be positive: {list(zip(bad['grade'].tolist(), bad['outcome']))}"
        )

    reference = {
        (grade, outcome): float(sd)
        for grade, outcome, sd in zip(df["grade"].tolist(), df["outcome"], df["sd"])
    }
    logger.info("Loaded {} SD reference entries", len(reference))
    return reference
