"""
synthetic_data.py

Creates a realistic-looking synthetic student test-score dataset, plus a
matching statewide SD reference table. Used by the explorer app when no
files are uploaded, and by the tests.

Outputs (when run as a script):
  data/student_scores_synthetic.csv
  data/sd_reference_synthetic.csv
"""

from pathlib import Path
from typing import Dict, Hashable, List, Tuple

import numpy as np
import pandas as pd
from loguru import logger


RACE_LEVELS = ["Asian", "Black", "Hispanic", "Multiracial", "White"]
RACE_PROBS = [0.08, 0.22, 0.25, 0.05, 0.40]

# Score shifts (scale-score points) relative to the reference student
MATH_EFFECTS = {"M": 10.0, "Black": -70.0, "Hispanic": -50.0, "Asian": 30.0, "Multiracial": -15.0}
READ_EFFECTS = {"M": -25.0, "Black": -65.0, "Hispanic": -60.0, "Asian": 15.0, "Multiracial": -10.0}


def generate_student_scores(
    n_students: int = 4000,
    n_schools: int = 40,
    grades: Tuple[int, ...] = (3, 4, 5, 6, 7, 8),
    random_state: int = 42,
) -> pd.DataFrame:
    rng = np.random.default_rng(random_state)

    # --- School assignment; FRPL rate and school quality vary by school
    school_ids = np.array([f"SCH{100 + i}" for i in range(n_schools)])
    school_frpl_rate = rng.uniform(0.2, 0.8, size=n_schools)
    school_effect = rng.normal(0, 35, size=n_schools)
    school_idx = rng.integers(0, n_schools, size=n_students)

    # --- Student profile
    grade = rng.choice(np.asarray(grades), size=n_students)
    gender = rng.choice(["F", "M"], size=n_students)
    race = rng.choice(RACE_LEVELS, size=n_students, p=RACE_PROBS)
    frpl = rng.binomial(1, school_frpl_rate[school_idx])
    ell = rng.binomial(1, np.where(race == "Hispanic", 0.30, 0.05))
    iep = rng.binomial(1, 0.12, size=n_students)

    # --- Scores: grade growth + school + demographic gaps + noise
    base = 1300.0 + 45.0 * (grade - min(grades))
    shared = (
        base
        + school_effect[school_idx]
        - 55.0 * frpl
        - 45.0 * ell
        - 90.0 * iep
    )

    def outcome(effects: Dict[str, float], noise_sd: float) -> np.ndarray:
        demo = (
            np.where(gender == "M", effects["M"], 0.0)
            + np.array([effects.get(r, 0.0) for r in race])
        )
        return shared + demo + rng.normal(0, noise_sd, size=n_students)

    math_ss = outcome(MATH_EFFECTS, 140.0)
    read_ss = outcome(READ_EFFECTS, 150.0)

    # Prior-year scores: last year's growth removed, plus measurement noise
    math_prior = math_ss - 45.0 + rng.normal(0, 60, size=n_students)
    read_prior = read_ss - 45.0 + rng.normal(0, 60, size=n_students)

    df = pd.DataFrame(
        {
            "student_id": [f"S{100000 + i}" for i in range(n_students)],
            "school_code": school_ids[school_idx],
            "grade": grade.astype(int),
            "gender": gender,
            "race_ethnicity": race,
            "frpl": frpl.astype(str),
            "ell": ell.astype(str),
            "iep": iep.astype(str),
            "math_ss": np.round(math_ss, 0),
            "read_ss": np.round(read_ss, 0),
            "math_ss_prior": np.round(math_prior, 0),
            "read_ss_prior": np.round(read_prior, 0),
        }
    )

    # Some missing scores, as in real extracts
    for col in ["math_ss", "read_ss"]:
        df.loc[rng.random(n_students) < 0.03, col] = np.nan

    return df


def sd_reference_table(
    df: pd.DataFrame,
    outcome_columns: List[str],
    grade_column: str = "grade",
) -> Dict[Tuple[Hashable, str], float]:
    """Per-grade SD of each outcome, standing in for statewide SDs."""
    reference = {}
    for outcome in outcome_columns:
        sds = df.groupby(grade_column)[outcome].std()
        for grade, sd in sds.items():
            if pd.notna(sd) and sd > 0:
                reference[(grade, outcome)] = float(sd)
    return reference


def main() -> None:
    out_dir = Path("data")
    out_dir.mkdir(parents=True, exist_ok=True)

    df = generate_student_scores()
    scores_path = out_dir / "student_scores_synthetic.csv"
    df.to_csv(scores_path, index=False)

    reference = sd_reference_table(df, ["math_ss", "read_ss"])
    ref_df = pd.DataFrame(
        [{"grade": g, "outcome": o, "sd": round(sd, 2)} for (g, o), sd in sorted(reference.items())]
    )
    ref_path = out_dir / "sd_reference_synthetic.csv"
    ref_df.to_csv(ref_path, index=False)

    logger.info("Wrote {} rows to {}", len(df), scores_path)
    logger.info("Wrote {} SD reference rows to {}", len(ref_df), ref_path)


if __name__ == "__main__":
    main()
