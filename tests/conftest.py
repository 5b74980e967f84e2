import numpy as np
import pandas as pd
import pytest

from synthetic_data import generate_student_scores


def exact_sample(rng, n, mean, sd):
    """n values with exactly this sample mean and sample SD (ddof=1)."""
    z = rng.normal(size=n)
    z = (z - z.mean()) / z.std(ddof=1)
    return mean + sd * z


@pytest.fixture
def gender_scores():
    """100 students, grades 3 and 4, girls 1460 vs boys 1500, SD 167 in every group."""
    rng = np.random.default_rng(7)
    frames = []
    for grade in (3, 4):
        for gender, mean in (("F", 1460.0), ("M", 1500.0)):
            frames.append(
                pd.DataFrame(
                    {
                        "grade": grade,
                        "gender": gender,
                        "math_ss": exact_sample(rng, 25, mean, 167.0),
                    }
                )
            )
    return pd.concat(frames, ignore_index=True)


@pytest.fixture
def small_group_scores():
    """
    One grade with a large gap between a 40-student group and a 300-student
    group ('ell'), and a smaller gap between two 170-student groups ('gender').
    """
    rng = np.random.default_rng(11)
    ell = pd.DataFrame(
        {
            "ell": ["1"] * 40 + ["0"] * 300,
            "math_ss": np.concatenate([
                exact_sample(rng, 40, 1300.0, 100.0),
                exact_sample(rng, 300, 1500.0, 100.0),
            ]),
        }
    )
    ell["gender"] = np.where(np.arange(len(ell)) % 2 == 0, "F", "M")
    ell.loc[ell["gender"] == "M", "math_ss"] += 20.0
    ell["grade"] = 5
    return ell


@pytest.fixture(scope="session")
def synthetic_scores():
    return generate_student_scores(n_students=3000, n_schools=30, random_state=3)


@pytest.fixture
def clustered_regression():
    """y = 1 + 2 x1 - 0.5 x2 + school effect + noise, 12 schools."""
    rng = np.random.default_rng(123)
    n_schools, per_school = 12, 15
    school = np.repeat([f"S{i}" for i in range(n_schools)], per_school)
    school_effect = np.repeat(rng.normal(0, 1.0, n_schools), per_school)
    n = len(school)
    x1 = rng.normal(size=n)
    x2 = rng.normal(size=n)
    y = 1.0 + 2.0 * x1 - 0.5 * x2 + school_effect + rng.normal(0, 0.5, size=n)

    X = pd.DataFrame({"const": 1.0, "x1": x1, "x2": x2})
    return X, pd.Series(y, name="y"), pd.Series(school, name="school_code")
