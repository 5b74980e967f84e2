import numpy as np
import pandas as pd
import pytest

from errors import DimensionError, IllConditionedModelError, SchemaError, SingularMatrixError
from gaps import detect_gaps
from modelling import (
    adjusted_gap_sample,
    choose_controls,
    cluster_robust_covariance,
    heteroskedasticity_robust_covariance,
    model_diagnostics,
    prepare_modelling_data,
    regression_adjusted_gaps,
    robust_standard_errors,
    run_ols_regression,
    summarise_model,
)


def manual_cr1(X, u, clusters):
    """Textbook loop over clusters, for comparison."""
    X = np.asarray(X, dtype=float)
    u = np.asarray(u, dtype=float)
    clusters = np.asarray(clusters)
    n, k = X.shape
    groups = np.unique(clusters)
    meat = np.zeros((k, k))
    for g in groups:
        idx = clusters == g
        Xg, ug = X[idx], u[idx].reshape(-1, 1)
        meat += Xg.T @ ug @ ug.T @ Xg
    G = len(groups)
    c = (G / (G - 1)) * ((n - 1) / (n - k))
    bread = np.linalg.inv(X.T @ X)
    return bread @ (c * meat) @ bread


# ---------- OLS ---------- #

def test_ols_recovers_exact_coefficients():
    rng = np.random.default_rng(0)
    X = pd.DataFrame({"const": 1.0, "x": rng.normal(size=50)})
    y = pd.Series(3.0 + 1.5 * X["x"])

    results = run_ols_regression(X, y)

    assert results["beta"]["const"] == pytest.approx(3.0)
    assert results["beta"]["x"] == pytest.approx(1.5)
    assert results["n"] == 50 and results["k"] == 2
    np.testing.assert_allclose(results["residuals"], 0.0, atol=1e-9)


def test_ols_collinear_raises():
    rng = np.random.default_rng(1)
    x = rng.normal(size=30)
    X = pd.DataFrame({"const": 1.0, "x": x, "x_twice": 2 * x})

    with pytest.raises(SingularMatrixError):
        run_ols_regression(X, pd.Series(rng.normal(size=30)))


def test_ols_needs_residual_dof():
    X = pd.DataFrame({"const": [1.0, 1.0], "x": [0.0, 1.0]})

    with pytest.raises(DimensionError):
        run_ols_regression(X, pd.Series([1.0, 2.0]))


def test_prepare_modelling_data_reference_level():
    df = pd.DataFrame(
        {
            "score": [1.0, 2.0, 3.0, 4.0, 5.0],
            "prior": [0.5, 1.5, 2.5, 3.5, np.nan],
            "gender": ["F", "M", "F", "M", "F"],
        }
    )
    X, y = prepare_modelling_data(df, "score", ["prior"], ["gender"], reference_levels={"gender": "M"})

    assert list(X.columns) == ["const", "prior", "gender_F"]
    assert len(X) == len(y) == 4
    assert X["gender_F"].tolist() == [1.0, 0.0, 1.0, 0.0]


def test_prepare_modelling_data_unknown_reference():
    df = pd.DataFrame({"score": [1.0, 2.0], "gender": ["F", "M"]})

    with pytest.raises(SchemaError):
        prepare_modelling_data(df, "score", [], ["gender"], reference_levels={"gender": "X"})


# ---------- Cluster-robust covariance ---------- #

def test_cluster_robust_matches_manual_formula(clustered_regression):
    X, y, schools = clustered_regression
    results = run_ols_regression(X, y)

    cov = cluster_robust_covariance(results, schools)

    expected = manual_cr1(X, results["residuals"], schools)
    np.testing.assert_allclose(cov.to_numpy(), expected, rtol=1e-10, atol=1e-12)
    assert list(cov.index) == list(cov.columns) == ["const", "x1", "x2"]


def test_cluster_robust_is_symmetric(clustered_regression):
    X, y, schools = clustered_regression
    cov = cluster_robust_covariance(run_ols_regression(X, y), schools)

    assert cov.shape == (3, 3)
    np.testing.assert_array_equal(cov.to_numpy(), cov.to_numpy().T)
    assert (np.diag(cov) > 0).all()


def test_cluster_robust_does_not_mutate_model(clustered_regression):
    X, y, schools = clustered_regression
    results = run_ols_regression(X, y)
    residuals_before = results["residuals"].copy()
    X_before = results["X"].copy()

    cluster_robust_covariance(results, schools)

    pd.testing.assert_series_equal(results["residuals"], residuals_before)
    pd.testing.assert_frame_equal(results["X"], X_before)


def test_cluster_robust_without_cached_inverse(clustered_regression):
    X, y, schools = clustered_regression
    results = run_ols_regression(X, y)
    bare = {"X": results["X"], "residuals": results["residuals"]}

    np.testing.assert_allclose(
        cluster_robust_covariance(bare, schools), cluster_robust_covariance(results, schools)
    )


def test_singleton_clusters_equal_hc1(clustered_regression):
    X, y, _ = clustered_regression
    results = run_ols_regression(X, y)

    clustered = cluster_robust_covariance(results, np.arange(len(y)))
    hc1 = heteroskedasticity_robust_covariance(results)

    np.testing.assert_allclose(clustered.to_numpy(), hc1.to_numpy(), rtol=1e-10)


def test_clustering_inflates_se_with_school_effects(clustered_regression):
    X, y, schools = clustered_regression
    results = run_ols_regression(X, y)

    clustered = robust_standard_errors(cluster_robust_covariance(results, schools))
    hc1 = robust_standard_errors(heteroskedasticity_robust_covariance(results))

    assert clustered["const"] > hc1["const"]


def test_single_cluster_raises(clustered_regression):
    X, y, _ = clustered_regression
    results = run_ols_regression(X, y)

    with pytest.raises(DimensionError):
        cluster_robust_covariance(results, ["S1"] * len(y))


def test_cluster_length_mismatch_raises(clustered_regression):
    X, y, schools = clustered_regression
    results = run_ols_regression(X, y)

    with pytest.raises(DimensionError):
        cluster_robust_covariance(results, schools[:-1])


def test_missing_cluster_id_raises(clustered_regression):
    X, y, schools = clustered_regression
    results = run_ols_regression(X, y)
    schools = schools.astype(object)
    schools.iloc[0] = None

    with pytest.raises(DimensionError):
        cluster_robust_covariance(results, schools)


def test_collinear_design_raises_singular():
    rng = np.random.default_rng(5)
    x = rng.normal(size=40)
    X = pd.DataFrame({"const": 1.0, "x": x, "x_copy": x * 3.0})
    model = {"X": X, "residuals": pd.Series(rng.normal(size=40))}

    with pytest.raises(SingularMatrixError):
        cluster_robust_covariance(model, np.repeat(["a", "b", "c", "d"], 10))


def test_negative_variance_is_ill_conditioned():
    cov = pd.DataFrame([[1.0, 0.0], [0.0, -1e-12]], index=["const", "x"], columns=["const", "x"])

    with pytest.raises(IllConditionedModelError):
        robust_standard_errors(cov)


def test_robust_standard_errors():
    cov = np.array([[4.0, 1.0], [1.0, 9.0]])

    se = robust_standard_errors(cov)

    assert se.tolist() == [2.0, 3.0]


def test_summarise_model_with_robust_cov(clustered_regression):
    X, y, schools = clustered_regression
    results = run_ols_regression(X, y)
    cov = cluster_robust_covariance(results, schools)

    classical = summarise_model(results)
    robust = summarise_model(results, cov)

    assert list(robust.columns) == ["coef", "std_err", "t_stat", "p_value"]
    pd.testing.assert_series_equal(robust["coef"], classical["coef"])
    assert robust.loc["x1", "std_err"] == pytest.approx(np.sqrt(cov.loc["x1", "x1"]))
    assert robust.loc["x1", "t_stat"] == pytest.approx(robust.loc["x1", "coef"] / robust.loc["x1", "std_err"])
    assert 0.0 <= robust.loc["x2", "p_value"] <= 1.0


def test_model_diagnostics(clustered_regression):
    X, y, _ = clustered_regression
    results = run_ols_regression(X, y)

    diagnostics = model_diagnostics(results)

    assert set(diagnostics) == {"residuals", "fitted", "cooks_distance"}
    assert len(diagnostics["cooks_distance"]) == len(y)
    assert (diagnostics["cooks_distance"] >= 0).all()


# ---------- Controls ---------- #

@pytest.mark.parametrize(
    "feature, expected",
    [
        ("gender", ("frpl", "race_ethnicity")),
        ("race_ethnicity", ("frpl", "gender")),
        ("frpl", ("race_ethnicity", "gender")),
        ("ell", ("frpl", "race_ethnicity")),
    ],
)
def test_choose_controls_defaults(feature, expected):
    assert choose_controls(feature) == expected


def test_choose_controls_override():
    assert choose_controls("ell", override=["iep", "gender"]) == ("iep", "gender")


@pytest.mark.parametrize("override", [["gender"], ["ell", "gender"], ["a", "b", "c"]])
def test_choose_controls_bad_override(override):
    with pytest.raises(ValueError):
        choose_controls("ell", override=override)


# ---------- Regression-adjusted gaps ---------- #

def test_unadjusted_gap_matches_detected_gap(synthetic_scores):
    gap = detect_gaps(synthetic_scores, "grade", "math_ss", ["race_ethnicity"], top_n=1)[0]

    table = regression_adjusted_gaps(
        synthetic_scores, gap, cluster_column="school_code", prior_score_column="math_ss_prior"
    )

    assert table["model"].tolist() == ["unadjusted", "demographic controls", "prior achievement"]
    unadjusted = table.iloc[0]
    assert unadjusted["coef"] == pytest.approx(gap.mean_1 - gap.mean_2)
    assert unadjusted["n"] == gap.n1 + gap.n2
    assert np.sign(unadjusted["coef"]) == np.sign(gap.effect_size)
    assert (table["robust_se"] > 0).all()
    assert (table["ci_lower"] < table["coef"]).all() and (table["coef"] < table["ci_upper"]).all()
    assert (table["clusters"] > 1).all()


def test_adjusted_gap_in_sd_units(synthetic_scores):
    reference = {(g, "math_ss"): 150.0 for g in synthetic_scores["grade"].unique()}
    gap = detect_gaps(
        synthetic_scores, "grade", "math_ss", ["frpl"], top_n=1, sd_reference=reference
    )[0]

    table = regression_adjusted_gaps(
        synthetic_scores, gap, cluster_column="school_code", controls=("race_ethnicity", "gender"), scale=150.0
    )

    assert len(table) == 2
    assert table.iloc[0]["coef"] == pytest.approx(gap.effect_size)


def test_adjusted_gap_missing_column(synthetic_scores):
    gap = detect_gaps(synthetic_scores, "grade", "math_ss", ["gender"], top_n=1)[0]

    with pytest.raises(SchemaError):
        regression_adjusted_gaps(synthetic_scores, gap, cluster_column="district_code")


def test_adjusted_gap_sample_drops_missing_cluster(synthetic_scores):
    gap = detect_gaps(synthetic_scores, "grade", "math_ss", ["gender"], top_n=1)[0]
    data = synthetic_scores.copy()
    in_gap = data.index[(data["grade"] == gap.grade) & data["gender"].isin([gap.level_1, gap.level_2])]
    data.loc[in_gap[:5], "school_code"] = None

    sample = adjusted_gap_sample(
        data, gap, "school_code", controls=("frpl", "race_ethnicity"), prior_score_column="math_ss_prior"
    )
    table = regression_adjusted_gaps(
        data, gap, cluster_column="school_code", prior_score_column="math_ss_prior"
    )

    assert not set(in_gap[:5]) & set(sample.index)
    assert sample["school_code"].notna().all()
    assert list(sample.columns) == ["grade", "math_ss", "gender", "school_code", "frpl", "race_ethnicity", "math_ss_prior"]
    assert (table["n"] == len(sample)).all()


def test_adjusted_gap_sample_missing_column(synthetic_scores):
    gap = detect_gaps(synthetic_scores, "grade", "math_ss", ["gender"], top_n=1)[0]

    with pytest.raises(SchemaError):
        adjusted_gap_sample(synthetic_scores, gap, "school_code", prior_score_column="math_ss_last_year")
