"""
modelling.py

OLS regression utilities WITHOUT statsmodels.

Implements:

- prepare_modelling_data:
    Build design matrix X (with intercept) and response y.
- run_ols_regression:
    Run OLS using NumPy linear algebra.
- cluster_robust_covariance:
    CR1 cluster-robust (sandwich) covariance, e.g. clustered by school.
- heteroskedasticity_robust_covariance:
    HC1 covariance (no clustering).
- robust_standard_errors:
    Square roots of a covariance diagonal, with a sanity check.
- summarise_model:
    Return coefficient table (coef, std_err, t_stat, p_value).
- model_diagnostics:
    Return residuals, fitted values, Cook's-like influence measure.
- choose_controls:
    Pick the two covariates used to adjust a demographic gap.
- regression_adjusted_gaps:
    Re-estimate one gap as raw, demographic-adjusted and prior-score-adjusted
    regression coefficients with school-clustered standard errors.
"""

from typing import Dict, Hashable, List, Mapping, Optional, Sequence, Tuple
from math import erf, sqrt

import numpy as np
import pandas as pd
from loguru import logger

from errors import DimensionError, IllConditionedModelError, SchemaError, SingularMatrixError
from gaps import GapRecord


# Main demographic features; each one is adjusted for by the other two.
DEMOGRAPHIC_CONTROLS: Tuple[str, ...] = ("frpl", "race_ethnicity", "gender")

# 95% normal critical value for confidence intervals
Z_95 = 1.959964


# ---------- Helpers ---------- #

def normal_cdf(x: float) -> float:
    """Standard normal CDF using erf."""
    return 0.5 * (1.0 + erf(x / sqrt(2.0)))


def _as_matrix(X) -> Tuple[np.ndarray, List]:
    """Float matrix plus column labels (positions if X is not a DataFrame)."""
    X_mat = np.asarray(X, dtype=float)
    if X_mat.ndim != 2:
        raise DimensionError(f"Design matrix must be 2-D, got shape {X_mat.shape}")
    names = list(X.columns) if isinstance(X, pd.DataFrame) else list(range(X_mat.shape[1]))
    return X_mat, names


def _check_full_rank(X_mat: np.ndarray) -> None:
    k = X_mat.shape[1]
    rank = np.linalg.matrix_rank(X_mat)
    if rank < k:
        raise SingularMatrixError(
            f"X'X is not invertible: design matrix has rank {rank} < {k} columns "
            "(collinear predictors)."
        )


def _invert_xtx(X_mat: np.ndarray) -> np.ndarray:
    _check_full_rank(X_mat)
    try:
        return np.linalg.inv(X_mat.T @ X_mat)
    except np.linalg.LinAlgError as e:
        raise SingularMatrixError(f"X'X is not invertible: {e}") from e


# ---------- Data preparation ---------- #

def prepare_modelling_data(
    df: pd.DataFrame,
    dependent_var: str,
    continuous_vars: List[str],
    categorical_vars: List[str],
    drop_na: bool = True,
    reference_levels: Optional[Mapping[str, Hashable]] = None,
) -> Tuple[pd.DataFrame, pd.Series]:
    """
    Prepare X and y for OLS regression.

    - continuous_vars: numeric predictors (will be cast to float)
    - categorical_vars: converted to 0/1 dummies, one level dropped.
      The dropped (reference) level is reference_levels[var] if given,
      otherwise the first observed level in string order.
      Dummy columns are named '<var>_<level>'.
    - Adds a constant term named 'const' as the first column.

    Returns
    -------
    X : DataFrame (n x k)
    y : Series (n,)
    """
    cols_needed = [dependent_var] + continuous_vars + categorical_vars
    missing = [c for c in cols_needed if c not in df.columns]
    if missing:
        raise SchemaError(f"Columns not found in data: {missing}")

    df_model = df[cols_needed].copy()

    if drop_na:
        df_model = df_model.dropna(subset=cols_needed)

    reference_levels = reference_levels or {}

    # Continuous
    X_cont = df_model[continuous_vars].astype(float) if continuous_vars else pd.DataFrame(index=df_model.index)

    # Categorical → dummies, reference level first so drop_first removes it
    dummies = []
    for var in categorical_vars:
        levels = sorted(df_model[var].dropna().unique(), key=str)
        if var in reference_levels:
            ref = reference_levels[var]
            if ref not in levels:
                raise SchemaError(f"Reference level {ref!r} not observed in '{var}'.")
            levels = [ref] + [lvl for lvl in levels if lvl != ref]
        cat = pd.Categorical(df_model[var], categories=levels)
        dummies.append(
            pd.get_dummies(pd.Series(cat, index=df_model.index), prefix=var, drop_first=True, dtype=float)
        )
    X_cat = pd.concat(dummies, axis=1) if dummies else pd.DataFrame(index=df_model.index)

    # Intercept
    X_const = pd.Series(1.0, index=df_model.index, name="const")

    # Combine
    X = pd.concat([X_const, X_cont, X_cat], axis=1)
    y = df_model[dependent_var].astype(float)

    return X, y


# ---------- OLS using NumPy ---------- #

def run_ols_regression(
    X: pd.DataFrame,
    y: pd.Series,
) -> Dict[str, object]:
    """
    Run OLS regression using NumPy (no statsmodels).

    Returns a dict with:
    - beta: Series of coefficients
    - se: Series of classical standard errors
    - t: Series of t-statistics
    - p: Series of ~p-values (normal approximation)
    - y_hat: Series of fitted values
    - residuals: Series of residuals
    - r2: float R-squared
    - adj_r2: float adjusted R-squared
    - n: int number of observations
    - k: int number of parameters
    - sigma2: float residual variance (SSR / (n - k))
    - XtX_inv: (X'X)^-1, reused by the robust covariance estimators
    - X: the design matrix

    Raises
    ------
    DimensionError
        If y does not match X, or there are no residual degrees of freedom.
    SingularMatrixError
        If X is rank deficient.
    """
    # Convert to matrices
    X_mat = X.to_numpy(dtype=float)
    y_vec = y.to_numpy(dtype=float).reshape(-1, 1)

    n, k = X_mat.shape  # n observations, k parameters
    if y_vec.shape[0] != n:
        raise DimensionError(f"y has {y_vec.shape[0]} rows but X has {n}")
    if n <= k:
        raise DimensionError(f"Need more observations than parameters (n={n}, k={k})")

    # (X'X)^-1 X'y
    XtX_inv = _invert_xtx(X_mat)
    XtY = X_mat.T @ y_vec
    beta = XtX_inv @ XtY  # (k, 1)

    # Predictions & residuals
    y_hat = X_mat @ beta
    residuals = y_vec - y_hat

    # Sum of squares
    ssr = float((residuals.T @ residuals).item())  # residual sum of squares
    sst = float(((y_vec - y_vec.mean()).T @ (y_vec - y_vec.mean())).item())  # total sum of squares

    r2 = 1.0 - ssr / sst if sst > 0 else np.nan
    adj_r2 = 1.0 - (1.0 - r2) * (n - 1) / (n - k)

    # Residual variance
    sigma2 = ssr / (n - k)

    # Var(beta) = sigma^2 (X'X)^-1
    var_beta = sigma2 * XtX_inv
    se = np.sqrt(np.clip(np.diag(var_beta), 0.0, None)).reshape(-1, 1)

    # t-stats & approximate p-values (normal approx)
    with np.errstate(divide="ignore", invalid="ignore"):
        t_stats = beta / se
    t_flat = t_stats.flatten()
    p_vals = np.array([2 * (1 - normal_cdf(abs(t))) if np.isfinite(t) else np.nan for t in t_flat])

    # Wrap into Series
    beta_s = pd.Series(beta.flatten(), index=X.columns, name="coef")
    se_s = pd.Series(se.flatten(), index=X.columns, name="std_err")
    t_s = pd.Series(t_flat, index=X.columns, name="t_stat")
    p_s = pd.Series(p_vals, index=X.columns, name="p_value")

    # Fitted & residuals as Series
    y_hat_s = pd.Series(y_hat.flatten(), index=X.index, name="fitted")
    resid_s = pd.Series(residuals.flatten(), index=X.index, name="residual")

    results = {
        "beta": beta_s,
        "se": se_s,
        "t": t_s,
        "p": p_s,
        "y_hat": y_hat_s,
        "residuals": resid_s,
        "r2": r2,
        "adj_r2": adj_r2,
        "n": n,
        "k": k,
        "sigma2": sigma2,
        "XtX_inv": XtX_inv,
        "X": X,
    }
    return results


# ---------- Robust covariance ---------- #

def _model_parts(model: Mapping[str, object]) -> Tuple[np.ndarray, np.ndarray, List]:
    if "X" not in model or "residuals" not in model:
        raise SchemaError("Model must provide 'X' and 'residuals'.")

    X_mat, names = _as_matrix(model["X"])
    residuals = np.asarray(model["residuals"], dtype=float).reshape(-1)
    if residuals.shape[0] != X_mat.shape[0]:
        raise DimensionError(
            f"Residual vector has {residuals.shape[0]} entries but X has {X_mat.shape[0]} rows"
        )
    return X_mat, residuals, names


def _bread(model: Mapping[str, object], X_mat: np.ndarray) -> np.ndarray:
    """(X'X)^-1, taken from the model when it carries one."""
    _check_full_rank(X_mat)
    XtX_inv = model.get("XtX_inv")
    if XtX_inv is None:
        return _invert_xtx(X_mat)
    XtX_inv = np.asarray(XtX_inv, dtype=float)
    k = X_mat.shape[1]
    if XtX_inv.shape != (k, k):
        raise DimensionError(f"XtX_inv has shape {XtX_inv.shape}, expected {(k, k)}")
    return XtX_inv


def _sandwich(bread: np.ndarray, meat: np.ndarray, names: List) -> pd.DataFrame:
    cov = bread @ meat @ bread
    cov = (cov + cov.T) / 2.0
    return pd.DataFrame(cov, index=names, columns=names)


def cluster_robust_covariance(
    model: Mapping[str, object],
    cluster_ids: Sequence,
) -> pd.DataFrame:
    """
    Cluster-robust (CR1) covariance of OLS coefficients.

    V = (X'X)^-1 [c * sum_g X_g' u_g u_g' X_g] (X'X)^-1
    with c = G/(G-1) * (n-1)/(n-k).

    Parameters
    ----------
    model : mapping
        Fitted model exposing 'X' (n x k), 'residuals' (n,) and optionally
        'XtX_inv' (k x k), e.g. the dict from run_ols_regression.
        Not modified.
    cluster_ids : sequence
        Cluster (e.g. school) of each observation, in the row order of X.

    Returns
    -------
    DataFrame (k x k)
        Symmetric covariance, labelled by coefficient name.

    Raises
    ------
    DimensionError
        len(cluster_ids) != n, missing cluster ids, fewer than 2 clusters,
        or n <= k.
    SingularMatrixError
        If X'X is not invertible.
    """
    X_mat, residuals, names = _model_parts(model)
    n, k = X_mat.shape

    clusters = np.asarray(cluster_ids)
    if clusters.ndim != 1 or clusters.shape[0] != n:
        raise DimensionError(f"Got {clusters.shape[0] if clusters.ndim else 0} cluster ids for {n} observations")

    codes, uniques = pd.factorize(clusters)
    if (codes < 0).any():
        raise DimensionError("Cluster ids contain missing values")

    n_clusters = len(uniques)
    if n_clusters <= 1:
        raise DimensionError(f"Need at least 2 clusters for cluster-robust SEs, got {n_clusters}")
    if n <= k:
        raise DimensionError(f"Need more observations than parameters (n={n}, k={k})")

    bread = _bread(model, X_mat)

    # Cluster scores: sum of X_i * u_i within each cluster -> (G, k)
    scores = X_mat * residuals[:, np.newaxis]
    cluster_scores = pd.DataFrame(scores).groupby(codes).sum().to_numpy()
    meat = cluster_scores.T @ cluster_scores

    adjustment = (n_clusters / (n_clusters - 1)) * ((n - 1) / (n - k))
    logger.debug("CR1 covariance: n={} k={} G={} c={:.4f}", n, k, n_clusters, adjustment)

    return _sandwich(bread, adjustment * meat, names)


def heteroskedasticity_robust_covariance(model: Mapping[str, object]) -> pd.DataFrame:
    """HC1 covariance: n/(n-k) * (X'X)^-1 X' diag(u^2) X (X'X)^-1."""
    X_mat, residuals, names = _model_parts(model)
    n, k = X_mat.shape
    if n <= k:
        raise DimensionError(f"Need more observations than parameters (n={n}, k={k})")

    bread = _bread(model, X_mat)
    meat = X_mat.T @ (X_mat * (residuals ** 2)[:, np.newaxis])
    return _sandwich(bread, (n / (n - k)) * meat, names)


def robust_standard_errors(cov) -> pd.Series:
    """
    Standard errors from a covariance matrix.

    Raises IllConditionedModelError if any diagonal entry is negative.
    """
    if isinstance(cov, pd.DataFrame):
        names = list(cov.index)
        diag = np.diag(cov.to_numpy(dtype=float))
    else:
        diag = np.diag(np.asarray(cov, dtype=float))
        names = list(range(len(diag)))

    bad = [names[i] for i in np.flatnonzero(~(diag >= 0))]
    if bad:
        raise IllConditionedModelError(
            f"Robust variance is negative or undefined for {bad}; model is ill-conditioned."
        )
    return pd.Series(np.sqrt(diag), index=names, name="robust_se")


# ---------- Summaries & diagnostics ---------- #

def summarise_model(
    results: Dict[str, object],
    cov: Optional[pd.DataFrame] = None,
) -> pd.DataFrame:
    """
    Build a coefficient table from the results dict.
    Columns: coef, std_err, t_stat, p_value

    If cov is given (e.g. from cluster_robust_covariance) the standard
    errors, t-statistics and p-values are recomputed from it.
    """
    if cov is None:
        coef_df = pd.concat(
            [results["beta"], results["se"], results["t"], results["p"]],
            axis=1
        )
        coef_df.columns = ["coef", "std_err", "t_stat", "p_value"]
        return coef_df

    beta = results["beta"]
    se = pd.Series(robust_standard_errors(cov).to_numpy(), index=beta.index)
    with np.errstate(divide="ignore", invalid="ignore"):
        t = beta / se
    p = t.apply(lambda v: 2 * (1 - normal_cdf(abs(v))) if np.isfinite(v) else np.nan)
    return pd.DataFrame({"coef": beta, "std_err": se, "t_stat": t, "p_value": p})


def model_diagnostics(results: Dict[str, object]) -> Dict[str, pd.Series]:
    """
    Return residuals, fitted values, and a Cook's-like influence measure.
    """
    X = results["X"]
    residuals = results["residuals"]
    sigma2 = results["sigma2"]
    k = results["k"]

    # Leverage h_ii = x_i (X'X)^-1 x_i', without forming the n x n hat matrix
    X_mat = X.to_numpy(dtype=float)
    h_ii = np.einsum("ij,jk,ik->i", X_mat, results["XtX_inv"], X_mat)

    # D_i ≈ (resid_i^2 / (k * sigma2)) * (h_ii / (1 - h_ii)^2)
    resid_vals = residuals.to_numpy()
    with np.errstate(divide="ignore", invalid="ignore"):
        cooks = (resid_vals**2 / (k * sigma2)) * (h_ii / (1 - h_ii)**2)

    return {
        "residuals": residuals,
        "fitted": results["y_hat"],
        "cooks_distance": pd.Series(cooks, index=X.index, name="cooks_distance"),
    }


# ---------- Regression-adjusted gaps ---------- #

def choose_controls(
    feature_name: str,
    override: Optional[Sequence[str]] = None,
    demographics: Sequence[str] = DEMOGRAPHIC_CONTROLS,
) -> Tuple[str, str]:
    """
    Two covariates to adjust a gap in feature_name for.

    A main demographic is adjusted for the other two; any other feature is
    adjusted for the first two demographics. override, if given, is used
    as-is (it must name two columns other than the feature).
    """
    if override is not None:
        controls = tuple(override)
        if len(controls) != 2:
            raise ValueError(f"Control override must name exactly 2 columns, got {controls}")
        if feature_name in controls:
            raise ValueError(f"'{feature_name}' cannot be a control for its own gap")
        return controls[0], controls[1]

    others = [d for d in demographics if d != feature_name]
    if len(others) < 2:
        raise ValueError(f"Need at least two demographic columns besides '{feature_name}'")
    return others[0], others[1]


def adjusted_gap_sample(
    data: pd.DataFrame,
    gap: GapRecord,
    cluster_column: str,
    grade_column: str = "grade",
    controls: Sequence[str] = (),
    prior_score_column: Optional[str] = None,
) -> pd.DataFrame:
    """
    Rows used to re-estimate a gap: students in gap.grade whose feature is
    level_1 or level_2 and who are complete on the outcome, the cluster id,
    the controls and (if given) the prior score.
    """
    needed = [grade_column, gap.outcome, gap.feature, cluster_column] + list(controls)
    if prior_score_column:
        needed.append(prior_score_column)
    needed = list(dict.fromkeys(needed))
    missing = [c for c in needed if c not in data.columns]
    if missing:
        raise SchemaError(f"Columns not found in data: {missing}")

    mask = (data[grade_column] == gap.grade) & data[gap.feature].isin([gap.level_1, gap.level_2])
    sample = data.loc[mask, needed].dropna()
    if sample.empty:
        raise SchemaError(f"No complete rows for grade={gap.grade!r}, {gap.feature} {gap.level_1!r}/{gap.level_2!r}")
    if sample[gap.feature].nunique() < 2:
        raise SchemaError(f"Only one of {gap.level_1!r}/{gap.level_2!r} has complete rows in grade={gap.grade!r}")
    return sample


def regression_adjusted_gaps(
    data: pd.DataFrame,
    gap: GapRecord,
    cluster_column: str,
    grade_column: str = "grade",
    controls: Optional[Sequence[str]] = None,
    prior_score_column: Optional[str] = None,
    scale: Optional[float] = None,
) -> pd.DataFrame:
    """
    Re-estimate a gap with OLS and school-clustered standard errors.

    Fits, within gap.grade and on students in level_1 or level_2:

    - 'unadjusted': outcome ~ level_1 indicator
    - 'demographic controls': + the two controls (as categorical)
    - 'prior achievement': + prior_score_column (only if given)

    All models use the same sample (rows complete on every column used) so
    differences between rows reflect the controls. level_2 is the reference
    level, so coefficients have the same sign as gap.effect_size.

    Parameters
    ----------
    scale : float, optional
        Divide coefficients and SEs by this (e.g. the reference SD) to
        report them in SD units.

    Returns
    -------
    DataFrame
        Columns: model, term, coef, robust_se, ci_lower, ci_upper, n, clusters
    """
    if controls is None:
        controls = choose_controls(gap.feature)
    controls = list(controls)

    sample = adjusted_gap_sample(
        data, gap, cluster_column, grade_column, controls, prior_score_column
    )

    models = [("unadjusted", [], [])]
    models.append(("demographic controls", [], controls))
    if prior_score_column:
        models.append(("prior achievement", [prior_score_column], controls))

    term = f"{gap.feature}_{gap.level_1}"
    divisor = float(scale) if scale else 1.0
    rows = []
    for label, continuous, categorical in models:
        X, y = prepare_modelling_data(
            sample,
            gap.outcome,
            continuous,
            [gap.feature] + categorical,
            reference_levels={gap.feature: gap.level_2},
        )
        results = run_ols_regression(X, y)
        clusters = sample.loc[y.index, cluster_column]
        cov = cluster_robust_covariance(results, clusters)
        se = robust_standard_errors(cov)

        coef = results["beta"][term] / divisor
        robust_se = se[term] / divisor
        rows.append({
            "model": label,
            "term": term,
            "coef": coef,
            "robust_se": robust_se,
            "ci_lower": coef - Z_95 * robust_se,
            "ci_upper": coef + Z_95 * robust_se,
            "n": results["n"],
            "clusters": int(clusters.nunique()),
        })

    logger.info(
        "Adjusted gap grade={} {} {} vs {}: {}",
        gap.grade, gap.feature, gap.level_1, gap.level_2,
        ", ".join(f"{r['model']}={r['coef']:.3f}" for r in rows),
    )
    return pd.DataFrame(rows)
