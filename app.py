from dataclasses import replace

import altair as alt
import pandas as pd
import streamlit as st

from config import DEFAULT_CONFIG_PATH, load_config
from data_loading import load_sd_reference, load_student_data
from errors import GapAnalysisError
from gaps import detect_gaps, gap_table, standardize_within_grade
from logging_config import configure_logging
from modelling import (
    adjusted_gap_sample,
    choose_controls,
    model_diagnostics,
    prepare_modelling_data,
    regression_adjusted_gaps,
    run_ols_regression,
)
from synthetic_data import generate_student_scores, sd_reference_table
from visualisations import (
    adjusted_gap_chart,
    gap_bar_chart,
    gap_label,
    group_means_by_grade,
    residual_plot,
)


# ============================================================
# Setup
# ============================================================

config = load_config(DEFAULT_CONFIG_PATH if DEFAULT_CONFIG_PATH.exists() else None)
configure_logging(config.log_level)


@st.cache_data
def get_synthetic_data():
    df = generate_student_scores()
    return df, sd_reference_table(df, config.outcome_columns, config.grade_column)


def score_boxplot(df, outcome_col, feature_col):
    """Altair boxplot of scores by feature level."""
    data = df.dropna(subset=[outcome_col, feature_col]).copy()
    if data.empty:
        return alt.Chart().mark_text(text="No data").properties(height=200)

    data[feature_col] = data[feature_col].astype(str)
    chart = alt.Chart(data).mark_boxplot().encode(
        x=alt.X(f"{feature_col}:N", title=feature_col),
        y=alt.Y(f"{outcome_col}:Q", title=outcome_col),
        tooltip=[feature_col, outcome_col]
    ).properties(
        title=f"{outcome_col} by {feature_col}",
        height=350
    )
    return chart


# ============================================================
# Streamlit UI
# ============================================================

st.set_page_config(page_title="Achievement Gap Explorer", layout="wide")
st.title("Achievement Gap Explorer")

st.markdown(
    """
Upload a student-level score file (and optionally statewide SDs by grade and subject),
or explore the built-in synthetic data. The app ranks subgroup gaps within each grade,
then re-estimates a chosen gap with OLS and school-clustered standard errors.
"""
)

col1, col2 = st.columns(2)
with col1:
    student_file = st.file_uploader("Student scores CSV", type="csv")
with col2:
    sd_file = st.file_uploader("SD reference CSV (grade, outcome, sd) – optional", type="csv")

try:
    if student_file:
        data = load_student_data(
            student_file,
            outcome_columns=config.outcome_columns,
            categorical_columns=config.categorical_columns(),
            grade_column=config.grade_column,
            cluster_column=config.cluster_column,
            extra_numeric=list(config.prior_score_columns.values()),
        )
        sd_reference = load_sd_reference(sd_file) if sd_file else None
    else:
        st.info("No file uploaded. Using synthetic data.")
        data, sd_reference = get_synthetic_data()
        if sd_file:
            sd_reference = load_sd_reference(sd_file)
except GapAnalysisError as e:
    st.error("Input data failed validation.")
    st.code(str(e))
    st.stop()

# Sidebar controls
st.sidebar.header("Gap detection")
outcome = st.sidebar.selectbox("Outcome", config.outcome_columns)
features = st.sidebar.multiselect(
    "Features to scan",
    [c for c in config.feature_columns if c in data.columns],
    default=[c for c in config.feature_columns if c in data.columns],
)
top_n = st.sidebar.slider("Gaps to show", min_value=1, max_value=20, value=config.top_n)
min_group_size = st.sidebar.number_input(
    "Minimum group size",
    min_value=1,
    value=config.min_group_size or 1,
    step=1,
    help="Level pairs where either group has fewer scored students are not ranked.",
)
use_reference = st.sidebar.checkbox(
    "Use SD reference table",
    value=sd_reference is not None,
    disabled=sd_reference is None,
)
strict = st.sidebar.checkbox(
    "Stop if a grade has no reference SD",
    value=config.strict_reference,
    disabled=not use_reference,
)

if not features:
    st.warning("Select at least one feature to scan.")
    st.stop()

try:
    records = detect_gaps(
        data,
        config.grade_column,
        outcome,
        features,
        top_n=top_n,
        sd_reference=sd_reference if use_reference else None,
        min_group_size=int(min_group_size),
        strict_reference=strict,
    )
except GapAnalysisError as e:
    st.error("Gap detection failed.")
    st.code(str(e))
    st.stop()

tab_data, tab_gaps, tab_reg = st.tabs(["Data overview", "Gaps", "Regression-adjusted gaps"])

# ---------------- Data overview ----------------
with tab_data:
    st.subheader("Preview")
    st.dataframe(data.head(200))

    st.subheader("Students by grade")
    st.write(data[config.grade_column].value_counts().sort_index())

    st.subheader("Summary statistics (numeric)")
    st.write(data.describe().T)

# ---------------- Gaps ----------------
with tab_gaps:
    if not records:
        st.warning("No level pairs met the minimum group size.")
    else:
        st.subheader("Ranked gaps")
        st.plotly_chart(gap_bar_chart(records), use_container_width=True)
        st.dataframe(gap_table(records))

        choice = st.selectbox("Inspect gap", range(len(records)), format_func=lambda i: gap_label(records[i]))
        gap = records[choice]
        st.caption(f"Target population: {gap.target_population}")

        st.plotly_chart(
            group_means_by_grade(
                data,
                config.grade_column,
                outcome,
                gap.feature,
                levels=[gap.level_1, gap.level_2],
                gap=gap,
            ),
            use_container_width=True,
        )

        grade_df = data[data[config.grade_column] == gap.grade]
        st.altair_chart(score_boxplot(grade_df, outcome, gap.feature), use_container_width=True)

# ---------------- Regression ----------------
with tab_reg:
    if not records:
        st.info("Detect at least one gap first.")
        st.stop()

    choice = st.selectbox(
        "Gap to adjust",
        range(len(records)),
        format_func=lambda i: gap_label(records[i]),
        key="reg_gap",
    )
    gap = records[choice]

    default_controls = choose_controls(gap.feature, override=config.controls_for(gap.feature))
    candidates = [c for c in data.columns if c not in (gap.feature, outcome, config.grade_column)]
    controls = st.multiselect(
        "Controls (pick two)",
        candidates,
        default=[c for c in default_controls if c in candidates],
        max_selections=2,
    )
    prior_col = config.prior_score_columns.get(outcome)
    use_prior = st.checkbox(
        f"Add prior achievement ({prior_col})",
        value=bool(prior_col and prior_col in data.columns),
        disabled=not (prior_col and prior_col in data.columns),
    )
    standardize = st.checkbox(
        "Z-score the outcome within grade",
        value=config.standardize_outcome,
        help="Coefficients are reported in within-grade SD units "
             "(reference SD where available, else the grade SD).",
    )

    if len(controls) != 2:
        st.warning("Select exactly two controls.")
        st.stop()

    controls = choose_controls(gap.feature, override=controls)
    prior_score_column = prior_col if use_prior else None
    reference = sd_reference if use_reference else None

    try:
        fit_data, fit_gap, scale = data, gap, None
        if standardize:
            fit_data = standardize_within_grade(
                data,
                config.grade_column,
                outcome,
                sd_reference=reference,
                new_column=f"{outcome}_std",
                strict_reference=strict,
            )
            fit_gap = replace(gap, outcome=f"{outcome}_std")
        elif reference:
            scale = reference.get((gap.grade, outcome))

        with st.spinner("Fitting NumPy-based OLS models..."):
            table = regression_adjusted_gaps(
                fit_data,
                fit_gap,
                cluster_column=config.cluster_column,
                grade_column=config.grade_column,
                controls=controls,
                prior_score_column=prior_score_column,
                scale=scale,
            )
            sample = adjusted_gap_sample(
                fit_data,
                fit_gap,
                config.cluster_column,
                config.grade_column,
                controls,
                prior_score_column,
            )
            X, y = prepare_modelling_data(
                sample,
                fit_gap.outcome,
                [prior_score_column] if prior_score_column else [],
                [gap.feature] + list(controls),
                reference_levels={gap.feature: gap.level_2},
            )
            diagnostics = model_diagnostics(run_ols_regression(X, y))
    except (GapAnalysisError, ValueError) as e:
        st.error("Model could not be fitted.")
        st.code(str(e))
        st.stop()

    units = "SD units" if (scale or standardize) else "scale-score points"
    st.subheader(f"{gap_label(gap)} ({units})")
    st.dataframe(
        table.style.format(
            {"coef": "{:.3f}", "robust_se": "{:.3f}", "ci_lower": "{:.3f}", "ci_upper": "{:.3f}"}
        )
    )
    st.plotly_chart(adjusted_gap_chart(table), use_container_width=True)

    st.subheader("Residual diagnostics (fullest model)")
    st.plotly_chart(
        residual_plot(diagnostics["fitted"], diagnostics["residuals"]),
        use_container_width=True,
    )

    st.subheader("Top 15 observations by influence (Cook's-like distance)")
    diag_df = pd.DataFrame(diagnostics)
    st.dataframe(diag_df.sort_values("cooks_distance", ascending=False).head(15))
