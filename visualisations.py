"""
visualisations.py

Plotly visualisations for:

- Ranked gaps (effect sizes) as a bar chart
- Group mean scores by grade, with the gap annotated
- Raw vs regression-adjusted gap with robust confidence intervals
- Residual vs fitted plot

All functions return Plotly Figure objects that are Streamlit-compatible.
"""

from typing import Iterable, List, Optional

import pandas as pd
import plotly.express as px
import plotly.graph_objects as go

from gaps import GapRecord


def gap_label(record: GapRecord) -> str:
    """Short human-readable description of a gap."""
    return f"Grade {record.grade} · {record.feature}: {record.level_1} vs {record.level_2}"


# ---------------------------------------------------------------------
# Annotation helper
# ---------------------------------------------------------------------

def annotate_gap(
    fig: go.Figure,
    x,
    mean_1: float,
    mean_2: float,
    effect_size: float,
    label: Optional[str] = None,
) -> go.Figure:
    """
    Draw a bracket between two group means at position x and label it
    with the effect size in SD units.

    Works on categorical or numeric x axes. Returns the same figure.
    """
    low, high = sorted([mean_1, mean_2])
    text = label or f"{effect_size:+.2f} SD"

    fig.add_shape(
        type="line",
        x0=x,
        x1=x,
        y0=low,
        y1=high,
        line=dict(color="black", width=2, dash="dot"),
    )
    fig.add_annotation(
        x=x,
        y=(low + high) / 2,
        text=text,
        showarrow=False,
        xanchor="left",
        xshift=8,
        bgcolor="rgba(255,255,255,0.8)",
    )
    return fig


# ---------------------------------------------------------------------
# Ranked gaps
# ---------------------------------------------------------------------

def gap_bar_chart(
    records: Iterable[GapRecord],
    title: str = "Largest achievement gaps",
) -> go.Figure:
    """
    Horizontal bar chart of effect sizes, largest gap at the top.
    """
    records = list(records)
    df = pd.DataFrame(
        {
            "gap": [gap_label(r) for r in records],
            "effect_size": [r.effect_size for r in records],
            "outcome": [r.outcome for r in records],
            "n1": [r.n1 for r in records],
            "n2": [r.n2 for r in records],
        }
    )

    fig = px.bar(
        df.iloc[::-1],
        x="effect_size",
        y="gap",
        orientation="h",
        color="outcome",
        hover_data=["n1", "n2"],
        title=title,
    )
    fig.add_vline(x=0, line=dict(color="grey", width=1))
    fig.update_layout(
        xaxis_title="Effect size (SD units, level 1 minus level 2)",
        yaxis_title="",
        legend_title_text="Outcome",
        margin=dict(l=40, r=20, t=60, b=40),
    )
    return fig


# ---------------------------------------------------------------------
# Group means by grade
# ---------------------------------------------------------------------

def group_means_by_grade(
    df: pd.DataFrame,
    grade_col: str,
    outcome_col: str,
    feature_col: str,
    levels: Optional[List] = None,
    gap: Optional[GapRecord] = None,
    title: Optional[str] = None,
) -> go.Figure:
    """
    Line chart of mean outcome per feature level across grades.

    Parameters
    ----------
    levels : list, optional
        Only plot these levels of feature_col (e.g. the two levels of a gap).
    gap : GapRecord, optional
        If given, the gap is annotated at its grade.
    """
    data = df.dropna(subset=[grade_col, outcome_col, feature_col])
    if levels is not None:
        data = data[data[feature_col].isin(levels)]

    means = (
        data.groupby([grade_col, feature_col], as_index=False)[outcome_col]
        .mean()
        .sort_values([grade_col, feature_col])
    )
    means[feature_col] = means[feature_col].astype(str)

    fig = px.line(
        means,
        x=grade_col,
        y=outcome_col,
        color=feature_col,
        markers=True,
        title=title or f"Mean {outcome_col} by grade and {feature_col}",
    )

    if gap is not None:
        annotate_gap(fig, gap.grade, gap.mean_1, gap.mean_2, gap.effect_size)

    fig.update_layout(
        xaxis_title="Grade",
        yaxis_title=f"Mean {outcome_col}",
        legend_title_text=feature_col,
        margin=dict(l=40, r=20, t=60, b=40),
        xaxis=dict(dtick=1),
    )
    return fig


# ---------------------------------------------------------------------
# Regression-adjusted gaps
# ---------------------------------------------------------------------

def adjusted_gap_chart(
    table: pd.DataFrame,
    title: str = "Raw vs adjusted gap (95% CI, school-clustered SEs)",
) -> go.Figure:
    """
    Point estimates with error bars, one per model row of the table
    returned by modelling.regression_adjusted_gaps.
    """
    fig = go.Figure(
        data=[
            go.Scatter(
                x=table["model"],
                y=table["coef"],
                mode="markers",
                marker=dict(size=12),
                error_y=dict(
                    type="data",
                    symmetric=False,
                    array=table["ci_upper"] - table["coef"],
                    arrayminus=table["coef"] - table["ci_lower"],
                ),
                name="Gap estimate",
            )
        ]
    )
    fig.add_hline(y=0, line=dict(dash="dash", color="grey"))
    fig.update_layout(
        title=title,
        xaxis_title="Model",
        yaxis_title="Gap (level 1 minus level 2)",
        margin=dict(l=40, r=20, t=60, b=40),
    )
    return fig


# ---------------------------------------------------------------------
# Regression diagnostics
# ---------------------------------------------------------------------

def residual_plot(
    fitted: pd.Series,
    residuals: pd.Series,
    title: str = "Residuals vs fitted values",
) -> go.Figure:
    """
    Scatter of fitted values vs residuals with zero line.
    """
    fig = go.Figure()

    fig.add_trace(
        go.Scatter(
            x=fitted,
            y=residuals,
            mode="markers",
            name="Residuals",
            marker=dict(opacity=0.6),
        )
    )

    fig.add_hline(
        y=0,
        line=dict(dash="dash"),
        annotation_text="0",
        annotation_position="top left",
    )

    fig.update_layout(
        title=title,
        xaxis_title="Fitted values",
        yaxis_title="Residuals",
        margin=dict(l=40, r=20, t=60, b=40),
    )
    return fig
