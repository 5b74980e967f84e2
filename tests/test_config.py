from pathlib import Path

import pytest

from config import AnalysisConfig, load_config
from errors import SchemaError


REPO_CONFIG = Path(__file__).resolve().parent.parent / "config.yaml"


def test_defaults():
    config = load_config(None)

    assert config == AnalysisConfig()
    assert config.grade_column == "grade"
    assert config.top_n == 3
    assert config.controls_for("gender") is None


def test_repo_config_loads():
    config = load_config(REPO_CONFIG)

    assert config.outcome_columns == ["math_ss", "read_ss"]
    assert config.controls_for("iep") == ("frpl", "gender")
    assert config.strict_reference is False


def test_partial_config_keeps_defaults(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("top_n: 5\nfeature_columns: [gender]\n")

    config = load_config(path)

    assert config.top_n == 5
    assert config.feature_columns == ["gender"]
    assert config.cluster_column == "school_code"


def test_empty_file_gives_defaults(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("")

    assert load_config(path) == AnalysisConfig()


@pytest.mark.parametrize(
    "text",
    [
        "top_m: 3\n",
        "top_n: 0\n",
        "min_group_size: -1\n",
        "controls:\n  gender: [frpl]\n",
        "- just\n- a list\n",
    ],
)
def test_invalid_config(tmp_path, text):
    path = tmp_path / "config.yaml"
    path.write_text(text)

    with pytest.raises(SchemaError):
        load_config(path)


def test_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "nope.yaml")


def test_categorical_columns_include_override_controls():
    config = AnalysisConfig(
        feature_columns=["gender", "ell"],
        controls={"ell": ("frpl", "home_language"), "gender": ("frpl", "ell")},
    )

    assert config.categorical_columns() == ["gender", "ell", "frpl", "home_language"]


def test_standardize_outcome_setting(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("standardize_outcome: true\n")

    assert load_config(path).standardize_outcome is True
    assert AnalysisConfig().standardize_outcome is False
