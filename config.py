"""
config.py

Analysis settings, read from config.yaml.

Every key is optional; anything left out keeps the default below.
"""

from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

import yaml

from errors import SchemaError


DEFAULT_CONFIG_PATH = Path("config.yaml")


@dataclass(frozen=True)
class AnalysisConfig:
    grade_column: str = "grade"
    cluster_column: str = "school_code"
    outcome_columns: List[str] = field(default_factory=lambda: ["math_ss", "read_ss"])
    feature_columns: List[str] = field(
        default_factory=lambda: ["gender", "race_ethnicity", "frpl", "ell", "iep"]
    )
    # outcome -> prior-year score column used for the prior-achievement model
    prior_score_columns: Dict[str, str] = field(
        default_factory=lambda: {"math_ss": "math_ss_prior", "read_ss": "read_ss_prior"}
    )
    top_n: int = 3
    min_group_size: Optional[int] = 30
    strict_reference: bool = False
    # z-score each outcome within grade before fitting the adjusted models
    standardize_outcome: bool = False
    log_level: str = "INFO"
    # feature -> (control_1, control_2) overrides for choose_controls
    controls: Dict[str, Tuple[str, str]] = field(default_factory=dict)

    def controls_for(self, feature: str) -> Optional[Tuple[str, str]]:
        return self.controls.get(feature)

    def categorical_columns(self) -> List[str]:
        """Feature columns plus any override control columns, in order, no repeats."""
        overrides = [c for pair in self.controls.values() for c in pair]
        return list(dict.fromkeys(self.feature_columns + overrides))


def load_config(path: Optional[Union[str, Path]] = None) -> AnalysisConfig:
    """
    Build an AnalysisConfig from a YAML file.

    path=None returns the defaults. Unknown keys raise SchemaError so typos
    do not pass silently.
    """
    if path is None:
        return AnalysisConfig()

    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}

    if not isinstance(raw, dict):
        raise SchemaError(f"{path} must contain a mapping at the top level.")

    known = {f.name for f in fields(AnalysisConfig)}
    unknown = sorted(set(raw) - known)
    if unknown:
        raise SchemaError(f"Unknown config keys in {path}: {unknown}")

    if "controls" in raw:
        controls = raw["controls"] or {}
        bad = {k: v for k, v in controls.items() if not isinstance(v, (list, tuple)) or len(v) != 2}
        if bad:
            raise SchemaError(f"Each controls entry must list exactly 2 columns: {bad}")
        raw["controls"] = {k: (v[0], v[1]) for k, v in controls.items()}

    for key in ("top_n", "min_group_size"):
        value = raw.get(key)
        if value is not None and (isinstance(value, bool) or not isinstance(value, int) or value < 1):
            raise SchemaError(f"'{key}' must be a positive integer, got {value!r}")

    return AnalysisConfig(**raw)
