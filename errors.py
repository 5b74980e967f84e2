"""
errors.py

Exceptions raised by the gap and regression utilities.

- GapAnalysisError:
    Base class for everything below.
- SchemaError:
    Missing or wrongly typed column / table.
- DimensionError:
    Mismatched lengths or a degenerate cluster count.
- SingularMatrixError:
    X'X is not invertible (collinear predictors).
- IllConditionedModelError:
    Robust variance has a negative diagonal entry.
- MissingReferenceError:
    SD reference entry not found (strict mode only).
"""


class GapAnalysisError(Exception):
    """Base class for gap analysis errors."""


class SchemaError(GapAnalysisError, ValueError):
    pass


class DimensionError(GapAnalysisError, ValueError):
    pass


class SingularMatrixError(GapAnalysisError, ArithmeticError):
    pass


class IllConditionedModelError(GapAnalysisError, ArithmeticError):
    pass


class MissingReferenceError(GapAnalysisError, KeyError):
    """Raised when a (grade, outcome) pair has no reference SD."""

    def __init__(self, grade, outcome):
        self.grade = grade
        self.outcome = outcome
        super().__init__(f"No reference SD for grade={grade!r}, outcome={outcome!r}")

    def __str__(self) -> str:
        return self.args[0]
