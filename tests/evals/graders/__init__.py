"""Code-based graders: fast, deterministic checks on retrieved and generated text."""

from tests.evals.graders.code_graders import (
    grade_must_include_criteria,
    grade_must_not_include_criteria,
    grade_source_attribution,
    grade_top_candidate,
)

__all__ = [
    "grade_must_include_criteria",
    "grade_must_not_include_criteria",
    "grade_source_attribution",
    "grade_top_candidate",
]
