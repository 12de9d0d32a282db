"""QA scoring guide and score aggregation."""

from .criteria import DEFAULT_CRITERIA, criteria_catalogue
from .scoring import QACriterionScore, QAScoreResult, score_criteria

__all__ = ["DEFAULT_CRITERIA", "QACriterionScore", "QAScoreResult", "criteria_catalogue", "score_criteria"]
