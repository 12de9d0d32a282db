"""
QA score aggregation.

Turns weighted, optionally inapplicable criterion scores into category
subtotals, a total out of 100 and a letter grade. Pure computation: results
are recomputed from the criteria every time and never stored.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from ..config import ConfigManager
from ..server.models import parse_flag

# (minimum total, grade, label), highest threshold first
DEFAULT_GRADE_SCALE: List[Tuple[float, str, str]] = [
    (90, "A", "Excellent"),
    (80, "B", "Good"),
    (70, "C", "Satisfactory"),
    (60, "D", "Needs Improvement"),
    (0, "F", "Poor"),
]


@dataclass
class QACriterionScore:
    """One scored criterion. An inapplicable criterion scores 0 and is left out of its category maximum."""

    name: str
    category: str
    weight: float
    score: float = 0.0
    applicable: bool = True
    notes: str = ""

    def __post_init__(self):
        if self.weight < 0:
            raise ValueError(f"Criterion {self.name!r} has negative weight {self.weight}")
        if not self.applicable:
            self.score = 0.0
        elif not 0 <= self.score <= self.weight:
            raise ValueError(f"Score {self.score} for {self.name!r} is outside 0..{self.weight}")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QACriterionScore":
        return cls(
            name=data.get("name") or data.get("criterion_name", ""),
            category=data.get("category") or data.get("criterion_category", ""),
            weight=float(data.get("weight", data.get("criterion_weight", 0))),
            score=float(data.get("score", 0)),
            applicable=parse_flag(data.get("applicable"), "applicable", default=True),
            notes=data.get("notes") or "",
        )


@dataclass
class CategoryScore:
    subtotal: float
    max_points: float

    @property
    def percentage(self) -> float:
        return self.subtotal / self.max_points * 100 if self.max_points else 0.0


@dataclass
class QAScoreResult:
    categories: Dict[str, CategoryScore] = field(default_factory=dict)
    total: float = 0.0
    grade: str = "F"
    grade_label: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "categories": {
                name: {
                    "subtotal": cat.subtotal,
                    "max_points": cat.max_points,
                    "percentage": round(cat.percentage, 2),
                }
                for name, cat in self.categories.items()
            },
            "total": self.total,
            "grade": self.grade,
            "grade_label": self.grade_label,
        }


def load_grade_scale(raw: Optional[Any] = None) -> List[Tuple[float, str, str]]:
    """
    Read the grade table from configuration.

    ``QA_GRADE_SCALE`` is a JSON list of ``[min_total, grade, label]`` rows (or
    objects with those keys). Falls back to the default A-F scale.
    """
    data = ConfigManager.get_json("QA_GRADE_SCALE", raw)
    if not data:
        return list(DEFAULT_GRADE_SCALE)

    scale = []
    for row in data:
        if isinstance(row, dict):
            scale.append((float(row["min"]), str(row["grade"]), str(row.get("label", ""))))
        else:
            min_total, grade, *rest = row
            scale.append((float(min_total), str(grade), str(rest[0]) if rest else ""))

    scale.sort(key=lambda r: r[0], reverse=True)
    return scale


def grade_for(total: float, grade_scale: Optional[Sequence[Tuple[float, str, str]]] = None) -> Tuple[str, str]:
    """Step function from a total score to (grade, label)."""
    scale = sorted(grade_scale or DEFAULT_GRADE_SCALE, key=lambda r: r[0], reverse=True)
    for min_total, grade, label in scale:
        if total >= min_total:
            return grade, label
    # Below every threshold: lowest grade
    _, grade, label = scale[-1]
    return grade, label


def score_criteria(
    criteria: Iterable[QACriterionScore], grade_scale: Optional[Sequence[Tuple[float, str, str]]] = None
) -> QAScoreResult:
    """
    Aggregate criterion scores.

    Args:
        criteria: Scored criteria
        grade_scale: Grade table; read from configuration when None

    Returns:
        Category subtotals, total (clamped to 0..100) and grade
    """
    categories: Dict[str, CategoryScore] = {}
    for criterion in criteria:
        category = categories.setdefault(criterion.category, CategoryScore(subtotal=0.0, max_points=0.0))
        if criterion.applicable:
            category.subtotal += criterion.score
            category.max_points += criterion.weight

    total = min(100.0, max(0.0, sum(cat.subtotal for cat in categories.values())))
    grade, label = grade_for(total, grade_scale if grade_scale is not None else load_grade_scale())
    return QAScoreResult(categories=categories, total=total, grade=grade, grade_label=label)
