"""
Default QA scoring guide: 16 criteria in 4 categories, 100 points total.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional


@dataclass(frozen=True)
class CriterionDefinition:
    name: str
    category: str
    weight: int
    definition: str
    conditional: bool = False


CATEGORY_METADATA = {
    "starting_call": {"label": "Starting The Call Right", "max_points": 30},
    "upselling": {"label": "Upselling & Closing", "max_points": 25},
    "rebuttals": {"label": "Handling Rebuttals", "max_points": 10},
    "qualitative": {"label": "Qualitative Assessments", "max_points": 35},
}

DEFAULT_CRITERIA: List[CriterionDefinition] = [
    CriterionDefinition("Agent Introduction", "starting_call", 10, "Did the agent introduce themselves properly?"),
    CriterionDefinition(
        "Patient Verification", "starting_call", 10, "Did the agent verify they were speaking to the patient or parent?"
    ),
    CriterionDefinition("Call Purpose Clarification", "starting_call", 10, "Did the agent clarify the reason for the call?"),
    CriterionDefinition(
        "Next 2 Day Appointment", "upselling", 10, "Did the agent suggest a date within the next two days?", True
    ),
    CriterionDefinition("Specific Appointment Time", "upselling", 5, "Did the agent suggest a specific time?", True),
    CriterionDefinition(
        "Offer to Schedule Family Members", "upselling", 5, "Did the agent offer to schedule family members?"
    ),
    CriterionDefinition("Confirm Appointment", "upselling", 5, "Did the agent confirm the date and location?", True),
    CriterionDefinition("Rebuttal 1", "rebuttals", 5, "Did the agent address the first rebuttal?", True),
    CriterionDefinition("Rebuttal 2", "rebuttals", 5, "Did the agent address the second rebuttal?", True),
    CriterionDefinition("Agent Empathy", "qualitative", 5, "Did the agent demonstrate empathy?"),
    CriterionDefinition("Agent Positivity", "qualitative", 5, "Was the agent friendly, upbeat and confident?"),
    CriterionDefinition("Caller Confusion", "qualitative", 5, "Was the caller free of confusion?"),
    CriterionDefinition("Caller Frustration", "qualitative", 5, "Was the caller free of frustration?"),
    CriterionDefinition("Questions Answered", "qualitative", 5, "Were all of the caller's questions answered?"),
    CriterionDefinition("Long Pauses", "qualitative", 5, "Was the call free of long unexplained pauses?"),
    CriterionDefinition("CSAT Estimation", "qualitative", 5, "Was the caller's estimated satisfaction high?"),
]


def get_criteria_by_category(category: str) -> List[CriterionDefinition]:
    return [c for c in DEFAULT_CRITERIA if c.category == category]


def get_criterion(name: str) -> Optional[CriterionDefinition]:
    return next((c for c in DEFAULT_CRITERIA if c.name == name), None)


def get_total_possible_score() -> int:
    return sum(c.weight for c in DEFAULT_CRITERIA)


def criteria_catalogue() -> Dict[str, object]:
    """Serializable view of the scoring guide."""
    return {
        "categories": {
            key: {**meta, "criteria": [c.__dict__ for c in get_criteria_by_category(key)]}
            for key, meta in CATEGORY_METADATA.items()
        },
        "total_points": get_total_possible_score(),
    }
