"""
scoring_engine.py — Capital-planning scores for assessed buildings.

Covers:
  - Weighted multi-criteria composite priority score (0-10 scale scores, weights summing to 100)
  - Criteria weight normalisation
  - Project ranking with cost effectiveness
  - Facility Condition Index (FCI) and its rating band
  - Condition Index (CI) as a replacement-value weighted mean
"""

import logging
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Mapping, Optional

logger = logging.getLogger("bca-scoring")


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

WEIGHT_TOTAL: float = 100.0

# Upper bound (inclusive) of each FCI band
FCI_BANDS = [
    (0.05, "Good"),
    (0.10, "Fair"),
    (0.30, "Poor"),
]
FCI_WORST_RATING = "Critical"

# Named criteria surfaced on the ranking table
HEADLINE_CRITERIA: Dict[str, str] = {
    "Urgency": "urgency_score",
    "Mission Criticality": "mission_criticality_score",
    "Safety": "safety_score",
    "Code Compliance": "compliance_score",
    "Energy Savings": "energy_savings_score",
}


@dataclass
class CriteriaScore:
    criteria_id: Any
    criteria_name: str
    score: float
    weight: float
    weighted_score: float
    justification: Optional[str] = None


@dataclass
class CompositeScore:
    composite_score: float
    total_weight: float
    criteria_scores: List[CriteriaScore] = field(default_factory=list)
    project_id: Any = None

    def score_for(self, criteria_name: str) -> Optional[float]:
        for cs in self.criteria_scores:
            if cs.criteria_name == criteria_name:
                return cs.score
        return None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class RankedProject:
    project_id: Any
    project_name: str
    composite_score: float
    rank: int = 0
    total_cost: Optional[float] = None
    cost_effectiveness_score: Optional[float] = None
    criteria: Dict[str, Optional[float]] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data.update(data.pop("criteria"))
        return data


# ---------------------------------------------------------------------------
# Composite score
# ---------------------------------------------------------------------------

def calculate_composite_score(
    criteria: List[Mapping[str, Any]],
    scores: Mapping[Any, Any],
    project_id: Any = None,
) -> CompositeScore:
    """
    Σ(weight × score) / 100 over the active criteria.

    ``criteria`` rows carry id / name / weight. ``scores`` maps criteria id to
    either a bare number or a dict with ``score`` and ``justification``.
    A criterion without a score contributes 0.
    """
    total_weight = sum(float(c["weight"]) for c in criteria)
    breakdown: List[CriteriaScore] = []
    weighted_sum = 0.0

    for criterion in criteria:
        entry = scores.get(criterion["id"])
        justification = None
        if isinstance(entry, Mapping):
            justification = entry.get("justification")
            entry = entry.get("score")
        score = float(entry) if entry is not None else 0.0
        weight = float(criterion["weight"])
        weighted = weight * score
        weighted_sum += weighted
        breakdown.append(CriteriaScore(
            criteria_id=criterion["id"],
            criteria_name=criterion.get("name", ""),
            score=score,
            weight=weight,
            weighted_score=weighted,
            justification=justification,
        ))

    return CompositeScore(
        composite_score=weighted_sum / WEIGHT_TOTAL,
        total_weight=total_weight,
        criteria_scores=breakdown,
        project_id=project_id,
    )


def normalize_weights(criteria: List[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    """Copies of the criteria with weights rescaled so they sum to 100."""
    total = sum(float(c["weight"]) for c in criteria)
    if total <= 0:
        return [dict(c) for c in criteria]
    return [
        {**c, "weight": float(c["weight"]) / total * WEIGHT_TOTAL}
        for c in criteria
    ]


def weights_are_balanced(criteria: List[Mapping[str, Any]], tolerance: float = 0.01) -> bool:
    total = sum(float(c["weight"]) for c in criteria)
    return abs(total - WEIGHT_TOTAL) <= tolerance


# ---------------------------------------------------------------------------
# Ranking
# ---------------------------------------------------------------------------

def rank_projects(projects: List[Mapping[str, Any]]) -> List[RankedProject]:
    """
    Order projects by composite score (highest first) and number them 1..n.

    Each project mapping carries ``project_id``, ``project_name``,
    ``composite`` (a CompositeScore) and optionally ``total_cost`` (the
    deferred maintenance cost).
    """
    ranked: List[RankedProject] = []
    for p in projects:
        composite: CompositeScore = p["composite"]
        total_cost = p.get("total_cost")
        total_cost = float(total_cost) if total_cost else None
        cost_effectiveness = (
            composite.composite_score / (total_cost / 1000)
            if total_cost and total_cost > 0 else None
        )
        ranked.append(RankedProject(
            project_id=p["project_id"],
            project_name=p.get("project_name", ""),
            composite_score=composite.composite_score,
            total_cost=total_cost,
            cost_effectiveness_score=cost_effectiveness,
            criteria={
                key: composite.score_for(name)
                for name, key in HEADLINE_CRITERIA.items()
            },
        ))

    ranked.sort(key=lambda r: r.composite_score, reverse=True)
    for index, project in enumerate(ranked):
        project.rank = index + 1

    logger.debug("ranked %d project(s)", len(ranked))
    return ranked


# ---------------------------------------------------------------------------
# Condition indices
# ---------------------------------------------------------------------------

def calculate_fci(deferred_maintenance_cost: float, current_replacement_value: float) -> float:
    if not current_replacement_value or current_replacement_value <= 0:
        return 0.0
    return float(deferred_maintenance_cost or 0) / float(current_replacement_value)


def fci_rating(fci: float) -> str:
    for upper, label in FCI_BANDS:
        if fci <= upper:
            return label
    return FCI_WORST_RATING


def calculate_ci(components: List[Mapping[str, Any]]) -> Optional[float]:
    """
    Replacement-value weighted mean of ``condition_percentage``.

    Components without a condition percentage are skipped. Returns None when
    nothing is left to weigh (no assessed components, or zero total value).
    """
    weighted = 0.0
    total_value = 0.0
    for comp in components:
        pct = comp.get("condition_percentage")
        value = comp.get("replacement_value") or 0
        if pct is None:
            continue
        weighted += float(pct) * float(value)
        total_value += float(value)
    if total_value <= 0:
        return None
    return weighted / total_value


def condition_summary(
    components: List[Mapping[str, Any]],
    deferred_maintenance_cost: float,
    current_replacement_value: float,
) -> Dict[str, Any]:
    fci = calculate_fci(deferred_maintenance_cost, current_replacement_value)
    ci = calculate_ci(components)
    return {
        "ci": round(ci, 2) if ci is not None else None,
        "fci": round(fci, 4),
        "fci_rating": fci_rating(fci),
        "deferred_maintenance_cost": float(deferred_maintenance_cost or 0),
        "current_replacement_value": float(current_replacement_value or 0),
    }
