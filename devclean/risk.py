"""Risk scoring: heuristic rules, score classification, external-signal merge."""

from __future__ import annotations

import dataclasses
import math
from typing import Any, Iterable

from devclean.scanner import ProjectMeta

CRITICAL = "Critical"
ACTIVE = "Active"
BURNER = "Burner"

SOURCE_HEURISTIC = "heuristic"
SOURCE_EXTERNAL = "external"
SOURCE_COMBINED = "combined"
SOURCES = (SOURCE_HEURISTIC, SOURCE_EXTERNAL, SOURCE_COMBINED)

MIN_SCORE = 0
MAX_SCORE = 10

BURNER_NAME_HINTS = ("tutorial", "test", "boilerplate", "example", "sample")

RECENT_DAYS = 30
INACTIVE_DAYS = 180
HIGH_DEPENDENCY_COUNT = 40


@dataclasses.dataclass(slots=True)
class RiskAssessment:
    class_label: str
    score: int
    reasons: list[str]
    source: str

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)

    def to_json(self) -> dict[str, Any]:
        return {
            "classLabel": self.class_label,
            "score": self.score,
            "reasons": list(self.reasons),
            "source": self.source,
        }

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> "RiskAssessment":
        """Rebuild from the cache document shape. Raises ValueError on bad data."""
        score = data.get("score")
        reasons = data.get("reasons", [])
        source = data.get("source")
        if isinstance(score, bool) or not isinstance(score, (int, float)):
            raise ValueError("score must be a number")
        if not isinstance(reasons, list) or not all(isinstance(r, str) for r in reasons):
            raise ValueError("reasons must be a list of strings")
        if source not in SOURCES:
            raise ValueError(f"unknown source: {source!r}")
        return make_assessment(score, reasons, source)


def clamp(value: int, low: int = MIN_SCORE, high: int = MAX_SCORE) -> int:
    return max(low, min(high, value))


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def classify(score: int) -> str:
    if score >= 8:
        return CRITICAL
    if score >= 5:
        return ACTIVE
    return BURNER


def unique_reasons(*groups: Iterable[str]) -> list[str]:
    merged: dict[str, None] = {}
    for group in groups:
        for reason in group:
            merged.setdefault(reason, None)
    return list(merged)


def make_assessment(score: float, reasons: Iterable[str], source: str) -> RiskAssessment:
    """Only constructor used by the code base: label always derives from score."""
    bounded = clamp(round_half_up(score))
    return RiskAssessment(
        class_label=classify(bounded),
        score=bounded,
        reasons=unique_reasons(reasons),
        source=source,
    )


def is_burner_name(name: str) -> bool:
    lowered = name.lower()
    return any(hint in lowered for hint in BURNER_NAME_HINTS)


def evaluate_heuristic(project: ProjectMeta) -> RiskAssessment:
    score = 0
    reasons: list[str] = []

    if project.is_cache_dir:
        score -= 4
        reasons.append("System cache directory")

    if project.has_vcs_marker:
        score += 4
        reasons.append("Git history detected")

    if project.has_env_file:
        score += 3
        reasons.append("Environment file present")

    if project.has_startup_keyword:
        score += 3
        reasons.append("Startup keywords in package.json")

    if project.last_modified_days <= RECENT_DAYS:
        score += 2
        reasons.append("Modified within 30 days")

    if project.dependency_count >= HIGH_DEPENDENCY_COUNT:
        score += 1
        reasons.append("High dependency count")

    if is_burner_name(project.name):
        score -= 2
        reasons.append("Name matches tutorial/test patterns")

    if project.last_modified_days >= INACTIVE_DAYS:
        score -= 1
        reasons.append("Inactive for 6+ months")

    # Clamp once, after every rule has contributed.
    return make_assessment(score, reasons, SOURCE_HEURISTIC)


def merge_risk(heuristic: RiskAssessment, external: RiskAssessment | None) -> RiskAssessment:
    if external is None:
        return heuristic
    return make_assessment(
        (heuristic.score + external.score) / 2,
        unique_reasons(heuristic.reasons, external.reasons),
        SOURCE_COMBINED,
    )


class RiskScorer:
    """Stateless facade over the scoring functions, used by the orchestrator."""

    def heuristic(self, project: ProjectMeta) -> RiskAssessment:
        return evaluate_heuristic(project)

    def merge(self, heuristic: RiskAssessment, external: RiskAssessment | None) -> RiskAssessment:
        return merge_risk(heuristic, external)


__all__ = [
    "ACTIVE",
    "BURNER",
    "CRITICAL",
    "RiskAssessment",
    "RiskScorer",
    "classify",
    "evaluate_heuristic",
    "is_burner_name",
    "make_assessment",
    "merge_risk",
]
