# src/sandscan/engine/scoring.py
"""
Risk scoring: fold commit scores, dependency tiers and alert severities into one
0-100 score and a four-tier level.

Each factor only counts when its source list is non-empty and the weights are
renormalized over the factors present, so a repository without dependencies is
not pulled towards zero for lacking them.
"""

import logging
from dataclasses import dataclass

from sandscan.engine.errors import ScoringError

COMMIT_WEIGHT = 0.40
DEPENDENCY_WEIGHT = 0.35
ALERT_WEIGHT = 0.25

TIER_SCORES = {"safe": 0, "low": 25, "medium": 50, "high": 75, "critical": 100}
SEVERITY_SCORES = {"low": 25, "medium": 50, "high": 75, "critical": 100}

DEFAULT_SCORE = 50
DEFAULT_LEVEL = "medium"


@dataclass(frozen=True)
class RiskAssessment:
    score: int
    level: str
    degraded: bool = False


def level_for(score: int) -> str:
    if score >= 75:
        return "critical"
    if score >= 50:
        return "high"
    if score >= 25:
        return "medium"
    return "low"


def _mean(values):
    return sum(values) / len(values)


def _ordinal(mapping, value, kind):
    try:
        return mapping[value]
    except KeyError:
        raise ScoringError(f"Unknown {kind}: {value!r}")


def score(commits, dependencies, alerts) -> RiskAssessment:
    """Pure scoring function. Raises ScoringError on inputs it cannot map."""
    factors = []
    if commits:
        factors.append((_mean([float(c.risk_score) for c in commits]), COMMIT_WEIGHT))
    if dependencies:
        factors.append((_mean([_ordinal(TIER_SCORES, d.risk_level, "risk tier") for d in dependencies]), DEPENDENCY_WEIGHT))
    if alerts:
        factors.append((_mean([_ordinal(SEVERITY_SCORES, a.severity, "severity") for a in alerts]), ALERT_WEIGHT))

    if not factors:
        return RiskAssessment(score=0, level="low")

    total_weight = sum(weight for _, weight in factors)
    weighted = sum(value * weight for value, weight in factors)
    # round half up; Python's round() would send 62.5 to 62
    final = int(weighted / total_weight + 0.5)
    final = max(0, min(100, final))
    return RiskAssessment(score=final, level=level_for(final))


def score_or_default(commits, dependencies, alerts) -> RiskAssessment:
    """Like score(), but never raises: any failure yields the medium default."""
    try:
        return score(commits, dependencies, alerts)
    except Exception as e:
        logging.warning(f"Risk scoring failed, using default score: {e}")
        return RiskAssessment(score=DEFAULT_SCORE, level=DEFAULT_LEVEL, degraded=True)
