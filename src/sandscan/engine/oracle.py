# src/sandscan/engine/oracle.py
"""
ThreatOracleAdapter: turns commits and dependencies into prompts for the threat
oracle and parses its answers into verdicts.

Every oracle answer is parsed once, at this boundary, into one of three shapes:
Answer (a JSON object), Unavailable (the oracle could not be reached) or
Malformed (it answered, but not with usable JSON). Downstream code only ever
sees CommitVerdict / DependencyVerdict / OverallAssessment; when the answer is
not usable those carry the fixed fallback values defined below.
"""

import json
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from sandscan.engine.errors import OracleUnavailable
from sandscan.engine.records import (
    RISK_TIERS,
    CommitRecord,
    DependencyRecord,
    OverallAssessment,
    Typosquatting,
    Verdict,
)

FALLBACK_CONFIDENCE = 0.1
FALLBACK_COMMIT_SCORE = 25
FALLBACK_DEPENDENCY_TIER = "medium"
FALLBACK_THREAT_LEVEL = "medium"

CONFIDENCE_WORDS = {"very high": 0.95, "high": 0.9, "medium": 0.6, "moderate": 0.6, "low": 0.3, "very low": 0.1}


@dataclass(frozen=True)
class Answer:
    data: Dict[str, Any]


@dataclass(frozen=True)
class Unavailable:
    reason: str


@dataclass(frozen=True)
class Malformed:
    raw: str
    reason: str


OracleResult = Union[Answer, Unavailable, Malformed]


@dataclass
class CommitVerdict:
    risk_score: int
    verdict: Verdict
    suspicious_patterns: List[str] = field(default_factory=list)


@dataclass
class DependencyVerdict:
    risk_level: str
    verdict: Verdict
    vulnerabilities: List[str] = field(default_factory=list)
    typosquatting: Typosquatting = field(default_factory=Typosquatting)


def normalize_confidence(value) -> float:
    """Coerce fractions, percentages, numeric strings and words into [0, 1]."""
    if value is None or isinstance(value, bool):
        return 0.0
    if isinstance(value, str):
        text = value.strip().lower()
        if text in CONFIDENCE_WORDS:
            return CONFIDENCE_WORDS[text]
        is_percent = text.endswith("%")
        text = text.rstrip("%").strip()
        try:
            number = float(text)
        except ValueError:
            return 0.0
        if is_percent:
            number /= 100.0
    elif isinstance(value, float):
        number = value
    elif isinstance(value, int):
        number = float(min(value, 101))
    else:
        return 0.0
    if math.isnan(number) or number < 0:
        return 0.0
    if number > 1.0:
        number = number / 100.0 if number <= 100.0 else 1.0
    return min(1.0, number)


def normalize_risk_score(value) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(str(value).strip().rstrip("%")) if isinstance(value, str) else float(value)
    except (TypeError, ValueError, OverflowError):
        return None
    if not math.isfinite(number):
        return None
    return int(max(0, min(100, round(number))))


def normalize_risk_tier(value) -> Optional[str]:
    if not isinstance(value, str):
        return None
    tier = value.strip().lower()
    return tier if tier in RISK_TIERS else None


def _string_list(value) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value.strip() else []
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value if v is not None and str(v).strip()]
    return [str(value)]


def _pick(data: dict, *keys):
    for key in keys:
        if key in data:
            return data[key]
    return None


def parse_oracle_output(text: str) -> Union[Answer, Malformed]:
    """Extract the outermost JSON object from free-form oracle text."""
    if not text or not text.strip():
        return Malformed(raw=text or "", reason="empty response")
    start, end = text.find("{"), text.rfind("}")
    if start == -1 or end <= start:
        return Malformed(raw=text, reason="no JSON object in response")
    try:
        data = json.loads(text[start:end + 1])
    except json.JSONDecodeError as e:
        return Malformed(raw=text, reason=f"invalid JSON: {e.msg}")
    if not isinstance(data, dict):
        return Malformed(raw=text, reason="JSON is not an object")
    return Answer(data=data)


def _fallback_summary(result) -> str:
    if isinstance(result, Unavailable):
        return f"Fallback analysis - threat oracle unavailable ({result.reason})"
    return f"Fallback analysis - threat oracle returned unusable output ({result.reason})"


def fallback_verdict(result) -> Verdict:
    return Verdict(summary=_fallback_summary(result), threats=[], confidence=FALLBACK_CONFIDENCE, fallback=True)


COMMIT_PROMPT = """Analyze this Git commit for supply-chain security threats.

Commit: {hash}
Author: {author} <{email}>
Date: {date}
Message: {message}
Files changed: {files}
Additions: {additions}
Deletions: {deletions}
Locally flagged patterns: {patterns}

Diff (truncated):
{diff}

Look for injected malicious code, backdoors, obfuscation, unexpected network
calls, crypto miners, credential or data exfiltration, and tampering with build
or install scripts.

Respond with JSON only:
{{"riskScore": 0-100, "threats": ["..."], "suspiciousPatterns": ["..."], "confidence": 0-1, "summary": "..."}}
"""

DEPENDENCY_PROMPT = """Analyze this software dependency for supply-chain risk.

Package: {name}
Version: {version}
Ecosystem: {ecosystem}
Declared in: {source} ({category})

Consider typosquatting of popular packages, known malicious or compromised
packages, suspicious version pins and known vulnerabilities.

Respond with JSON only:
{{"riskLevel": "safe|low|medium|high|critical", "threats": ["..."],
 "typosquatting": {{"isTyposquat": true|false, "similarPackages": ["..."], "confidence": 0-1}},
 "confidence": 0-1, "summary": "..."}}
"""

ASSESSMENT_PROMPT = """Give an overall supply-chain security assessment of this repository analysis.

Repository: {repo_url}
Project type: {project_type}
Commits analyzed: {commits}
Dependencies analyzed: {dependencies}
Alerts raised: {alerts}
High-risk commits: {commit_issues}
Critical dependencies: {critical_dependencies}
Critical alerts: {critical_alerts}

Key alerts:
{key_alerts}

Respond with JSON only:
{{"overallThreat": "low|medium|high|critical", "keyFindings": ["..."], "recommendations": ["..."],
 "confidence": 0-1, "riskPriority": "immediate|high|medium|low"}}
"""


class ThreatOracleAdapter:
    def __init__(self, client):
        self.client = client

    def consult(self, prompt: str) -> OracleResult:
        try:
            text = self.client.classify(prompt)
        except OracleUnavailable as e:
            return Unavailable(reason=str(e))
        result = parse_oracle_output(text)
        if isinstance(result, Malformed):
            logging.warning(f"Threat oracle output could not be parsed: {result.reason}")
        return result

    def analyze_commit(self, commit: CommitRecord) -> CommitVerdict:
        prompt = COMMIT_PROMPT.format(
            hash=commit.hash,
            author=commit.author,
            email=commit.email,
            date=commit.date.isoformat() if commit.date else "unknown",
            message=commit.message,
            files=", ".join(commit.files_changed) or "N/A",
            additions=commit.additions,
            deletions=commit.deletions,
            patterns="; ".join(commit.suspicious_patterns) or "none",
            diff=commit.diff or "No diff available",
        )
        result = self.consult(prompt)
        if isinstance(result, Answer):
            risk_score = normalize_risk_score(_pick(result.data, "riskScore", "risk_score"))
            if risk_score is None:
                result = Malformed(raw=json.dumps(result.data), reason="missing riskScore")
            else:
                data = result.data
                return CommitVerdict(
                    risk_score=risk_score,
                    verdict=Verdict(
                        summary=str(data.get("summary") or ""),
                        threats=_string_list(data.get("threats")),
                        confidence=normalize_confidence(data.get("confidence")),
                    ),
                    suspicious_patterns=_string_list(_pick(data, "suspiciousPatterns", "suspicious_patterns")),
                )
        return CommitVerdict(risk_score=FALLBACK_COMMIT_SCORE, verdict=fallback_verdict(result))

    def analyze_dependency(self, dependency: DependencyRecord) -> DependencyVerdict:
        prompt = DEPENDENCY_PROMPT.format(
            name=dependency.name,
            version=dependency.version,
            ecosystem=dependency.ecosystem,
            source=dependency.source or "unknown",
            category=dependency.category,
        )
        result = self.consult(prompt)
        if isinstance(result, Answer):
            risk_level = normalize_risk_tier(_pick(result.data, "riskLevel", "risk_level"))
            if risk_level is None:
                result = Malformed(raw=json.dumps(result.data), reason="missing or unknown riskLevel")
            else:
                data = result.data
                threats = _string_list(data.get("threats"))
                squat = data.get("typosquatting")
                squat = squat if isinstance(squat, dict) else {}
                return DependencyVerdict(
                    risk_level=risk_level,
                    vulnerabilities=threats,
                    typosquatting=Typosquatting(
                        is_typosquat=_pick(squat, "isTyposquat", "is_typosquat") is True,
                        similar_packages=_string_list(_pick(squat, "similarPackages", "similar_packages")),
                        confidence=normalize_confidence(squat.get("confidence")),
                    ),
                    verdict=Verdict(
                        summary=str(data.get("summary") or ""),
                        threats=threats,
                        confidence=normalize_confidence(data.get("confidence")),
                    ),
                )
        return DependencyVerdict(
            risk_level=FALLBACK_DEPENDENCY_TIER,
            verdict=fallback_verdict(result),
            typosquatting=Typosquatting(confidence=FALLBACK_CONFIDENCE),
        )

    def assess_overall(self, job) -> OverallAssessment:
        key_alerts = "\n".join(f"- {a.title}: {a.description}" for a in job.alerts[:5]) or "No major alerts"
        prompt = ASSESSMENT_PROMPT.format(
            repo_url=job.repo_url,
            project_type=job.project_type,
            commits=len(job.commits),
            dependencies=len(job.dependencies),
            alerts=len(job.alerts),
            commit_issues=job.commit_issues,
            critical_dependencies=sum(1 for d in job.dependencies if d.risk_level == "critical"),
            critical_alerts=job.critical_alerts,
            key_alerts=key_alerts,
        )
        result = self.consult(prompt)
        if isinstance(result, Answer):
            data = result.data
            return OverallAssessment(
                overall_threat=str(_pick(data, "overallThreat", "overall_threat") or FALLBACK_THREAT_LEVEL).lower(),
                key_findings=_string_list(_pick(data, "keyFindings", "key_findings")),
                recommendations=_string_list(data.get("recommendations")),
                confidence=normalize_confidence(data.get("confidence")),
                risk_priority=str(_pick(data, "riskPriority", "risk_priority") or "medium").lower(),
            )
        return OverallAssessment(
            overall_threat=FALLBACK_THREAT_LEVEL,
            key_findings=[_fallback_summary(result), "Manual review recommended"],
            recommendations=["Enable the threat oracle for detailed analysis", "Perform a manual security review"],
            confidence=FALLBACK_CONFIDENCE,
            risk_priority="medium",
            fallback=True,
        )

    def status(self) -> dict:
        try:
            return self.client.status()
        except Exception as e:
            return {"status": "unhealthy", "error": str(e)}
