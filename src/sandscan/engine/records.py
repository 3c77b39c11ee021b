# src/sandscan/engine/records.py
"""
Pydantic records for analysis jobs and the signals collected while they run.

A Job is mutated only by the background run that owns it. The helper methods
here enforce the invariants every writer has to respect: status only moves
along the edges in TRANSITIONS, progress never goes down, logs and alerts are
append-only, verdicts are attached once, and a terminal job is frozen.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from sandscan.engine.errors import JobStateError

PROJECT_TYPES = ("nodejs", "python")
RISK_TIERS = ("safe", "low", "medium", "high", "critical")
SEVERITIES = ("low", "medium", "high", "critical")

ProjectType = Literal["nodejs", "python"]
JobStatus = Literal["pending", "cloning", "analyzing", "completed", "failed"]
RiskTier = Literal["safe", "low", "medium", "high", "critical"]
Severity = Literal["low", "medium", "high", "critical"]
RiskLevel = Literal["low", "medium", "high", "critical"]
LogLevel = Literal["info", "warn", "error", "debug"]
LogSource = Literal["system", "build", "analysis", "ai"]
AlertType = Literal["dependency", "commit", "runtime"]

TERMINAL_STATUSES = frozenset({"completed", "failed"})
TRANSITIONS = {
    "pending": {"cloning", "failed"},
    "cloning": {"cloning", "analyzing", "failed"},
    "analyzing": {"analyzing", "completed", "failed"},
    "completed": set(),
    "failed": set(),
}

# Commits above this score raise an alert and count as issues in the summary
HIGH_RISK_COMMIT_SCORE = 70


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Verdict(BaseModel):
    summary: str = ""
    threats: List[str] = Field(default_factory=list)
    confidence: float = Field(0.0, ge=0.0, le=1.0)
    fallback: bool = False


class CommitRecord(BaseModel):
    hash: str
    author: str
    email: str = ""
    date: Optional[datetime] = None
    message: str = ""
    body: str = ""
    files_changed: List[str] = Field(default_factory=list)
    additions: int = 0
    deletions: int = 0
    diff: str = ""
    suspicious_patterns: List[str] = Field(default_factory=list)
    risk_score: int = Field(0, ge=0, le=100)
    verdict: Optional[Verdict] = None

    @property
    def short_hash(self) -> str:
        return self.hash[:8]

    def attach_verdict(self, risk_score: int, verdict: Verdict) -> None:
        if self.verdict is not None:
            raise JobStateError(f"Commit {self.short_hash} already has a verdict")
        self.risk_score = risk_score
        self.verdict = verdict


class Typosquatting(BaseModel):
    is_typosquat: bool = False
    similar_packages: List[str] = Field(default_factory=list)
    confidence: float = Field(0.0, ge=0.0, le=1.0)


class DependencyRecord(BaseModel):
    name: str
    version: str = "latest"
    ecosystem: Literal["npm", "pip", "conda"]
    category: Literal["production", "development"] = "production"
    source: str = ""
    risk_level: RiskTier = "safe"
    vulnerabilities: List[str] = Field(default_factory=list)
    typosquatting: Typosquatting = Field(default_factory=Typosquatting)
    verdict: Optional[Verdict] = None

    def attach_verdict(self, risk_level: str, verdict: Verdict, vulnerabilities=None, typosquatting=None) -> None:
        if self.verdict is not None:
            raise JobStateError(f"Dependency {self.name} already has a verdict")
        self.risk_level = risk_level
        self.verdict = verdict
        self.vulnerabilities = list(vulnerabilities or [])
        if typosquatting is not None:
            self.typosquatting = typosquatting


class Alert(BaseModel):
    id: str = Field(default_factory=lambda: f"alert_{uuid.uuid4().hex[:12]}")
    timestamp: datetime = Field(default_factory=utcnow)
    severity: Severity
    type: AlertType
    title: str
    description: str
    details: Dict[str, Any] = Field(default_factory=dict)
    confidence: Optional[float] = None


class LogEntry(BaseModel):
    timestamp: datetime = Field(default_factory=utcnow)
    level: LogLevel
    message: str
    source: LogSource = "system"


class BuildInfo(BaseModel):
    success: bool = False
    duration_ms: Optional[int] = None
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


class RepoInfo(BaseModel):
    name: Optional[str] = None
    owner: Optional[str] = None
    full_name: Optional[str] = None
    branch: Optional[str] = None
    head: Optional[str] = None
    remotes: List[str] = Field(default_factory=list)
    contributors: List[str] = Field(default_factory=list)
    total_commits: int = 0
    last_commit: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class OverallAssessment(BaseModel):
    overall_threat: str = "medium"
    key_findings: List[str] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)
    confidence: float = Field(0.0, ge=0.0, le=1.0)
    risk_priority: str = "medium"
    fallback: bool = False


class JobSummary(BaseModel):
    job_id: str
    repo_url: str
    project_type: str
    status: str
    progress: int
    risk_score: Optional[int] = None
    risk_level: Optional[str] = None
    created_at: datetime
    finished_at: Optional[datetime] = None


class Job(BaseModel):
    job_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    repo_url: str
    project_type: ProjectType
    status: JobStatus = "pending"
    progress: int = Field(0, ge=0, le=100)
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    logs: List[LogEntry] = Field(default_factory=list)
    alerts: List[Alert] = Field(default_factory=list)
    commits: List[CommitRecord] = Field(default_factory=list)
    dependencies: List[DependencyRecord] = Field(default_factory=list)
    risk_score: Optional[int] = None
    risk_level: Optional[RiskLevel] = None
    build_info: BuildInfo = Field(default_factory=BuildInfo)
    repo_info: RepoInfo = Field(default_factory=RepoInfo)
    ai_summary: Optional[OverallAssessment] = None
    report_file: Optional[str] = None
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def _ensure_mutable(self):
        if self.is_terminal:
            raise JobStateError(f"Job {self.job_id} is {self.status} and can no longer change")

    def advance(self, status: str, progress: Optional[int] = None) -> None:
        self._ensure_mutable()
        if status not in TRANSITIONS[self.status]:
            raise JobStateError(f"Illegal transition {self.status} -> {status}")
        self.status = status
        if self.started_at is None and status != "pending":
            self.started_at = utcnow()
        if progress is not None:
            self.progress = max(self.progress, min(100, max(0, progress)))
        if status in TERMINAL_STATUSES:
            self.finished_at = utcnow()

    def add_log(self, level: str, message: str, source: str = "system") -> LogEntry:
        self._ensure_mutable()
        entry = LogEntry(level=level, message=message, source=source)
        self.logs.append(entry)
        return entry

    def add_alert(self, **fields) -> Alert:
        self._ensure_mutable()
        alert = Alert(**fields)
        self.alerts.append(alert)
        return alert

    @property
    def elapsed_ms(self) -> int:
        start = self.started_at or self.created_at
        end = self.finished_at or utcnow()
        return int((end - start).total_seconds() * 1000)

    @property
    def critical_alerts(self) -> int:
        return sum(1 for a in self.alerts if a.severity == "critical")

    @property
    def dependency_issues(self) -> int:
        return sum(1 for d in self.dependencies if d.risk_level in ("high", "critical"))

    @property
    def commit_issues(self) -> int:
        return sum(1 for c in self.commits if c.risk_score > HIGH_RISK_COMMIT_SCORE)

    def to_summary(self) -> JobSummary:
        return JobSummary(
            job_id=self.job_id,
            repo_url=self.repo_url,
            project_type=self.project_type,
            status=self.status,
            progress=self.progress,
            risk_score=self.risk_score,
            risk_level=self.risk_level,
            created_at=self.created_at,
            finished_at=self.finished_at,
        )
