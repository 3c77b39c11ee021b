# src/sandscan/api/schemas.py
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, Field


class AnalyzeRequest(BaseModel):
    # Left optional so missing fields reach the job manager and come back as a 400
    repo_url: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("repo_url", "repoUrl"),
        description="HTTPS or scp-style URL of the repository to analyze",
    )
    project_type: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("project_type", "projectType"),
        description="Project type: 'nodejs' or 'python'",
    )


class AnalyzeResponse(BaseModel):
    success: bool
    job_id: str
    status: str
    message: str


class JobStatusResponse(BaseModel):
    success: bool = True
    job_id: str
    repo_url: str
    status: str
    progress: int
    risk_score: Optional[int] = None
    risk_level: Optional[str] = None
    error: Optional[str] = None
    alert_count: int = 0
    critical_alerts: int = 0
    elapsed_ms: int = 0
    created_at: datetime
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @classmethod
    def from_job(cls, job) -> "JobStatusResponse":
        return cls(
            job_id=job.job_id,
            repo_url=job.repo_url,
            status=job.status,
            progress=job.progress,
            risk_score=job.risk_score,
            risk_level=job.risk_level,
            error=job.error,
            alert_count=len(job.alerts),
            critical_alerts=job.critical_alerts,
            elapsed_ms=job.elapsed_ms,
            created_at=job.created_at,
            started_at=job.started_at,
            finished_at=job.finished_at,
        )


class JobListResponse(BaseModel):
    success: bool = True
    jobs: List[Dict[str, Any]]


class CancelResponse(BaseModel):
    success: bool
    job_id: str
    message: str
