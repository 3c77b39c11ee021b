# src/sandscan/engine/models.py
from sqlalchemy import Column, Integer, String, DateTime, Text
from sqlalchemy.orm import declarative_base
from datetime import datetime, timezone

Base = declarative_base()


def _utcnow():
    return datetime.now(timezone.utc)


class AnalysisJob(Base):
    __tablename__ = 'analysis_jobs'
    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(String, unique=True, nullable=False, index=True)
    repo_url = Column(String, nullable=False)
    project_type = Column(String, nullable=False)
    status = Column(String, default='pending', index=True)
    progress = Column(Integer, default=0)
    risk_score = Column(Integer, nullable=True)
    risk_level = Column(String, nullable=True)
    report_file = Column(String, nullable=True)
    payload = Column(Text, nullable=False)  # JSON of the full Job record
    created_at = Column(DateTime, default=_utcnow, index=True)
    started_at = Column(DateTime, nullable=True)
    finished_at = Column(DateTime, nullable=True)
    error = Column(Text, nullable=True)
