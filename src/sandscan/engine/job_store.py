# src/sandscan/engine/job_store.py
"""
JobStore: load/save persistence of Job records on top of SQLAlchemy.

Each save writes the whole job as JSON plus a few queryable columns. Loads
return fresh copies, so readers never share an object with the running pipeline.
"""

import logging
import threading
from typing import List

from sandscan.engine.errors import NotFound
from sandscan.engine.models import AnalysisJob
from sandscan.engine.records import Job, JobSummary


class JobStore:
    def __init__(self, session_factory):
        self._session_factory = session_factory
        self._lock = threading.Lock()

    def save(self, job: Job) -> None:
        payload = job.model_dump_json()
        with self._lock:
            db = self._session_factory()
            try:
                row = db.query(AnalysisJob).filter(AnalysisJob.job_id == job.job_id).first()
                if row is None:
                    row = AnalysisJob(job_id=job.job_id, created_at=job.created_at)
                    db.add(row)
                row.repo_url = job.repo_url
                row.project_type = job.project_type
                row.status = job.status
                row.progress = job.progress
                row.risk_score = job.risk_score
                row.risk_level = job.risk_level
                row.report_file = job.report_file
                row.started_at = job.started_at
                row.finished_at = job.finished_at
                row.error = job.error
                row.payload = payload
                db.commit()
            except Exception:
                db.rollback()
                raise
            finally:
                db.close()

    def load(self, job_id: str) -> Job:
        with self._lock:
            db = self._session_factory()
            try:
                row = db.query(AnalysisJob).filter(AnalysisJob.job_id == job_id).first()
                payload = row.payload if row else None
            finally:
                db.close()
        if payload is None:
            raise NotFound(f"Job not found: {job_id}")
        return Job.model_validate_json(payload)

    def list_recent(self, limit: int = 50, status: str = None) -> List[JobSummary]:
        with self._lock:
            db = self._session_factory()
            try:
                query = db.query(AnalysisJob)
                if status:
                    query = query.filter(AnalysisJob.status == status)
                rows = query.order_by(AnalysisJob.created_at.desc(), AnalysisJob.id.desc()).limit(limit).all()
                payloads = [row.payload for row in rows]
            finally:
                db.close()
        summaries = []
        for payload in payloads:
            try:
                summaries.append(Job.model_validate_json(payload).to_summary())
            except ValueError as e:
                logging.warning(f"Skipping unreadable job record: {e}")
        return summaries
