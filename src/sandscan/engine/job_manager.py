# src/sandscan/engine/job_manager.py
"""
JobManager: accepts analysis jobs, runs each one on its own background thread and
answers status queries from the job store.
"""

import logging
import threading
from typing import Dict, List, Optional

from sandscan.engine.errors import InvalidInput
from sandscan.engine.pipeline import AnalysisPipeline
from sandscan.engine.records import PROJECT_TYPES, Job, JobSummary
from sandscan.tools.git_adapter import parse_repo_url


class JobManager:
    def __init__(self, services):
        self.services = services
        self.threads: Dict[str, threading.Thread] = {}
        self.cancel_events: Dict[str, threading.Event] = {}
        self.lock = threading.Lock()

    def start_analysis(self, repo_url: str, project_type: str) -> str:
        repo_url = (repo_url or "").strip()
        project_type = (project_type or "").strip()
        if not repo_url or not project_type:
            raise InvalidInput("Missing required fields: repo_url and project_type")
        if project_type not in PROJECT_TYPES:
            raise InvalidInput(f"Invalid project type: {project_type}. Supported: {', '.join(PROJECT_TYPES)}")
        parse_repo_url(repo_url)

        job = Job(repo_url=repo_url, project_type=project_type)
        self.services.store.save(job)
        logging.info(f"[job_id={job.job_id}] Submitted analysis job. repo_url={repo_url} project_type={project_type}")

        cancel_event = threading.Event()
        thread = threading.Thread(
            target=self._run_job,
            args=(job, cancel_event),
            name=f"analysis-{job.job_id[:8]}",
            daemon=True,
        )
        with self.lock:
            self.threads[job.job_id] = thread
            self.cancel_events[job.job_id] = cancel_event
        thread.start()
        return job.job_id

    def _run_job(self, job: Job, cancel_event: threading.Event):
        logging.info(f"[job_id={job.job_id}] Started analysis job.")
        try:
            AnalysisPipeline(job, self.services, cancel_event).run()
        except Exception:
            # the pipeline reports its own failures, nothing may leave this thread
            logging.exception(f"[job_id={job.job_id}] Analysis thread crashed")
        finally:
            with self.lock:
                self.threads.pop(job.job_id, None)
                self.cancel_events.pop(job.job_id, None)

    def get_status(self, job_id: str) -> Job:
        return self.services.store.load(job_id)

    def get_details(self, job_id: str) -> Job:
        return self.services.store.load(job_id)

    def list_jobs(self, limit: int = 50, status: Optional[str] = None) -> List[JobSummary]:
        return self.services.store.list_recent(limit=limit, status=status)

    def is_running(self, job_id: str) -> bool:
        with self.lock:
            return job_id in self.threads

    def active_jobs(self) -> List[str]:
        with self.lock:
            return list(self.threads)

    def cancel(self, job_id: str) -> bool:
        """Ask a running job to stop at its next checkpoint. False if it already finished."""
        self.services.store.load(job_id)
        with self.lock:
            event = self.cancel_events.get(job_id)
        if event is None:
            return False
        event.set()
        logging.info(f"[job_id={job_id}] Cancellation requested.")
        return True

    def wait(self, job_id: str, timeout: Optional[float] = None) -> bool:
        """Block until the job's background run has finished. True if it did within timeout."""
        with self.lock:
            thread = self.threads.get(job_id)
        if thread is None:
            return True
        thread.join(timeout)
        return not thread.is_alive()

    def shutdown(self, timeout: float = 5.0):
        with self.lock:
            events = list(self.cancel_events.values())
            threads = list(self.threads.values())
        for event in events:
            event.set()
        for thread in threads:
            thread.join(timeout)
        self.services.sandbox.release_all()
