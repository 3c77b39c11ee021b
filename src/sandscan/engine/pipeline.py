# src/sandscan/engine/pipeline.py
"""
AnalysisPipeline: one background run of one job.

    pending -> cloning (clone, provision sandbox) -> analyzing (sandboxed
    analysis script, commits, dependencies, oracle assessment, scoring, report)
    -> completed | failed

Every log line and alert is appended to the job, persisted, then published on
the event bus, in that order. The run always releases its sandbox and always
ends with exactly one `done` event, whatever happened before.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor

from sandscan.engine.errors import ExecutionTimeout, JobCancelled
from sandscan.engine.records import HIGH_RISK_COMMIT_SCORE, RepoInfo
from sandscan.engine.scoring import score_or_default
from sandscan.utils.scripts_utils import calculate_alert_stats, save_report

BUILD_LOG_LINES = 50
LOG_LEVELS = {"debug": logging.DEBUG, "info": logging.INFO, "warn": logging.WARNING, "error": logging.ERROR}


def done_payload(job):
    """Payload of the terminal `done` event for a finished job."""
    if job.status != "completed":
        return failure_done_payload(job.error or "Analysis failed")
    stats = calculate_alert_stats(job.alerts)
    return {
        "risk_score": job.risk_score,
        "risk_level": job.risk_level,
        "summary": {
            "total_alerts": stats["total_alerts"],
            "critical_alerts": stats["severity_counts"]["critical"],
            "severity_counts": stats["severity_counts"],
            "dependency_issues": job.dependency_issues,
            "commit_issues": job.commit_issues,
        },
        "alerts": [a.model_dump(mode="json") for a in job.alerts],
        "ai_summary": job.ai_summary.model_dump(mode="json") if job.ai_summary else None,
    }


def failure_done_payload(message):
    stats = calculate_alert_stats([])
    return {
        "risk_score": 0,
        "risk_level": "unknown",
        "summary": {
            "total_alerts": 0,
            "critical_alerts": 0,
            "severity_counts": stats["severity_counts"],
            "dependency_issues": 0,
            "commit_issues": 0,
        },
        "alerts": [],
        "error": message,
    }


class AnalysisPipeline:
    def __init__(self, job, services, cancel_event):
        self.job = job
        self.services = services
        self.settings = services.settings
        self.cancel_event = cancel_event
        self.handle = None
        self._started = time.monotonic()
        self._done_sent = False

    # ------------------------------------------------------------------
    # Append, persist, publish
    # ------------------------------------------------------------------

    def _persist(self):
        try:
            self.services.store.save(self.job)
        except Exception as e:
            # live delivery must not wait on the store
            logging.error(f"[job_id={self.job.job_id}] Failed to persist job state: {e}")

    def log(self, level, message, source="system"):
        entry = self.job.add_log(level, message, source)
        logging.log(LOG_LEVELS[level], f"[job_id={self.job.job_id}] [{source}] {message}")
        self._persist()
        self.services.bus.publish(self.job.job_id, "log", entry.model_dump(mode="json"))

    def alert(self, **fields):
        alert = self.job.add_alert(**fields)
        self._persist()
        self.services.bus.publish(self.job.job_id, "alert", alert.model_dump(mode="json"))
        return alert

    def advance(self, status, progress=None):
        self.job.advance(status, progress)
        self._persist()
        self.services.bus.publish(self.job.job_id, "progress", {"percentage": self.job.progress, "stage": status})

    def checkpoint(self):
        if self.cancel_event.is_set():
            raise JobCancelled("Analysis cancelled")

    @property
    def duration_ms(self) -> int:
        return int((time.monotonic() - self._started) * 1000)

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def run(self):
        error = None
        try:
            self._run_phases()
        except Exception as e:
            error = e
        finally:
            self._teardown()

        try:
            if error is None:
                self._complete()
            else:
                self._fail(error)
        except Exception as e:
            logging.exception(f"[job_id={self.job.job_id}] Failed to finalize job")
            if not self.job.is_terminal:
                self._fail(e)
            elif not self._done_sent:
                self._publish_failure_done(str(e))

    def _run_phases(self):
        self.advance("cloning", 5)
        self.log("info", "Starting repository analysis...", "system")
        checkout = self._clone()
        self.checkpoint()
        self._provision(checkout)
        self.advance("analyzing", 15)

        self.checkpoint()
        self._run_sandbox_analysis()

        self.checkpoint()
        self.log("info", "Analyzing commit history...", "analysis")
        self._analyze_commits(checkout)
        self.advance("analyzing", 40)

        self.checkpoint()
        self.log("info", "Analyzing dependencies...", "analysis")
        self._analyze_dependencies(checkout)
        self.advance("analyzing", 60)

        self.checkpoint()
        self.log("info", "Running AI-powered threat analysis...", "ai")
        self._overall_assessment()
        self.advance("analyzing", 80)

        self.log("info", "Calculating risk score...", "analysis")
        self._score()
        self.advance("analyzing", 90)

        self.log("info", "Generating final assessment...", "system")
        self._final_report()

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def _clone(self):
        self.log("info", f"Cloning repository: {self.job.repo_url}", "system")
        try:
            checkout = self.services.fetcher.materialize(self.job.repo_url, self.job.job_id)
        except Exception as e:
            self.log("error", f"Failed to clone repository: {e}", "system")
            raise
        ref = checkout.reference
        info = RepoInfo(
            name=ref.repo,
            owner=ref.owner,
            full_name=ref.full_name,
            branch=checkout.branch,
            head=checkout.head,
            remotes=list(checkout.remotes),
        )
        if self.services.metadata is not None:
            self._collect_metadata(ref, info)
        self.job.repo_info = info
        self._persist()
        self.log("info", f"Repository cloned successfully: {ref.full_name}", "system")
        return checkout

    def _collect_metadata(self, ref, info):
        try:
            info.metadata = self.services.metadata.fetch_metadata(ref)
            info.contributors = self.services.metadata.fetch_contributors(ref)
        except Exception as e:
            logging.warning(f"[job_id={self.job.job_id}] Repository metadata unavailable: {e}")
            self.log("warn", f"Repository metadata unavailable: {e}", "system")

    def _provision(self, checkout):
        self.log("info", "Provisioning isolated sandbox...", "system")
        self.handle = self.services.sandbox.provision(self.job.project_type, self.job.job_id, checkout.local_path)
        limits = self.handle.limits
        self.log(
            "info",
            f"Sandbox {self.handle.short_id} running: image={self.handle.image} "
            f"memory={limits.memory_bytes // (1024 * 1024)}MB cpu_shares={limits.cpu_shares} "
            f"network={self.handle.network} (no egress)",
            "system",
        )

    def _run_sandbox_analysis(self):
        self.log("info", "Running analysis script inside the sandbox...", "build")
        try:
            output = self.services.sandbox.run_analysis(self.handle, timeout=self.settings.sandbox_exec_timeout)
        except ExecutionTimeout as e:
            self.job.build_info.warnings.append(str(e))
            self.log("warn", f"Sandboxed analysis timed out: {e}", "build")
            self.alert(
                severity="high",
                type="runtime",
                title="Sandboxed analysis exceeded its time limit",
                description=f"The project's analysis run did not finish within {e.timeout}s",
                details={"command": e.command, "timeout": e.timeout},
            )
            return

        result = output.result
        for line in result.stdout.splitlines()[-BUILD_LOG_LINES:]:
            if line.strip():
                self.log("info", line.rstrip(), "build")
        for line in result.stderr.splitlines()[-BUILD_LOG_LINES:]:
            if line.strip():
                self.log("warn", line.rstrip(), "build")
        if result.exit_code != 0:
            message = f"Analysis script exited with code {result.exit_code}"
            self.job.build_info.warnings.append(message)
            self.log("warn", message, "build")

        patterns = output.suspicious_patterns
        if patterns:
            self.alert(
                severity="medium",
                type="runtime",
                title="Suspicious patterns found during sandboxed analysis",
                description=f"{len(patterns)} suspicious pattern(s) reported by the sandboxed analysis run",
                details={"patterns": patterns[:20], "count": len(patterns)},
            )
        self.log("info", f"Sandboxed analysis finished, {len(output.files)} report file(s) collected", "build")

    def _classify_in_batches(self, items, classify, apply, start, end, label):
        """Consult the oracle for items in bounded batches, applying results in submission order."""
        if not items:
            return
        batch_size = max(1, self.settings.oracle_batch_size)
        workers = max(1, min(self.settings.oracle_max_workers, batch_size))
        total = len(items)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"oracle-{self.job.job_id[:8]}") as pool:
            for offset in range(0, total, batch_size):
                self.checkpoint()
                batch = items[offset:offset + batch_size]
                futures = [pool.submit(classify, item) for item in batch]
                for item, future in zip(batch, futures):
                    try:
                        apply(item, future.result())
                    except Exception as e:
                        name = getattr(item, "short_hash", None) or getattr(item, "name", "?")
                        self.log("warn", f"Failed to analyze {label} {name}: {e}", "analysis")
                done = offset + len(batch)
                self.advance("analyzing", start + round(done / total * (end - start)))

    def _analyze_commits(self, checkout):
        commits, errors = self.services.commit_extractor(str(checkout.local_path))
        for err in errors:
            self.log("warn", f"Skipped commit {err.item}: {err.reason}", "analysis")
        self.log("info", f"Found {len(commits)} commits to analyze", "analysis")
        self._classify_in_batches(commits, self.services.oracle.analyze_commit, self._apply_commit_verdict, 15, 40, "commit")

    def _apply_commit_verdict(self, commit, result):
        commit.attach_verdict(result.risk_score, result.verdict)
        self.job.commits.append(commit)
        if commit.risk_score > HIGH_RISK_COMMIT_SCORE:
            self.alert(
                severity="critical" if commit.risk_score > 90 else "high",
                type="commit",
                title=f"High-risk commit detected: {commit.short_hash}",
                description=result.verdict.summary or f"Commit by {commit.author} has risk score of {commit.risk_score}",
                details={
                    "commit_hash": commit.hash,
                    "author": commit.author,
                    "message": commit.message,
                    "risk_score": commit.risk_score,
                    "threats": result.verdict.threats,
                    "suspicious_patterns": commit.suspicious_patterns,
                    "oracle_patterns": result.suspicious_patterns,
                },
                confidence=result.verdict.confidence,
            )
        self.log("info", f"Analyzed commit {commit.short_hash} - Risk: {commit.risk_score}", "analysis")

    def _analyze_dependencies(self, checkout):
        deps, errors = self.services.dependency_extractor(str(checkout.local_path), self.job.project_type)
        for err in errors:
            self.log("warn", f"Skipped dependency manifest {err.item}: {err.reason}", "analysis")
        self.log("info", f"Found {len(deps)} dependencies to analyze", "analysis")
        self._classify_in_batches(deps, self.services.oracle.analyze_dependency, self._apply_dependency_verdict, 40, 60, "dependency")

    def _apply_dependency_verdict(self, dep, result):
        dep.attach_verdict(result.risk_level, result.verdict, result.vulnerabilities, result.typosquatting)
        self.job.dependencies.append(dep)
        if dep.risk_level in ("high", "critical"):
            self.alert(
                severity=dep.risk_level,
                type="dependency",
                title=f"Risky dependency detected: {dep.name}",
                description=result.verdict.summary or f"{dep.name} has been flagged as {dep.risk_level} risk",
                details={
                    "package_name": dep.name,
                    "version": dep.version,
                    "ecosystem": dep.ecosystem,
                    "risk_level": dep.risk_level,
                    "threats": result.verdict.threats,
                },
                confidence=result.verdict.confidence,
            )
        if dep.typosquatting.is_typosquat:
            similar = dep.typosquatting.similar_packages
            self.alert(
                severity="high",
                type="dependency",
                title=f"Potential typosquatting: {dep.name}",
                description=f"Similar to: {', '.join(similar)}" if similar else "Package may be impersonating a popular package",
                details={"package_name": dep.name, "similar_packages": similar, "confidence": dep.typosquatting.confidence},
                confidence=dep.typosquatting.confidence,
            )
        self.log("info", f"Analyzed dependency {dep.name} - Risk: {dep.risk_level}", "analysis")

    def _overall_assessment(self):
        try:
            self.job.ai_summary = self.services.oracle.assess_overall(self.job)
        except Exception as e:
            self.log("warn", f"AI analysis failed: {e}", "ai")
            return
        self._persist()
        self.log("info", f"AI assessment completed - Threat level: {self.job.ai_summary.overall_threat}", "ai")

    def _score(self):
        assessment = score_or_default(self.job.commits, self.job.dependencies, self.job.alerts)
        if assessment.degraded:
            self.log("error", "Risk calculation failed, defaulting to medium risk", "analysis")
        self.job.risk_score = assessment.score
        self.job.risk_level = assessment.level
        self._persist()
        self.log("info", f"Risk score calculated: {assessment.score}/100 ({assessment.level})", "analysis")

    def _final_report(self):
        self.job.repo_info.total_commits = len(self.job.commits)
        self.job.repo_info.last_commit = self.job.commits[0].hash if self.job.commits else None
        try:
            self.job.report_file = save_report(self.job, self.settings.reports_dir)
        except OSError as e:
            self.log("warn", f"Could not write report file: {e}", "system")
        self._persist()
        self.log("info", "Final assessment generated", "system")

    # ------------------------------------------------------------------
    # Endings
    # ------------------------------------------------------------------

    def _teardown(self):
        if self.handle is not None:
            try:
                self.services.sandbox.release(self.handle)
            except Exception as e:
                logging.error(f"[job_id={self.job.job_id}] Sandbox teardown failed: {e}")
                if not self.job.is_terminal:
                    self.log("error", f"Sandbox teardown failed: {e}", "system")
        try:
            self.services.fetcher.cleanup(self.job.job_id)
        except Exception as e:
            logging.warning(f"[job_id={self.job.job_id}] Workspace cleanup failed: {e}")

    def _complete(self):
        self.job.build_info.success = True
        self.job.build_info.duration_ms = self.duration_ms
        self.log("info", f"Analysis completed in {round(self.duration_ms / 1000)}s", "system")
        self.advance("completed", 100)
        self._done_sent = True
        self.services.bus.publish(self.job.job_id, "done", done_payload(self.job))
        logging.info(
            f"[job_id={self.job.job_id}] Completed analysis job. "
            f"risk_score={self.job.risk_score} duration_ms={self.job.build_info.duration_ms}"
        )

    def _fail(self, error):
        message = str(error) or error.__class__.__name__
        self.job.error = message
        self.job.build_info.success = False
        self.job.build_info.duration_ms = self.duration_ms
        self.job.build_info.errors.append(message)
        self.log("error", f"Analysis failed: {message}", "system")
        self.job.advance("failed")
        self._persist()
        self._publish_failure_done(message)
        logging.error(f"[job_id={self.job.job_id}] Analysis job failed: {message}")

    def _publish_failure_done(self, message):
        self._done_sent = True
        self.services.bus.publish(self.job.job_id, "done", failure_done_payload(message))
