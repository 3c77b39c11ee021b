import itertools
import json
import shutil
import threading
from pathlib import Path
from types import SimpleNamespace

import pytest
from docker.errors import APIError, ImageNotFound, NotFound

from sandscan.config import Settings
from sandscan.engine.db import create_session_factory
from sandscan.engine.errors import OracleUnavailable
from sandscan.engine.events import EventBus
from sandscan.engine.job_manager import JobManager
from sandscan.engine.job_store import JobStore
from sandscan.engine.oracle import ThreatOracleAdapter
from sandscan.engine.records import CommitRecord
from sandscan.engine.sandbox import ANALYZE_COMMAND, SandboxManager
from sandscan.engine.services import AnalysisServices
from sandscan.tools.base import OracleClient, SourceFetcher
from sandscan.tools.git_adapter import Checkout, parse_repo_url
from sandscan.utils.extract_dependencies import extract_dependencies

REPO_URL = "https://github.com/acme/widget"

PACKAGE_JSON = {
    "name": "widget",
    "dependencies": {"express": "^4.18.2"},
    "devDependencies": {"jest": "29.7.0"},
}

ANALYSIS_FILES = {
    "analysis-output/summary.txt": "=== SUMMARY ===\nProduction dependencies: 1\n",
    "analysis-output/dependencies.txt": "express@^4.18.2\n",
    "analysis-output/suspicious-patterns.txt": "=== SUSPICIOUS PATTERNS ===\n",
    "analysis-output/vulnerability-scan.txt": "=== VULNERABILITY PATTERNS ===\n",
}


# ----------------------------------------------------------------------
# Docker
# ----------------------------------------------------------------------

class FakeContainer:
    def __init__(self, client, container_id, kwargs):
        self.client = client
        self.id = container_id
        self.kwargs = kwargs
        self.status = "created"
        self.stop_calls = 0
        self.stop_error = None
        self.removed = False

    def start(self):
        self.status = self.client.start_status

    def reload(self):
        pass

    def stop(self, timeout=None):
        self.stop_calls += 1
        self.client.api.hang.set()
        if self.stop_error is not None:
            raise self.stop_error
        self.status = "exited"

    def remove(self, force=False):
        self.removed = True
        self.client.containers.by_id.pop(self.id, None)


class FakeContainers:
    def __init__(self, client):
        self.client = client
        self.by_id = {}
        self.created = []
        self._ids = itertools.count(1)

    def create(self, image, **kwargs):
        container = FakeContainer(self.client, f"{next(self._ids):012d}{'f' * 52}", dict(kwargs, image=image))
        self.by_id[container.id] = container
        self.created.append(container)
        return container

    def get(self, container_id):
        if container_id not in self.by_id:
            raise NotFound(f"No such container: {container_id}")
        return self.by_id[container_id]


class FakeImages:
    def __init__(self, present=True):
        self.present = present
        self.built = []

    def get(self, name):
        if not self.present:
            raise ImageNotFound(f"No such image: {name}")
        return SimpleNamespace(tags=[name])

    def build(self, **kwargs):
        self.built.append(kwargs)
        self.present = True
        return SimpleNamespace(tags=[kwargs.get("tag")]), [{"stream": "Step 1/1 : FROM scratch\n"}]


class FakeNetworks:
    def __init__(self):
        self.created = []

    def list(self, names=None):
        return [n for n in self.created if n["name"] in (names or [])]

    def create(self, name, **kwargs):
        self.created.append(dict(kwargs, name=name))


class FakeAPI:
    """Low-level exec API. `handler(cmd)` returns (exit_code, stdout, stderr) or "hang"."""

    def __init__(self, files=None):
        self.files = dict(ANALYSIS_FILES if files is None else files)
        self.execs = {}
        self.hang = threading.Event()
        self._ids = itertools.count(1)
        self.handler = self.default_handler

    def default_handler(self, cmd):
        if cmd == ["/bin/bash", "-c", ANALYZE_COMMAND]:
            return 0, "[analysis] Starting Node.js analysis\n[analysis] Analysis finished\n", ""
        if cmd[0] == "cat":
            if cmd[1] in self.files:
                return 0, self.files[cmd[1]], ""
            return 1, "", f"cat: {cmd[1]}: No such file or directory\n"
        return 0, "", ""

    def exec_create(self, container_id, cmd, **kwargs):
        exec_id = f"exec-{next(self._ids)}"
        self.execs[exec_id] = {"container": container_id, "cmd": list(cmd), "kwargs": kwargs, "outcome": self.handler(list(cmd))}
        return {"Id": exec_id}

    def exec_start(self, exec_id, stream=False, demux=False):
        outcome = self.execs[exec_id]["outcome"]
        if outcome == "hang":
            return self._hang()
        _, stdout, stderr = outcome
        return iter([(stdout.encode() or None, None), (None, stderr.encode() or None)])

    def _hang(self):
        self.hang.wait(10)
        return
        yield

    def exec_inspect(self, exec_id):
        outcome = self.execs[exec_id]["outcome"]
        return {"ExitCode": None if outcome == "hang" else outcome[0]}


class FakeDockerClient:
    def __init__(self, image_present=True, start_status="running", files=None):
        self.start_status = start_status
        self.api = FakeAPI(files)
        self.containers = FakeContainers(self)
        self.images = FakeImages(image_present)
        self.networks = FakeNetworks()

    def version(self):
        return {"Version": "24.0.7"}


def api_error(status_code, message="docker error"):
    return APIError(message, response=SimpleNamespace(status_code=status_code, reason="", url=""))


# ----------------------------------------------------------------------
# Oracle
# ----------------------------------------------------------------------

class FakeOracleClient(OracleClient):
    """Answers by prompt kind. `commit`, `dependency`, `overall` are dicts or callables."""

    def __init__(self, commit=None, dependency=None, overall=None, unavailable=False, gate=None):
        self.commit = commit if commit is not None else {"riskScore": 10, "threats": [], "confidence": 0.8, "summary": "Routine change"}
        self.dependency = dependency if dependency is not None else {
            "riskLevel": "low",
            "threats": [],
            "typosquatting": {"isTyposquat": False, "similarPackages": [], "confidence": 0.9},
            "confidence": 0.7,
            "summary": "Well known package",
        }
        self.overall = overall if overall is not None else {
            "overallThreat": "low",
            "keyFindings": ["Nothing unusual"],
            "recommendations": ["Keep dependencies pinned"],
            "confidence": 0.75,
            "riskPriority": "low",
        }
        self.unavailable = unavailable
        self.gate = gate
        self.prompts = []
        self._lock = threading.Lock()

    def classify(self, prompt):
        with self._lock:
            self.prompts.append(prompt)
        if self.gate is not None:
            self.gate.wait(5)
        if self.unavailable:
            raise OracleUnavailable("connection refused")
        if "Git commit" in prompt:
            answer = self.commit
        elif "software dependency" in prompt:
            answer = self.dependency
        else:
            answer = self.overall
        if callable(answer):
            answer = answer(prompt)
        return answer if isinstance(answer, str) else "<think>checking</think>\n" + json.dumps(answer)

    def status(self):
        return {"status": "healthy", "model": "fake"}


# ----------------------------------------------------------------------
# Source fetching
# ----------------------------------------------------------------------

class FakeFetcher(SourceFetcher):
    def __init__(self, workspace, files=None, error=None):
        self.workspace = Path(workspace)
        self.files = files if files is not None else {"package.json": json.dumps(PACKAGE_JSON)}
        self.error = error
        self.cleaned = []

    def materialize(self, repo_url, job_id):
        if self.error is not None:
            raise self.error
        path = self.workspace / job_id
        path.mkdir(parents=True, exist_ok=True)
        for name, content in self.files.items():
            (path / name).write_text(content)
        return Checkout(
            reference=parse_repo_url(repo_url),
            local_path=path,
            branch="main",
            head="a" * 40,
            remotes=[repo_url],
        )

    def cleanup(self, job_id):
        self.cleaned.append(job_id)
        shutil.rmtree(self.workspace / job_id, ignore_errors=True)


def make_commit(index, message="Update docs"):
    return CommitRecord(
        hash=f"{index:040x}",
        author="dev",
        email="dev@example.com",
        message=message,
        files_changed=["README.md"],
        additions=3,
        deletions=1,
        diff="+docs",
    )


def fake_commit_extractor(count=3):
    def _extract(repo_path):
        return [make_commit(i + 1) for i in range(count)], []
    return _extract


# ----------------------------------------------------------------------
# Fixtures
# ----------------------------------------------------------------------

@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url="sqlite://",
        workspace_dir=str(tmp_path / "workspace"),
        reports_dir=str(tmp_path / "reports"),
        docker_context_dir=str(tmp_path / "docker"),
        sandbox_start_timeout=1.0,
        sandbox_exec_timeout=2.0,
        oracle_batch_size=2,
        oracle_max_workers=2,
        github_token="",
    )


@pytest.fixture
def store():
    return JobStore(create_session_factory("sqlite://"))


@pytest.fixture
def docker_client():
    return FakeDockerClient()


@pytest.fixture
def oracle_client():
    return FakeOracleClient()


@pytest.fixture
def fetcher(tmp_path):
    return FakeFetcher(tmp_path / "checkouts")


@pytest.fixture
def services(settings, store, docker_client, oracle_client, fetcher):
    return AnalysisServices(
        settings=settings,
        store=store,
        bus=EventBus(),
        sandbox=SandboxManager(settings, client=docker_client),
        oracle=ThreatOracleAdapter(oracle_client),
        fetcher=fetcher,
        commit_extractor=fake_commit_extractor(3),
        dependency_extractor=extract_dependencies,
    )


@pytest.fixture
def manager(services):
    manager = JobManager(services)
    yield manager
    for job_id in manager.active_jobs():
        manager.cancel(job_id)
        manager.wait(job_id, timeout=10)
