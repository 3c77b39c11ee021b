# src/sandscan/engine/sandbox.py
"""
SandboxManager: provisions one isolated Docker container per job, runs commands
inside it and tears it down.

The repository under analysis is treated as hostile. Containers join an
internal bridge network (no route out, no DNS), run with a hard memory ceiling,
a CPU-share cap, ulimits on open files and processes, every capability dropped
except the few needed to fix file ownership in the mounted workspace, and
no-new-privileges. Commands execute as an unprivileged user.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

import docker
from docker.errors import APIError, BuildError, DockerException, ImageNotFound, NotFound
from docker.types import Ulimit

from sandscan.engine.errors import ExecutionTimeout, SandboxError, SandboxProvisionError

WORKDIR = "/workspace"
KEEPALIVE_COMMAND = ["/bin/bash", "-c", "sleep 3600"]
ANALYZE_COMMAND = "/usr/local/bin/analyze"
ANALYSIS_FILES = (
    "analysis-output/summary.txt",
    "analysis-output/dependencies.txt",
    "analysis-output/suspicious-patterns.txt",
    "analysis-output/vulnerability-scan.txt",
)
RETAINED_CAPABILITIES = ["CHOWN", "DAC_OVERRIDE", "FOWNER", "SETGID", "SETUID"]
SUPPORTED_PROJECT_TYPES = ("nodejs", "python")
MAX_STREAM_BYTES = 1024 * 1024
POLL_INTERVAL = 0.5


@dataclass(frozen=True)
class ResourceLimits:
    memory_bytes: int
    cpu_shares: int
    nofile: int
    nproc: int


@dataclass
class SandboxHandle:
    job_id: str
    project_type: str
    image: str
    workspace_path: str
    network: str
    limits: ResourceLimits
    container_id: Optional[str] = None
    state: str = "provisioning"
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    _releasing: bool = field(default=False, repr=False)

    @property
    def short_id(self) -> str:
        return (self.container_id or "")[:12]


@dataclass
class ExecResult:
    exit_code: int
    stdout: str
    stderr: str
    truncated: bool = False


@dataclass
class AnalysisOutput:
    result: ExecResult
    files: Dict[str, str]

    @property
    def suspicious_patterns(self) -> List[str]:
        text = self.files.get("analysis-output/suspicious-patterns.txt", "")
        return [line.strip() for line in text.splitlines() if line.strip().startswith("WARNING")]


class _StreamBuffer:
    def __init__(self, limit):
        self.limit = limit
        self.chunks = []
        self.size = 0
        self.truncated = False

    def add(self, chunk: bytes):
        if self.size >= self.limit:
            self.truncated = True
            return
        room = self.limit - self.size
        if len(chunk) > room:
            chunk = chunk[:room]
            self.truncated = True
        self.chunks.append(chunk)
        self.size += len(chunk)

    def text(self) -> str:
        return b"".join(self.chunks).decode("utf-8", errors="replace")


class SandboxManager:
    def __init__(self, settings, client=None):
        self.settings = settings
        self._client = client
        self._handles: Dict[str, SandboxHandle] = {}
        self._lock = threading.Lock()
        self._network_ready = False

    @property
    def client(self):
        if self._client is None:
            self._client = docker.from_env()
        return self._client

    @property
    def limits(self) -> ResourceLimits:
        return ResourceLimits(
            memory_bytes=self.settings.sandbox_memory_bytes,
            cpu_shares=self.settings.sandbox_cpu_shares,
            nofile=self.settings.sandbox_nofile,
            nproc=self.settings.sandbox_nproc,
        )

    def image_name(self, project_type: str) -> str:
        return f"{self.settings.image_prefix}-{project_type}:latest"

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def get(self, job_id: str) -> Optional[SandboxHandle]:
        with self._lock:
            return self._handles.get(job_id)

    def active_handles(self) -> List[SandboxHandle]:
        with self._lock:
            return list(self._handles.values())

    # ------------------------------------------------------------------
    # Images and network
    # ------------------------------------------------------------------

    def ensure_network(self) -> None:
        with self._lock:
            if self._network_ready:
                return
        name = self.settings.network_name
        if not self.client.networks.list(names=[name]):
            logging.info(f"Creating isolated network: {name}")
            self.client.networks.create(
                name,
                driver="bridge",
                internal=True,
                options={"com.docker.network.bridge.enable_icc": "false"},
                labels={"sandscan.managed": "true"},
            )
        with self._lock:
            self._network_ready = True

    def resolve_image(self, project_type: str) -> str:
        name = self.image_name(project_type)
        try:
            self.client.images.get(name)
            return name
        except ImageNotFound:
            logging.info(f"Image not found, building: {name}")
        dockerfile = f"Dockerfile.{project_type}"
        context = Path(self.settings.docker_context_dir)
        if not (context / dockerfile).exists():
            raise SandboxProvisionError(f"Dockerfile not found: {context / dockerfile}")
        try:
            _, build_logs = self.client.images.build(
                path=str(context), dockerfile=dockerfile, tag=name, rm=True, forcerm=True
            )
            for entry in build_logs:
                line = (entry.get("stream") or "").strip()
                if line:
                    logging.debug(f"Build {name}: {line}")
        except (BuildError, APIError) as e:
            raise SandboxProvisionError(f"Failed to build image {name}: {e}") from e
        logging.info(f"Image built successfully: {name}")
        return name

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def provision(self, project_type: str, job_id: str, workspace_path) -> SandboxHandle:
        if project_type not in SUPPORTED_PROJECT_TYPES:
            raise SandboxProvisionError(f"No sandbox image for project type: {project_type}")
        handle = SandboxHandle(
            job_id=job_id,
            project_type=project_type,
            image=self.image_name(project_type),
            workspace_path=str(Path(workspace_path).resolve()),
            network=self.settings.network_name,
            limits=self.limits,
        )
        with self._lock:
            if job_id in self._handles:
                raise SandboxProvisionError(f"Job {job_id} already holds a sandbox")
            self._handles[job_id] = handle

        try:
            handle.image = self.resolve_image(project_type)
            self.ensure_network()
            container = self.client.containers.create(
                handle.image,
                command=KEEPALIVE_COMMAND,
                name=f"{self.settings.image_prefix}-analysis-{job_id}",
                working_dir=WORKDIR,
                environment=["ANALYSIS_MODE=security", f"JOB_ID={job_id}", f"PROJECT_TYPE={project_type}"],
                mem_limit=handle.limits.memory_bytes,
                memswap_limit=handle.limits.memory_bytes,
                cpu_shares=handle.limits.cpu_shares,
                network=handle.network,
                dns=[],
                security_opt=["no-new-privileges:true"],
                cap_drop=["ALL"],
                cap_add=RETAINED_CAPABILITIES,
                ulimits=[
                    Ulimit(name="nofile", soft=handle.limits.nofile, hard=handle.limits.nofile),
                    Ulimit(name="nproc", soft=handle.limits.nproc, hard=handle.limits.nproc),
                ],
                volumes={handle.workspace_path: {"bind": WORKDIR, "mode": "rw"}},
                labels={
                    "sandscan.job-id": job_id,
                    "sandscan.project-type": project_type,
                    "sandscan.created": handle.created_at.isoformat(),
                },
            )
            handle.container_id = container.id
            logging.info(f"[job_id={job_id}] Sandbox container created: {handle.short_id}")
            container.start()
            self._wait_until_running(container, self.settings.sandbox_start_timeout)
            handle.state = "running"
        except SandboxProvisionError:
            self._discard(handle)
            raise
        except DockerException as e:
            self._discard(handle)
            raise SandboxProvisionError(f"Failed to start sandbox for job {job_id}: {e}") from e

        logging.info(f"[job_id={job_id}] Sandbox running: {handle.short_id} image={handle.image}")
        return handle

    def _wait_until_running(self, container, timeout: float) -> None:
        deadline = time.monotonic() + timeout
        while True:
            container.reload()
            if container.status == "running":
                return
            if container.status in ("exited", "dead"):
                raise SandboxProvisionError(f"Sandbox container {container.id[:12]} exited during startup")
            if time.monotonic() >= deadline:
                raise SandboxProvisionError(f"Sandbox container failed to start within {timeout}s")
            time.sleep(POLL_INTERVAL)

    def _discard(self, handle: SandboxHandle) -> None:
        """Remove whatever a failed provision left behind."""
        with self._lock:
            if self._handles.get(handle.job_id) is handle:
                del self._handles[handle.job_id]
        if handle.container_id:
            try:
                self.client.containers.get(handle.container_id).remove(force=True)
            except NotFound:
                pass
            except DockerException as e:
                logging.error(f"[job_id={handle.job_id}] Failed to remove partial sandbox {handle.short_id}: {e}")
        handle.state = "removed"

    def exec(self, handle: SandboxHandle, command, timeout: float = None) -> ExecResult:
        if handle.state != "running":
            raise SandboxError(f"Sandbox for job {handle.job_id} is {handle.state}, not running")
        timeout = timeout or self.settings.sandbox_exec_timeout
        cmd = list(command) if isinstance(command, (list, tuple)) else ["/bin/bash", "-c", command]
        display = " ".join(cmd)
        logging.info(f"[job_id={handle.job_id}] Executing in sandbox {handle.short_id}: {display}")
        try:
            exec_id = self.client.api.exec_create(
                handle.container_id, cmd, stdout=True, stderr=True,
                user=self.settings.sandbox_user, workdir=WORKDIR,
            )["Id"]
            stream = self.client.api.exec_start(exec_id, stream=True, demux=True)
        except DockerException as e:
            raise SandboxError(f"Failed to start command in sandbox: {e}") from e

        stdout = _StreamBuffer(MAX_STREAM_BYTES)
        stderr = _StreamBuffer(MAX_STREAM_BYTES)
        failures = []

        def _drain():
            try:
                for out_chunk, err_chunk in stream:
                    if out_chunk:
                        stdout.add(out_chunk)
                    if err_chunk:
                        stderr.add(err_chunk)
            except Exception as e:
                failures.append(e)

        reader = threading.Thread(target=_drain, name=f"sandbox-exec-{handle.job_id}", daemon=True)
        reader.start()
        reader.join(timeout)
        if reader.is_alive():
            logging.warning(f"[job_id={handle.job_id}] Command timed out after {timeout}s: {display}")
            raise ExecutionTimeout(display, timeout)
        if failures:
            raise SandboxError(f"Output stream failed for {display}: {failures[0]}") from failures[0]

        try:
            exit_code = self.client.api.exec_inspect(exec_id).get("ExitCode")
        except DockerException as e:
            raise SandboxError(f"Failed to inspect command result: {e}") from e
        result = ExecResult(
            exit_code=-1 if exit_code is None else exit_code,
            stdout=stdout.text(),
            stderr=stderr.text(),
            truncated=stdout.truncated or stderr.truncated,
        )
        logging.info(
            f"[job_id={handle.job_id}] Command finished exit={result.exit_code} "
            f"stdout={len(result.stdout)} stderr={len(result.stderr)}"
        )
        return result

    def run_analysis(self, handle: SandboxHandle, timeout: float = None) -> AnalysisOutput:
        """Run the image's analysis script, then collect the report files it writes."""
        result = self.exec(handle, ANALYZE_COMMAND, timeout=timeout)
        if result.exit_code != 0:
            logging.warning(f"[job_id={handle.job_id}] Analysis script exited with {result.exit_code}")
        files = {}
        for path in ANALYSIS_FILES:
            try:
                read = self.exec(handle, ["cat", path], timeout=30)
            except (ExecutionTimeout, SandboxError) as e:
                logging.warning(f"[job_id={handle.job_id}] Could not read analysis file {path}: {e}")
                continue
            if read.exit_code == 0:
                files[path] = read.stdout
        return AnalysisOutput(result=result, files=files)

    def release(self, handle: Optional[SandboxHandle]) -> None:
        """Stop and remove the sandbox. Safe to call any number of times."""
        if handle is None:
            return
        with self._lock:
            if handle.state == "removed" or handle._releasing:
                return
            handle._releasing = True
            if self._handles.get(handle.job_id) is handle:
                del self._handles[handle.job_id]

        try:
            if handle.container_id:
                self._stop_and_remove(handle)
        except DockerException as e:
            with self._lock:
                handle._releasing = False
                self._handles.setdefault(handle.job_id, handle)
            logging.error(f"[job_id={handle.job_id}] Failed to release sandbox {handle.short_id}: {e}")
            raise SandboxError(f"Failed to release sandbox for job {handle.job_id}: {e}") from e
        handle.state = "removed"
        logging.info(f"[job_id={handle.job_id}] Sandbox released: {handle.short_id}")

    def _stop_and_remove(self, handle: SandboxHandle) -> None:
        try:
            container = self.client.containers.get(handle.container_id)
        except NotFound:
            logging.info(f"[job_id={handle.job_id}] Sandbox {handle.short_id} already removed")
            return
        try:
            container.stop(timeout=self.settings.sandbox_stop_grace)
        except NotFound:
            return
        except APIError as e:
            if e.status_code != 304:
                raise
            logging.info(f"[job_id={handle.job_id}] Sandbox {handle.short_id} was already stopped")
        handle.state = "stopped"
        try:
            container.remove(force=True)
        except NotFound:
            pass

    def release_all(self) -> None:
        for handle in self.active_handles():
            try:
                self.release(handle)
            except SandboxError as e:
                logging.error(f"Shutdown cleanup failed: {e}")

    def service_status(self) -> dict:
        try:
            version = self.client.version()
        except DockerException as e:
            return {"status": "unhealthy", "error": str(e)}
        return {
            "status": "healthy",
            "docker_version": version.get("Version"),
            "active_sandboxes": len(self.active_handles()),
            "network": self.settings.network_name,
        }
