# src/sandscan/tools/base.py
import os
import subprocess
from abc import ABC, abstractmethod


class CommandLineAdapter(ABC):
    """Runs an external binary and hands back the completed process."""

    binary: str = ""

    def run(self, args, cwd=None, timeout=None, env=None) -> subprocess.CompletedProcess:
        full_env = dict(os.environ)
        if env:
            full_env.update(env)
        return subprocess.run(
            [self.binary] + list(args),
            cwd=cwd,
            capture_output=True,
            text=True,
            encoding="utf-8",
            errors="replace",
            timeout=timeout,
            env=full_env,
            check=False
        )


class SourceFetcher(ABC):
    @abstractmethod
    def materialize(self, repo_url: str, job_id: str):
        """Fetch repo_url into a per-job local directory and return a Checkout."""

    @abstractmethod
    def cleanup(self, job_id: str) -> None:
        pass


class OracleClient(ABC):
    @abstractmethod
    def classify(self, prompt: str) -> str:
        """Return the oracle's raw text answer, or raise OracleUnavailable."""

    def status(self) -> dict:
        return {"status": "unknown"}
