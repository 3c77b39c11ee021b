# src/sandscan/tools/git_adapter.py
import logging
import re
import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

import httpx

from .base import CommandLineAdapter, SourceFetcher
from sandscan.engine.errors import (
    FetchNetworkError,
    InvalidReference,
    RepositoryNotFound,
    SourceFetchError,
)

REPO_URL_PATTERNS = [
    re.compile(r"^https?://(?P<host>[\w.-]+)/(?P<owner>[\w.-]+)/(?P<repo>[\w.-]+?)(?:\.git)?(?:/.*)?$"),
    re.compile(r"^git@(?P<host>[\w.-]+):(?P<owner>[\w.-]+)/(?P<repo>[\w.-]+?)(?:\.git)?$"),
]

# Matched against lower-cased git stderr, not-found first: a 404 also reads "unable to access"
NOT_FOUND_MARKERS = (
    "repository not found",
    "returned error: 404",
    "does not exist",
    "could not read username",
    "terminal prompts disabled",
    "authentication failed",
)
NETWORK_MARKERS = (
    "could not resolve host",
    "unable to access",
    "failed to connect",
    "connection timed out",
    "connection refused",
    "network is unreachable",
    "operation timed out",
    "early eof",
)


@dataclass(frozen=True)
class RepoReference:
    host: str
    owner: str
    repo: str

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.repo}"

    @property
    def clone_url(self) -> str:
        return f"https://{self.host}/{self.owner}/{self.repo}.git"


@dataclass
class Checkout:
    reference: RepoReference
    local_path: Path
    branch: Optional[str] = None
    head: Optional[str] = None
    remotes: List[str] = field(default_factory=list)


def parse_repo_url(repo_url: str) -> RepoReference:
    """Parse https or scp-style owner/repo references; raise InvalidReference otherwise."""
    candidate = (repo_url or "").strip()
    for pattern in REPO_URL_PATTERNS:
        match = pattern.match(candidate)
        if match:
            repo = match.group("repo")
            if repo.endswith(".git"):
                repo = repo[:-4]
            if not repo:
                break
            return RepoReference(host=match.group("host").lower(), owner=match.group("owner"), repo=repo)
    raise InvalidReference(f"Invalid repository URL format: {repo_url!r}")


def classify_clone_failure(stderr: str) -> SourceFetchError:
    text = (stderr or "").lower()
    if any(marker in text for marker in NOT_FOUND_MARKERS):
        return RepositoryNotFound(f"Repository not found or not accessible: {stderr.strip()}")
    if any(marker in text for marker in NETWORK_MARKERS):
        return FetchNetworkError(f"Network error while fetching repository: {stderr.strip()}")
    return SourceFetchError(f"git clone failed: {stderr.strip()}")


class GitAdapter(CommandLineAdapter, SourceFetcher):
    binary = "git"

    def __init__(self, workspace_dir="./workspace", clone_depth=100, clone_timeout=300.0):
        self.workspace_dir = Path(workspace_dir)
        self.clone_depth = clone_depth
        self.clone_timeout = clone_timeout

    def run_git(self, args, cwd=None, timeout=None) -> str:
        """Run git and return stdout; raise SourceFetchError on a non-zero exit."""
        result = self.run(args, cwd=cwd, timeout=timeout, env={"GIT_TERMINAL_PROMPT": "0"})
        if result.returncode != 0:
            raise SourceFetchError(f"git {' '.join(args)} failed: {result.stderr.strip()}")
        return result.stdout

    def local_path(self, job_id: str) -> Path:
        return self.workspace_dir / job_id

    def materialize(self, repo_url: str, job_id: str) -> Checkout:
        reference = parse_repo_url(repo_url)
        dest = self.local_path(job_id)
        shutil.rmtree(dest, ignore_errors=True)
        dest.parent.mkdir(parents=True, exist_ok=True)
        logging.info(f"[job_id={job_id}] Cloning {reference.clone_url} into {dest}")
        try:
            result = self.run(
                ["clone", "--depth", str(self.clone_depth), "--single-branch", reference.clone_url, str(dest)],
                timeout=self.clone_timeout,
                env={"GIT_TERMINAL_PROMPT": "0"},
            )
        except subprocess.TimeoutExpired:
            shutil.rmtree(dest, ignore_errors=True)
            raise FetchNetworkError(f"Cloning {reference.full_name} timed out after {self.clone_timeout}s")
        except FileNotFoundError:
            raise SourceFetchError("git executable not found")
        if result.returncode != 0:
            shutil.rmtree(dest, ignore_errors=True)
            raise classify_clone_failure(result.stderr)

        checkout = Checkout(reference=reference, local_path=dest)
        checkout.branch = self.run_git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=dest).strip()
        checkout.head = self.run_git(["rev-parse", "HEAD"], cwd=dest).strip()
        remotes = []
        for line in self.run_git(["remote", "-v"], cwd=dest).splitlines():
            parts = line.split()
            if len(parts) >= 2 and parts[1] not in remotes:
                remotes.append(parts[1])
        checkout.remotes = remotes
        logging.info(f"[job_id={job_id}] Cloned {reference.full_name} branch={checkout.branch} head={checkout.head[:8]}")
        return checkout

    def cleanup(self, job_id: str) -> None:
        path = self.local_path(job_id)
        shutil.rmtree(path, ignore_errors=True)
        logging.info(f"[job_id={job_id}] Workspace cleaned up: {path}")


class GitHubMetadataClient:
    """Optional hosting metadata. Without a token every call returns an empty result."""

    def __init__(self, token="", api_url="https://api.github.com", timeout=10.0, client: httpx.Client = None):
        self.token = token
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self._client = client

    def _get(self, path, params=None):
        headers = {"Authorization": f"token {self.token}", "Accept": "application/vnd.github.v3+json"}
        client = self._client or httpx.Client(timeout=self.timeout)
        try:
            resp = client.get(f"{self.api_url}{path}", headers=headers, params=params)
            resp.raise_for_status()
            return resp.json()
        finally:
            if self._client is None:
                client.close()

    def fetch_metadata(self, reference: RepoReference) -> dict:
        if not self.token or reference.host != "github.com":
            return {}
        try:
            data = self._get(f"/repos/{reference.full_name}")
        except (httpx.HTTPError, ValueError) as e:
            logging.warning(f"Failed to fetch repository metadata for {reference.full_name}: {e}")
            return {}
        if not isinstance(data, dict):
            logging.warning(f"Unexpected repository metadata for {reference.full_name}: {type(data).__name__}")
            return {}
        license_info = data.get("license")
        return {
            "stars": data.get("stargazers_count"),
            "forks": data.get("forks_count"),
            "open_issues": data.get("open_issues_count"),
            "language": data.get("language"),
            "size": data.get("size"),
            "created_at": data.get("created_at"),
            "pushed_at": data.get("pushed_at"),
            "default_branch": data.get("default_branch"),
            "description": data.get("description"),
            "topics": data.get("topics") or [],
            "license": license_info.get("name") if isinstance(license_info, dict) else None,
            "archived": data.get("archived"),
        }

    def fetch_contributors(self, reference: RepoReference) -> List[str]:
        if not self.token or reference.host != "github.com":
            return []
        try:
            data = self._get(f"/repos/{reference.full_name}/contributors", params={"per_page": 100})
        except (httpx.HTTPError, ValueError) as e:
            logging.warning(f"Failed to fetch contributors for {reference.full_name}: {e}")
            return []
        if not isinstance(data, list):
            logging.warning(f"Unexpected contributors list for {reference.full_name}: {type(data).__name__}")
            return []
        return [c["login"] for c in data if isinstance(c, dict) and isinstance(c.get("login"), str) and c["login"]]
