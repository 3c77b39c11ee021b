# src/sandscan/engine/services.py
"""
AnalysisServices: the collaborators a JobManager hands to every pipeline run.

Everything is constructed explicitly and injected, so tests can swap the Docker
client, the oracle or the fetcher for fakes without touching module state.
"""

import functools
from dataclasses import dataclass
from typing import Callable, Optional

from sandscan.engine.db import create_session_factory
from sandscan.engine.events import EventBus
from sandscan.engine.job_store import JobStore
from sandscan.engine.oracle import ThreatOracleAdapter
from sandscan.engine.sandbox import SandboxManager
from sandscan.tools.base import SourceFetcher
from sandscan.tools.git_adapter import GitAdapter, GitHubMetadataClient
from sandscan.tools.ollama_adapter import OllamaClient
from sandscan.utils.commit_history import extract_commits
from sandscan.utils.extract_dependencies import extract_dependencies


@dataclass
class AnalysisServices:
    settings: object
    store: JobStore
    bus: EventBus
    sandbox: SandboxManager
    oracle: ThreatOracleAdapter
    fetcher: SourceFetcher
    commit_extractor: Callable
    dependency_extractor: Callable = extract_dependencies
    metadata: Optional[GitHubMetadataClient] = None

    @classmethod
    def from_settings(cls, settings, docker_client=None) -> "AnalysisServices":
        git = GitAdapter(
            workspace_dir=settings.workspace_dir,
            clone_depth=settings.clone_depth,
            clone_timeout=settings.clone_timeout,
        )
        return cls(
            settings=settings,
            store=JobStore(create_session_factory(settings.database_url)),
            bus=EventBus(),
            sandbox=SandboxManager(settings, client=docker_client),
            oracle=ThreatOracleAdapter(
                OllamaClient(base_url=settings.ollama_url, model=settings.llm_model, timeout=settings.oracle_timeout)
            ),
            fetcher=git,
            commit_extractor=functools.partial(
                extract_commits,
                run_git=git.run_git,
                limit=settings.max_commits,
                diff_limit=settings.diff_max_chars,
            ),
            metadata=GitHubMetadataClient(token=settings.github_token, api_url=settings.github_api_url)
            if settings.github_token else None,
        )
