# src/sandscan/config.py
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Persistence
    database_url: str = "sqlite:///./sandscan_jobs.db"
    workspace_dir: str = "./workspace"
    reports_dir: str = "reports"

    # Sandbox
    docker_context_dir: str = "./docker"
    image_prefix: str = "sandscan"
    network_name: str = "sandscan-isolated"
    sandbox_user: str = "analyst"
    sandbox_memory_bytes: int = 512 * 1024 * 1024
    sandbox_cpu_shares: int = 512
    sandbox_nofile: int = 1024
    sandbox_nproc: int = 64
    sandbox_start_timeout: float = 10.0
    sandbox_exec_timeout: float = 300.0
    sandbox_stop_grace: int = 10

    # Oracle (Ollama)
    ollama_url: str = "http://localhost:11434"
    llm_model: str = "deepseek-r1:1.5b"
    oracle_timeout: float = 60.0
    oracle_batch_size: int = 5
    oracle_max_workers: int = 4

    # Source fetching
    max_commits: int = 50
    clone_depth: int = 100
    clone_timeout: float = 300.0
    diff_max_chars: int = 10000
    github_token: str = ""
    github_api_url: str = "https://api.github.com"

    # App
    log_level: str = "INFO"

    model_config = {"env_file": ".env", "env_prefix": "SANDSCAN_", "extra": "ignore"}


settings = Settings()
