# src/sandscan/tools/ollama_adapter.py
import logging
import re
import threading

import httpx

from .base import OracleClient
from sandscan.engine.errors import OracleUnavailable


def strip_think_tags(text: str) -> str:
    return re.sub(r"<think>.*?</think>\s*", "", text or "", flags=re.DOTALL).strip()


class OllamaClient(OracleClient):
    """Threat oracle backed by a local model served by Ollama."""

    def __init__(self, base_url="http://localhost:11434", model="deepseek-r1:1.5b", timeout=60.0, client: httpx.Client = None):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self._client = client or httpx.Client(timeout=httpx.Timeout(timeout, connect=10.0))
        self._available = None
        self._lock = threading.Lock()

    def check_health(self) -> bool:
        with self._lock:
            if self._available is not None:
                return self._available
        try:
            resp = self._client.get(f"{self.base_url}/api/tags", timeout=5.0)
            if resp.status_code == 200:
                names = [m.get("name", "") for m in resp.json().get("models", [])]
                family = self.model.split(":")[0]
                available = any(self.model == n or family in n for n in names)
                if not available:
                    logging.warning(f"Ollama is up but model {self.model} is not pulled")
            else:
                available = False
        except (httpx.HTTPError, ValueError) as e:
            logging.warning(f"Ollama health check failed: {e}")
            available = False
        with self._lock:
            self._available = available
        return available

    def _reset(self):
        with self._lock:
            self._available = None

    def classify(self, prompt: str) -> str:
        if not self.check_health():
            raise OracleUnavailable(f"Ollama model {self.model} is not available at {self.base_url}")
        try:
            resp = self._client.post(
                f"{self.base_url}/api/generate",
                json={
                    "model": self.model,
                    "prompt": prompt,
                    "stream": False,
                    "options": {"temperature": 0.3, "top_p": 0.9, "num_predict": 2048},
                },
                timeout=self.timeout,
            )
        except httpx.HTTPError as e:
            self._reset()
            raise OracleUnavailable(f"Ollama request failed: {e}") from e
        if resp.status_code != 200:
            self._reset()
            raise OracleUnavailable(f"Ollama returned HTTP {resp.status_code}")
        try:
            text = resp.json().get("response", "")
        except ValueError as e:
            raise OracleUnavailable(f"Ollama returned a non-JSON body: {e}") from e
        return strip_think_tags(text)

    def status(self) -> dict:
        available = self.check_health()
        return {
            "status": "healthy" if available else "unhealthy",
            "model": self.model,
            "available": available,
            "ollama_url": self.base_url,
        }
