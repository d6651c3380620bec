"""
Ollama client used by AI response nodes.
"""

import logging
from typing import Dict, List, Optional, Any

import aiohttp

from app.core.config import settings

logger = logging.getLogger(__name__)


class OllamaConnectionError(Exception):
    """Raised when the Ollama server cannot be reached."""
    pass


class OllamaModelError(Exception):
    """Raised when Ollama rejects a request for a model."""
    pass


class OllamaClient:
    """Async client for the Ollama HTTP API."""

    def __init__(self, host: str = None, timeout: int = None):
        self.host = (host or settings.OLLAMA_HOST).rstrip("/")
        self.timeout = timeout or settings.OLLAMA_TIMEOUT
        self.session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def connect(self):
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )

    async def close(self):
        if self.session and not self.session.closed:
            await self.session.close()

    async def health_check(self) -> bool:
        """True when the server answers on its root endpoint."""
        try:
            await self.connect()
            async with self.session.get(f"{self.host}/") as response:
                return response.status == 200
        except aiohttp.ClientError as e:
            logger.warning(f"Ollama health check failed: {e}")
            return False

    async def list_models(self) -> List[Dict[str, Any]]:
        data = await self._request("GET", "/api/tags")
        return data.get("models", [])

    async def generate(
        self,
        model: str,
        prompt: str,
        system: Optional[str] = None,
        keep_alive: Optional[str] = None,
        options: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """Single non-streaming completion from ``/api/generate``."""
        payload: Dict[str, Any] = {"model": model, "prompt": prompt, "stream": False}
        if system:
            payload["system"] = system
        if keep_alive:
            payload["keep_alive"] = keep_alive
        if options:
            payload["options"] = options
        return await self._request("POST", "/api/generate", payload)

    async def chat(
        self,
        model: str,
        messages: List[Dict[str, str]],
        keep_alive: Optional[str] = None,
        options: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """Single non-streaming reply from ``/api/chat``."""
        payload: Dict[str, Any] = {"model": model, "messages": messages, "stream": False}
        if keep_alive:
            payload["keep_alive"] = keep_alive
        if options:
            payload["options"] = options
        return await self._request("POST", "/api/chat", payload)

    async def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        try:
            await self.connect()
            async with self.session.request(method, f"{self.host}{path}", json=payload) as response:
                if response.status != 200:
                    error_text = await response.text()
                    raise OllamaModelError(f"{path} failed: {response.status} - {error_text}")
                return await response.json()
        except aiohttp.ClientError as e:
            raise OllamaConnectionError(f"Connection error on {path}: {e}") from e
