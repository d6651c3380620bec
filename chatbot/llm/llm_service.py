"""
LLM service behind the AI response nodes.
"""

import asyncio
import logging
import time
from typing import Dict, List, Optional, Any

from app.core.config import settings

from .ollama_client import OllamaClient, OllamaConnectionError, OllamaModelError

logger = logging.getLogger(__name__)


class LLMServiceError(Exception):
    """Raised when no response could be generated."""
    pass


class LLMService:
    """High-level wrapper around the Ollama client."""

    def __init__(self, client: Optional[OllamaClient] = None, model: Optional[str] = None):
        self.client = client or OllamaClient()
        self.current_model = model or settings.OLLAMA_MODEL

    async def generate_response(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        history: Optional[List[Dict[str, str]]] = None
    ) -> str:
        """
        Generate a reply for ``prompt``.

        Args:
            prompt: Rendered user prompt
            system_prompt: Optional system instructions
            temperature: Sampling temperature (defaults to settings)
            max_tokens: Maximum tokens to predict (defaults to settings)
            history: Earlier turns as ``{role, content}`` messages

        Returns:
            The generated text, stripped

        Raises:
            LLMServiceError: the server is unreachable, rejects the request or returns nothing
        """
        options = {
            "temperature": settings.OLLAMA_TEMPERATURE if temperature is None else temperature,
            "num_predict": max_tokens or settings.OLLAMA_MAX_TOKENS,
        }
        start_time = time.time()

        try:
            if history:
                messages = list(history)
                if system_prompt:
                    messages.insert(0, {"role": "system", "content": system_prompt})
                messages.append({"role": "user", "content": prompt})
                data = await self.client.chat(
                    model=self.current_model,
                    messages=messages,
                    keep_alive=settings.OLLAMA_KEEP_ALIVE,
                    options=options,
                )
                text = (data.get("message") or {}).get("content", "")
            else:
                data = await self.client.generate(
                    model=self.current_model,
                    prompt=prompt,
                    system=system_prompt,
                    keep_alive=settings.OLLAMA_KEEP_ALIVE,
                    options=options,
                )
                text = data.get("response", "")
        except (OllamaConnectionError, OllamaModelError, asyncio.TimeoutError) as e:
            logger.error(f"LLM generation failed: {e}")
            raise LLMServiceError(str(e)) from e

        text = (text or "").strip()
        if not text:
            raise LLMServiceError("Empty response from model")

        logger.debug(f"LLM response in {(time.time() - start_time) * 1000:.0f}ms ({len(text)} chars)")
        return text

    async def health_check(self) -> Dict[str, Any]:
        healthy = await self.client.health_check()
        return {
            "status": "healthy" if healthy else "unhealthy",
            "model": self.current_model,
            "host": self.client.host,
        }

    async def close(self):
        await self.client.close()


# Global LLM service instance
llm_service = LLMService()
