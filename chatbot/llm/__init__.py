from .llm_service import LLMService, LLMServiceError, llm_service
from .ollama_client import OllamaClient, OllamaConnectionError, OllamaModelError

__all__ = [
    "LLMService",
    "LLMServiceError",
    "llm_service",
    "OllamaClient",
    "OllamaConnectionError",
    "OllamaModelError",
]
