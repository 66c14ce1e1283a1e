"""LLM-backed transaction extraction (Ollama-compatible chat API)."""

from .prompts import PROMPT_VERSION, ExtractionPrompt
from .service import ExtractionService, LLMConcurrencyLimiter, ModelAnswer

__all__ = [
    "PROMPT_VERSION",
    "ExtractionPrompt",
    "ExtractionService",
    "LLMConcurrencyLimiter",
    "ModelAnswer",
]
