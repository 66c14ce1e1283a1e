"""LLM extraction service for bank notification emails.

Features:
- Ollama-compatible /api/chat with JSON output format
- Cascading model fallback (fast -> fallback)
- Bounded retry with exponential backoff on transient failures
- Concurrency limiting via semaphore

Privacy constraints:
- Never log prompts or email bodies at INFO level
- Remote servers: auth header support, no PII in logs
"""

from __future__ import annotations

import json
import logging
import re
import threading
import time
from dataclasses import dataclass
from datetime import date, datetime
from typing import TYPE_CHECKING

import httpx

from .prompts import PROMPT_VERSION, ExtractionPrompt

if TYPE_CHECKING:
    from ..config import LLMConfig

logger = logging.getLogger(__name__)

# Bank alerts are short; anything longer is footer boilerplate
MAX_BODY_CHARS = 8000

RETRYABLE_STATUS = frozenset({429, 500, 502, 503, 504})


@dataclass
class ModelAnswer:
    """Raw JSON object returned by a model."""

    data: dict
    model: str
    prompt_version: str = PROMPT_VERSION


class LLMConcurrencyLimiter:
    """Semaphore-based concurrency limiter for LLM requests.

    Thread-safe; shared by every user worker of a run.
    """

    def __init__(self, max_concurrent: int = 2) -> None:
        self._semaphore = threading.Semaphore(max_concurrent)
        self._active_count = 0
        self._lock = threading.Lock()

    def acquire(self, timeout: float | None = None) -> bool:
        """Acquire a slot. Returns False on timeout."""
        acquired = self._semaphore.acquire(blocking=True, timeout=timeout)
        if acquired:
            with self._lock:
                self._active_count += 1
        return acquired

    def release(self) -> None:
        with self._lock:
            self._active_count -= 1
        self._semaphore.release()

    @property
    def active_requests(self) -> int:
        with self._lock:
            return self._active_count


class ExtractionService:
    """Turns an email into a raw transaction JSON object via an LLM."""

    def __init__(self, llm_config: LLMConfig) -> None:
        self.llm_config = llm_config

        headers = {}
        if llm_config.auth_header:
            # "Bearer token" or "Custom-Header: value"
            if ":" in llm_config.auth_header:
                key, value = llm_config.auth_header.split(":", 1)
                headers[key.strip()] = value.strip()
            else:
                headers["Authorization"] = llm_config.auth_header

        self._client = httpx.Client(
            base_url=llm_config.base_url.rstrip("/"),
            timeout=httpx.Timeout(
                connect=10.0,
                read=float(llm_config.timeout_seconds),
                write=30.0,
                pool=10.0,
            ),
            headers=headers,
        )
        self._prompt = ExtractionPrompt()
        self._limiter = LLMConcurrencyLimiter(max_concurrent=llm_config.max_concurrent)

    @property
    def is_enabled(self) -> bool:
        return self.llm_config.enabled

    @property
    def models(self) -> list[str]:
        """Models to try, in order."""
        models = [self.llm_config.model_fast]
        fallback = self.llm_config.model_fallback
        if fallback and fallback != self.llm_config.model_fast:
            models.append(fallback)
        return models

    def extract_transaction(
        self,
        subject: str | None,
        body: str,
        received_at: datetime | None = None,
        today: date | None = None,
    ) -> ModelAnswer | None:
        """Ask the model(s) for one transaction JSON object.

        Args:
            subject: Email subject
            body: Readable body text (HTML already stripped)
            received_at: When the email arrived
            today: Current date (defaults to date.today())

        Returns:
            ModelAnswer, or None if every model failed
        """
        if not self.is_enabled:
            return None

        today = today or date.today()
        user_message = self._prompt.format_user_message(
            subject=subject,
            body=body[:MAX_BODY_CHARS],
            received_date=received_at.date().isoformat() if received_at else None,
            current_date=today.isoformat(),
        )

        for model in self.models:
            content = self._call_with_retry(model, self._prompt.system_prompt, user_message)
            if content is None:
                continue
            try:
                data = self._parse_json_response(content)
            except json.JSONDecodeError as e:
                logger.warning("Model %s returned unparseable output: %s", model, e.msg)
                continue
            if not isinstance(data, dict):
                logger.warning("Model %s returned %s instead of an object", model, type(data).__name__)
                continue
            return ModelAnswer(data=data, model=model, prompt_version=self._prompt.version)

        logger.info("No model produced a usable answer (%s)", ", ".join(self.models))
        return None

    def _call_with_retry(self, model: str, system_prompt: str, user_message: str) -> str | None:
        """Call one model, retrying transient failures with exponential backoff."""
        attempts = max(1, self.llm_config.max_retries)
        delay = self.llm_config.backoff_seconds

        for attempt in range(1, attempts + 1):
            try:
                return self._call_ollama(model, system_prompt, user_message)
            except (httpx.TimeoutException, httpx.TransportError) as e:
                reason = f"{type(e).__name__}: {e}"
            except httpx.HTTPStatusError as e:
                if e.response.status_code not in RETRYABLE_STATUS:
                    logger.error(
                        "LLM API error %s for model '%s'", e.response.status_code, model
                    )
                    return None
                reason = f"HTTP {e.response.status_code}"
            except ValueError:
                logger.warning("LLM server returned a non-JSON body for model %s", model)
                return None

            if attempt < attempts:
                logger.warning(
                    "LLM call to %s failed (%s), retry %d/%d in %.1fs",
                    model, reason, attempt, attempts - 1, delay,
                )
                time.sleep(delay)
                delay *= 2
            else:
                logger.warning("LLM call to %s failed after %d attempt(s): %s", model, attempts, reason)

        return None

    def _call_ollama(self, model: str, system_prompt: str, user_message: str) -> str | None:
        """Single /api/chat call holding a concurrency slot.

        Returns the message content, or None if no slot became free in time.
        Transport and HTTP errors propagate to the retry loop.
        """
        if not self._limiter.acquire(timeout=self.llm_config.timeout_seconds):
            logger.warning(
                "LLM request timed out waiting for concurrency slot (max=%d, active=%d)",
                self.llm_config.max_concurrent,
                self._limiter.active_requests,
            )
            return None

        try:
            payload = {
                "model": model,
                "messages": [
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_message},
                ],
                "stream": False,
                "format": "json",
            }
            logger.debug("Calling model %s at %s", model, self.llm_config.base_url)

            response = self._client.post("/api/chat", json=payload)
            response.raise_for_status()
            content = response.json().get("message", {}).get("content", "")

            logger.debug("Model %s returned %d chars", model, len(content))
            return content
        finally:
            self._limiter.release()

    def _parse_json_response(self, content: str) -> dict:
        """Parse a JSON object from model output.

        Handles markdown code fences, surrounding prose and trailing commas.

        Raises:
            json.JSONDecodeError: If no JSON object can be recovered.
        """
        if not content:
            raise json.JSONDecodeError("Empty response", "", 0)

        content = content.strip()
        if content.startswith("```json"):
            content = content[7:]
        elif content.startswith("```"):
            content = content[3:]
        if content.endswith("```"):
            content = content[:-3]
        content = content.strip()

        try:
            return json.loads(content)
        except json.JSONDecodeError:
            pass

        # Outermost {...} block in mixed text
        json_match = re.search(r"\{[^{}]*(?:\{[^{}]*\}[^{}]*)*\}", content, re.DOTALL)
        if json_match:
            candidate = json_match.group()
            try:
                return json.loads(candidate)
            except json.JSONDecodeError:
                content = candidate

        cleaned = re.sub(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]", "", content)
        cleaned = re.sub(r",\s*([}\]])", r"\1", cleaned)
        try:
            return json.loads(cleaned)
        except json.JSONDecodeError:
            raise json.JSONDecodeError(
                f"Could not parse JSON from response: {content[:200]}", content, 0
            ) from None

    def close(self) -> None:
        """Close HTTP client."""
        self._client.close()

    def __enter__(self) -> ExtractionService:
        return self

    def __exit__(self, *args) -> None:
        self.close()
