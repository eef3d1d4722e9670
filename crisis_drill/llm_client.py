"""OpenAI-compatible client used by the exercise oracle."""
from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import openai

from .telemetry import get_telemetry

logger = logging.getLogger(__name__)


class LLMGenerationError(RuntimeError):
    """Raised when the LLM cannot produce a usable response."""


class LLMNotEnabledError(LLMGenerationError):
    """Raised when the LLM client is disabled."""


@dataclass
class LLMConfig:
    """Configuration for LLM client."""
    api_base: str = "http://localhost:5000/v1"  # Default to local server
    api_key: str = "not-needed-for-local"  # Local servers often don't need keys
    model_name: str = "local-model"  # Model identifier
    temperature: float = 0.7
    max_tokens: int = 1500
    timeout: int = 30
    retry_attempts: int = 3
    enabled: bool = True
    mock_mode: bool = False
    retry_schedule: Optional[List[float]] = None

    @classmethod
    def from_env(cls) -> 'LLMConfig':
        """Load configuration from environment variables."""
        mock_mode = os.getenv("LLM_MODE", "").lower() == "mock"
        schedule_env = os.getenv("LLM_RETRY_SCHEDULE")
        retry_schedule: Optional[List[float]] = None
        if schedule_env:
            try:
                retry_schedule = [float(item.strip()) for item in schedule_env.split(",") if item.strip()]
            except ValueError:
                logger.warning("Invalid LLM_RETRY_SCHEDULE value: %s", schedule_env)
                retry_schedule = None

        return cls(
            api_base=os.getenv("LLM_API_BASE", "http://localhost:5000/v1"),
            api_key=os.getenv("LLM_API_KEY", "not-needed-for-local"),
            model_name=os.getenv("LLM_MODEL_NAME", "local-model"),
            temperature=float(os.getenv("LLM_TEMPERATURE", "0.7")),
            max_tokens=int(os.getenv("LLM_MAX_TOKENS", "1500")),
            timeout=int(os.getenv("LLM_TIMEOUT", "30")),
            retry_attempts=int(os.getenv("LLM_RETRY_ATTEMPTS", "3")),
            enabled=os.getenv("LLM_ENABLED", "true").lower() == "true",
            mock_mode=mock_mode,
            retry_schedule=retry_schedule,
        )


class LLMClient:
    """OpenAI-compatible chat client that returns parsed JSON objects."""

    def __init__(self, config: Optional[LLMConfig] = None):
        """Initialize LLM client with configuration."""
        self.config = config or LLMConfig.from_env()
        self._executor = ThreadPoolExecutor(max_workers=4)
        self._retry_schedule = self.config.retry_schedule or [1.0, 3.0, 10.0]
        self.enabled = self.config.enabled and not self.config.mock_mode

        if not self.enabled:
            self.client = None
            logger.info("LLM client initialised without a model backend")
            return

        # Configure OpenAI client with custom base URL
        self.client = openai.OpenAI(
            api_key=self.config.api_key,
            base_url=self.config.api_base,
            timeout=self.config.timeout
        )
        logger.info(f"LLM client initialized with base URL: {self.config.api_base}")

    async def complete_json(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        capability: str = "oracle",
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Run one chat completion in JSON mode and return the decoded object."""
        if not self.enabled:
            raise LLMNotEnabledError("LLM client is disabled")

        messages = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ]
        started = time.time()
        try:
            response = await self._call_with_retry(
                messages,
                temperature=self.config.temperature if temperature is None else temperature,
                max_tokens=max_tokens or self.config.max_tokens,
            )
            if response is None:
                raise LLMGenerationError("LLM call exhausted retries")
            content = response.choices[0].message.content if response.choices else None
            if not content:
                raise LLMGenerationError("LLM returned no content")
            try:
                parsed = json.loads(content)
            except json.JSONDecodeError as exc:
                raise LLMGenerationError(f"LLM returned invalid JSON: {exc}") from exc
            if not isinstance(parsed, dict):
                raise LLMGenerationError("LLM returned JSON that is not an object")
        except LLMGenerationError as exc:
            get_telemetry().track_llm_activity(
                capability, False, (time.time() - started) * 1000, error=str(exc)
            )
            raise
        get_telemetry().track_llm_activity(capability, True, (time.time() - started) * 1000)
        return parsed

    async def _call_with_retry(
        self,
        messages: List[Dict[str, str]],
        *,
        temperature: float,
        max_tokens: int,
    ) -> Optional[Any]:
        """Make API call with retry logic; each attempt is bounded by the timeout."""
        attempts = max(1, self.config.retry_attempts)
        loop = asyncio.get_running_loop()
        for attempt in range(attempts):
            try:
                return await asyncio.wait_for(
                    loop.run_in_executor(
                        self._executor,
                        lambda: self.client.chat.completions.create(
                            model=self.config.model_name,
                            messages=messages,
                            temperature=temperature,
                            max_tokens=max_tokens,
                            response_format={"type": "json_object"},
                        ),
                    ),
                    timeout=self.config.timeout,
                )
            except (openai.OpenAIError, asyncio.TimeoutError) as e:
                logger.warning(f"LLM API call attempt {attempt + 1} failed: {e!r}")
                if attempt < attempts - 1:
                    delay = self._retry_schedule[min(attempt, len(self._retry_schedule) - 1)]
                    await asyncio.sleep(delay)
                else:
                    logger.error("All retry attempts exhausted for LLM call")
        return None

    def close(self):
        """Clean up resources."""
        self._executor.shutdown(wait=True)


# Singleton instance
_llm_client: Optional[LLMClient] = None


def get_llm_client() -> LLMClient:
    """Get or create singleton LLM client instance."""
    global _llm_client
    if _llm_client is None:
        _llm_client = LLMClient()
    return _llm_client


def reset_llm_client() -> None:
    global _llm_client
    if _llm_client is not None:
        _llm_client.close()
    _llm_client = None


__all__ = [
    "LLMClient",
    "LLMConfig",
    "LLMGenerationError",
    "LLMNotEnabledError",
    "get_llm_client",
    "reset_llm_client",
]
