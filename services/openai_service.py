# services/openai_service.py
from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import openai
from openai import AsyncOpenAI  # pip install openai>=1

from app.config import settings, require_openai
from app.core.errors import ExtractionError
from app.core.logging import get_logger

logger = get_logger()


def _to_jsonable(obj: Any) -> Any:
    """
    Turn OpenAI SDK objects (e.g. usage) into JSON-serialisable values.
    """
    if obj is None or isinstance(obj, (str, int, float, bool)):
        return obj
    if isinstance(obj, (list, tuple)):
        return [_to_jsonable(x) for x in obj]
    if isinstance(obj, dict):
        return {k: _to_jsonable(v) for k, v in obj.items()}
    dump = getattr(obj, "model_dump", None)
    if callable(dump):
        return {k: _to_jsonable(v) for k, v in dump().items()}
    try:
        return json.loads(json.dumps(obj, default=str))
    except (TypeError, ValueError):
        return str(obj)


@dataclass
class CompletionResult:
    text: str
    model: str
    duration_ms: int
    usage: Optional[Dict[str, Any]] = None
    meta: Dict[str, Any] = field(default_factory=dict)


def classify_openai_error(exc: BaseException) -> ExtractionError:
    """
    Map an SDK/asyncio failure onto ExtractionError.

    Timeouts are final for the chunk. 5xx, 429 and dropped connections may be retried.
    """
    if isinstance(exc, ExtractionError):
        return exc
    if isinstance(exc, (asyncio.TimeoutError, openai.APITimeoutError)):
        return ExtractionError("AI call timed out", kind="timeout", retryable=False)
    if isinstance(exc, openai.APIStatusError):
        status = getattr(exc, "status_code", None) or 0
        if status == 429:
            return ExtractionError(f"HTTP {status}: rate limited", kind="rate_limited", retryable=True)
        if status >= 500:
            return ExtractionError(f"HTTP {status}: {exc}", kind="server_error", retryable=True)
        return ExtractionError(f"HTTP {status}: {exc}", kind="client_error", retryable=False)
    if isinstance(exc, openai.APIConnectionError):
        return ExtractionError(f"connection error: {exc}", kind="connection", retryable=True)
    return ExtractionError(f"{exc.__class__.__name__}: {exc}", kind="unknown", retryable=False)


class OpenAIService:
    """
    Thin async wrapper around chat completions returning raw text.

    The SDK's own retries are disabled; callers wrap `complete` in a RetryPolicy
    so every external call shares the same backoff rules.
    """

    def __init__(
        self,
        model: Optional[str] = None,
        *,
        timeout_s: float = 20.0,
        temperature: float = 0.2,
        client: Optional[Any] = None,
    ):
        if client is None:
            api_key = require_openai()
            client = AsyncOpenAI(api_key=api_key, max_retries=0)
        self.model = model or settings.OPENAI_MODEL
        self.timeout_s = timeout_s
        self.temperature = temperature
        self.client = client

    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        timeout_s: Optional[float] = None,
    ) -> CompletionResult:
        """
        One chat completion. Raises ExtractionError (already classified) on failure.
        """
        budget = timeout_s or self.timeout_s
        t0 = time.perf_counter()
        try:
            completion = await asyncio.wait_for(
                self.client.chat.completions.create(
                    model=self.model,
                    messages=[
                        {"role": "system", "content": system_prompt},
                        {"role": "user", "content": user_prompt},
                    ],
                    temperature=self.temperature,
                    timeout=budget,
                ),
                timeout=budget,
            )
        except Exception as exc:
            raise classify_openai_error(exc) from exc

        duration_ms = int((time.perf_counter() - t0) * 1000)
        raw_text = ""
        if completion.choices:
            raw_text = completion.choices[0].message.content or ""
        usage_plain = _to_jsonable(getattr(completion, "usage", None))
        logger.debug(
            "openai_completion_done",
            model=self.model,
            duration_ms=duration_ms,
            response_chars=len(raw_text),
        )
        return CompletionResult(
            text=raw_text,
            model=self.model,
            duration_ms=duration_ms,
            usage=usage_plain,
        )
