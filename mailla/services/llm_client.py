# mailla/services/llm_client.py
from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, List, Optional

import httpx

from mailla.config import get_settings
from mailla.core.exceptions import LLMError
from mailla.core.logging import get_logger

logger = get_logger(__name__)

_TRANSIENT = (429, 500, 502, 503, 504)


class OpenAIChatClient:
    """Thin client for an OpenAI-compatible Chat Completions API with forced tool calls."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        backoff_factor: float = 0.6,
    ) -> None:
        settings = get_settings()
        self.base_url = base_url or settings.openai_base_url
        self.api_key = api_key or settings.openai_api_key
        self.model = model or settings.openai_model
        self.timeout = timeout if timeout is not None else settings.llm_timeout_seconds
        self.max_retries = max_retries if max_retries is not None else settings.llm_max_retries
        self.backoff_factor = backoff_factor

        if not self.api_key:
            raise LLMError("OPENAI_API_KEY is not configured")

        # one connection pool per client; owners call aclose()
        self._client = httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def tool_call(
        self,
        messages: List[Dict[str, Any]],
        tool: Dict[str, Any],
        temperature: float = 0.7,
        extra: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Force a single function call and return its parsed JSON arguments.
        Raises LLMError on transport failure or a malformed tool call.
        """
        name = tool["function"]["name"]
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "temperature": temperature,
            "tools": [tool],
            "tool_choice": {"type": "function", "function": {"name": name}},
        }
        if extra:
            payload.update(extra)

        headers = {"Authorization": f"Bearer {self.api_key}"}

        last_exc: Optional[Exception] = None
        for attempt in range(self.max_retries + 1):
            try:
                res = await self._client.post("/chat/completions", headers=headers, json=payload)
                if res.status_code in _TRANSIENT:
                    raise LLMError(f"Transient HTTP {res.status_code}: {res.text[:200]}")
                res.raise_for_status()
                return _parse_tool_arguments(res.json(), name)
            except (httpx.HTTPError, LLMError) as e:
                last_exc = e
                if attempt >= self.max_retries:
                    break
                sleep_s = self.backoff_factor * (2 ** attempt)
                logger.warning("LLM call failed, retrying", extra={"attempt": attempt + 1, "error": str(e)})
                await asyncio.sleep(sleep_s)

        raise LLMError(f"Chat completion failed: {last_exc}")


def _parse_tool_arguments(data: Dict[str, Any], name: str) -> Dict[str, Any]:
    choices = data.get("choices") or []
    if not choices:
        raise LLMError(f"Empty choices: {data!r}")
    message = choices[0].get("message") or {}
    tool_calls = message.get("tool_calls") or []
    if not tool_calls:
        raise LLMError("Response did not include a tool call")
    fn = tool_calls[0].get("function") or {}
    if fn.get("name") != name:
        raise LLMError(f"Unexpected tool call: {fn.get('name')!r}")
    try:
        args = json.loads(fn.get("arguments") or "")
    except json.JSONDecodeError as e:
        raise LLMError(f"Tool arguments are not valid JSON: {e}") from e
    if not isinstance(args, dict):
        raise LLMError(f"Tool arguments must be an object: {args!r}")
    return args
