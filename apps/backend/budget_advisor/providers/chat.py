"""OpenAI-compatible chat completion client with tool calling.

The agent only depends on ``ChatProvider.complete``; ``LLMClient`` is the
production implementation talking to ``{OPENAI_BASE_URL}/chat/completions``
(OpenAI, Ollama's /v1 shim, NIM, ...).
"""

from __future__ import annotations

import asyncio
import email.utils as eut
import json
import logging
import random
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

import httpx

from ..config import settings

logger = logging.getLogger(__name__)


class LLMUnavailableError(RuntimeError):
    """Provider kept rejecting requests (rate limit budget exhausted)."""


class StopReason(str, Enum):
    STOP = "stop"
    TOOL_CALLS = "tool_calls"
    LENGTH = "length"
    CONTENT_FILTER = "content_filter"
    OTHER = "other"

    @classmethod
    def from_finish_reason(cls, value: Optional[str]) -> "StopReason":
        v = (value or "").strip().lower()
        if v == "function_call":  # legacy single-function API
            return cls.TOOL_CALLS
        for member in cls:
            if member.value == v and member is not cls.OTHER:
                return member
        return cls.OTHER


@dataclass(frozen=True)
class ToolCall:
    id: str
    name: str
    arguments: str  # raw JSON text exactly as produced by the model

    def to_message(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


@dataclass
class ChatCompletion:
    stop_reason: StopReason
    content: Optional[str] = None
    tool_calls: List[ToolCall] = field(default_factory=list)
    raw_finish_reason: Optional[str] = None

    def to_message(self) -> Dict[str, Any]:
        """Assistant-role message for the conversation history."""
        content = self.content
        if content is None and not self.tool_calls:
            content = ""
        msg: Dict[str, Any] = {"role": "assistant", "content": content}
        if self.tool_calls:
            msg["tool_calls"] = [tc.to_message() for tc in self.tool_calls]
        return msg

    @classmethod
    def from_openai(cls, payload: Dict[str, Any]) -> "ChatCompletion":
        choices = payload.get("choices") or []
        if not choices:
            return cls(stop_reason=StopReason.OTHER, raw_finish_reason=None)
        choice = choices[0]
        message = choice.get("message") or {}
        calls: List[ToolCall] = []
        for raw in message.get("tool_calls") or []:
            fn = raw.get("function") or {}
            args = fn.get("arguments")
            if args is None:
                args = "{}"
            elif not isinstance(args, str):
                # Ollama returns arguments as an object
                args = json.dumps(args)
            calls.append(
                ToolCall(
                    id=raw.get("id") or f"call_{uuid.uuid4().hex[:12]}",
                    name=fn.get("name") or "",
                    arguments=args,
                )
            )
        finish = choice.get("finish_reason")
        return cls(
            stop_reason=StopReason.from_finish_reason(finish),
            content=message.get("content"),
            tool_calls=calls,
            raw_finish_reason=finish,
        )


class ChatProvider(Protocol):
    async def complete(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
    ) -> ChatCompletion: ...


def _parse_retry_after(v: str | None) -> float | None:
    if not v:
        return None
    try:
        return float(v)
    except ValueError:
        try:
            dt = eut.parsedate_to_datetime(v)
            return max(0.0, (dt.timestamp() - time.time()))
        except (TypeError, ValueError):
            return None


class LLMClient:
    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
        temperature: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base = (base_url or settings.OPENAI_BASE_URL).rstrip("/")
        key = api_key or settings.OPENAI_API_KEY
        self.key = key.strip() if isinstance(key, str) else key
        self.model = model or settings.MODEL
        self.timeout = timeout or settings.LLM_TIMEOUT_SEC
        self.temperature = settings.LLM_TEMPERATURE if temperature is None else temperature
        self._transport = transport

    async def chat(self, messages, tools=None, tool_choice="auto") -> Dict[str, Any]:
        """Raw chat completion call; returns the provider JSON."""
        if settings.DEV_ALLOW_NO_LLM:
            # Deterministic stub for dev
            return {
                "choices": [
                    {
                        "finish_reason": "stop",
                        "message": {
                            "role": "assistant",
                            "content": '{"recommendations": []}',
                            "tool_calls": [],
                        },
                    }
                ]
            }

        headers = {
            "Authorization": f"Bearer {self.key}",
            "Content-Type": "application/json",
        }
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "temperature": self.temperature,
        }
        if tools:
            payload["tools"] = tools
            payload["tool_choice"] = tool_choice
        delays = [1.5, 3.0, 6.0, 0.0]
        max_attempts = 4
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            attempt = 0
            total_wait = 0.0
            while True:
                r = await client.post(
                    f"{self.base}/chat/completions", headers=headers, json=payload
                )
                if r.status_code == 429:
                    # Respect Retry-After when available
                    ra = _parse_retry_after(r.headers.get("Retry-After"))
                    base = delays[attempt] if attempt < len(delays) else delays[-1]
                    wait = ra if (ra is not None and ra > 0) else base
                    # full jitter up to 40%
                    wait = min(8.0, wait + random.uniform(0, max(0.0, wait * 0.4)))
                    # cap total budget ~15s
                    if attempt >= (max_attempts - 1) or (total_wait + wait > 15.0):
                        raise LLMUnavailableError(
                            f"chat provider rate limited after {attempt + 1} attempts"
                        )
                    logger.warning(
                        "llm.retry attempt=%s status=429 retry_after=%s wait=%.2f",
                        attempt + 1,
                        ra,
                        wait,
                    )
                    await asyncio.sleep(wait)
                    total_wait += wait
                    attempt += 1
                    continue

                r.raise_for_status()
                return r.json()

    async def complete(self, messages, tools=None) -> ChatCompletion:
        return ChatCompletion.from_openai(await self.chat(messages, tools=tools))


def get_llm_client() -> LLMClient:
    return LLMClient()
