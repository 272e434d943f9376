from __future__ import annotations

import logging
import os
from typing import Any, Dict, List, Optional

import httpx
from openai import OpenAI

from ..domain.errors import EmptyResponse
from ..logging import get_logger

LOG = get_logger("orchestrator-llm")


def make_openai_client(api_key: str, *, base_url: Optional[str] = None, timeout: float = 60.0) -> OpenAI:
    """OpenAI SDK client with explicit httpx timeouts and SDK retries disabled.

    Retrying is done by `backoff.with_retry` so the rate-limit policy stays in
    one place.
    """
    http_client = httpx.Client(
        timeout=httpx.Timeout(connect=10.0, read=float(timeout), write=30.0, pool=10.0),
        limits=httpx.Limits(max_keepalive_connections=10, max_connections=20),
    )
    if (os.environ.get("OPENAI_LOG") or "").lower() == "debug":
        logging.getLogger("httpx").setLevel(logging.DEBUG)
    return OpenAI(api_key=api_key, base_url=base_url, http_client=http_client, max_retries=0)


class ChatModel:
    """One chat-completions deployment (model + client) with logging."""

    def __init__(self, client: Any, model: str, *, name: str = "chat") -> None:
        self.client = client
        self.model = model
        self.name = name

    def chat(
        self,
        messages: List[Dict[str, Any]],
        *,
        temperature: float = 0.1,
        max_tokens: Optional[int] = None,
    ) -> str:
        kwargs: Dict[str, Any] = {"model": self.model, "messages": messages, "temperature": temperature}
        if max_tokens is not None:
            kwargs["max_tokens"] = max_tokens
        LOG.debug("%s request: model=%s messages=%d", self.name, self.model, len(messages))
        completion = self.client.chat.completions.create(**kwargs)
        choices = getattr(completion, "choices", None) or []
        content = choices[0].message.content if choices else None
        text = (content or "").strip()
        if not text:
            raise EmptyResponse(f"Empty response from {self.name} model {self.model}")
        LOG.debug("%s response preview: %r", self.name, text[:200])
        return text
