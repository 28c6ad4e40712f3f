"""Provider adapters — translate one generic completion call to each upstream API.

Every adapter has the same signature: it takes a ``ProviderCall`` and returns
an ``AdapterResult``. Adapters never catch or retry; transport and HTTP
errors propagate so the router can decide whether to fall back.

Chat-shaped providers go through LiteLLM (``acompletion``), the others are
plain httpx POSTs.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import httpx
from litellm import acompletion

from controlplane.models.provider import ProviderKind

logger = logging.getLogger(__name__)

# LiteLLM routing prefixes for the chat-shaped kinds
_LITELLM_PREFIX: dict[ProviderKind, str] = {
    ProviderKind.OPENAI: "openai",
    ProviderKind.DEEPINFRA: "deepinfra",
    ProviderKind.GROK: "xai",
    ProviderKind.ANTHROPIC: "anthropic",
}

# Rough characters-per-token ratio for providers that report no usage
CHARS_PER_TOKEN = 4


@dataclass(frozen=True)
class ProviderCall:
    """Everything an adapter needs for one completion."""
    endpoint: str
    api_key: str
    model_id: str
    prompt: str
    system_message: str | None = None
    temperature: float = 0.7
    max_tokens: int = 1000
    timeout: float = 60.0


@dataclass(frozen=True)
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass(frozen=True)
class AdapterResult:
    content: str
    usage: TokenUsage


Adapter = Callable[[ProviderCall], Awaitable[AdapterResult]]


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def _chat_messages(call: ProviderCall) -> list[dict]:
    messages: list[dict] = []
    if call.system_message:
        messages.append({"role": "system", "content": call.system_message})
    messages.append({"role": "user", "content": call.prompt})
    return messages


async def _post_json(url: str, payload: dict, headers: dict, timeout: float) -> Any:
    """POST JSON and return the decoded body (or raw text if not JSON)."""
    async with httpx.AsyncClient(timeout=timeout) as client:
        resp = await client.post(url, json=payload, headers=headers)
        resp.raise_for_status()
    try:
        return resp.json()
    except ValueError:
        return resp.text


# ── Chat-shaped providers (LiteLLM) ──────────────────────────

def _litellm_adapter(kind: ProviderKind) -> Adapter:
    prefix = _LITELLM_PREFIX[kind]

    async def adapter(call: ProviderCall) -> AdapterResult:
        response = await acompletion(
            model=f"{prefix}/{call.model_id}",
            messages=_chat_messages(call),
            temperature=call.temperature,
            max_tokens=call.max_tokens,
            api_base=call.endpoint,
            api_key=call.api_key,
            timeout=call.timeout,
        )
        content = response.choices[0].message.content or ""
        usage = response.usage
        prompt_tokens = usage.prompt_tokens if usage else 0
        completion_tokens = usage.completion_tokens if usage else 0
        return AdapterResult(
            content=content,
            usage=TokenUsage(
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                total_tokens=prompt_tokens + completion_tokens,
            ),
        )

    adapter.__name__ = f"{kind.value}_adapter"
    return adapter


# ── Hugging Face inference ───────────────────────────────────

async def huggingface_adapter(call: ProviderCall) -> AdapterResult:
    full_prompt = call.prompt
    if call.system_message:
        full_prompt = f"{call.system_message}\n\n{call.prompt}"

    body = await _post_json(
        call.endpoint,
        {
            "inputs": full_prompt,
            "parameters": {
                "temperature": call.temperature,
                "max_new_tokens": call.max_tokens,
                "return_full_text": False,
            },
        },
        {"Authorization": f"Bearer {call.api_key}", "Content-Type": "application/json"},
        call.timeout,
    )
    content = body[0]["generated_text"]

    # The inference API reports no token counts
    prompt_tokens = estimate_tokens(full_prompt)
    completion_tokens = estimate_tokens(content)
    return AdapterResult(
        content=content,
        usage=TokenUsage(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
        ),
    )


# ── Generic / unknown providers ──────────────────────────────

def extract_content(body: Any) -> str:
    """Pull completion text out of an unknown response shape.

    Tried in order: chat ``choices[0].message.content``, completion
    ``choices[0].text``, a top-level ``content`` field, ``generated_text``,
    and finally a raw string body.
    """
    if isinstance(body, str):
        return body
    if not isinstance(body, dict):
        return ""

    choices = body.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        first = choices[0]
        message = first.get("message")
        if isinstance(message, dict) and message.get("content") is not None:
            return message["content"]
        if first.get("text") is not None:
            return first["text"]
    if isinstance(body.get("content"), str):
        return body["content"]
    if isinstance(body.get("generated_text"), str):
        return body["generated_text"]
    return ""


def extract_usage(body: Any, prompt: str, content: str) -> TokenUsage:
    usage = body.get("usage") if isinstance(body, dict) else None
    if isinstance(usage, dict):
        prompt_tokens = usage.get("prompt_tokens") or usage.get("input_tokens") or 0
        completion_tokens = usage.get("completion_tokens") or usage.get("output_tokens") or 0
        total = usage.get("total_tokens") or (prompt_tokens + completion_tokens)
        return TokenUsage(prompt_tokens, completion_tokens, total)

    prompt_tokens = estimate_tokens(prompt)
    completion_tokens = estimate_tokens(content)
    return TokenUsage(prompt_tokens, completion_tokens, prompt_tokens + completion_tokens)


async def custom_adapter(call: ProviderCall) -> AdapterResult:
    payload: dict = {
        "model": call.model_id,
        "temperature": call.temperature,
        "max_tokens": call.max_tokens,
        "messages": _chat_messages(call),
    }
    if not call.system_message:
        # Completion-style servers read ``prompt`` and ignore ``messages``
        payload["prompt"] = call.prompt

    body = await _post_json(
        call.endpoint,
        payload,
        {"Authorization": f"Bearer {call.api_key}", "Content-Type": "application/json"},
        call.timeout,
    )
    content = extract_content(body)
    return AdapterResult(content=content, usage=extract_usage(body, call.prompt, content))


ADAPTERS: dict[ProviderKind, Adapter] = {
    ProviderKind.OPENAI: _litellm_adapter(ProviderKind.OPENAI),
    ProviderKind.DEEPINFRA: _litellm_adapter(ProviderKind.DEEPINFRA),
    ProviderKind.GROK: _litellm_adapter(ProviderKind.GROK),
    ProviderKind.ANTHROPIC: _litellm_adapter(ProviderKind.ANTHROPIC),
    ProviderKind.HUGGINGFACE: huggingface_adapter,
    ProviderKind.CUSTOM: custom_adapter,
}


def get_adapter(kind: str | ProviderKind) -> Adapter:
    """Adapter for a provider kind; unknown kinds get the generic adapter."""
    return ADAPTERS[ProviderKind.resolve(kind)]
