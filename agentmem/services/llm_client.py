"""
Minimal chat-completion client used by the memory decision judge.

Only the OpenAI-compatible ``/chat/completions`` shape is spoken here; richer
provider handling belongs to the host application, which can inject its own
``ChatFunction`` into the memory manager instead.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import httpx

import agentmem.config as config

logger = config.logger

DEFAULT_CHAT_BASE_URLS = {
    "openai": "https://api.openai.com/v1",
    "deepseek": "https://api.deepseek.com/v1",
    "zhipu": "https://open.bigmodel.cn/api/paas/v4",
    "moonshot": "https://api.moonshot.cn/v1",
    "openrouter": "https://openrouter.ai/api/v1",
    "ollama": "http://localhost:11434/v1",
}


class ChatProviderError(RuntimeError):
    """Raised when the chat provider cannot produce a response."""


@dataclass
class ProviderConfig:
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    model: Optional[str] = None


ChatFunction = Callable[[str, ProviderConfig, list[dict], float, int], Awaitable[str]]


def _resolve_base_url(provider_id: str, provider_config: ProviderConfig) -> str:
    if provider_config.base_url and provider_config.base_url.strip():
        return provider_config.base_url.strip().rstrip("/")
    base_url = DEFAULT_CHAT_BASE_URLS.get(provider_id)
    if not base_url:
        raise ChatProviderError(f"No base URL configured for provider '{provider_id}'")
    return base_url


async def generate_chat_response(
    provider_id: str,
    provider_config: ProviderConfig,
    messages: list[dict],
    temperature: float,
    max_tokens: int,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> str:
    """Single non-streaming completion; returns the assistant text."""
    if not provider_config.model:
        raise ChatProviderError("Chat model is not configured")
    url = f"{_resolve_base_url(provider_id, provider_config)}/chat/completions"
    headers = {"Content-Type": "application/json"}
    if provider_config.api_key:
        headers["Authorization"] = f"Bearer {provider_config.api_key}"

    timeout = httpx.Timeout(config.CHAT_TIMEOUT_SECONDS)
    async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
        try:
            response = await client.post(
                url,
                headers=headers,
                json={
                    "model": provider_config.model,
                    "messages": messages,
                    "temperature": temperature,
                    "max_tokens": max_tokens,
                    "stream": False,
                },
            )
        except httpx.RequestError as exc:
            raise ChatProviderError(f"{provider_id} request failed: {exc}") from exc

    if response.status_code >= 400:
        logger.warning(
            "chat_request_failed",
            extra={"provider": provider_id, "status": response.status_code},
        )
        raise ChatProviderError(f"{provider_id} returned status {response.status_code}")

    try:
        data = response.json()
        return data["choices"][0]["message"]["content"] or ""
    except (ValueError, KeyError, IndexError, TypeError) as exc:
        raise ChatProviderError(f"{provider_id} returned an unexpected payload") from exc


def provider_from_env() -> tuple[Optional[str], Optional[ProviderConfig]]:
    """Default judge provider from ``CHAT_*`` settings; ``(None, None)`` when unset."""
    if not config.CHAT_PROVIDER or not config.CHAT_MODEL:
        return None, None
    return config.CHAT_PROVIDER.lower(), ProviderConfig(
        api_key=config.CHAT_API_KEY,
        base_url=config.CHAT_BASE_URL,
        model=config.CHAT_MODEL,
    )
