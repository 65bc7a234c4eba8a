"""Generative copy provider (OpenAI-compatible chat completions).

Optional and cost-controlled:
- It is used only when Settings.llm_enabled is True AND an API key is present.
- Callers bound every call with their own timeout and cache the result.

The model only writes the marketing text; prices and links come from listing data
and the link is appended by the copy generator when the model leaves it out.
"""

from __future__ import annotations

import hashlib
import logging
from typing import Any, Protocol

import httpx

from dealcast.domain import Listing
from dealcast.settings import get_settings

logger = logging.getLogger("uvicorn.error")

MAX_COMPLETION_TOKENS = 300
TEMPERATURE = 0.7

SYSTEM_PROMPT = (
    "You write short posts announcing Amazon deals for a Telegram channel.\n"
    "Hard rules:\n"
    "- Never invent prices, coupons, percentages or benefits missing from the data.\n"
    "- Never claim an all-time low price.\n"
    "- Never promise availability, shipping or delivery times.\n"
    "- No links, hashtags or mentions (the link is added separately).\n"
    "Always:\n"
    "- Show the current price and, when available, the previous price or the discount.\n"
    "- Say in one line why the product is interesting.\n"
    "- End with a line saying price and availability may change.\n"
    "Format: no title, at most 2-3 emoji, no greetings, at most 600 characters.\n"
    "Reply ONLY with the post text."
)


class LlmError(RuntimeError):
    """Provider call failed or returned no usable text."""


class CopyProvider(Protocol):
    async def complete(self, prompt: str, model_id: str) -> str: ...


def _hash_key(*parts: str) -> str:
    h = hashlib.sha256()
    for p in parts:
        h.update(p.encode("utf-8"))
        h.update(b"\x00")
    return h.hexdigest()[:40]


def build_copy_prompt(listing: Listing, style_directive: str | None = None) -> str:
    """User message: optional style directive plus the listing facts."""
    lines: list[str] = []
    if style_directive and style_directive.strip():
        lines.append("REQUESTED STYLE (follow it without changing the data):")
        lines.append(style_directive.strip())
        lines.append("")

    lines.append("DEAL DATA (use ONLY these facts):")
    lines.append(f"- Title: {listing.title}")
    lines.append(f"- ASIN: {listing.external_id}")
    if listing.category_id is not None:
        lines.append(f"- Category: {listing.category_id}")
    lines.append(f"- Current price: €{listing.current_price:.2f}")
    if listing.original_price:
        lines.append(f"- Previous price: €{listing.original_price:.2f}")
    lines.append(f"- Discount: {listing.discount}%")
    if listing.rating is not None:
        lines.append(f"- Rating: {listing.rating:.1f}/5")
    if listing.review_count is not None:
        lines.append(f"- Reviews: {listing.review_count}")
    lines.append("")
    lines.append("Write the post now.")
    return "\n".join(lines)


def _extract_message_content(data: Any) -> str:
    """choices[0].message.content from a chat completions response."""
    if isinstance(data, dict) and isinstance(data.get("choices"), list):
        for choice in data["choices"]:
            if isinstance(choice, dict):
                msg = choice.get("message")
                if isinstance(msg, dict) and isinstance(msg.get("content"), str):
                    return msg["content"]
    return ""


class OpenAIChatProvider:
    """Chat completions over httpx."""

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        settings = get_settings()
        self.api_key = api_key or settings.openai_api_key
        self.base_url = (base_url or settings.openai_base_url).rstrip("/")
        self._http_client = http_client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=30.0)
        return self._http_client

    async def close(self) -> None:
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    async def complete(self, prompt: str, model_id: str) -> str:
        """Generate text for a prompt.

        Raises:
            LlmError: on HTTP/transport failure or empty output.
        """
        url = self.base_url + "/chat/completions"
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        body = {
            "model": model_id,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            "temperature": TEMPERATURE,
            "max_tokens": MAX_COMPLETION_TOKENS,
        }

        client = await self._get_client()
        try:
            r = await client.post(url, headers=headers, json=body)
            r.raise_for_status()
            data = r.json()
        except httpx.HTTPStatusError as e:
            status = int(e.response.status_code) if e.response is not None else 0
            response_text = e.response.text[:500] if e.response is not None else ""
            logger.error(f"[llm_client] OpenAI HTTP {status} url={url} model={model_id} response={response_text}")
            raise LlmError(f"provider returned HTTP {status}") from e
        except (httpx.HTTPError, ValueError) as e:
            raise LlmError(f"provider call failed: {e}") from e

        text = _extract_message_content(data).strip()
        if not text:
            raise LlmError("provider returned empty content")
        return text


_provider: CopyProvider | None = None


def get_copy_provider() -> CopyProvider | None:
    """Provider singleton, or None when generation is disabled."""
    global _provider
    settings = get_settings()
    if not settings.llm_enabled or not settings.openai_api_key:
        return None
    if _provider is None:
        _provider = OpenAIChatProvider()
    return _provider
