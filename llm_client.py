#!/usr/bin/env python3
"""Async OpenAI helper providing `chat_completion` with retry and content filter handling.

Uses Azure OpenAI when AZURE_ENDPOINT is configured and the public OpenAI API
otherwise. Returns `None` on exhausted retries or empty responses."""
from __future__ import annotations
from typing import List, Dict, Any, Optional
from asyncio import sleep

from openai import AsyncAzureOpenAI, AsyncOpenAI, OpenAIError

from config import config, get_logger
from errors import ContentFilterError

logger = get_logger("llm_client")

_client: Any = None


def _get_client() -> Optional[Any]:
    """Instantiate and cache the async client if configuration is present."""
    global _client
    if _client is not None:
        return _client
    if not config.OPENAI_API_KEY:
        logger.debug("OPENAI_API_KEY not set; client will not initialize")
        return None
    if config.AZURE_ENDPOINT:
        if not (config.OPENAI_API_VERSION and config.DEPLOYMENT_NAME):
            logger.warning("AZURE_ENDPOINT set without OPENAI_API_VERSION/DEPLOYMENT_NAME; client will not initialize")
            return None
        _client = AsyncAzureOpenAI(
            api_key=config.OPENAI_API_KEY,
            api_version=config.OPENAI_API_VERSION,
            azure_endpoint=f"https://{config.AZURE_ENDPOINT}",
        )
    else:
        _client = AsyncOpenAI(api_key=config.OPENAI_API_KEY)
    return _client


def _model_name() -> str:
    return config.DEPLOYMENT_NAME if config.AZURE_ENDPOINT else config.OPENAI_MODEL


def _content_filter_error(error_obj: Any) -> Optional[ContentFilterError]:
    if not isinstance(error_obj, dict):
        return None
    code = error_obj.get("code")
    inner = error_obj.get("innererror")
    inner_code = inner.get("code") if isinstance(inner, dict) else None
    if code == "content_filter" or inner_code == "ResponsibleAIPolicyViolation":
        return ContentFilterError(message=error_obj.get("message", "Content filtered"), details=error_obj)
    return None


def _extract_text(choice: Any) -> str:
    message = getattr(choice, "message", None)
    if message is None or getattr(message, "refusal", None):
        return ""
    content = getattr(message, "content", None)
    if isinstance(content, str):
        return content.strip()
    return ""


async def chat_completion(
    messages: List[Dict[str, str]],
    *,
    purpose: str = "generic",
    retries: Optional[int] = None,
    client_override: Optional[Any] = None,
) -> Optional[str]:
    """Execute a chat completion. Raises `ContentFilterError` on policy violations."""
    client = client_override or _get_client()
    if client is None:
        logger.warning("OpenAI client unavailable; skipping %s", purpose)
        return None

    remaining = retries if retries is not None else config.SUMMARIZER_MAX_RETRIES
    attempt = 0

    while attempt <= remaining:
        try:
            resp = await client.chat.completions.create(model=_model_name(), messages=messages)
            choices = getattr(resp, "choices", None) or []
            if not choices:
                logger.error("No choices in %s response", purpose)
                return None
            raw = "\n".join(t for t in (_extract_text(c) for c in choices) if t).strip()
            if not raw:
                finish_reasons = {getattr(c, "finish_reason", None) for c in choices}
                logger.error("Empty content in %s response (finish_reasons=%s)", purpose, finish_reasons)
                return None
            return raw
        except OpenAIError as e:
            attempt += 1
            body = getattr(e, "body", None) or {}
            filtered = _content_filter_error(body.get("error") if isinstance(body, dict) and "error" in body else body)
            if filtered:
                raise filtered
            if attempt > remaining:
                logger.error("%s request failed after %d retries: %s", purpose, remaining, e)
                return None
            delay = config.SUMMARIZER_RETRY_DELAY_BASE * (2 ** (attempt - 1))
            logger.warning("%s transient OpenAI error: %s. Backoff %ss (attempt %d/%d)", purpose, e, delay, attempt, remaining)
            await sleep(delay)
        except Exception as e:
            attempt += 1
            body = getattr(e, "body", None) or {}
            filtered = _content_filter_error(body.get("error") if isinstance(body, dict) else None)
            if filtered:
                raise filtered
            if attempt > remaining:
                logger.error("%s unexpected failure after %d retries: %s", purpose, remaining, e)
                return None
            delay = config.SUMMARIZER_RETRY_DELAY_BASE * (2 ** (attempt - 1))
            logger.warning("%s unexpected error: %s. Backoff %ss (attempt %d/%d)", purpose, e, delay, attempt, remaining)
            await sleep(delay)

    return None


__all__ = ["chat_completion"]
