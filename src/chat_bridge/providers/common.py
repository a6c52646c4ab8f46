from __future__ import annotations

import httpx
from loguru import logger
from tenacity import retry_if_exception_type, stop_after_attempt, wait_exponential

from chat_bridge.errors import ProviderError, ProviderErrorKind

ErrorTable = list[tuple[tuple[type[BaseException], ...], ProviderErrorKind]]


def _on_retry(retry_state):
    attempt = retry_state.attempt_number
    wait = retry_state.next_action.sleep if retry_state.next_action else 0
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    reason = type(exc).__name__ if exc else "Unknown"
    logger.warning(f"{reason}. Retrying in {wait:.1f}s (attempt {attempt})...")


def default_retry_kwargs(
    exception_types: tuple[type[Exception], ...],
    *,
    attempts: int = 3,
    max_wait: float = 8,
) -> dict:
    return {
        "retry": retry_if_exception_type(exception_types),
        "wait": wait_exponential(multiplier=1, min=1, max=max_wait),
        "stop": stop_after_attempt(attempts),
        "before_sleep": _on_retry,
        "reraise": True,
    }


def classify_exception(exc: BaseException, table: ErrorTable) -> ProviderErrorKind:
    """Map a provider SDK exception onto the common taxonomy. First match wins."""
    for exception_types, kind in table:
        if isinstance(exc, exception_types):
            return kind
    return ProviderErrorKind.UNKNOWN


def to_provider_error(exc: BaseException, table: ErrorTable, label: str) -> ProviderError:
    """Wrap an SDK exception as a classified ``ProviderError`` with a client-facing message."""
    error = ProviderError(classify_exception(exc, table), f"{label} API error: {exc}")
    error.__cause__ = exc
    return error


def merge_consecutive_roles(messages: list[dict]) -> list[dict]:
    """Collapse adjacent same-role messages into one.

    A branch whose assistant reply was never saved leaves two user turns in a
    row; providers that require alternating roles reject that.
    """
    merged: list[dict] = []
    for msg in messages:
        if merged and merged[-1]["role"] == msg["role"]:
            previous = merged[-1]
            previous["content"] = _as_blocks(previous["content"]) + _as_blocks(msg["content"])
            continue
        merged.append({"role": msg["role"], "content": msg["content"]})
    return merged


def _as_blocks(content: str | list[dict]) -> list[dict]:
    if isinstance(content, str):
        return [{"type": "text", "text": content}] if content else []
    return list(content)


def has_content(content: str | list[dict]) -> bool:
    if isinstance(content, str):
        return bool(content.strip())
    return any(
        block.get("type") != "text" or str(block.get("text", "")).strip()
        for block in content
    )


def client_timeout(read_seconds: float = 600.0, connect_seconds: float = 10.0) -> httpx.Timeout:
    """Timeout for SDK clients: long reads for streams, quick failure on connect."""
    return httpx.Timeout(read_seconds, connect=connect_seconds)
