"""Conversation title generation and the cache handoff that delivers it."""

from __future__ import annotations

import asyncio
import re

from loguru import logger

from chat_bridge.provider import LLMProvider
from chat_bridge.store.cache import KeyValueCache
from chat_bridge.store.conversations import ConversationRepository
from chat_bridge.store.models import ConversationPatch

DEFAULT_TITLE = "New Chat"

_SYSTEM_PROMPT = """Generate a concise, 5-word-or-less title for this conversation. The title should:
- Capture the main topic or theme
- Use title case (First Letter Capitalized)
- Contain no punctuation or quotation marks
- Be in the same language as the conversation
- Never directly mention "title" or the language name

Respond with ONLY the title text, nothing else."""

_USER_PROMPT = """<conversation>
<user_message>
{user_text}
</user_message>
<assistant_response>
{response_text}
</assistant_response>
</conversation>

Generate a title for this conversation:"""

_SURROUNDING_QUOTES = re.compile(r"^[\"']|[\"']$")
_DISALLOWED_CHARS = re.compile(r"[^\w\s'-]")
_WHITESPACE = re.compile(r"\s+")


def truncate_text(text: str, max_length: int) -> str:
    """Cut to ``max_length``, backing up to the last space if it is past 80 %."""
    if len(text) <= max_length:
        return text
    truncated = text[:max_length]
    last_space = truncated.rfind(" ")
    return truncated[:last_space] if last_space > max_length * 0.8 else truncated


def clean_title(raw: str) -> str:
    title = _SURROUNDING_QUOTES.sub("", raw.strip())
    title = _DISALLOWED_CHARS.sub("", title)
    title = _WHITESPACE.sub(" ", title).strip()
    if len(title) < 2 or len(title) > 60:
        return DEFAULT_TITLE
    return title


def title_cache_key(user_id: str, conversation_id: str) -> str:
    return f"title:{user_id}:{conversation_id}"


class TitleGenerator:
    def __init__(
        self,
        provider: LLMProvider,
        model: str,
        *,
        timeout_seconds: float = 15.0,
        max_tokens: int = 32,
        temperature: float = 0.3,
    ):
        self._provider = provider
        self._model = model
        self._timeout_seconds = timeout_seconds
        self._max_tokens = max_tokens
        self._temperature = temperature

    async def generate(self, user_text: str, response_text: str) -> str:
        """Return a short title, or ``"New Chat"`` if anything goes wrong."""
        prompt = _USER_PROMPT.format(
            user_text=truncate_text(user_text, 500),
            response_text=truncate_text(response_text, 800),
        )
        try:
            raw = await asyncio.wait_for(
                self._provider.create_message(
                    self._model,
                    self._max_tokens,
                    self._temperature,
                    _SYSTEM_PROMPT,
                    [{"role": "user", "content": prompt}],
                ),
                timeout=self._timeout_seconds,
            )
        except TimeoutError:
            logger.warning(f"Title generation timed out after {self._timeout_seconds}s")
            return DEFAULT_TITLE
        except Exception as ex:
            logger.warning(f"Title generation failed: {ex}")
            return DEFAULT_TITLE
        return clean_title(raw or "")


class TitleHandoff:
    """Writes generated titles for a later poll and serves that poll.

    The cache entry is read at most once: a successful fetch deletes it.
    Without a cache, or while it is failing, publishing only updates the
    conversation row and fetching reports no title.
    """

    def __init__(
        self,
        conversations: ConversationRepository,
        cache: KeyValueCache | None,
        *,
        ttl_seconds: float = 120.0,
        poll_delay_seconds: float = 2.5,
    ):
        self._conversations = conversations
        self._cache = cache
        self._ttl_seconds = ttl_seconds
        self._poll_delay_seconds = poll_delay_seconds

    async def publish(self, user_id: str, conversation_id: str, title: str) -> None:
        await asyncio.to_thread(
            self._conversations.update,
            conversation_id,
            user_id,
            ConversationPatch(title=title),
        )
        if self._cache is None:
            logger.debug(f"No title cache configured, skipping handoff for conversation={conversation_id}")
            return
        try:
            await self._cache.put(title_cache_key(user_id, conversation_id), title, self._ttl_seconds)
        except Exception as ex:
            logger.warning(f"Title cache unavailable, skipping handoff for conversation={conversation_id}: {ex}")
            return
        logger.debug(f"Cached title for conversation={conversation_id}: {title!r}")

    async def fetch(self, user_id: str, conversation_id: str) -> str | None:
        if self._cache is None:
            return None
        key = title_cache_key(user_id, conversation_id)
        try:
            title = await self._cache.get(key)
            if title is None:
                await asyncio.sleep(self._poll_delay_seconds)
                title = await self._cache.get(key)
            if title is None:
                return None
            await self._cache.delete(key)
        except Exception as ex:
            logger.warning(f"Title cache unavailable, reporting no title for conversation={conversation_id}: {ex}")
            return None
        return title
